"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
token-gated discount service, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_RPC_URLS: dict[int, list[str]] = {
    1: ["https://eth.llamarpc.com", "https://ethereum.publicnode.com"],
    8453: [
        "https://mainnet.base.org",
        "https://base.llamarpc.com",
        "https://1rpc.io/base",
        "https://base.meowrpc.com",
    ],
    137: ["https://polygon.llamarpc.com", "https://polygon.publicnode.com"],
    42161: ["https://arb1.arbitrum.io/rpc", "https://arbitrum.publicnode.com"],
}


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (eligibility audit stream)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    audit_stream_key: str | None = Field(
        default=None,
        alias="AUDIT_STREAM_KEY",
        description="Redis stream that receives eligibility audit events (disabled if unset)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Per-chain RPC endpoint lists."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    rpc_urls: dict[int, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_RPC_URLS.items()},
        alias="CHAIN_RPC_URLS",
        description="JSON mapping of chain id to an ordered list of RPC endpoints",
    )

    @field_validator("rpc_urls")
    @classmethod
    def validate_urls(cls, v: dict[int, list[str]]) -> dict[int, list[str]]:
        """Every chain needs at least one HTTP(S) endpoint."""
        for chain_id, urls in v.items():
            if not urls:
                raise ValueError(f"chain {chain_id} has no RPC endpoints")
            for url in urls:
                if not url.startswith(("http://", "https://")):
                    raise ValueError(f"RPC URL for chain {chain_id} must be an HTTP(S) endpoint")
        return v


class ResolverSettings(BaseSettings):
    """Retry, failover and pacing for on-chain balance reads."""

    model_config = SettingsConfigDict(env_prefix="RESOLVER_", extra="ignore")

    attempts_per_endpoint: int = Field(
        default=2,
        alias="RESOLVER_ATTEMPTS_PER_ENDPOINT",
        ge=1,
        le=10,
        description="Attempts against each endpoint before the budget is spent",
    )
    base_delay_seconds: float = Field(
        default=0.5,
        alias="RESOLVER_BASE_DELAY_SECONDS",
        ge=0.0,
        description="Initial backoff after a transient network failure",
    )
    max_delay_seconds: float = Field(
        default=15.0,
        alias="RESOLVER_MAX_DELAY_SECONDS",
        ge=0.0,
        description="Backoff cap",
    )
    rate_limit_base_delay_seconds: float = Field(
        default=1.0,
        alias="RESOLVER_RATE_LIMIT_BASE_DELAY_SECONDS",
        ge=0.0,
        description="Initial backoff after an HTTP 429",
    )
    jitter_seconds: float = Field(
        default=0.5,
        alias="RESOLVER_JITTER_SECONDS",
        ge=0.0,
        description="Upper bound of random jitter added to each backoff",
    )
    failure_threshold: float = Field(
        default=0.5,
        alias="RESOLVER_FAILURE_THRESHOLD",
        gt=0.0,
        le=1.0,
        description="Failed-address fraction above which a resolution is unreliable",
    )
    inter_call_delay_seconds: float = Field(
        default=0.05,
        alias="RESOLVER_INTER_CALL_DELAY_SECONDS",
        ge=0.0,
        description="Pause between sequential per-address reads",
    )
    inter_call_delay_step_seconds: float = Field(
        default=0.025,
        alias="RESOLVER_INTER_CALL_DELAY_STEP_SECONDS",
        ge=0.0,
        description="Extra pause added per address index",
    )
    inter_call_delay_max_seconds: float = Field(
        default=0.3,
        alias="RESOLVER_INTER_CALL_DELAY_MAX_SECONDS",
        ge=0.0,
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="RESOLVER_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
    )


class GatingTokenSettings(BaseSettings):
    """The distinguished gating token whose balances are persisted."""

    model_config = SettingsConfigDict(env_prefix="GATING_TOKEN_", extra="ignore")

    address: str | None = Field(
        default=None,
        alias="GATING_TOKEN_ADDRESS",
        description="ERC-20 contract of the gating token",
    )
    chain_id: int = Field(
        default=8453,
        alias="GATING_TOKEN_CHAIN_ID",
    )
    decimals: int = Field(
        default=18,
        alias="GATING_TOKEN_DECIMALS",
        ge=0,
        le=36,
    )
    staking_address: str | None = Field(
        default=None,
        alias="GATING_TOKEN_STAKING_ADDRESS",
        description="Staking contract whose balanceOf counts toward the gating token total",
    )

    @field_validator("address", "staking_address")
    @classmethod
    def normalize_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError("gating token addresses must be 0x-prefixed 20-byte hex")
        return v.lower()


class BalanceCacheSettings(BaseSettings):
    """Freshness windows for the persisted balance cache."""

    model_config = SettingsConfigDict(env_prefix="BALANCE_CACHE_", extra="ignore")

    fresh_window_seconds: int = Field(
        default=300,
        alias="BALANCE_CACHE_FRESH_WINDOW_SECONDS",
        ge=0,
        description="Age under which any cached balance is trusted",
    )
    positive_window_seconds: int = Field(
        default=120,
        alias="BALANCE_CACHE_POSITIVE_WINDOW_SECONDS",
        ge=0,
        description="Age under which a non-zero cached balance is trusted",
    )
    zero_revalidate_seconds: int = Field(
        default=120,
        alias="BALANCE_CACHE_ZERO_REVALIDATE_SECONDS",
        ge=0,
        description="Age at which a cached zero balance is re-resolved",
    )
    coalesce_ttl_seconds: float = Field(
        default=30.0,
        alias="BALANCE_CACHE_COALESCE_TTL_SECONDS",
        ge=0.0,
        description="Short-lived in-memory result TTL for coalesced lookups",
    )


class BatchSettings(BaseSettings):
    """Pacing for batch jobs that touch many identities."""

    model_config = SettingsConfigDict(env_prefix="BATCH_", extra="ignore")

    spacing_seconds: float = Field(
        default=2.0,
        alias="BATCH_SPACING_SECONDS",
        ge=0.0,
        description="Pause between identities in batch jobs",
    )


class Settings(BaseSettings):
    """Application settings composed from the groups above."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chains: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    resolver: ResolverSettings = Field(
        default_factory=lambda: ResolverSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    gating_token: GatingTokenSettings = Field(
        default_factory=lambda: GatingTokenSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    balance_cache: BalanceCacheSettings = Field(
        default_factory=lambda: BalanceCacheSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    batch: BatchSettings = Field(
        default_factory=lambda: BatchSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    @model_validator(mode="after")
    def validate_gating_chain(self) -> Settings:
        """The gating token's chain must have RPC endpoints."""
        if self.gating_token.address and self.gating_token.chain_id not in self.chains.rpc_urls:
            raise ValueError(
                f"GATING_TOKEN_CHAIN_ID={self.gating_token.chain_id} has no CHAIN_RPC_URLS entry"
            )
        return self

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "audit_stream_key": self.redis.audit_stream_key or "(not set)",
            "chains": {
                str(chain_id): str(len(urls)) for chain_id, urls in self.chains.rpc_urls.items()
            },
            "resolver": {
                "attempts_per_endpoint": str(self.resolver.attempts_per_endpoint),
                "failure_threshold": str(self.resolver.failure_threshold),
            },
            "gating_token": {
                "address": self.gating_token.address or "(not set)",
                "chain_id": str(self.gating_token.chain_id),
                "staking_address": self.gating_token.staking_address or "(not set)",
            },
            "balance_cache": {
                "fresh_window_seconds": str(self.balance_cache.fresh_window_seconds),
                "zero_revalidate_seconds": str(self.balance_cache.zero_revalidate_seconds),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


def configure_logging(settings: Settings) -> None:
    """Apply LOG_LEVEL to the root logger."""
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
