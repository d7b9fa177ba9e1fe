"""Tiered-freshness cache for gating token balances.

The cache sits in front of the balance resolver. A persisted record is
trusted while it is fresh; a zero balance is re-checked sooner than a
positive one so that newly acquired tokens are picked up quickly. When the
resolver cannot produce a reliable total, the last known non-zero balance is
served instead and nothing is written.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from token_gated_discounts.cache.coalescer import RequestCoalescer
from token_gated_discounts.chain.addresses import normalize_addresses, normalize_evm_address
from token_gated_discounts.chain.errors import ConfigurationError, UnreliableDataError
from token_gated_discounts.chain.resolver import DEFAULT_DECIMALS, BalanceResolver
from token_gated_discounts.protocols import BalanceRecord, BalanceRecordStore, IdentityDirectory

if TYPE_CHECKING:
    from token_gated_discounts.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_FRESH_WINDOW_SECONDS = 300
DEFAULT_POSITIVE_WINDOW_SECONDS = 120
DEFAULT_ZERO_REVALIDATE_SECONDS = 120
DEFAULT_COALESCE_TTL_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CacheMode(str, Enum):
    DEFAULT = "default"
    FORCE_REFRESH = "force_refresh"
    CACHE_ONLY = "cache_only"


@dataclass(frozen=True)
class CachedBalance:
    """Balance returned by the cache.

    Attributes:
        balance: Total in token units; None only in cache-only mode when
            nothing has ever been stored.
        breakdown: Wallet/staked split when a staking contract is configured.
        from_cache: True if no resolution happened for this call.
        updated_at: When the balance was resolved.
        degraded: True if the resolver failed and a last known value was served.
        stale: True if the value is older than its freshness window.
        resolver_calls: RPC calls spent producing this value.
    """

    balance: Decimal | None
    breakdown: dict[str, Decimal] = field(default_factory=dict)
    from_cache: bool = False
    updated_at: datetime | None = None
    degraded: bool = False
    stale: bool = False
    resolver_calls: int = 0

    @property
    def has_value(self) -> bool:
        return self.balance is not None

    @classmethod
    def from_record(
        cls,
        record: BalanceRecord,
        *,
        from_cache: bool,
        degraded: bool = False,
        stale: bool = False,
        resolver_calls: int = 0,
    ) -> CachedBalance:
        return cls(
            balance=record.balance,
            breakdown=dict(record.breakdown),
            from_cache=from_cache,
            updated_at=record.updated_at,
            degraded=degraded,
            stale=stale,
            resolver_calls=resolver_calls,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "balance": str(self.balance) if self.balance is not None else None,
            "breakdown": {k: str(v) for k, v in self.breakdown.items()},
            "from_cache": self.from_cache,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "degraded": self.degraded,
            "stale": self.stale,
            "resolver_calls": self.resolver_calls,
        }


@dataclass(frozen=True)
class _Resolved:
    record: BalanceRecord
    resolver_calls: int


def make_token_key(chain_id: int, contract: str) -> str:
    return f"{chain_id}:{contract.lower()}"


class TokenBalanceCache:
    """Gating token balances per identity, backed by a persisted store.

    Example:
        ```python
        cache = TokenBalanceCache.from_settings(settings, resolver, store, directory)
        result = await cache.get_balance(identity_id)
        if result.degraded:
            ...
        ```
    """

    def __init__(
        self,
        resolver: BalanceResolver,
        store: BalanceRecordStore,
        directory: IdentityDirectory,
        *,
        contract: str,
        chain_id: int,
        decimals: int = DEFAULT_DECIMALS,
        staking_contract: str | None = None,
        coalescer: RequestCoalescer | None = None,
        fresh_window_seconds: float = DEFAULT_FRESH_WINDOW_SECONDS,
        positive_window_seconds: float = DEFAULT_POSITIVE_WINDOW_SECONDS,
        zero_revalidate_seconds: float = DEFAULT_ZERO_REVALIDATE_SECONDS,
        coalesce_ttl_seconds: float = DEFAULT_COALESCE_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._directory = directory
        self._contract = normalize_evm_address(contract)
        self._chain_id = chain_id
        self._decimals = decimals
        self._staking_contract = (
            normalize_evm_address(staking_contract) if staking_contract else None
        )
        self._coalescer = coalescer or RequestCoalescer(default_ttl_seconds=coalesce_ttl_seconds)
        self._fresh_window = fresh_window_seconds
        self._positive_window = positive_window_seconds
        self._zero_revalidate = zero_revalidate_seconds
        self._coalesce_ttl = coalesce_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        resolver: BalanceResolver,
        store: BalanceRecordStore,
        directory: IdentityDirectory,
        *,
        coalescer: RequestCoalescer | None = None,
    ) -> TokenBalanceCache:
        token = settings.gating_token
        if not token.address:
            raise ConfigurationError("GATING_TOKEN_ADDRESS is not configured")
        windows = settings.balance_cache
        return cls(
            resolver,
            store,
            directory,
            contract=token.address,
            chain_id=token.chain_id,
            decimals=token.decimals,
            staking_contract=token.staking_address,
            coalescer=coalescer,
            fresh_window_seconds=windows.fresh_window_seconds,
            positive_window_seconds=windows.positive_window_seconds,
            zero_revalidate_seconds=windows.zero_revalidate_seconds,
            coalesce_ttl_seconds=windows.coalesce_ttl_seconds,
        )

    @property
    def contract(self) -> str:
        return self._contract

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def token_key(self) -> str:
        return make_token_key(self._chain_id, self._contract)

    def covers(self, contract: str, chain_id: int) -> bool:
        """True if ``contract`` on ``chain_id`` is the cached gating token."""
        return chain_id == self._chain_id and contract.lower() == self._contract

    def is_fresh(self, record: BalanceRecord, now: datetime | None = None) -> bool:
        """Apply the freshness windows to a stored record."""
        now = now or self._clock()
        age = max(0.0, (now - record.updated_at).total_seconds())
        if record.balance == 0:
            return age < min(self._fresh_window, self._zero_revalidate)
        if age < self._positive_window:
            return True
        return age < self._fresh_window

    async def get_balance(
        self,
        identity_id: int,
        addresses: Sequence[str] | None = None,
        *,
        mode: CacheMode = CacheMode.DEFAULT,
    ) -> CachedBalance:
        """Return the gating token balance for an identity.

        Args:
            identity_id: Identity to look up.
            addresses: Wallets to read; loaded from the identity directory if omitted.
            mode: DEFAULT honours the freshness windows, FORCE_REFRESH always
                resolves, CACHE_ONLY never resolves.

        Returns:
            CachedBalance describing where the value came from.

        Raises:
            UnreliableDataError: If resolution failed and there is no non-zero
                value to fall back to.
        """
        record = await self._store.get(identity_id, self.token_key)
        now = self._clock()

        if mode is CacheMode.CACHE_ONLY:
            if record is None:
                logger.debug("No cached balance for identity %d", identity_id)
                return CachedBalance(balance=None, from_cache=True, stale=True)
            return CachedBalance.from_record(
                record, from_cache=True, stale=not self.is_fresh(record, now)
            )

        if mode is CacheMode.DEFAULT and record is not None and self.is_fresh(record, now):
            logger.debug(
                "Using cached balance for identity %d: %s (updated %s)",
                identity_id,
                record.balance,
                record.updated_at.isoformat(),
            )
            return CachedBalance.from_record(record, from_cache=True)

        if addresses is None:
            addresses = await self._directory.get_wallet_addresses(identity_id)
        wallets = normalize_addresses(addresses)

        ttl = 0.0 if mode is CacheMode.FORCE_REFRESH else self._coalesce_ttl
        try:
            resolved = await self._coalescer.coalesce(
                self._coalesce_key(identity_id, wallets),
                lambda: self._resolve_and_store(identity_id, wallets),
                ttl=ttl,
            )
        except UnreliableDataError as e:
            if record is not None and record.balance > 0:
                logger.warning(
                    "Serving last known balance for identity %d after unreliable read "
                    "(%d/%d addresses failed): %s",
                    identity_id,
                    len(e.failed_addresses),
                    e.total_addresses,
                    record.balance,
                )
                return CachedBalance.from_record(
                    record,
                    from_cache=True,
                    degraded=True,
                    stale=not self.is_fresh(record, now),
                )
            logger.error(
                "Unreliable balance read for identity %d and no fallback value", identity_id
            )
            raise

        return CachedBalance.from_record(
            resolved.record, from_cache=False, resolver_calls=resolved.resolver_calls
        )

    async def invalidate(self, identity_id: int) -> None:
        """Drop the short-lived coalesced results for an identity, whatever its wallets."""
        await self._coalescer.invalidate_prefix(("token-balance", self.token_key, identity_id))

    def _coalesce_key(self, identity_id: int, wallets: Sequence[str]) -> tuple[object, ...]:
        # a changed wallet set must not join or reuse a read of the old one
        return ("token-balance", self.token_key, identity_id, tuple(sorted(wallets)))

    async def _resolve_and_store(self, identity_id: int, wallets: Sequence[str]) -> _Resolved:
        wallet = await self._resolver.resolve_token_balance(
            wallets,
            contract=self._contract,
            chain_id=self._chain_id,
            decimals=self._decimals,
        )
        calls = wallet.calls_made
        balance = wallet.total
        breakdown: dict[str, Decimal] = {}

        if self._staking_contract:
            staked = await self._resolver.resolve_token_balance(
                wallets,
                contract=self._staking_contract,
                chain_id=self._chain_id,
                decimals=self._decimals,
            )
            calls += staked.calls_made
            balance = wallet.total + staked.total
            breakdown = {"wallet": wallet.total, "staked": staked.total}

        record = BalanceRecord(
            identity_id=identity_id,
            token_key=self.token_key,
            balance=balance,
            breakdown=breakdown,
            updated_at=self._clock(),
        )
        written = await self._store.upsert(record)
        if not written:
            logger.info(
                "Balance for identity %d not persisted: a newer record exists", identity_id
            )
        logger.info(
            "Resolved balance for identity %d: %s across %d wallet(s) in %d call(s)",
            identity_id,
            balance,
            len(wallets),
            calls,
        )
        return _Resolved(record=record, resolver_calls=calls)
