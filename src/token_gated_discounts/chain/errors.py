"""Error taxonomy for on-chain balance resolution."""

from __future__ import annotations


class ResolverError(Exception):
    """Base exception for balance resolver errors."""


class TransientNetworkError(ResolverError):
    """Raised for retryable RPC failures (timeouts, 5xx, dropped connections)."""

    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class RateLimitedError(TransientNetworkError):
    """Raised when an RPC endpoint answers with HTTP 429 or a rate-limit error."""


class RetryExhaustedError(ResolverError):
    """Raised when every attempt across every endpoint has failed."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_exception: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


class UnreliableDataError(ResolverError):
    """Raised when too many per-address reads failed to report a total.

    A partial sum could understate holdings, so callers must treat this as
    "could not determine", never as a zero balance.
    """

    def __init__(
        self,
        message: str,
        *,
        failed_addresses: list[str],
        total_addresses: int,
    ) -> None:
        super().__init__(message)
        self.failed_addresses = failed_addresses
        self.total_addresses = total_addresses

    @property
    def failure_rate(self) -> float:
        if self.total_addresses == 0:
            return 0.0
        return len(self.failed_addresses) / self.total_addresses


class ConfigurationError(Exception):
    """Raised when a campaign or chain is missing required configuration."""


class AddressValidationError(ValueError):
    """Raised for a malformed wallet or contract address."""
