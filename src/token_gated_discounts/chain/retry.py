"""Declarative retry policy and the failover combinator used by every RPC read.

A ``RetryPolicy`` describes the endpoints for a chain, how many attempts each
endpoint gets, and the backoff schedule. ``call_with_failover`` executes an
operation under that policy, rotating to the next endpoint on every failed
attempt so the total budget is ``len(endpoints) * attempts_per_endpoint``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import aiohttp
from web3.exceptions import Web3Exception

from token_gated_discounts.chain.errors import (
    RateLimitedError,
    RetryExhaustedError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff schedule for one chain.

    Attributes:
        endpoints: Ordered RPC endpoint URLs.
        attempts_per_endpoint: Attempts each endpoint gets within the budget.
        base_delay: First backoff after a transient failure (doubles per retry).
        rate_limit_base_delay: First backoff after a rate-limit response.
        max_delay: Cap applied to every backoff.
        jitter: Upper bound of uniform random jitter added to a backoff.
    """

    endpoints: tuple[str, ...]
    attempts_per_endpoint: int = 2
    base_delay: float = 0.5
    rate_limit_base_delay: float = 1.0
    max_delay: float = 15.0
    jitter: float = 0.5

    def __post_init__(self) -> None:
        if not self.endpoints:
            raise ValueError("RetryPolicy requires at least one endpoint")
        if self.attempts_per_endpoint < 1:
            raise ValueError("attempts_per_endpoint must be >= 1")

    @property
    def max_attempts(self) -> int:
        return len(self.endpoints) * self.attempts_per_endpoint

    def endpoint_for(self, attempt: int, *, start: int = 0) -> str:
        return self.endpoints[(start + attempt) % len(self.endpoints)]

    def backoff(self, retry_number: int, *, rate_limited: bool) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        base = self.rate_limit_base_delay if rate_limited else self.base_delay
        delay = base * (2 ** max(0, retry_number - 1))
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)


def classify_exception(exc: BaseException, *, endpoint: str) -> TransientNetworkError | None:
    """Map a provider exception to the retryable taxonomy.

    Returns None when the exception is not a network/provider failure and
    should propagate unchanged.
    """
    if isinstance(exc, TransientNetworkError):
        return exc
    status = getattr(exc, "status", None)
    message = str(exc)
    lowered = message.lower()
    if status == 429 or any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return RateLimitedError(f"rate limited by {endpoint}: {message}", endpoint=endpoint)
    if isinstance(exc, (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError)):
        return TransientNetworkError(f"{endpoint}: {message or type(exc).__name__}", endpoint=endpoint)
    return None


async def call_with_failover(
    policy: RetryPolicy,
    operation: Callable[[str], Awaitable[T]],
    *,
    description: str,
    start: int = 0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> tuple[T, int]:
    """Run ``operation(endpoint)`` until it succeeds or the budget is spent.

    Args:
        policy: Endpoint list and backoff schedule.
        operation: Coroutine factory receiving the endpoint URL for this attempt.
        description: Short label for log lines.
        start: Index of the first endpoint to try.
        sleep: Injected for tests.

    Returns:
        Tuple of (result, attempts made).

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error.
    """
    last_error: TransientNetworkError | None = None

    for attempt in range(policy.max_attempts):
        endpoint = policy.endpoint_for(attempt, start=start)
        try:
            result = await operation(endpoint)
        except Exception as e:
            classified = classify_exception(e, endpoint=endpoint)
            if classified is None:
                raise
            last_error = classified
            if attempt + 1 >= policy.max_attempts:
                break

            delay = policy.backoff(attempt + 1, rate_limited=isinstance(classified, RateLimitedError))
            logger.warning(
                "%s failed on %s (attempt %d/%d): %s. Retrying in %.2fs",
                description,
                endpoint,
                attempt + 1,
                policy.max_attempts,
                classified,
                delay,
            )
            await sleep(delay)
            continue

        if attempt > 0:
            logger.info("%s succeeded on %s after %d attempts", description, endpoint, attempt + 1)
        return result, attempt + 1

    raise RetryExhaustedError(
        f"{description} failed after {policy.max_attempts} attempts across "
        f"{len(policy.endpoints)} endpoints: {last_error}",
        attempts=policy.max_attempts,
        last_exception=last_error,
    )
