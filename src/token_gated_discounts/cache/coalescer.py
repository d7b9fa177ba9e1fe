"""Request coalescing for expensive async lookups.

Concurrent callers asking for the same key share one in-flight task, and a
successful result is reused for a short TTL. Failures are never cached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RESULT_TTL_SECONDS = 30.0


@dataclass
class _CachedResult:
    value: Any
    stored_at: float


class RequestCoalescer:
    """Share in-flight work and recent results between concurrent callers.

    Example:
        ```python
        coalescer = RequestCoalescer()
        balance = await coalescer.coalesce(
            ("token-balance", identity_id),
            lambda: resolver.resolve_token_balance(addresses, contract=..., chain_id=8453),
        )
        ```
    """

    def __init__(
        self,
        *,
        default_ttl_seconds: float = DEFAULT_RESULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._pending: dict[Hashable, asyncio.Task[Any]] = {}
        self._results: dict[Hashable, _CachedResult] = {}
        # longest reuse window any caller has asked for; older results are dead
        self._retention = default_ttl_seconds

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def cached_count(self) -> int:
        return len(self._results)

    async def coalesce(
        self,
        key: Hashable,
        fn: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        """Return a recent result for ``key``, join an in-flight call, or run ``fn``.

        Args:
            key: Identity of the request.
            fn: Coroutine factory that performs the real work.
            ttl: Result reuse window in seconds; 0 skips the result cache but
                still joins an in-flight call.

        Raises:
            Whatever ``fn`` raises; every waiter sees the same exception.
        """
        ttl = self._default_ttl if ttl is None else ttl

        async with self._lock:
            self._retention = max(self._retention, ttl)
            cached = self._results.get(key)
            if cached is not None:
                if self._clock() - cached.stored_at < ttl:
                    logger.debug("Coalescer hit for %s", key)
                    return cached.value  # type: ignore[no-any-return]
                del self._results[key]

            task = self._pending.get(key)
            if task is None:
                task = asyncio.ensure_future(self._run(key, fn))
                self._pending[key] = task
            else:
                logger.debug("Joining in-flight request for %s", key)

        # shield: a cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)  # type: ignore[no-any-return]

    async def _run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await fn()
        except Exception as e:
            logger.warning("Coalesced request failed for %s: %s", key, e)
            raise
        else:
            async with self._lock:
                now = self._clock()
                self._evict_expired(now)
                self._results[key] = _CachedResult(value=result, stored_at=now)
            return result
        finally:
            async with self._lock:
                if self._pending.get(key) is asyncio.current_task():
                    del self._pending[key]

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, c in self._results.items() if now - c.stored_at >= self._retention]
        for k in expired:
            del self._results[k]
        if expired:
            logger.debug("Evicted %d expired coalescer result(s)", len(expired))

    async def invalidate(self, key: Hashable) -> None:
        """Drop the cached result for ``key``; an in-flight call keeps running."""
        async with self._lock:
            self._results.pop(key, None)

    async def invalidate_prefix(self, prefix: tuple[Hashable, ...]) -> None:
        """Drop cached results for every tuple key that starts with ``prefix``."""
        size = len(prefix)
        async with self._lock:
            for key in [k for k in self._results if isinstance(k, tuple) and k[:size] == prefix]:
                del self._results[key]

    async def invalidate_all(self) -> None:
        async with self._lock:
            self._results.clear()

    async def aclose(self) -> None:
        """Cancel in-flight work and clear all state."""
        async with self._lock:
            tasks = list(self._pending.values())
            self._pending.clear()
            self._results.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Coalescer closed; cancelled %d in-flight request(s)", len(tasks))
