"""Cache layer - Request coalescing and the persisted gating token balance cache."""

from token_gated_discounts.cache.balance_cache import (
    CachedBalance,
    CacheMode,
    TokenBalanceCache,
    make_token_key,
)
from token_gated_discounts.cache.coalescer import RequestCoalescer

__all__ = [
    "CacheMode",
    "CachedBalance",
    "RequestCoalescer",
    "TokenBalanceCache",
    "make_token_key",
]
