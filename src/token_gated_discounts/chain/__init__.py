"""Chain layer - On-chain balance reads with retry and endpoint failover."""

from token_gated_discounts.chain.addresses import (
    filter_evm_addresses,
    normalize_addresses,
    normalize_evm_address,
)
from token_gated_discounts.chain.errors import (
    AddressValidationError,
    ConfigurationError,
    RateLimitedError,
    ResolverError,
    RetryExhaustedError,
    TransientNetworkError,
    UnreliableDataError,
)
from token_gated_discounts.chain.models import (
    AddressBalance,
    BalanceResolution,
    NftRequirement,
    NftRequirementHolding,
    NftSetHoldings,
    NftStandard,
)
from token_gated_discounts.chain.resolver import BalanceResolver
from token_gated_discounts.chain.retry import RetryPolicy, call_with_failover

__all__ = [
    "AddressBalance",
    "AddressValidationError",
    "BalanceResolution",
    "BalanceResolver",
    "ConfigurationError",
    "NftRequirement",
    "NftRequirementHolding",
    "NftSetHoldings",
    "NftStandard",
    "RateLimitedError",
    "ResolverError",
    "RetryExhaustedError",
    "RetryPolicy",
    "TransientNetworkError",
    "UnreliableDataError",
    "call_with_failover",
    "filter_evm_addresses",
    "normalize_addresses",
    "normalize_evm_address",
]
