"""Wallet address normalization.

EVM addresses are lower-cased and checked with web3's address validator.
Anything else (Solana and other non-EVM wallets) is kept verbatim so it can
still be matched against wallet whitelists, but it is never sent to an EVM
RPC endpoint.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from web3 import AsyncWeb3

from token_gated_discounts.chain.errors import AddressValidationError

logger = logging.getLogger(__name__)


def looks_like_evm(address: str) -> bool:
    return address.startswith(("0x", "0X")) and len(address) == 42


def normalize_evm_address(address: str) -> str:
    """Lower-case and validate a single EVM address.

    Raises:
        AddressValidationError: If the address is not 20 bytes of hex.
    """
    if not isinstance(address, str):
        raise AddressValidationError(f"address must be a string, got {type(address).__name__}")
    candidate = address.strip().lower()
    if not looks_like_evm(candidate) or not AsyncWeb3.is_address(candidate):
        raise AddressValidationError(f"invalid EVM address: {address!r}")
    return candidate


def normalize_addresses(addresses: Iterable[str]) -> list[str]:
    """De-duplicate an identity's address set, preserving first-seen order.

    EVM addresses are lower-cased; other addresses keep their case.
    """
    seen: set[str] = set()
    normalized: list[str] = []
    for raw in addresses:
        if not isinstance(raw, str) or not raw.strip():
            continue
        addr = raw.strip()
        if looks_like_evm(addr):
            addr = addr.lower()
        if addr in seen:
            continue
        seen.add(addr)
        normalized.append(addr)
    return normalized


def filter_evm_addresses(addresses: Iterable[str]) -> list[str]:
    """Keep valid EVM addresses, logging the reason for each one dropped."""
    valid: list[str] = []
    seen: set[str] = set()
    for raw in addresses:
        try:
            addr = normalize_evm_address(raw)
        except AddressValidationError as e:
            logger.info("Skipping address for on-chain read: %s", e)
            continue
        if addr not in seen:
            seen.add(addr)
            valid.append(addr)
    return valid
