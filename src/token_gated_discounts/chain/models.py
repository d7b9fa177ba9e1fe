"""Data models for on-chain balance resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class NftStandard(str, Enum):
    ERC721 = "erc721"
    ERC1155 = "erc1155"


@dataclass(frozen=True)
class AddressBalance:
    """One successful or failed read for a single wallet.

    Attributes:
        address: Lower-cased wallet address.
        contract: Contract that was read.
        balance: Amount in display units (0 when the read failed).
        success: False when the retry budget was exhausted.
        token_id: ERC-1155 token id, if applicable.
        error: Last error message for a failed read.
    """

    address: str
    contract: str
    balance: Decimal
    success: bool = True
    token_id: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class BalanceResolution:
    """Aggregate result of a multi-address balance read.

    ``failed_addresses`` is non-empty only when the failure rate stayed at or
    under the resolver's threshold; above it the resolver raises instead.
    """

    chain_id: int
    contracts: tuple[str, ...]
    total: Decimal
    per_address: list[AddressBalance]
    failed_addresses: list[str] = field(default_factory=list)
    calls_made: int = 0
    required_balance: Decimal | None = None
    breakdown: dict[str, Decimal] = field(default_factory=dict)

    @property
    def eligible(self) -> bool | None:
        """Quick threshold flag; None when no requirement was given."""
        if self.required_balance is None:
            return None
        return self.total >= self.required_balance

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_addresses)

    @property
    def addresses_checked(self) -> int:
        return len({entry.address for entry in self.per_address})

    def to_dict(self) -> dict[str, object]:
        return {
            "chain_id": self.chain_id,
            "contracts": list(self.contracts),
            "total": str(self.total),
            "required_balance": (
                str(self.required_balance) if self.required_balance is not None else None
            ),
            "eligible": self.eligible,
            "failed_addresses": list(self.failed_addresses),
            "calls_made": self.calls_made,
            "breakdown": {k: str(v) for k, v in self.breakdown.items()},
        }


@dataclass(frozen=True)
class NftRequirement:
    """One ERC-1155 token that must be held to form a complete set."""

    contract: str
    token_id: int
    chain_id: int = 8453
    name: str = ""


@dataclass(frozen=True)
class NftRequirementHolding:
    requirement: NftRequirement
    balance: Decimal
    per_address: list[AddressBalance]


@dataclass(frozen=True)
class NftSetHoldings:
    """Holdings across a list of required NFTs.

    ``complete_sets`` is the minimum balance across requirements: the number
    of full sets the identity holds.
    """

    holdings: list[NftRequirementHolding]
    calls_made: int = 0

    @property
    def complete_sets(self) -> int:
        if not self.holdings:
            return 0
        return int(min(h.balance for h in self.holdings))

    @property
    def eligible(self) -> bool:
        return self.complete_sets > 0
