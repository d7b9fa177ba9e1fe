"""Data models for campaigns, identities and eligibility results."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Union

from token_gated_discounts.chain.addresses import normalize_addresses
from token_gated_discounts.chain.models import NftStandard


def format_amount(value: Decimal | None) -> str:
    """Render a token amount without exponent or trailing zeros."""
    if value is None:
        return "0"
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return format(normalized.quantize(Decimal(1)), "f")
    return format(normalized, "f")


class GatingType(str, Enum):
    NONE = "none"
    IDENTITY_WHITELIST = "identity_whitelist"
    WALLET_WHITELIST = "wallet_whitelist"
    NFT_HOLDING = "nft_holding"
    TOKEN_BALANCE = "token_balance"
    COMBINED = "combined"
    MEMBERSHIP_FLAG = "membership_flag"


class CampaignScope(str, Enum):
    SITE_WIDE = "site_wide"
    PRODUCT = "product"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True)
class Campaign:
    """A promotional discount campaign and its gating configuration.

    ``gating_type`` is kept as given when it is not a known GatingType so
    that the evaluator can report it instead of failing at construction.
    """

    campaign_id: int
    code: str
    gating_type: GatingType | str = GatingType.NONE
    contract_addresses: tuple[str, ...] = ()
    chain_id: int = 8453
    required_balance: Decimal | None = None
    token_decimals: int = 18
    nft_type: NftStandard = NftStandard.ERC721
    token_ids: tuple[int, ...] = ()
    whitelisted_identities: frozenset[int] = frozenset()
    whitelisted_wallets: frozenset[str] = frozenset()
    combined_requirements: tuple[GatingType, ...] = ()
    scope: CampaignScope = CampaignScope.SITE_WIDE
    target_product_ids: frozenset[int] = frozenset()
    priority_level: int = 0
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = Decimal(0)
    minimum_order_amount: Decimal | None = None
    free_shipping: bool = False
    auto_apply: bool = True
    max_uses_total: int | None = None
    max_uses_per_identity: int | None = None
    expires_at: datetime | None = None
    is_shared: bool = False

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "gating_type", GatingType(self.gating_type))
        except ValueError:
            pass
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            # naive expiries come from UTC columns
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=UTC))

    @property
    def is_gated(self) -> bool:
        return self.gating_type != GatingType.NONE

    @property
    def is_product_specific(self) -> bool:
        return self.scope == CampaignScope.PRODUCT

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(UTC))


@dataclass(frozen=True)
class Identity:
    """A user and the addresses they control."""

    identity_id: int
    wallet_addresses: tuple[str, ...] = ()
    external_addresses: tuple[str, ...] = ()

    @property
    def all_addresses(self) -> list[str]:
        """Wallet and linked addresses, de-duplicated, EVM lower-cased."""
        return normalize_addresses((*self.wallet_addresses, *self.external_addresses))

    @property
    def primary_address(self) -> str | None:
        addresses = self.all_addresses
        return addresses[0] if addresses else None


@dataclass(frozen=True)
class Scope:
    """Where a discount is being applied: the whole site or specific products."""

    product_ids: tuple[int, ...] = ()

    @classmethod
    def site_wide(cls) -> Scope:
        return cls()

    @classmethod
    def for_products(cls, product_ids: Iterable[int]) -> Scope:
        return cls(product_ids=tuple(product_ids))

    @property
    def is_product_scoped(self) -> bool:
        return bool(self.product_ids)


# ============================================================================
# Result detail variants
# ============================================================================


def _jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, EligibilityResult):
        return value.to_dict()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, frozenset, set)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class NoGatingDetail:
    kind: ClassVar[str] = "none"

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class BasicCheckDetail:
    """Why a basic precondition (expiry or a usage cap) failed."""

    kind: ClassVar[str] = "basic_check"

    check: str
    expires_at: datetime | None = None
    max_uses: int | None = None
    current_uses: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "check": self.check,
            "expires_at": _jsonable(self.expires_at),
            "max_uses": self.max_uses,
            "current_uses": self.current_uses,
        }


@dataclass(frozen=True)
class IdentityWhitelistDetail:
    kind: ClassVar[str] = "identity_whitelist"

    identity_id: int
    whitelist_size: int
    is_whitelisted: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "identity_id": self.identity_id,
            "whitelist_size": self.whitelist_size,
            "is_whitelisted": self.is_whitelisted,
        }


@dataclass(frozen=True)
class WalletWhitelistDetail:
    kind: ClassVar[str] = "wallet_whitelist"

    wallets_checked: int
    whitelist_size: int
    matching_wallet: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "wallets_checked": self.wallets_checked,
            "whitelist_size": self.whitelist_size,
            "matching_wallet": self.matching_wallet,
        }


@dataclass(frozen=True)
class NftHoldingDetail:
    """Outcome of an NFT holding check.

    Attributes:
        required_balance: Minimum number of tokens needed.
        found_balance: Tokens found across all wallets and contracts.
        contracts_checked: NFT contracts that were read.
        chain_id: Chain the contracts live on.
        nft_type: ERC-721 or ERC-1155.
        token_ids: ERC-1155 token ids that were summed.
        breakdown: Per-contract (or per-token) balances.
        failed_addresses: Wallets whose reads failed (partial result).
    """

    kind: ClassVar[str] = "nft_holding"

    required_balance: Decimal
    found_balance: Decimal
    contracts_checked: tuple[str, ...]
    chain_id: int
    nft_type: NftStandard
    token_ids: tuple[int, ...] = ()
    breakdown: dict[str, Decimal] = field(default_factory=dict)
    failed_addresses: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "required_balance": _jsonable(self.required_balance),
            "found_balance": _jsonable(self.found_balance),
            "contracts_checked": list(self.contracts_checked),
            "chain_id": self.chain_id,
            "nft_type": self.nft_type.value,
            "token_ids": list(self.token_ids),
            "breakdown": _jsonable(self.breakdown),
            "failed_addresses": list(self.failed_addresses),
        }


@dataclass(frozen=True)
class TokenBalanceDetail:
    """Outcome of a token balance check.

    ``from_cache`` and ``degraded`` are only ever set for the gating token,
    which is the one contract read through the balance cache.
    """

    kind: ClassVar[str] = "token_balance"

    required_balance: Decimal
    found_balance: Decimal
    contracts_checked: tuple[str, ...]
    chain_id: int
    from_cache: bool = False
    degraded: bool = False
    breakdown: dict[str, Decimal] = field(default_factory=dict)
    failed_addresses: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "required_balance": _jsonable(self.required_balance),
            "found_balance": _jsonable(self.found_balance),
            "contracts_checked": list(self.contracts_checked),
            "chain_id": self.chain_id,
            "from_cache": self.from_cache,
            "degraded": self.degraded,
            "breakdown": _jsonable(self.breakdown),
            "failed_addresses": list(self.failed_addresses),
        }


@dataclass(frozen=True)
class CombinedDetail:
    kind: ClassVar[str] = "combined"

    results: tuple[tuple[GatingType, EligibilityResult], ...]

    @property
    def total_checks(self) -> int:
        return len(self.results)

    @property
    def passed_checks(self) -> int:
        return sum(1 for _, r in self.results if r.eligible)

    @property
    def failed_checks(self) -> int:
        return self.total_checks - self.passed_checks

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "individual_results": [
                {"gating_type": gating.value, **result.to_dict()} for gating, result in self.results
            ],
        }


@dataclass(frozen=True)
class MembershipDetail:
    kind: ClassVar[str] = "membership_flag"

    is_member: bool | None
    verified_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "is_member": self.is_member,
            "verified_at": _jsonable(self.verified_at),
        }


@dataclass(frozen=True)
class ErrorDetail:
    kind: ClassVar[str] = "error"

    error: str
    error_type: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorDetail:
        return cls(error=str(exc), error_type=type(exc).__name__)

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "error": self.error, "error_type": self.error_type}


EligibilityDetail = Union[
    NoGatingDetail,
    BasicCheckDetail,
    IdentityWhitelistDetail,
    WalletWhitelistDetail,
    NftHoldingDetail,
    TokenBalanceDetail,
    CombinedDetail,
    MembershipDetail,
    ErrorDetail,
]


@dataclass(frozen=True)
class EligibilityResult:
    """Eligibility decision for one campaign and one identity.

    Attributes:
        eligible: Whether the identity may use the campaign.
        reason: Human-readable explanation.
        detail: Typed detail for the gating type that decided the result.
        resolver_calls: RPC calls made while deciding.
    """

    eligible: bool
    reason: str
    detail: EligibilityDetail = field(default_factory=NoGatingDetail)
    resolver_calls: int = 0

    @property
    def degraded(self) -> bool:
        if isinstance(self.detail, TokenBalanceDetail):
            return self.detail.degraded
        if isinstance(self.detail, CombinedDetail):
            return any(r.degraded for _, r in self.detail.results)
        return False

    @property
    def found_balance(self) -> Decimal | None:
        if isinstance(self.detail, (TokenBalanceDetail, NftHoldingDetail)):
            return self.detail.found_balance
        if isinstance(self.detail, CombinedDetail):
            for _, r in self.detail.results:
                if r.found_balance is not None:
                    return r.found_balance
        return None

    @property
    def contracts_checked(self) -> tuple[str, ...]:
        if isinstance(self.detail, (TokenBalanceDetail, NftHoldingDetail)):
            return self.detail.contracts_checked
        if isinstance(self.detail, CombinedDetail):
            seen: dict[str, None] = {}
            for _, r in self.detail.results:
                for contract in r.contracts_checked:
                    seen.setdefault(contract)
            return tuple(seen)
        return ()

    def to_dict(self) -> dict[str, object]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "detail": self.detail.to_dict(),
            "resolver_calls": self.resolver_calls,
        }


@dataclass(frozen=True)
class EligibilityAuditEvent:
    """Analytics record emitted for every evaluation."""

    campaign_id: int
    campaign_code: str
    identity_id: int
    gating_type: str
    eligible: bool
    reason: str
    duration_ms: float
    resolver_calls: int
    wallet_address: str | None = None
    found_balance: Decimal | None = None
    contracts_checked: tuple[str, ...] = ()
    degraded: bool = False
    detail: dict[str, object] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for Redis stream publishing."""
        return {
            "campaign_id": self.campaign_id,
            "campaign_code": self.campaign_code,
            "identity_id": self.identity_id,
            "gating_type": self.gating_type,
            "eligible": self.eligible,
            "reason": self.reason,
            "duration_ms": round(self.duration_ms, 3),
            "resolver_calls": self.resolver_calls,
            "wallet_address": self.wallet_address,
            "found_balance": _jsonable(self.found_balance) if self.found_balance is not None else None,
            "contracts_checked": list(self.contracts_checked),
            "degraded": self.degraded,
            "detail": self.detail,
            "checked_at": self.checked_at.isoformat(),
        }
