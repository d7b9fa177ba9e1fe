"""Collaborator interfaces shared by the cache, the evaluator and storage."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from token_gated_discounts.eligibility.models import EligibilityAuditEvent


@dataclass(frozen=True)
class MembershipStatus:
    """Membership flag for an identity and when it was last verified."""

    is_member: bool
    verified_at: datetime | None = None


@dataclass(frozen=True)
class BalanceRecord:
    """Persisted balance of one gating token for one identity.

    Attributes:
        identity_id: Numeric identity id.
        token_key: ``"<chain_id>:<contract>"`` of the gating token.
        balance: Total in token units.
        breakdown: Optional split, e.g. ``{"wallet": ..., "staked": ...}``.
        updated_at: When the balance was resolved (timezone-aware UTC).
    """

    identity_id: int
    token_key: str
    balance: Decimal
    updated_at: datetime
    breakdown: dict[str, Decimal] = field(default_factory=dict)


@runtime_checkable
class IdentityDirectory(Protocol):
    async def get_wallet_addresses(self, identity_id: int) -> Sequence[str]:
        """All wallet and linked external addresses for an identity."""
        ...

    async def get_membership(self, identity_id: int) -> MembershipStatus | None: ...


@runtime_checkable
class UsageReader(Protocol):
    async def count_total_uses(self, campaign_id: int) -> int: ...

    async def count_identity_uses(
        self,
        campaign_id: int,
        identity_id: int,
        *,
        shared: bool,
    ) -> int:
        """Uses of a campaign by one identity.

        Shared campaigns count usage rows; single-use campaigns count rows
        whose used flag is set.
        """
        ...


@runtime_checkable
class BalanceRecordStore(Protocol):
    async def get(self, identity_id: int, token_key: str) -> BalanceRecord | None: ...

    async def upsert(self, record: BalanceRecord) -> bool:
        """Write ``record`` unless a newer one is stored; True if written."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    async def record(self, event: EligibilityAuditEvent) -> None: ...
