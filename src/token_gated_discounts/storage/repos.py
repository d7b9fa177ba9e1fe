"""Repository pattern implementations for data access.

Repositories wrap a single ``AsyncSession``. The ``Sql*`` classes at the
bottom implement the collaborator protocols on top of ``DatabaseManager``,
opening one transactional session per call.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from token_gated_discounts.chain.addresses import normalize_addresses
from token_gated_discounts.protocols import BalanceRecord, MembershipStatus
from token_gated_discounts.storage.models import (
    BalanceRecordModel,
    DiscountUsageModel,
    EligibilityCheckModel,
    IdentityModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from token_gated_discounts.eligibility.models import EligibilityAuditEvent
    from token_gated_discounts.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def record_from_model(model: BalanceRecordModel) -> BalanceRecord:
    return BalanceRecord(
        identity_id=model.identity_id,
        token_key=model.token_key,
        balance=Decimal(model.balance),
        breakdown={k: Decimal(v) for k, v in (model.breakdown or {}).items()},
        updated_at=_as_utc(model.updated_at),  # type: ignore[arg-type]
    )


@dataclass
class IdentityDTO:
    """Data transfer object for identities."""

    identity_id: int
    wallet_addresses: list[str] = field(default_factory=list)
    external_addresses: list[str] = field(default_factory=list)
    is_member: bool | None = None
    membership_verified_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IdentityModel) -> IdentityDTO:
        return cls(
            identity_id=model.identity_id,
            wallet_addresses=list(model.wallet_addresses or []),
            external_addresses=list(model.external_addresses or []),
            is_member=model.is_member,
            membership_verified_at=_as_utc(model.membership_verified_at),
        )

    @property
    def all_addresses(self) -> list[str]:
        return normalize_addresses([*self.wallet_addresses, *self.external_addresses])


@dataclass
class DiscountUsageDTO:
    """Data transfer object for discount usage rows."""

    campaign_id: int
    identity_id: int
    order_id: str | None = None
    is_used: bool = True
    discount_amount: Decimal | None = None
    used_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: DiscountUsageModel) -> DiscountUsageDTO:
        return cls(
            id=model.id,
            campaign_id=model.campaign_id,
            identity_id=model.identity_id,
            order_id=model.order_id,
            is_used=model.is_used,
            discount_amount=model.discount_amount,
            used_at=_as_utc(model.used_at),
        )


@dataclass
class EligibilityCheckDTO:
    """Data transfer object for eligibility audit rows."""

    campaign_id: int
    campaign_code: str
    identity_id: int
    gating_type: str
    is_eligible: bool
    reason: str
    check_duration_ms: float
    resolver_calls: int
    checked_at: datetime
    wallet_address: str | None = None
    found_balance: Decimal | None = None
    contracts_checked: list[str] = field(default_factory=list)
    detail: dict[str, Any] = field(default_factory=dict)
    degraded: bool = False
    id: int | None = None

    @classmethod
    def from_event(cls, event: EligibilityAuditEvent) -> EligibilityCheckDTO:
        return cls(
            campaign_id=event.campaign_id,
            campaign_code=event.campaign_code,
            identity_id=event.identity_id,
            gating_type=event.gating_type,
            is_eligible=event.eligible,
            reason=event.reason,
            check_duration_ms=event.duration_ms,
            resolver_calls=event.resolver_calls,
            checked_at=event.checked_at,
            wallet_address=event.wallet_address,
            found_balance=event.found_balance,
            contracts_checked=list(event.contracts_checked),
            detail=dict(event.detail),
            degraded=event.degraded,
        )

    @classmethod
    def from_model(cls, model: EligibilityCheckModel) -> EligibilityCheckDTO:
        return cls(
            id=model.id,
            campaign_id=model.campaign_id,
            campaign_code=model.campaign_code,
            identity_id=model.identity_id,
            gating_type=model.gating_type,
            is_eligible=model.is_eligible,
            reason=model.reason,
            check_duration_ms=model.check_duration_ms,
            resolver_calls=model.resolver_calls,
            checked_at=_as_utc(model.checked_at),  # type: ignore[arg-type]
            wallet_address=model.wallet_address,
            found_balance=model.found_balance,
            contracts_checked=list(model.contracts_checked or []),
            detail=dict(model.detail or {}),
            degraded=model.degraded,
        )


class BalanceRecordRepository:
    """Repository for persisted gating token balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, identity_id: int, token_key: str) -> BalanceRecord | None:
        result = await self.session.execute(
            select(BalanceRecordModel).where(
                BalanceRecordModel.identity_id == identity_id,
                BalanceRecordModel.token_key == token_key,
            )
        )
        model = result.scalar_one_or_none()
        return record_from_model(model) if model else None

    async def upsert(self, record: BalanceRecord) -> bool:
        """Insert or replace a record unless the stored one is newer.

        Returns:
            True if the row was written.
        """
        values = {
            "identity_id": record.identity_id,
            "token_key": record.token_key,
            "balance": record.balance,
            "breakdown": {k: str(v) for k, v in record.breakdown.items()},
            "updated_at": _as_utc(record.updated_at),
        }
        stmt = _insert_for(self.session, BalanceRecordModel).values(
            **values, created_at=datetime.now(UTC)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identity_id", "token_key"],
            set_={
                "balance": stmt.excluded.balance,
                "breakdown": stmt.excluded.breakdown,
                "updated_at": stmt.excluded.updated_at,
            },
            where=BalanceRecordModel.updated_at <= stmt.excluded.updated_at,
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        written = bool(result.rowcount)
        if not written:
            logger.debug(
                "Skipped balance write for identity %d (%s): stored record is newer",
                record.identity_id,
                record.token_key,
            )
        return written


class IdentityRepository:
    """Repository for identities and their wallet sets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, identity_id: int) -> IdentityDTO | None:
        model = await self.session.get(IdentityModel, identity_id)
        return IdentityDTO.from_model(model) if model else None

    async def upsert(self, dto: IdentityDTO) -> IdentityDTO:
        values = {
            "identity_id": dto.identity_id,
            "wallet_addresses": normalize_addresses(dto.wallet_addresses),
            "external_addresses": normalize_addresses(dto.external_addresses),
            "is_member": dto.is_member,
            "membership_verified_at": _as_utc(dto.membership_verified_at),
            "updated_at": datetime.now(UTC),
        }
        stmt = _insert_for(self.session, IdentityModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["identity_id"],
            set_={
                "wallet_addresses": stmt.excluded.wallet_addresses,
                "external_addresses": stmt.excluded.external_addresses,
                "is_member": stmt.excluded.is_member,
                "membership_verified_at": stmt.excluded.membership_verified_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def set_membership(
        self, identity_id: int, *, is_member: bool, verified_at: datetime | None = None
    ) -> bool:
        result = await self.session.execute(
            sa.update(IdentityModel)
            .where(IdentityModel.identity_id == identity_id)
            .values(
                is_member=is_member,
                membership_verified_at=_as_utc(verified_at or datetime.now(UTC)),
                updated_at=datetime.now(UTC),
            )
        )
        await self.session.flush()
        return bool(result.rowcount)


class DiscountUsageRepository:
    """Repository for campaign usage rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: DiscountUsageDTO) -> DiscountUsageDTO:
        model = DiscountUsageModel(
            campaign_id=dto.campaign_id,
            identity_id=dto.identity_id,
            order_id=dto.order_id,
            is_used=dto.is_used,
            discount_amount=dto.discount_amount,
            used_at=_as_utc(dto.used_at) or (datetime.now(UTC) if dto.is_used else None),
        )
        self.session.add(model)
        await self.session.flush()
        dto.id = model.id
        return dto

    async def mark_used(self, usage_id: int, *, order_id: str | None = None) -> bool:
        """Flip the used flag on a single-use row that has not been used yet."""
        result = await self.session.execute(
            sa.update(DiscountUsageModel)
            .where(DiscountUsageModel.id == usage_id, DiscountUsageModel.is_used.is_(False))
            .values(is_used=True, order_id=order_id, used_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def count_total_uses(self, campaign_id: int) -> int:
        result = await self.session.execute(
            select(sa.func.count())
            .select_from(DiscountUsageModel)
            .where(
                DiscountUsageModel.campaign_id == campaign_id,
                DiscountUsageModel.is_used.is_(True),
            )
        )
        return int(result.scalar_one())

    async def count_identity_uses(self, campaign_id: int, identity_id: int, *, shared: bool) -> int:
        stmt = (
            select(sa.func.count())
            .select_from(DiscountUsageModel)
            .where(
                DiscountUsageModel.campaign_id == campaign_id,
                DiscountUsageModel.identity_id == identity_id,
            )
        )
        if not shared:
            stmt = stmt.where(DiscountUsageModel.is_used.is_(True))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class EligibilityCheckRepository:
    """Repository for eligibility audit rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: EligibilityCheckDTO) -> EligibilityCheckDTO:
        model = EligibilityCheckModel(
            campaign_id=dto.campaign_id,
            campaign_code=dto.campaign_code,
            identity_id=dto.identity_id,
            wallet_address=dto.wallet_address,
            gating_type=dto.gating_type,
            is_eligible=dto.is_eligible,
            reason=dto.reason,
            found_balance=dto.found_balance,
            contracts_checked=dto.contracts_checked,
            detail=dto.detail,
            check_duration_ms=dto.check_duration_ms,
            resolver_calls=dto.resolver_calls,
            degraded=dto.degraded,
            checked_at=_as_utc(dto.checked_at),
        )
        self.session.add(model)
        await self.session.flush()
        dto.id = model.id
        return dto

    async def list_for_campaign(
        self, campaign_id: int, *, limit: int = 100
    ) -> list[EligibilityCheckDTO]:
        result = await self.session.execute(
            select(EligibilityCheckModel)
            .where(EligibilityCheckModel.campaign_id == campaign_id)
            .order_by(EligibilityCheckModel.checked_at.desc(), EligibilityCheckModel.id.desc())
            .limit(limit)
        )
        return [EligibilityCheckDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Collaborator implementations
# ============================================================================


class SqlBalanceRecordStore:
    """BalanceRecordStore backed by the balance_records table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, identity_id: int, token_key: str) -> BalanceRecord | None:
        async with self._db.get_async_session() as session:
            return await BalanceRecordRepository(session).get(identity_id, token_key)

    async def upsert(self, record: BalanceRecord) -> bool:
        async with self._db.get_async_session() as session:
            return await BalanceRecordRepository(session).upsert(record)


class SqlIdentityDirectory:
    """IdentityDirectory backed by the identities table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_wallet_addresses(self, identity_id: int) -> Sequence[str]:
        async with self._db.get_async_session() as session:
            dto = await IdentityRepository(session).get(identity_id)
        if dto is None:
            logger.info("Identity %d not found; no wallet addresses", identity_id)
            return []
        return dto.all_addresses

    async def get_membership(self, identity_id: int) -> MembershipStatus | None:
        async with self._db.get_async_session() as session:
            dto = await IdentityRepository(session).get(identity_id)
        if dto is None or dto.is_member is None:
            return None
        return MembershipStatus(is_member=dto.is_member, verified_at=dto.membership_verified_at)


class SqlUsageReader:
    """UsageReader backed by the discount_usage table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def count_total_uses(self, campaign_id: int) -> int:
        async with self._db.get_async_session() as session:
            return await DiscountUsageRepository(session).count_total_uses(campaign_id)

    async def count_identity_uses(self, campaign_id: int, identity_id: int, *, shared: bool) -> int:
        async with self._db.get_async_session() as session:
            return await DiscountUsageRepository(session).count_identity_uses(
                campaign_id, identity_id, shared=shared
            )
