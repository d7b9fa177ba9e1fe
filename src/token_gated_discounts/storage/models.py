"""SQLAlchemy models for persistent storage.

This module defines the database schema for cached gating token balances,
identities and their wallets, discount usage, and eligibility audit rows.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BalanceRecordModel(Base):
    """Last resolved balance of one gating token for one identity."""

    __tablename__ = "balance_records"

    identity_id: Mapped[int] = mapped_column(Integer, primary_key=True, nullable=False)
    # "<chain_id>:<contract>"
    token_key: Mapped[str] = mapped_column(String(80), primary_key=True, nullable=False)

    balance: Mapped[Decimal] = mapped_column(Numeric(78, 18), nullable=False)
    breakdown: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_balance_records_updated_at", "updated_at"),)


class IdentityModel(Base):
    """An identity, its wallets and its membership flag."""

    __tablename__ = "identities"

    identity_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    wallet_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    external_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    is_member: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    membership_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class DiscountUsageModel(Base):
    """One use (or one issued single-use code) of a campaign by an identity."""

    __tablename__ = "discount_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, nullable=False)
    identity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_discount_usage_campaign", "campaign_id"),
        Index("idx_discount_usage_campaign_identity", "campaign_id", "identity_id"),
    )


class EligibilityCheckModel(Base):
    """Audit row written for every eligibility evaluation."""

    __tablename__ = "eligibility_checks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, nullable=False)
    campaign_code: Mapped[str] = mapped_column(String(128), nullable=False)
    identity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gating_type: Mapped[str] = mapped_column(String(32), nullable=False)

    is_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    found_balance: Mapped[Decimal | None] = mapped_column(Numeric(78, 18), nullable=True)
    contracts_checked: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    detail: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    check_duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    resolver_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_eligibility_checks_campaign", "campaign_id"),
        Index("idx_eligibility_checks_identity", "identity_id"),
        Index("idx_eligibility_checks_checked_at", "checked_at"),
    )
