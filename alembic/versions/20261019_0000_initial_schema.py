"""Initial schema for balance records, identities, usage and eligibility audit.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "balance_records",
        sa.Column("identity_id", sa.Integer(), nullable=False),
        sa.Column("token_key", sa.String(80), nullable=False),
        sa.Column("balance", sa.Numeric(78, 18), nullable=False),
        sa.Column("breakdown", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("identity_id", "token_key"),
    )
    op.create_index("idx_balance_records_updated_at", "balance_records", ["updated_at"])

    op.create_table(
        "identities",
        sa.Column("identity_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("wallet_addresses", sa.JSON(), nullable=False),
        sa.Column("external_addresses", sa.JSON(), nullable=False),
        sa.Column("is_member", sa.Boolean(), nullable=True),
        sa.Column("membership_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("identity_id"),
    )

    op.create_table(
        "discount_usage",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("identity_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(128), nullable=True),
        sa.Column("is_used", sa.Boolean(), nullable=False),
        sa.Column("discount_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_discount_usage_campaign", "discount_usage", ["campaign_id"])
    op.create_index(
        "idx_discount_usage_campaign_identity", "discount_usage", ["campaign_id", "identity_id"]
    )

    op.create_table(
        "eligibility_checks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("campaign_code", sa.String(128), nullable=False),
        sa.Column("identity_id", sa.Integer(), nullable=False),
        sa.Column("wallet_address", sa.String(128), nullable=True),
        sa.Column("gating_type", sa.String(32), nullable=False),
        sa.Column("is_eligible", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("found_balance", sa.Numeric(78, 18), nullable=True),
        sa.Column("contracts_checked", sa.JSON(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.Column("check_duration_ms", sa.Float(), nullable=False),
        sa.Column("resolver_calls", sa.Integer(), nullable=False),
        sa.Column("degraded", sa.Boolean(), nullable=False),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_eligibility_checks_campaign", "eligibility_checks", ["campaign_id"])
    op.create_index("idx_eligibility_checks_identity", "eligibility_checks", ["identity_id"])
    op.create_index("idx_eligibility_checks_checked_at", "eligibility_checks", ["checked_at"])


def downgrade() -> None:
    op.drop_index("idx_eligibility_checks_checked_at", table_name="eligibility_checks")
    op.drop_index("idx_eligibility_checks_identity", table_name="eligibility_checks")
    op.drop_index("idx_eligibility_checks_campaign", table_name="eligibility_checks")
    op.drop_table("eligibility_checks")

    op.drop_index("idx_discount_usage_campaign_identity", table_name="discount_usage")
    op.drop_index("idx_discount_usage_campaign", table_name="discount_usage")
    op.drop_table("discount_usage")

    op.drop_table("identities")

    op.drop_index("idx_balance_records_updated_at", table_name="balance_records")
    op.drop_table("balance_records")
