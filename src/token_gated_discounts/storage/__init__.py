"""Storage layer - Database schemas, repositories and SQL-backed collaborators."""

from token_gated_discounts.storage.database import (
    DatabaseManager,
    to_async_url,
)
from token_gated_discounts.storage.models import (
    BalanceRecordModel,
    Base,
    DiscountUsageModel,
    EligibilityCheckModel,
    IdentityModel,
)
from token_gated_discounts.storage.repos import (
    BalanceRecordRepository,
    DiscountUsageDTO,
    DiscountUsageRepository,
    EligibilityCheckDTO,
    EligibilityCheckRepository,
    IdentityDTO,
    IdentityRepository,
    SqlBalanceRecordStore,
    SqlIdentityDirectory,
    SqlUsageReader,
)

__all__ = [
    "BalanceRecordModel",
    "BalanceRecordRepository",
    "Base",
    "DatabaseManager",
    "DiscountUsageDTO",
    "DiscountUsageModel",
    "DiscountUsageRepository",
    "EligibilityCheckDTO",
    "EligibilityCheckModel",
    "EligibilityCheckRepository",
    "IdentityDTO",
    "IdentityModel",
    "IdentityRepository",
    "SqlBalanceRecordStore",
    "SqlIdentityDirectory",
    "SqlUsageReader",
    "to_async_url",
]
