"""Eligibility layer - Gating checks, evaluation, audit and discount selection."""

from token_gated_discounts.eligibility.audit import DatabaseAuditSink, RedisAuditSink
from token_gated_discounts.eligibility.checkers import CHECKERS, CheckerContext, EligibilityChecker
from token_gated_discounts.eligibility.evaluator import EligibilityEvaluator
from token_gated_discounts.eligibility.models import (
    BasicCheckDetail,
    Campaign,
    CampaignScope,
    CombinedDetail,
    DiscountType,
    EligibilityAuditEvent,
    EligibilityDetail,
    EligibilityResult,
    ErrorDetail,
    GatingType,
    Identity,
    IdentityWhitelistDetail,
    MembershipDetail,
    NftHoldingDetail,
    NoGatingDetail,
    Scope,
    TokenBalanceDetail,
    WalletWhitelistDetail,
)
from token_gated_discounts.eligibility.selector import (
    DiscountAmount,
    DiscountSelector,
    SelectionResult,
    calculate_discount_amount,
    matches_scope,
    rank_campaigns,
)

__all__ = [
    "CHECKERS",
    "BasicCheckDetail",
    "Campaign",
    "CampaignScope",
    "CheckerContext",
    "CombinedDetail",
    "DatabaseAuditSink",
    "DiscountAmount",
    "DiscountSelector",
    "DiscountType",
    "EligibilityAuditEvent",
    "EligibilityChecker",
    "EligibilityDetail",
    "EligibilityEvaluator",
    "EligibilityResult",
    "ErrorDetail",
    "GatingType",
    "Identity",
    "IdentityWhitelistDetail",
    "MembershipDetail",
    "NftHoldingDetail",
    "NoGatingDetail",
    "RedisAuditSink",
    "Scope",
    "SelectionResult",
    "TokenBalanceDetail",
    "WalletWhitelistDetail",
    "calculate_discount_amount",
    "matches_scope",
    "rank_campaigns",
]
