"""Deterministic selection of the single best auto-apply discount.

``rank_campaigns`` is the only ordering used anywhere a discount is chosen,
so an offer shown to a user and the discount applied at checkout always
agree.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from token_gated_discounts.eligibility.evaluator import EligibilityEvaluator
from token_gated_discounts.eligibility.models import (
    Campaign,
    DiscountType,
    EligibilityResult,
    Identity,
    Scope,
    format_amount,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

_DISCOUNT_TYPE_ORDER = {DiscountType.PERCENTAGE: 0, DiscountType.FIXED: 1}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def matches_scope(campaign: Campaign, scope: Scope) -> bool:
    """Site-wide campaigns always match; product campaigns need a requested target product."""
    if not campaign.is_product_specific:
        return True
    if not scope.is_product_scoped:
        return False
    return any(pid in campaign.target_product_ids for pid in scope.product_ids)


def rank_key(campaign: Campaign, position: int) -> tuple[int, int, int, int, Decimal, int]:
    """Sort key for the total order; smaller sorts first.

    1. token-gated before non-gated
    2. product-specific before site-wide
    3. higher priority_level
    4. higher discount_value; values are only comparable within one
       discount type, so percentage campaigns sort before fixed ones
    5. earlier position in the input
    """
    return (
        0 if campaign.is_gated else 1,
        0 if campaign.is_product_specific else 1,
        -campaign.priority_level,
        _DISCOUNT_TYPE_ORDER.get(campaign.discount_type, len(_DISCOUNT_TYPE_ORDER)),
        -campaign.discount_value,
        position,
    )


def rank_campaigns(campaigns: Sequence[Campaign]) -> list[Campaign]:
    ranked = sorted(enumerate(campaigns), key=lambda item: rank_key(item[1], item[0]))
    return [campaign for _, campaign in ranked]


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of a selection.

    Attributes:
        winner: Best eligible campaign, or None.
        alternatives: Other eligible campaigns in rank order.
        evaluations: Eligibility result per evaluated campaign id.
    """

    winner: Campaign | None
    alternatives: tuple[Campaign, ...] = ()
    evaluations: dict[int, EligibilityResult] = field(default_factory=dict)

    @property
    def winner_result(self) -> EligibilityResult | None:
        if self.winner is None:
            return None
        return self.evaluations.get(self.winner.campaign_id)


@dataclass(frozen=True)
class DiscountAmount:
    """Money amounts for applying a campaign to an order."""

    discount_amount: Decimal
    shipping_discount: Decimal
    final_total: Decimal
    free_shipping: bool = False
    discount_percentage: Decimal | None = None
    error: str | None = None

    @property
    def applied(self) -> bool:
        return self.error is None and (self.discount_amount > 0 or self.shipping_discount > 0)


def calculate_discount_amount(
    campaign: Campaign,
    subtotal: Decimal,
    shipping: Decimal = Decimal(0),
) -> DiscountAmount:
    """Discount for an order subtotal, rounded to cents.

    Fixed discounts never exceed the subtotal. Free shipping discounts the
    whole shipping amount.
    """
    if campaign.minimum_order_amount is not None and subtotal < campaign.minimum_order_amount:
        return DiscountAmount(
            discount_amount=Decimal(0),
            shipping_discount=Decimal(0),
            final_total=subtotal,
            error=(
                f"Minimum order amount of ${format_amount(campaign.minimum_order_amount)} "
                "required for this discount"
            ),
        )

    if campaign.discount_type == DiscountType.PERCENTAGE:
        amount = subtotal * campaign.discount_value / 100
    else:
        amount = min(campaign.discount_value, subtotal)
    amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)

    shipping_discount = Decimal(0)
    if campaign.free_shipping and shipping > 0:
        shipping_discount = shipping.quantize(CENTS, rounding=ROUND_HALF_UP)

    return DiscountAmount(
        discount_amount=amount,
        shipping_discount=shipping_discount,
        final_total=max(Decimal(0), subtotal - amount),
        free_shipping=campaign.free_shipping,
        discount_percentage=(
            campaign.discount_value if campaign.discount_type == DiscountType.PERCENTAGE else None
        ),
    )


class DiscountSelector:
    """Picks one auto-apply campaign for an identity and a request scope."""

    matches_scope = staticmethod(matches_scope)
    rank_campaigns = staticmethod(rank_campaigns)
    calculate_discount_amount = staticmethod(calculate_discount_amount)

    def __init__(
        self,
        evaluator: EligibilityEvaluator,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._evaluator = evaluator
        self._clock = clock

    async def select(
        self,
        identity: Identity,
        candidates: Sequence[Campaign],
        scope: Scope,
    ) -> SelectionResult:
        """Evaluate matching candidates in order and rank the eligible ones.

        Args:
            identity: Identity with its resolved wallet set.
            candidates: Campaigns in declaration order.
            scope: Site-wide or product-scoped request.

        Returns:
            SelectionResult with the winner (if any) and the ranked alternatives.
        """
        now = self._clock()
        active = [c for c in candidates if c.auto_apply and not c.is_expired(now)]
        in_scope = [c for c in active if matches_scope(c, scope)]

        evaluations: dict[int, EligibilityResult] = {}
        eligible: list[Campaign] = []
        for campaign in in_scope:
            result = await self._evaluator.evaluate(campaign, identity)
            evaluations[campaign.campaign_id] = result
            if result.eligible:
                eligible.append(campaign)
            else:
                logger.debug(
                    "Identity %d not eligible for %s: %s",
                    identity.identity_id,
                    campaign.code,
                    result.reason,
                )

        ranked = rank_campaigns(eligible)
        winner = ranked[0] if ranked else None
        logger.info(
            "Discount selection for identity %d: %d candidate(s), %d in scope, %d eligible, winner=%s",
            identity.identity_id,
            len(candidates),
            len(in_scope),
            len(eligible),
            winner.code if winner else None,
        )
        return SelectionResult(
            winner=winner,
            alternatives=tuple(ranked[1:]),
            evaluations=evaluations,
        )
