"""Eligibility evaluation for token-gated campaigns.

The evaluator runs the basic preconditions (expiry and usage caps), then
dispatches on the campaign's gating type through the checker registry. It
never raises: every path ends in an EligibilityResult, and every result is
sent to the audit sinks.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime

from token_gated_discounts.cache.balance_cache import TokenBalanceCache
from token_gated_discounts.chain.resolver import BalanceResolver
from token_gated_discounts.eligibility.audit import emit_audit_event
from token_gated_discounts.eligibility.checkers import (
    CHECKERS,
    CheckerContext,
    EligibilityChecker,
    run_checker,
)
from token_gated_discounts.eligibility.models import (
    BasicCheckDetail,
    Campaign,
    EligibilityAuditEvent,
    EligibilityResult,
    ErrorDetail,
    GatingType,
    Identity,
)
from token_gated_discounts.protocols import AuditSink, IdentityDirectory, UsageReader

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EligibilityEvaluator:
    """Decides whether an identity may use a campaign.

    Example:
        ```python
        evaluator = EligibilityEvaluator(
            resolver,
            directory=SqlIdentityDirectory(db),
            usage_reader=SqlUsageReader(db),
            balance_cache=cache,
            audit_sinks=[DatabaseAuditSink(db)],
        )
        result = await evaluator.evaluate(campaign, identity)
        ```
    """

    def __init__(
        self,
        resolver: BalanceResolver,
        *,
        directory: IdentityDirectory,
        usage_reader: UsageReader,
        balance_cache: TokenBalanceCache | None = None,
        audit_sinks: Sequence[AuditSink] = (),
        checkers: Mapping[GatingType, EligibilityChecker] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ctx = CheckerContext(
            resolver=resolver,
            directory=directory,
            balance_cache=balance_cache,
        )
        self._usage = usage_reader
        self._sinks = list(audit_sinks)
        self._checkers = dict(checkers) if checkers is not None else CHECKERS
        self._clock = clock

    async def evaluate(self, campaign: Campaign, identity: Identity) -> EligibilityResult:
        """Evaluate one campaign for one identity."""
        started = time.perf_counter()
        logger.debug(
            "Checking eligibility: campaign=%s gating=%s identity=%d wallets=%d",
            campaign.code,
            campaign.gating_type,
            identity.identity_id,
            len(identity.all_addresses),
        )

        try:
            result = await self._evaluate(campaign, identity)
        except Exception as e:
            logger.error(
                "Eligibility check failed for campaign %s / identity %d: %s",
                campaign.code,
                identity.identity_id,
                e,
            )
            result = EligibilityResult(
                eligible=False,
                reason="Eligibility check failed",
                detail=ErrorDetail.from_exception(e),
            )

        duration_ms = (time.perf_counter() - started) * 1000
        await self._audit(campaign, identity, result, duration_ms)
        return result

    async def _evaluate(self, campaign: Campaign, identity: Identity) -> EligibilityResult:
        basic = await self.check_basic(campaign, identity)
        if basic is not None:
            return basic

        checker = self._checkers.get(campaign.gating_type)  # type: ignore[call-overload]
        if checker is None:
            gating = getattr(campaign.gating_type, "value", campaign.gating_type)
            logger.warning("Unknown gating type %r on campaign %s", gating, campaign.code)
            return EligibilityResult(
                eligible=False,
                reason=f"Unknown gating type: {gating}",
                detail=ErrorDetail(error=f"unknown gating type {gating!r}", error_type="ConfigurationError"),
            )
        return await run_checker(checker, campaign, identity, self._ctx)

    async def check_basic(self, campaign: Campaign, identity: Identity) -> EligibilityResult | None:
        """Expiry and usage caps; returns an ineligible result or None if all pass."""
        if campaign.is_expired(self._clock()):
            return EligibilityResult(
                eligible=False,
                reason="Discount has expired",
                detail=BasicCheckDetail(check="expired", expires_at=campaign.expires_at),
            )

        if campaign.max_uses_total is not None:
            total = await self._usage.count_total_uses(campaign.campaign_id)
            if total >= campaign.max_uses_total:
                return EligibilityResult(
                    eligible=False,
                    reason="Discount has reached maximum total uses",
                    detail=BasicCheckDetail(
                        check="max_uses_total",
                        max_uses=campaign.max_uses_total,
                        current_uses=total,
                    ),
                )

        if campaign.max_uses_per_identity is not None:
            used = await self._usage.count_identity_uses(
                campaign.campaign_id,
                identity.identity_id,
                shared=campaign.is_shared,
            )
            if used >= campaign.max_uses_per_identity:
                return EligibilityResult(
                    eligible=False,
                    reason="Identity has reached maximum uses for this discount",
                    detail=BasicCheckDetail(
                        check="max_uses_per_identity",
                        max_uses=campaign.max_uses_per_identity,
                        current_uses=used,
                    ),
                )

        return None

    async def _audit(
        self,
        campaign: Campaign,
        identity: Identity,
        result: EligibilityResult,
        duration_ms: float,
    ) -> None:
        if not self._sinks:
            return
        event = EligibilityAuditEvent(
            campaign_id=campaign.campaign_id,
            campaign_code=campaign.code,
            identity_id=identity.identity_id,
            gating_type=str(getattr(campaign.gating_type, "value", campaign.gating_type)),
            eligible=result.eligible,
            reason=result.reason,
            duration_ms=duration_ms,
            resolver_calls=result.resolver_calls,
            wallet_address=identity.primary_address,
            found_balance=result.found_balance,
            contracts_checked=result.contracts_checked,
            degraded=result.degraded,
            detail=result.detail.to_dict(),
            checked_at=self._clock(),
        )
        await emit_audit_event(self._sinks, event)
