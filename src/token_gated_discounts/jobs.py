"""Batch jobs that touch many identities.

Identities are processed one at a time with a multi-second pause between
them so that a large batch never bursts the shared RPC endpoints. A failure
for one identity is recorded and the batch carries on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from token_gated_discounts.cache.balance_cache import CachedBalance, CacheMode, TokenBalanceCache
from token_gated_discounts.eligibility.evaluator import EligibilityEvaluator
from token_gated_discounts.eligibility.models import (
    Campaign,
    EligibilityResult,
    Identity,
    format_amount,
)

if TYPE_CHECKING:
    from token_gated_discounts.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_SPACING_SECONDS = 2.0
DEFAULT_CLOSEST_LIMIT = 10


@dataclass(frozen=True)
class BatchFailure:
    identity_id: int
    error: str
    error_type: str


@dataclass
class BatchReport:
    """Outcome of a batch run."""

    processed: int = 0
    succeeded: int = 0
    failures: list[BatchFailure] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.failures)

    def record_failure(self, identity_id: int, exc: BaseException) -> None:
        self.failures.append(
            BatchFailure(identity_id=identity_id, error=str(exc), error_type=type(exc).__name__)
        )


@dataclass
class BalanceRefreshReport(BatchReport):
    balances: dict[int, CachedBalance] = field(default_factory=dict)

    @property
    def degraded(self) -> list[int]:
        return [identity_id for identity_id, b in self.balances.items() if b.degraded]


@dataclass
class EligibilitySummary(BatchReport):
    """Batch eligibility results for one campaign.

    ``closest`` lists ineligible identities with the highest found balance
    first, which is who a campaign owner usually wants to nudge.
    """

    campaign_id: int = 0
    results: dict[int, EligibilityResult] = field(default_factory=dict)
    closest: list[tuple[int, Decimal]] = field(default_factory=list)

    @property
    def eligible_count(self) -> int:
        return sum(1 for r in self.results.values() if r.eligible)

    @property
    def eligibility_rate(self) -> float:
        if not self.results:
            return 0.0
        return self.eligible_count / len(self.results)

    def to_dict(self) -> dict[str, object]:
        return {
            "campaign_id": self.campaign_id,
            "processed": self.processed,
            "eligible": self.eligible_count,
            "eligibility_rate": round(self.eligibility_rate, 4),
            "failed": self.failed,
            "closest": [
                {"identity_id": identity_id, "found_balance": format_amount(found)}
                for identity_id, found in self.closest
            ],
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class _PacedJob:
    def __init__(
        self,
        *,
        spacing_seconds: float = DEFAULT_SPACING_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._spacing = spacing_seconds
        self._sleep = sleep

    async def _pause(self, index: int) -> None:
        if index > 0 and self._spacing > 0:
            await self._sleep(self._spacing)


class BalanceRefreshJob(_PacedJob):
    """Force-refreshes cached gating token balances for a list of identities."""

    def __init__(
        self,
        cache: TokenBalanceCache,
        *,
        spacing_seconds: float = DEFAULT_SPACING_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(spacing_seconds=spacing_seconds, sleep=sleep)
        self._cache = cache

    @classmethod
    def from_settings(cls, settings: Settings, cache: TokenBalanceCache) -> BalanceRefreshJob:
        return cls(cache, spacing_seconds=settings.batch.spacing_seconds)

    async def run(self, identity_ids: Sequence[int]) -> BalanceRefreshReport:
        report = BalanceRefreshReport()
        started = time.monotonic()
        logger.info("Refreshing balances for %d identities", len(identity_ids))

        for index, identity_id in enumerate(identity_ids):
            await self._pause(index)
            report.processed += 1
            try:
                balance = await self._cache.get_balance(identity_id, mode=CacheMode.FORCE_REFRESH)
            except Exception as e:
                logger.warning("Balance refresh failed for identity %d: %s", identity_id, e)
                report.record_failure(identity_id, e)
                continue
            report.succeeded += 1
            report.balances[identity_id] = balance

        report.elapsed_seconds = time.monotonic() - started
        logger.info(
            "Balance refresh complete: %d processed, %d failed, %d degraded in %.1fs",
            report.processed,
            report.failed,
            len(report.degraded),
            report.elapsed_seconds,
        )
        return report


class BatchEligibilityJob(_PacedJob):
    """Evaluates one campaign over many identities."""

    def __init__(
        self,
        evaluator: EligibilityEvaluator,
        *,
        spacing_seconds: float = DEFAULT_SPACING_SECONDS,
        closest_limit: int = DEFAULT_CLOSEST_LIMIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(spacing_seconds=spacing_seconds, sleep=sleep)
        self._evaluator = evaluator
        self._closest_limit = closest_limit

    @classmethod
    def from_settings(cls, settings: Settings, evaluator: EligibilityEvaluator) -> BatchEligibilityJob:
        return cls(evaluator, spacing_seconds=settings.batch.spacing_seconds)

    async def run(self, campaign: Campaign, identities: Sequence[Identity]) -> EligibilitySummary:
        summary = EligibilitySummary(campaign_id=campaign.campaign_id)
        started = time.monotonic()
        logger.info(
            "Batch eligibility for campaign %s over %d identities", campaign.code, len(identities)
        )

        for index, identity in enumerate(identities):
            await self._pause(index)
            summary.processed += 1
            try:
                result = await self._evaluator.evaluate(campaign, identity)
            except Exception as e:
                logger.warning(
                    "Eligibility failed for identity %d on %s: %s",
                    identity.identity_id,
                    campaign.code,
                    e,
                )
                summary.record_failure(identity.identity_id, e)
                continue
            summary.succeeded += 1
            summary.results[identity.identity_id] = result

        near_misses = [
            (identity_id, r.found_balance)
            for identity_id, r in summary.results.items()
            if not r.eligible and r.found_balance is not None and r.found_balance > 0
        ]
        near_misses.sort(key=lambda item: (-item[1], item[0]))
        summary.closest = near_misses[: self._closest_limit]  # type: ignore[assignment]
        summary.elapsed_seconds = time.monotonic() - started

        logger.info(
            "Batch eligibility for %s: %d/%d eligible (%.1f%%), %d failed",
            campaign.code,
            summary.eligible_count,
            len(summary.results),
            summary.eligibility_rate * 100,
            summary.failed,
        )
        return summary
