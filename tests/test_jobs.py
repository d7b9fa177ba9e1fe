"""Tests for paced batch jobs."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import (
    GATING_TOKEN,
    ONE_TOKEN,
    OTHER_TOKEN,
    W1,
    W2,
    W3,
    W4,
    FakeBalanceStore,
    FakeClock,
    FakeIdentityDirectory,
    FakeUsageReader,
    make_resolver,
)

from token_gated_discounts.cache.balance_cache import make_token_key
from token_gated_discounts.config import BatchSettings, DatabaseSettings, Settings
from token_gated_discounts.eligibility.evaluator import EligibilityEvaluator
from token_gated_discounts.eligibility.models import (
    Campaign,
    EligibilityResult,
    GatingType,
    Identity,
)
from token_gated_discounts.jobs import BalanceRefreshJob, BatchEligibilityJob
from token_gated_discounts.protocols import BalanceRecord


# ============================================================================
# BalanceRefreshJob
# ============================================================================


class TestBalanceRefreshJob:
    @pytest.mark.asyncio
    async def test_refreshes_each_identity_with_spacing(
        self,
        make_cache,
        directory: FakeIdentityDirectory,
        store: FakeBalanceStore,
        clock: FakeClock,
    ) -> None:
        directory.wallets = {1: [W1], 2: [W2], 3: [W3]}
        resolver = make_resolver({GATING_TOKEN: {W1: ONE_TOKEN, W2: 2 * ONE_TOKEN}})
        cache = make_cache(resolver)
        # fresh record that a default lookup would trust
        await store.upsert(
            BalanceRecord(
                identity_id=1,
                token_key=make_token_key(8453, GATING_TOKEN),
                balance=Decimal(99),
                updated_at=clock(),
            )
        )
        sleep = AsyncMock()
        job = BalanceRefreshJob(cache, spacing_seconds=2.0, sleep=sleep)

        report = await job.run([1, 2, 3])

        assert report.processed == 3
        assert report.succeeded == 3
        assert report.failed == 0
        assert {i: b.balance for i, b in report.balances.items()} == {
            1: Decimal(1),
            2: Decimal(2),
            3: Decimal(0),
        }
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_batch_continues(
        self, make_cache, directory: FakeIdentityDirectory
    ) -> None:
        directory.wallets = {1: [W1, W2], 2: [W3]}
        resolver = make_resolver({GATING_TOKEN: {W3: ONE_TOKEN}}, failing=[W1, W2])
        job = BalanceRefreshJob(make_cache(resolver), spacing_seconds=0)

        report = await job.run([1, 2])

        assert report.processed == 2
        assert report.succeeded == 1
        assert report.failures[0].identity_id == 1
        assert report.failures[0].error_type == "UnreliableDataError"
        assert report.balances[2].balance == Decimal(1)

    @pytest.mark.asyncio
    async def test_degraded_refresh_is_reported(
        self,
        make_cache,
        directory: FakeIdentityDirectory,
        store: FakeBalanceStore,
        clock: FakeClock,
    ) -> None:
        directory.wallets = {1: [W1, W2, W3, W4]}
        await store.upsert(
            BalanceRecord(
                identity_id=1,
                token_key=make_token_key(8453, GATING_TOKEN),
                balance=Decimal(10),
                updated_at=clock(),
            )
        )
        resolver = make_resolver({}, failing=[W1, W2, W3])
        job = BalanceRefreshJob(make_cache(resolver), spacing_seconds=0)

        report = await job.run([1])

        assert report.degraded == [1]

    def test_from_settings_uses_batch_spacing(self, make_cache) -> None:
        settings = Settings(
            database=DatabaseSettings(DATABASE_URL="postgresql://localhost/test"),
            batch=BatchSettings(BATCH_SPACING_SECONDS=5.0),
        )

        job = BalanceRefreshJob.from_settings(settings, make_cache(make_resolver({})))

        assert job._spacing == 5.0


# ============================================================================
# BatchEligibilityJob
# ============================================================================


def _token_campaign() -> Campaign:
    return Campaign(
        campaign_id=9,
        code="HOLD50",
        gating_type=GatingType.TOKEN_BALANCE,
        contract_addresses=(OTHER_TOKEN,),
        required_balance=Decimal(50),
    )


class TestBatchEligibilityJob:
    @pytest.mark.asyncio
    async def test_summary_and_closest_ordering(
        self, directory: FakeIdentityDirectory, usage_reader: FakeUsageReader, clock: FakeClock
    ) -> None:
        resolver = make_resolver(
            {OTHER_TOKEN: {W1: 60 * ONE_TOKEN, W2: 10 * ONE_TOKEN, W3: 40 * ONE_TOKEN}}
        )
        evaluator = EligibilityEvaluator(
            resolver, directory=directory, usage_reader=usage_reader, clock=clock
        )
        identities = [
            Identity(identity_id=1, wallet_addresses=(W1,)),
            Identity(identity_id=2, wallet_addresses=(W2,)),
            Identity(identity_id=3, wallet_addresses=(W3,)),
            Identity(identity_id=4, wallet_addresses=(W4,)),
        ]
        sleep = AsyncMock()
        job = BatchEligibilityJob(evaluator, spacing_seconds=1.5, closest_limit=5, sleep=sleep)

        summary = await job.run(_token_campaign(), identities)

        assert summary.campaign_id == 9
        assert summary.processed == 4
        assert summary.eligible_count == 1
        assert summary.eligibility_rate == 0.25
        assert summary.closest == [(3, Decimal(40)), (2, Decimal(10))]
        assert sleep.await_count == 3
        payload = summary.to_dict()
        assert payload["eligible"] == 1
        assert payload["closest"][0] == {"identity_id": 3, "found_balance": "40"}  # type: ignore[index]

    @pytest.mark.asyncio
    async def test_evaluator_error_is_recorded(self) -> None:
        evaluator = MagicMock()
        evaluator.evaluate = AsyncMock(
            side_effect=[
                RuntimeError("boom"),
                EligibilityResult(eligible=True, reason="No token-gating required"),
            ]
        )
        job = BatchEligibilityJob(evaluator, spacing_seconds=0)

        summary = await job.run(
            Campaign(campaign_id=1, code="OPEN"),
            [Identity(identity_id=1), Identity(identity_id=2)],
        )

        assert summary.failed == 1
        assert summary.failures[0].error == "boom"
        assert summary.results[2].eligible is True
        assert summary.eligibility_rate == 1.0

    @pytest.mark.asyncio
    async def test_closest_limit(
        self, directory: FakeIdentityDirectory, usage_reader: FakeUsageReader
    ) -> None:
        resolver = make_resolver({OTHER_TOKEN: {W1: 1 * ONE_TOKEN, W2: 2 * ONE_TOKEN}})
        evaluator = EligibilityEvaluator(resolver, directory=directory, usage_reader=usage_reader)
        job = BatchEligibilityJob(evaluator, spacing_seconds=0, closest_limit=1)

        summary = await job.run(
            _token_campaign(),
            [
                Identity(identity_id=1, wallet_addresses=(W1,)),
                Identity(identity_id=2, wallet_addresses=(W2,)),
            ],
        )

        assert summary.closest == [(2, Decimal(2))]
