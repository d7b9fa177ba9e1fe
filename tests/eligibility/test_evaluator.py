"""Tests for the eligibility evaluator."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from conftest import (
    CHAIN_ID,
    GATING_TOKEN,
    ONE_TOKEN,
    W1,
    W2,
    W3,
    W4,
    W5,
    W6,
    FakeBalanceStore,
    FakeClock,
    FakeIdentityDirectory,
    FakeUsageReader,
    RecordingAuditSink,
    make_resolver,
)

from token_gated_discounts.cache.balance_cache import make_token_key
from token_gated_discounts.chain.resolver import BalanceResolver
from token_gated_discounts.eligibility.evaluator import EligibilityEvaluator
from token_gated_discounts.eligibility.models import (
    BasicCheckDetail,
    Campaign,
    ErrorDetail,
    GatingType,
    Identity,
)
from token_gated_discounts.protocols import BalanceRecord

REQUIRED = Decimal(50_000_000)


def _gated_campaign(**kwargs: object) -> Campaign:
    kwargs.setdefault("campaign_id", 1)
    kwargs.setdefault("code", "WHALE20")
    kwargs.setdefault("gating_type", GatingType.TOKEN_BALANCE)
    kwargs.setdefault("contract_addresses", (GATING_TOKEN,))
    kwargs.setdefault("chain_id", CHAIN_ID)
    kwargs.setdefault("required_balance", REQUIRED)
    return Campaign(**kwargs)  # type: ignore[arg-type]


@pytest.fixture
def build_evaluator(
    make_cache,
    directory: FakeIdentityDirectory,
    usage_reader: FakeUsageReader,
    audit_sink: RecordingAuditSink,
    clock: FakeClock,
):
    def _build(resolver: BalanceResolver, **kwargs: object) -> EligibilityEvaluator:
        kwargs.setdefault("audit_sinks", [audit_sink])
        return EligibilityEvaluator(
            resolver,
            directory=directory,
            usage_reader=usage_reader,
            balance_cache=make_cache(resolver),
            clock=clock,
            **kwargs,  # type: ignore[arg-type]
        )

    return _build


# ============================================================================
# Gated evaluation
# ============================================================================


class TestTokenGatedEvaluation:
    @pytest.mark.asyncio
    async def test_balance_summed_across_wallets(
        self, build_evaluator, audit_sink: RecordingAuditSink
    ) -> None:
        resolver = make_resolver(
            {GATING_TOKEN: {W1: 30_000_000 * ONE_TOKEN, W2: 25_000_000 * ONE_TOKEN}}
        )
        evaluator = build_evaluator(resolver)
        identity = Identity(identity_id=42, wallet_addresses=(W1, W2))

        result = await evaluator.evaluate(_gated_campaign(), identity)

        assert result.eligible is True
        assert result.reason == "Found 55000000 tokens (required: 50000000)"
        assert result.found_balance == Decimal(55_000_000)
        assert result.resolver_calls == 2

        assert len(audit_sink.events) == 1
        event = audit_sink.events[0]
        assert event.eligible is True
        assert event.identity_id == 42
        assert event.gating_type == "token_balance"
        assert event.wallet_address == W1
        assert event.found_balance == Decimal(55_000_000)
        assert event.contracts_checked == (GATING_TOKEN,)
        assert event.resolver_calls == 2
        assert event.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_degraded_balance_is_flagged(
        self,
        build_evaluator,
        store: FakeBalanceStore,
        clock: FakeClock,
        audit_sink: RecordingAuditSink,
    ) -> None:
        await store.upsert(
            BalanceRecord(
                identity_id=1,
                token_key=make_token_key(CHAIN_ID, GATING_TOKEN),
                balance=Decimal(60_000_000),
                updated_at=clock(),
            )
        )
        clock.advance(3600)
        resolver = make_resolver({}, failing=[W1, W2, W3, W4])
        evaluator = build_evaluator(resolver)
        identity = Identity(identity_id=1, wallet_addresses=(W1, W2, W3, W4, W5, W6))

        result = await evaluator.evaluate(_gated_campaign(), identity)

        assert result.eligible is True
        assert result.degraded is True
        assert audit_sink.events[0].degraded is True

    @pytest.mark.asyncio
    async def test_unreliable_without_fallback(self, build_evaluator) -> None:
        resolver = make_resolver({}, failing=[W1, W2])
        evaluator = build_evaluator(resolver)

        result = await evaluator.evaluate(
            _gated_campaign(), Identity(identity_id=1, wallet_addresses=(W1, W2, W3))
        )

        assert result.eligible is False
        assert result.reason == "Unable to verify balance"
        assert isinstance(result.detail, ErrorDetail)
        assert result.detail.error_type == "UnreliableDataError"

    @pytest.mark.asyncio
    async def test_unknown_gating_type(self, build_evaluator, audit_sink) -> None:
        evaluator = build_evaluator(make_resolver({}))

        result = await evaluator.evaluate(
            _gated_campaign(gating_type="raffle"), Identity(identity_id=1)
        )

        assert result.eligible is False
        assert result.reason == "Unknown gating type: raffle"
        assert audit_sink.events[0].gating_type == "raffle"


# ============================================================================
# Basic checks
# ============================================================================


class TestBasicChecks:
    @pytest.mark.asyncio
    async def test_ungated_campaign_is_eligible(self, build_evaluator) -> None:
        evaluator = build_evaluator(make_resolver({}))
        campaign = Campaign(campaign_id=2, code="WELCOME")

        result = await evaluator.evaluate(campaign, Identity(identity_id=1))

        assert result.eligible is True
        assert result.reason == "No token-gating required"

    @pytest.mark.asyncio
    async def test_expired_campaign(self, build_evaluator, clock: FakeClock) -> None:
        resolver = make_resolver({})
        evaluator = build_evaluator(resolver)
        campaign = Campaign(campaign_id=2, code="OLD", expires_at=clock() - timedelta(seconds=1))

        result = await evaluator.evaluate(campaign, Identity(identity_id=1))

        assert result.eligible is False
        assert result.reason == "Discount has expired"
        assert isinstance(result.detail, BasicCheckDetail)
        resolver._eth_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expiry_runs_before_gating(self, build_evaluator, clock: FakeClock) -> None:
        resolver = make_resolver({GATING_TOKEN: {W1: 60_000_000 * ONE_TOKEN}})
        evaluator = build_evaluator(resolver)

        result = await evaluator.evaluate(
            _gated_campaign(expires_at=clock()), Identity(identity_id=1, wallet_addresses=(W1,))
        )

        assert result.reason == "Discount has expired"
        resolver._eth_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_total_use_cap(self, build_evaluator, usage_reader: FakeUsageReader) -> None:
        usage_reader.total[2] = 100
        evaluator = build_evaluator(make_resolver({}))
        campaign = Campaign(campaign_id=2, code="FIRST100", max_uses_total=100)

        result = await evaluator.evaluate(campaign, Identity(identity_id=1))

        assert result.reason == "Discount has reached maximum total uses"
        assert result.detail == BasicCheckDetail(
            check="max_uses_total", max_uses=100, current_uses=100
        )

    @pytest.mark.asyncio
    async def test_per_identity_cap_uses_shared_flag(
        self, build_evaluator, usage_reader: FakeUsageReader
    ) -> None:
        usage_reader.per_identity[(2, 1, True)] = 1
        evaluator = build_evaluator(make_resolver({}))
        shared = Campaign(campaign_id=2, code="ONCE", max_uses_per_identity=1, is_shared=True)
        single = Campaign(campaign_id=2, code="ONCE", max_uses_per_identity=1, is_shared=False)

        shared_result = await evaluator.evaluate(shared, Identity(identity_id=1))
        single_result = await evaluator.evaluate(single, Identity(identity_id=1))

        assert shared_result.reason == "Identity has reached maximum uses for this discount"
        assert single_result.eligible is True

    @pytest.mark.asyncio
    async def test_check_basic_returns_none_when_all_pass(self, build_evaluator) -> None:
        evaluator = build_evaluator(make_resolver({}))
        campaign = Campaign(campaign_id=2, code="OK", max_uses_total=5, max_uses_per_identity=1)

        assert await evaluator.check_basic(campaign, Identity(identity_id=1)) is None


# ============================================================================
# Failure handling
# ============================================================================


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_ineligible(
        self, make_cache, directory, audit_sink: RecordingAuditSink, clock
    ) -> None:
        usage = AsyncMock()
        usage.count_total_uses.side_effect = RuntimeError("database unavailable")
        resolver = make_resolver({})
        evaluator = EligibilityEvaluator(
            resolver,
            directory=directory,
            usage_reader=usage,
            balance_cache=make_cache(resolver),
            audit_sinks=[audit_sink],
            clock=clock,
        )
        campaign = Campaign(campaign_id=3, code="CAPPED", max_uses_total=10)

        result = await evaluator.evaluate(campaign, Identity(identity_id=1))

        assert result.eligible is False
        assert result.reason == "Eligibility check failed"
        assert isinstance(result.detail, ErrorDetail)
        assert result.detail.error_type == "RuntimeError"
        assert len(audit_sink.events) == 1

    @pytest.mark.asyncio
    async def test_audit_sink_failure_does_not_change_result(
        self, build_evaluator, audit_sink: RecordingAuditSink
    ) -> None:
        broken = AsyncMock()
        broken.record.side_effect = ConnectionError("redis down")
        evaluator = build_evaluator(make_resolver({}), audit_sinks=[broken, audit_sink])

        result = await evaluator.evaluate(Campaign(campaign_id=2, code="WELCOME"), Identity(identity_id=1))

        assert result.eligible is True
        broken.record.assert_awaited_once()
        assert len(audit_sink.events) == 1

    @pytest.mark.asyncio
    async def test_audit_event_serializes(
        self, build_evaluator, audit_sink: RecordingAuditSink
    ) -> None:
        resolver = make_resolver({GATING_TOKEN: {W1: 10 * ONE_TOKEN}})
        evaluator = build_evaluator(resolver)

        await evaluator.evaluate(_gated_campaign(), Identity(identity_id=5, wallet_addresses=(W1,)))

        payload = audit_sink.events[0].to_dict()
        assert payload["eligible"] is False
        assert payload["found_balance"] == "10"
        assert payload["detail"]["kind"] == "token_balance"  # type: ignore[index]
