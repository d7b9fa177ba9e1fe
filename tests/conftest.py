"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import aiohttp
import pytest

from token_gated_discounts.cache.balance_cache import TokenBalanceCache
from token_gated_discounts.cache.coalescer import RequestCoalescer
from token_gated_discounts.chain.resolver import BalanceResolver
from token_gated_discounts.eligibility.models import EligibilityAuditEvent
from token_gated_discounts.protocols import BalanceRecord, MembershipStatus

RPC_A = "https://rpc-a.example"
RPC_B = "https://rpc-b.example"
CHAIN_ID = 8453

GATING_TOKEN = "0x774eaefe73df7959496ac92a77279a8d7d690b07"
STAKING_CONTRACT = "0x38aea2e6a14c6e7a9bc4aca8cf0d03c3f0e6a4b1"
OTHER_TOKEN = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
NFT_CONTRACT = "0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d"

W1 = "0x1111111111111111111111111111111111111111"
W2 = "0x2222222222222222222222222222222222222222"
W3 = "0x3333333333333333333333333333333333333333"
W4 = "0x4444444444444444444444444444444444444444"
W5 = "0x5555555555555555555555555555555555555555"
W6 = "0x6666666666666666666666666666666666666666"

ONE_TOKEN = 10**18


class FakeClock:
    """Controllable wall clock; ``monotonic`` tracks the same instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        self._origin = self.now

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self._origin).total_seconds()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeBalanceStore:
    """In-memory BalanceRecordStore with the same monotonic upsert rule."""

    def __init__(self) -> None:
        self.records: dict[tuple[int, str], BalanceRecord] = {}
        self.upserts = 0

    async def get(self, identity_id: int, token_key: str) -> BalanceRecord | None:
        return self.records.get((identity_id, token_key))

    async def upsert(self, record: BalanceRecord) -> bool:
        self.upserts += 1
        key = (record.identity_id, record.token_key)
        current = self.records.get(key)
        if current is not None and current.updated_at > record.updated_at:
            return False
        self.records[key] = record
        return True


class FakeIdentityDirectory:
    def __init__(self) -> None:
        self.wallets: dict[int, list[str]] = {}
        self.memberships: dict[int, MembershipStatus] = {}

    async def get_wallet_addresses(self, identity_id: int) -> Sequence[str]:
        return self.wallets.get(identity_id, [])

    async def get_membership(self, identity_id: int) -> MembershipStatus | None:
        return self.memberships.get(identity_id)


class FakeUsageReader:
    def __init__(self) -> None:
        self.total: dict[int, int] = {}
        self.per_identity: dict[tuple[int, int, bool], int] = {}

    async def count_total_uses(self, campaign_id: int) -> int:
        return self.total.get(campaign_id, 0)

    async def count_identity_uses(self, campaign_id: int, identity_id: int, *, shared: bool) -> int:
        return self.per_identity.get((campaign_id, identity_id, shared), 0)


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[EligibilityAuditEvent] = []

    async def record(self, event: EligibilityAuditEvent) -> None:
        self.events.append(event)


def make_resolver(
    balances: Mapping[str, Mapping[str, int]],
    *,
    failing: Sequence[str] = (),
    rpc_urls: Mapping[int, Sequence[str]] | None = None,
) -> BalanceResolver:
    """BalanceResolver whose RPC primitive reads from ``balances[contract][holder]``.

    Holders in ``failing`` raise a connection error on every attempt.
    """
    resolver = BalanceResolver(
        rpc_urls or {CHAIN_ID: [RPC_A, RPC_B]},
        jitter_seconds=0.0,
        sleep=AsyncMock(),
    )
    failing_set = {a.lower() for a in failing}
    normalized = {c.lower(): {h.lower(): v for h, v in by_holder.items()} for c, by_holder in balances.items()}

    async def fake_eth_call(endpoint: str, contract: str, abi: list, args: tuple) -> int:
        holder = str(args[0]).lower()
        if holder in failing_set:
            raise aiohttp.ClientConnectionError(f"connection reset by {endpoint}")
        return normalized.get(contract.lower(), {}).get(holder, 0)

    resolver._eth_call = AsyncMock(side_effect=fake_eth_call)  # type: ignore[method-assign]
    return resolver


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeBalanceStore:
    return FakeBalanceStore()


@pytest.fixture
def directory() -> FakeIdentityDirectory:
    return FakeIdentityDirectory()


@pytest.fixture
def usage_reader() -> FakeUsageReader:
    return FakeUsageReader()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def make_cache(store: FakeBalanceStore, directory: FakeIdentityDirectory, clock: FakeClock):
    """Factory for a TokenBalanceCache over the fake store and clock."""

    def _make(resolver: BalanceResolver, **kwargs: object) -> TokenBalanceCache:
        return TokenBalanceCache(
            resolver,
            store,
            directory,
            contract=GATING_TOKEN,
            chain_id=CHAIN_ID,
            coalescer=RequestCoalescer(clock=clock.monotonic),
            clock=clock,
            **kwargs,  # type: ignore[arg-type]
        )

    return _make
