"""Tests for the multi-endpoint balance resolver."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import aiohttp
import pytest
from conftest import (
    CHAIN_ID,
    GATING_TOKEN,
    NFT_CONTRACT,
    ONE_TOKEN,
    RPC_A,
    RPC_B,
    W1,
    W2,
    W3,
    W4,
    W5,
    W6,
    make_resolver,
)

from token_gated_discounts.chain.errors import ConfigurationError, UnreliableDataError
from token_gated_discounts.chain.models import NftRequirement
from token_gated_discounts.chain.resolver import BalanceResolver, to_units
from token_gated_discounts.config import (
    ChainSettings,
    DatabaseSettings,
    ResolverSettings,
    Settings,
)


class TestToUnits:
    def test_scales_by_decimals(self) -> None:
        assert to_units(1_500_000, 6) == Decimal("1.5")

    def test_zero_decimals_is_identity(self) -> None:
        assert to_units(3, 0) == Decimal(3)


class TestResolveTokenBalance:
    @pytest.mark.asyncio
    async def test_sums_across_wallets(self) -> None:
        resolver = make_resolver(
            {GATING_TOKEN: {W1: 30_000_000 * ONE_TOKEN, W2: 25_000_000 * ONE_TOKEN}}
        )

        result = await resolver.resolve_token_balance(
            [W1, W2],
            contract=GATING_TOKEN,
            chain_id=CHAIN_ID,
            required_balance=Decimal(50_000_000),
        )

        assert result.total == Decimal(55_000_000)
        assert result.eligible is True
        assert result.calls_made == 2
        assert result.failed_addresses == []
        assert {e.address: e.balance for e in result.per_address} == {
            W1: Decimal(30_000_000),
            W2: Decimal(25_000_000),
        }

    @pytest.mark.asyncio
    async def test_below_requirement_is_not_eligible(self) -> None:
        resolver = make_resolver({GATING_TOKEN: {W1: 10 * ONE_TOKEN}})

        result = await resolver.resolve_token_balance(
            [W1], contract=GATING_TOKEN, chain_id=CHAIN_ID, required_balance=Decimal(11)
        )

        assert result.eligible is False

    @pytest.mark.asyncio
    async def test_invalid_addresses_are_skipped(self) -> None:
        resolver = make_resolver({GATING_TOKEN: {W1: ONE_TOKEN}})

        result = await resolver.resolve_token_balance(
            [W1, "0xnope", "SoLaNaAddress1111111111111111111111111111"],
            contract=GATING_TOKEN,
            chain_id=CHAIN_ID,
        )

        assert result.total == Decimal(1)
        assert result.addresses_checked == 1
        assert resolver._eth_call.await_count == 1

    @pytest.mark.asyncio
    async def test_no_valid_addresses_returns_zero_without_calls(self) -> None:
        resolver = make_resolver({})

        result = await resolver.resolve_token_balance(
            [], contract=GATING_TOKEN, chain_id=CHAIN_ID
        )

        assert result.total == Decimal(0)
        assert result.calls_made == 0
        assert result.eligible is None

    @pytest.mark.asyncio
    async def test_partial_failure_under_threshold_returns_partial_total(self) -> None:
        resolver = make_resolver(
            {GATING_TOKEN: {W1: 5 * ONE_TOKEN, W2: 7 * ONE_TOKEN}}, failing=[W3]
        )

        result = await resolver.resolve_token_balance(
            [W1, W2, W3], contract=GATING_TOKEN, chain_id=CHAIN_ID
        )

        assert result.total == Decimal(12)
        assert result.failed_addresses == [W3]
        assert result.is_partial

    @pytest.mark.asyncio
    async def test_half_failed_is_still_reported(self) -> None:
        resolver = make_resolver({GATING_TOKEN: {W1: ONE_TOKEN}}, failing=[W2])

        result = await resolver.resolve_token_balance(
            [W1, W2], contract=GATING_TOKEN, chain_id=CHAIN_ID
        )

        assert result.failed_addresses == [W2]

    @pytest.mark.asyncio
    async def test_majority_failure_raises_unreliable(self) -> None:
        resolver = make_resolver(
            {GATING_TOKEN: {W5: ONE_TOKEN, W6: ONE_TOKEN}}, failing=[W1, W2, W3, W4]
        )

        with pytest.raises(UnreliableDataError) as exc_info:
            await resolver.resolve_token_balance(
                [W1, W2, W3, W4, W5, W6], contract=GATING_TOKEN, chain_id=CHAIN_ID
            )

        assert exc_info.value.total_addresses == 6
        assert sorted(exc_info.value.failed_addresses) == [W1, W2, W3, W4]
        assert exc_info.value.failure_rate == pytest.approx(4 / 6)

    @pytest.mark.asyncio
    async def test_failed_address_uses_full_retry_budget(self) -> None:
        resolver = make_resolver({GATING_TOKEN: {W1: ONE_TOKEN}}, failing=[W2])

        result = await resolver.resolve_token_balance(
            [W1, W2], contract=GATING_TOKEN, chain_id=CHAIN_ID
        )

        # 1 call for W1, 2 endpoints x 2 attempts for W2
        assert result.calls_made == 5
        assert resolver._eth_call.await_count == 5

    @pytest.mark.asyncio
    async def test_unknown_chain_is_configuration_error(self) -> None:
        resolver = make_resolver({})

        with pytest.raises(ConfigurationError):
            await resolver.resolve_token_balance([W1], contract=GATING_TOKEN, chain_id=999)

    @pytest.mark.asyncio
    async def test_rate_limited_endpoint_fails_over(self) -> None:
        resolver = BalanceResolver({CHAIN_ID: [RPC_A, RPC_B]}, jitter_seconds=0.0, sleep=AsyncMock())
        seen: list[str] = []

        async def eth_call(endpoint: str, contract: str, abi: list, args: tuple) -> int:
            seen.append(endpoint)
            if endpoint == RPC_A:
                raise aiohttp.ClientError("429 Too Many Requests")
            return 3 * ONE_TOKEN

        resolver._eth_call = AsyncMock(side_effect=eth_call)  # type: ignore[method-assign]

        result = await resolver.resolve_token_balance([W1], contract=GATING_TOKEN, chain_id=CHAIN_ID)

        assert result.total == Decimal(3)
        assert seen == [RPC_A, RPC_B]

    @pytest.mark.asyncio
    async def test_paces_sequential_reads(self) -> None:
        sleep = AsyncMock()
        resolver = BalanceResolver(
            {CHAIN_ID: [RPC_A]},
            inter_call_delay_seconds=0.05,
            inter_call_delay_step_seconds=0.025,
            inter_call_delay_max_seconds=0.3,
            sleep=sleep,
        )
        resolver._eth_call = AsyncMock(return_value=0)  # type: ignore[method-assign]

        await resolver.resolve_token_balance([W1, W2, W3], contract=GATING_TOKEN, chain_id=CHAIN_ID)

        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [pytest.approx(0.075), pytest.approx(0.1)]


class TestNftResolution:
    @pytest.mark.asyncio
    async def test_erc721_sums_contracts_with_breakdown(self) -> None:
        other = "0x" + "b" * 40
        resolver = make_resolver({NFT_CONTRACT: {W1: 2, W2: 1}, other: {W2: 4}})

        result = await resolver.resolve_erc721_balance(
            [W1, W2], contracts=[NFT_CONTRACT, other], chain_id=CHAIN_ID, required_balance=Decimal(1)
        )

        assert result.total == Decimal(7)
        assert result.breakdown == {NFT_CONTRACT: Decimal(3), other: Decimal(4)}
        assert result.eligible is True

    @pytest.mark.asyncio
    async def test_erc1155_passes_token_ids(self) -> None:
        resolver = make_resolver({NFT_CONTRACT: {W1: 1}})

        result = await resolver.resolve_erc1155_balance(
            [W1], contract=NFT_CONTRACT, token_ids=[1, 2], chain_id=CHAIN_ID
        )

        assert result.total == Decimal(2)
        token_ids = [c.args[3][1] for c in resolver._eth_call.await_args_list]
        assert token_ids == [1, 2]

    @pytest.mark.asyncio
    async def test_erc1155_requires_token_ids(self) -> None:
        resolver = make_resolver({})

        with pytest.raises(ConfigurationError):
            await resolver.resolve_erc1155_balance(
                [W1], contract=NFT_CONTRACT, token_ids=[], chain_id=CHAIN_ID
            )

    @pytest.mark.asyncio
    async def test_nft_set_holdings_counts_complete_sets(self) -> None:
        second = "0x" + "c" * 40
        resolver = make_resolver({NFT_CONTRACT: {W1: 3}, second: {W1: 1, W2: 1}})

        holdings = await resolver.resolve_nft_set_holdings(
            [W1, W2],
            [
                NftRequirement(contract=NFT_CONTRACT, token_id=1, chain_id=CHAIN_ID),
                NftRequirement(contract=second, token_id=1, chain_id=CHAIN_ID),
            ],
        )

        assert [h.balance for h in holdings.holdings] == [Decimal(3), Decimal(2)]
        assert holdings.complete_sets == 2
        assert holdings.eligible


class TestResolverLifecycle:
    def test_from_settings_uses_resolver_group(self) -> None:
        settings = Settings(
            database=DatabaseSettings(DATABASE_URL="postgresql://localhost/test"),
            chains=ChainSettings(CHAIN_RPC_URLS={CHAIN_ID: [RPC_A, RPC_B]}),
            resolver=ResolverSettings(RESOLVER_ATTEMPTS_PER_ENDPOINT=3),
        )

        resolver = BalanceResolver.from_settings(settings)

        assert resolver.policy_for(CHAIN_ID).max_attempts == 6
        with pytest.raises(ConfigurationError):
            resolver.policy_for(1)

    @pytest.mark.asyncio
    async def test_aclose_disconnects_providers(self) -> None:
        resolver = BalanceResolver({CHAIN_ID: [RPC_A]})
        client = AsyncMock()
        client.provider.disconnect = AsyncMock()
        resolver._clients[RPC_A] = client

        await resolver.aclose()

        client.provider.disconnect.assert_awaited_once()
        assert resolver._clients == {}
