"""Multi-endpoint on-chain balance resolver.

This module provides a balance resolver for token-gating checks with:
- One RPC endpoint list per chain, rotated on every failed attempt
- A fixed retry budget (endpoints x attempts-per-endpoint) per read
- Sequential per-address reads with small, index-increasing pauses
- A fail-safe: too many failed addresses raises UnreliableDataError
  instead of returning an understated total
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from itertools import count
from typing import TYPE_CHECKING, Any

import aiohttp
from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from token_gated_discounts.chain.addresses import filter_evm_addresses, normalize_evm_address
from token_gated_discounts.chain.errors import (
    ConfigurationError,
    RetryExhaustedError,
    UnreliableDataError,
)
from token_gated_discounts.chain.models import (
    AddressBalance,
    BalanceResolution,
    NftRequirement,
    NftRequirementHolding,
    NftSetHoldings,
)
from token_gated_discounts.chain.retry import RetryPolicy, call_with_failover

if TYPE_CHECKING:
    from token_gated_discounts.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18
DEFAULT_FAILURE_THRESHOLD = 0.5
DEFAULT_COLLECTION_DELAY_SECONDS = 0.5

BALANCE_OF_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    }
]

ERC1155_BALANCE_OF_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    }
]


@dataclass(frozen=True)
class _Read:
    """One contract call to make for every address."""

    contract: str
    abi: list[dict[str, Any]]
    token_id: int | None = None
    decimals: int = 0

    @property
    def label(self) -> str:
        if self.token_id is None:
            return self.contract
        return f"{self.contract}#{self.token_id}"


def to_units(raw: int, decimals: int) -> Decimal:
    """Convert a fixed-point integer amount to display units."""
    return Decimal(raw).scaleb(-decimals) if decimals else Decimal(raw)


class BalanceResolver:
    """Reads ERC-20, ERC-721 and ERC-1155 balances across a wallet set.

    Example:
        ```python
        resolver = BalanceResolver.from_settings(get_settings())
        result = await resolver.resolve_token_balance(
            ["0x...", "0x..."],
            contract="0x774eaefe73df7959496ac92a77279a8d7d690b07",
            chain_id=8453,
            required_balance=Decimal("50000000"),
        )
        print(result.total, result.eligible)
        ```
    """

    def __init__(
        self,
        rpc_urls: Mapping[int, Sequence[str]],
        *,
        attempts_per_endpoint: int = 2,
        base_delay_seconds: float = 0.5,
        rate_limit_base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 15.0,
        jitter_seconds: float = 0.5,
        failure_threshold: float = DEFAULT_FAILURE_THRESHOLD,
        inter_call_delay_seconds: float = 0.05,
        inter_call_delay_step_seconds: float = 0.025,
        inter_call_delay_max_seconds: float = 0.3,
        collection_delay_seconds: float = DEFAULT_COLLECTION_DELAY_SECONDS,
        request_timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the resolver.

        Args:
            rpc_urls: Chain id to ordered RPC endpoint URLs.
            attempts_per_endpoint: Attempts per endpoint within one read's budget.
            base_delay_seconds: First backoff after a network failure.
            rate_limit_base_delay_seconds: First backoff after HTTP 429.
            max_delay_seconds: Backoff cap.
            jitter_seconds: Random jitter added to each backoff.
            failure_threshold: Failed-address fraction above which the
                resolution is unreliable.
            inter_call_delay_seconds: Pause before the second and later addresses.
            inter_call_delay_step_seconds: Extra pause per address index.
            inter_call_delay_max_seconds: Cap on the per-address pause.
            collection_delay_seconds: Pause between NFT requirements in a set check.
            request_timeout_seconds: HTTP timeout for a single RPC request.
            sleep: Injected for tests.
        """
        if not 0 < failure_threshold <= 1:
            raise ValueError("failure_threshold must be in (0, 1]")
        self._policies = {
            int(chain_id): RetryPolicy(
                endpoints=tuple(urls),
                attempts_per_endpoint=attempts_per_endpoint,
                base_delay=base_delay_seconds,
                rate_limit_base_delay=rate_limit_base_delay_seconds,
                max_delay=max_delay_seconds,
                jitter=jitter_seconds,
            )
            for chain_id, urls in rpc_urls.items()
            if urls
        }
        self._failure_threshold = failure_threshold
        self._inter_call_delay = inter_call_delay_seconds
        self._inter_call_step = inter_call_delay_step_seconds
        self._inter_call_max = inter_call_delay_max_seconds
        self._collection_delay = collection_delay_seconds
        self._request_timeout = request_timeout_seconds
        self._sleep = sleep

        self._clients: dict[str, AsyncWeb3[AsyncHTTPProvider]] = {}
        self._rotation: dict[int, count[int]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> BalanceResolver:
        r = settings.resolver
        return cls(
            settings.chains.rpc_urls,
            attempts_per_endpoint=r.attempts_per_endpoint,
            base_delay_seconds=r.base_delay_seconds,
            rate_limit_base_delay_seconds=r.rate_limit_base_delay_seconds,
            max_delay_seconds=r.max_delay_seconds,
            jitter_seconds=r.jitter_seconds,
            failure_threshold=r.failure_threshold,
            inter_call_delay_seconds=r.inter_call_delay_seconds,
            inter_call_delay_step_seconds=r.inter_call_delay_step_seconds,
            inter_call_delay_max_seconds=r.inter_call_delay_max_seconds,
            request_timeout_seconds=r.request_timeout_seconds,
        )

    def policy_for(self, chain_id: int) -> RetryPolicy:
        policy = self._policies.get(chain_id)
        if policy is None:
            raise ConfigurationError(f"no RPC endpoints configured for chain {chain_id}")
        return policy

    def _next_start(self, chain_id: int) -> int:
        counter = self._rotation.setdefault(chain_id, count())
        return next(counter)

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._request_timeout)},
            )
        )
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = self._clients.get(rpc_url)
        if client is None:
            client = self._new_web3_client(rpc_url)
            self._clients[rpc_url] = client
        return client

    async def _eth_call(
        self,
        endpoint: str,
        contract: str,
        abi: list[dict[str, Any]],
        args: tuple[Any, ...],
    ) -> int:
        """Call ``balanceOf(*args)`` on ``contract`` through ``endpoint``."""
        w3 = self._client(endpoint)
        instance = w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract), abi=abi)
        value = await instance.functions.balanceOf(*args).call()
        return int(value)

    async def _pace(self, index: int) -> None:
        if index == 0:
            return
        delay = min(
            self._inter_call_delay + index * self._inter_call_step,
            self._inter_call_max,
        )
        if delay > 0:
            await self._sleep(delay)

    async def _read_all(
        self,
        addresses: Sequence[str],
        reads: Sequence[_Read],
        *,
        chain_id: int,
        description: str,
    ) -> tuple[Decimal, list[AddressBalance], list[str], dict[str, Decimal], int]:
        """Run every read for every address, sequentially.

        Returns:
            (total, per-address entries, failed addresses, per-read totals, calls made)

        Raises:
            UnreliableDataError: If the failed-address fraction exceeds the threshold.
        """
        policy = self.policy_for(chain_id)
        total = Decimal(0)
        entries: list[AddressBalance] = []
        failed: list[str] = []
        breakdown: dict[str, Decimal] = {read.label: Decimal(0) for read in reads}
        calls = 0
        step = 0

        for address in addresses:
            address_failed = False
            checksum_holder = AsyncWeb3.to_checksum_address(address)
            for read in reads:
                await self._pace(step)
                step += 1
                args: tuple[Any, ...] = (checksum_holder,)
                if read.token_id is not None:
                    args = (checksum_holder, int(read.token_id))

                try:
                    raw, attempts = await call_with_failover(
                        policy,
                        lambda endpoint, read=read, args=args: self._eth_call(
                            endpoint, read.contract, read.abi, args
                        ),
                        description=f"{description} {read.label} for {address}",
                        start=self._next_start(chain_id),
                        sleep=self._sleep,
                    )
                except RetryExhaustedError as e:
                    calls += e.attempts
                    address_failed = True
                    logger.error("Balance read failed for %s on %s: %s", address, read.label, e)
                    entries.append(
                        AddressBalance(
                            address=address,
                            contract=read.contract,
                            balance=Decimal(0),
                            success=False,
                            token_id=read.token_id,
                            error=str(e.last_exception or e),
                        )
                    )
                    continue

                calls += attempts
                amount = to_units(raw, read.decimals)
                total += amount
                breakdown[read.label] += amount
                entries.append(
                    AddressBalance(
                        address=address,
                        contract=read.contract,
                        balance=amount,
                        token_id=read.token_id,
                    )
                )
                if amount > 0:
                    logger.debug("Wallet %s holds %s of %s", address, amount, read.label)

            if address_failed:
                failed.append(address)

        if addresses and len(failed) / len(addresses) > self._failure_threshold:
            logger.error(
                "Fail-safe triggered for %s: %d/%d addresses failed",
                description,
                len(failed),
                len(addresses),
            )
            raise UnreliableDataError(
                f"{description}: {len(failed)}/{len(addresses)} addresses failed; "
                "failure rate too high for a reliable eligibility decision",
                failed_addresses=failed,
                total_addresses=len(addresses),
            )
        if failed:
            logger.warning(
                "%s returned a partial total: %d/%d addresses failed",
                description,
                len(failed),
                len(addresses),
            )

        return total, entries, failed, breakdown, calls

    async def resolve_token_balance(
        self,
        addresses: Sequence[str],
        *,
        contract: str,
        chain_id: int,
        decimals: int = DEFAULT_DECIMALS,
        required_balance: Decimal | None = None,
    ) -> BalanceResolution:
        """Sum an ERC-20 balance across a wallet set.

        Args:
            addresses: Wallet addresses; invalid ones are skipped with a log line.
            contract: ERC-20 contract address.
            chain_id: Chain to read from.
            decimals: Token decimal precision.
            required_balance: Optional threshold for the ``eligible`` flag.

        Returns:
            BalanceResolution with the total in token units.

        Raises:
            UnreliableDataError: If too many addresses could not be read.
            ConfigurationError: If the chain has no endpoints.
        """
        contract = normalize_evm_address(contract)
        valid = filter_evm_addresses(addresses)
        total, entries, failed, _, calls = await self._read_all(
            valid,
            [_Read(contract=contract, abi=BALANCE_OF_ABI, decimals=decimals)],
            chain_id=chain_id,
            description="ERC-20 balanceOf",
        )
        logger.info(
            "Token balance for %d wallet(s) on chain %d: %s (contract=%s)",
            len(valid),
            chain_id,
            total,
            contract,
        )
        return BalanceResolution(
            chain_id=chain_id,
            contracts=(contract,),
            total=total,
            per_address=entries,
            failed_addresses=failed,
            calls_made=calls,
            required_balance=required_balance,
        )

    async def resolve_erc721_balance(
        self,
        addresses: Sequence[str],
        *,
        contracts: Sequence[str],
        chain_id: int,
        required_balance: Decimal | None = None,
    ) -> BalanceResolution:
        """Count ERC-721 tokens held across a wallet set and several collections."""
        normalized = tuple(normalize_evm_address(c) for c in contracts)
        if not normalized:
            raise ConfigurationError("no NFT contract addresses configured")
        valid = filter_evm_addresses(addresses)
        total, entries, failed, breakdown, calls = await self._read_all(
            valid,
            [_Read(contract=c, abi=BALANCE_OF_ABI) for c in normalized],
            chain_id=chain_id,
            description="ERC-721 balanceOf",
        )
        return BalanceResolution(
            chain_id=chain_id,
            contracts=normalized,
            total=total,
            per_address=entries,
            failed_addresses=failed,
            calls_made=calls,
            required_balance=required_balance,
            breakdown=breakdown,
        )

    async def resolve_erc1155_balance(
        self,
        addresses: Sequence[str],
        *,
        contract: str,
        token_ids: Sequence[int],
        chain_id: int,
        required_balance: Decimal | None = None,
    ) -> BalanceResolution:
        """Sum ERC-1155 balances across a wallet set and a set of token ids."""
        contract = normalize_evm_address(contract)
        if not token_ids:
            raise ConfigurationError("ERC-1155 check requires at least one token id")
        valid = filter_evm_addresses(addresses)
        total, entries, failed, breakdown, calls = await self._read_all(
            valid,
            [_Read(contract=contract, abi=ERC1155_BALANCE_OF_ABI, token_id=int(t)) for t in token_ids],
            chain_id=chain_id,
            description="ERC-1155 balanceOf",
        )
        return BalanceResolution(
            chain_id=chain_id,
            contracts=(contract,),
            total=total,
            per_address=entries,
            failed_addresses=failed,
            calls_made=calls,
            required_balance=required_balance,
            breakdown=breakdown,
        )

    async def resolve_nft_set_holdings(
        self,
        addresses: Sequence[str],
        requirements: Sequence[NftRequirement],
    ) -> NftSetHoldings:
        """Check how many complete sets of the required ERC-1155 tokens are held."""
        holdings: list[NftRequirementHolding] = []
        calls = 0
        for index, requirement in enumerate(requirements):
            if index > 0 and self._collection_delay > 0:
                await self._sleep(self._collection_delay)
            result = await self.resolve_erc1155_balance(
                addresses,
                contract=requirement.contract,
                token_ids=[requirement.token_id],
                chain_id=requirement.chain_id,
            )
            calls += result.calls_made
            holdings.append(
                NftRequirementHolding(
                    requirement=requirement,
                    balance=result.total,
                    per_address=result.per_address,
                )
            )

        sets = NftSetHoldings(holdings=holdings, calls_made=calls)
        logger.info(
            "NFT set check: %d requirement(s), %d complete set(s)",
            len(requirements),
            sets.complete_sets,
        )
        return sets

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        for url, client in list(self._clients.items()):
            disconnect = getattr(client.provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session for %s: %s", url, e)
        self._clients.clear()
