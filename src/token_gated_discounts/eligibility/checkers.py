"""Gating checkers, one per gating type, and the static registry.

Each checker turns (campaign, identity) into an EligibilityResult. Checkers
raise ConfigurationError for campaigns missing required fields and let
UnreliableDataError escape; ``run_checker`` converts both into ineligible
results so that every path ends in a decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from token_gated_discounts.cache.balance_cache import TokenBalanceCache
from token_gated_discounts.chain.errors import (
    AddressValidationError,
    ConfigurationError,
    UnreliableDataError,
)
from token_gated_discounts.chain.models import BalanceResolution, NftStandard
from token_gated_discounts.chain.resolver import BalanceResolver
from token_gated_discounts.eligibility.models import (
    Campaign,
    CombinedDetail,
    EligibilityResult,
    ErrorDetail,
    GatingType,
    Identity,
    IdentityWhitelistDetail,
    MembershipDetail,
    NftHoldingDetail,
    NoGatingDetail,
    TokenBalanceDetail,
    WalletWhitelistDetail,
    format_amount,
)
from token_gated_discounts.protocols import IdentityDirectory

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_BALANCE = Decimal(1)


@dataclass(frozen=True)
class CheckerContext:
    """Collaborators a checker may need."""

    resolver: BalanceResolver
    directory: IdentityDirectory
    balance_cache: TokenBalanceCache | None = None


class EligibilityChecker(Protocol):
    async def check(
        self,
        campaign: Campaign,
        identity: Identity,
        ctx: CheckerContext,
    ) -> EligibilityResult: ...


def _required(campaign: Campaign) -> Decimal:
    if campaign.required_balance is None or campaign.required_balance <= 0:
        return DEFAULT_REQUIRED_BALANCE
    return campaign.required_balance


def _no_wallets() -> EligibilityResult:
    return EligibilityResult(
        eligible=False,
        reason="No wallet addresses provided",
        detail=ErrorDetail(error="identity has no wallet addresses", error_type="MissingWallets"),
    )


async def run_checker(
    checker: EligibilityChecker,
    campaign: Campaign,
    identity: Identity,
    ctx: CheckerContext,
) -> EligibilityResult:
    """Run a checker, turning configuration and data errors into results."""
    try:
        return await checker.check(campaign, identity, ctx)
    except (ConfigurationError, AddressValidationError) as e:
        logger.warning("Campaign %s misconfigured: %s", campaign.code, e)
        return EligibilityResult(
            eligible=False,
            reason=str(e),
            detail=ErrorDetail.from_exception(e),
        )
    except UnreliableDataError as e:
        logger.error(
            "Unable to verify balance for identity %d on campaign %s: %s",
            identity.identity_id,
            campaign.code,
            e,
        )
        return EligibilityResult(
            eligible=False,
            reason="Unable to verify balance",
            detail=ErrorDetail.from_exception(e),
        )


class NoGatingChecker:
    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        return EligibilityResult(
            eligible=True,
            reason="No token-gating required",
            detail=NoGatingDetail(),
        )


class IdentityWhitelistChecker:
    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        whitelisted = identity.identity_id in campaign.whitelisted_identities
        return EligibilityResult(
            eligible=whitelisted,
            reason=(
                "Identity found in whitelist" if whitelisted else "Identity not found in whitelist"
            ),
            detail=IdentityWhitelistDetail(
                identity_id=identity.identity_id,
                whitelist_size=len(campaign.whitelisted_identities),
                is_whitelisted=whitelisted,
            ),
        )


class WalletWhitelistChecker:
    """Any of the identity's wallets in the campaign whitelist, case-insensitive."""

    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        whitelist = {w.strip().lower() for w in campaign.whitelisted_wallets}
        wallets = identity.all_addresses
        match = next((w for w in wallets if w.lower() in whitelist), None)
        return EligibilityResult(
            eligible=match is not None,
            reason=(
                f"Wallet {match} found in whitelist"
                if match is not None
                else "No user wallets found in whitelist"
            ),
            detail=WalletWhitelistDetail(
                wallets_checked=len(wallets),
                whitelist_size=len(whitelist),
                matching_wallet=match,
            ),
        )


class NftHoldingChecker:
    """Sum of NFT balances across the configured contracts, read live."""

    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        if not campaign.contract_addresses:
            raise ConfigurationError("No NFT contract addresses configured")
        wallets = identity.all_addresses
        if not wallets:
            return _no_wallets()
        required = _required(campaign)

        resolutions: list[BalanceResolution] = []
        if campaign.nft_type == NftStandard.ERC1155:
            if not campaign.token_ids:
                raise ConfigurationError("ERC-1155 campaign has no token ids configured")
            for contract in campaign.contract_addresses:
                resolutions.append(
                    await ctx.resolver.resolve_erc1155_balance(
                        wallets,
                        contract=contract,
                        token_ids=campaign.token_ids,
                        chain_id=campaign.chain_id,
                        required_balance=required,
                    )
                )
        else:
            resolutions.append(
                await ctx.resolver.resolve_erc721_balance(
                    wallets,
                    contracts=campaign.contract_addresses,
                    chain_id=campaign.chain_id,
                    required_balance=required,
                )
            )

        found = sum((r.total for r in resolutions), Decimal(0))
        breakdown: dict[str, Decimal] = {}
        failed: list[str] = []
        contracts: list[str] = []
        for r in resolutions:
            breakdown.update(r.breakdown)
            failed.extend(a for a in r.failed_addresses if a not in failed)
            contracts.extend(c for c in r.contracts if c not in contracts)

        eligible = found >= required
        return EligibilityResult(
            eligible=eligible,
            reason=(
                f"Found {format_amount(found)} NFTs (required: {format_amount(required)})"
                if eligible
                else f"Found {format_amount(found)} NFTs, need {format_amount(required)}"
            ),
            detail=NftHoldingDetail(
                required_balance=required,
                found_balance=found,
                contracts_checked=tuple(contracts),
                chain_id=campaign.chain_id,
                nft_type=campaign.nft_type,
                token_ids=campaign.token_ids,
                breakdown=breakdown,
                failed_addresses=tuple(failed),
            ),
            resolver_calls=sum(r.calls_made for r in resolutions),
        )


class TokenBalanceChecker:
    """Token balance summed across the configured contracts.

    The gating token is read through the balance cache; any other contract
    goes to the resolver directly.
    """

    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        if not campaign.contract_addresses:
            raise ConfigurationError("No token contract addresses configured")
        wallets = identity.all_addresses
        if not wallets:
            return _no_wallets()
        required = _required(campaign)

        found = Decimal(0)
        calls = 0
        from_cache = False
        degraded = False
        breakdown: dict[str, Decimal] = {}
        failed: list[str] = []
        contracts: list[str] = []

        for contract in campaign.contract_addresses:
            cache = ctx.balance_cache
            if cache is not None and cache.covers(contract, campaign.chain_id):
                cached = await cache.get_balance(identity.identity_id, wallets)
                amount = cached.balance if cached.balance is not None else Decimal(0)
                calls += cached.resolver_calls
                from_cache = cached.from_cache
                degraded = degraded or cached.degraded
                breakdown.update(cached.breakdown)
                contracts.append(cache.contract)
            else:
                resolution = await ctx.resolver.resolve_token_balance(
                    wallets,
                    contract=contract,
                    chain_id=campaign.chain_id,
                    decimals=campaign.token_decimals,
                    required_balance=required,
                )
                amount = resolution.total
                calls += resolution.calls_made
                failed.extend(a for a in resolution.failed_addresses if a not in failed)
                contracts.extend(resolution.contracts)
            found += amount

        eligible = found >= required
        return EligibilityResult(
            eligible=eligible,
            reason=(
                f"Found {format_amount(found)} tokens (required: {format_amount(required)})"
                if eligible
                else f"Found {format_amount(found)} tokens, need {format_amount(required)}"
            ),
            detail=TokenBalanceDetail(
                required_balance=required,
                found_balance=found,
                contracts_checked=tuple(contracts),
                chain_id=campaign.chain_id,
                from_cache=from_cache,
                degraded=degraded,
                breakdown=breakdown,
                failed_addresses=tuple(failed),
            ),
            resolver_calls=calls,
        )


class MembershipFlagChecker:
    """Membership flag from the identity directory; verified_at is informational."""

    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        status = await ctx.directory.get_membership(identity.identity_id)
        if status is None:
            return EligibilityResult(
                eligible=False,
                reason="Membership status unknown",
                detail=MembershipDetail(is_member=None),
            )
        return EligibilityResult(
            eligible=status.is_member,
            reason="Active member" if status.is_member else "Not a member",
            detail=MembershipDetail(is_member=status.is_member, verified_at=status.verified_at),
        )


class CombinedChecker:
    """AND of the configured sub-checks; every sub-check runs."""

    async def check(
        self, campaign: Campaign, identity: Identity, ctx: CheckerContext
    ) -> EligibilityResult:
        requirements = campaign.combined_requirements
        if not requirements:
            raise ConfigurationError("Combined gating has no requirements configured")
        if GatingType.COMBINED in requirements:
            raise ConfigurationError("Combined gating cannot contain itself")

        results: list[tuple[GatingType, EligibilityResult]] = []
        for gating in requirements:
            checker = CHECKERS.get(gating)
            if checker is None:
                raise ConfigurationError(f"Unknown gating type: {gating}")
            results.append((gating, await run_checker(checker, campaign, identity, ctx)))

        failed = [r for _, r in results if not r.eligible]
        return EligibilityResult(
            eligible=not failed,
            reason=(
                "All combined gating requirements met"
                if not failed
                else "Failed requirements: " + ", ".join(r.reason for r in failed)
            ),
            detail=CombinedDetail(results=tuple(results)),
            resolver_calls=sum(r.resolver_calls for _, r in results),
        )


CHECKERS: dict[GatingType, EligibilityChecker] = {
    GatingType.NONE: NoGatingChecker(),
    GatingType.IDENTITY_WHITELIST: IdentityWhitelistChecker(),
    GatingType.WALLET_WHITELIST: WalletWhitelistChecker(),
    GatingType.NFT_HOLDING: NftHoldingChecker(),
    GatingType.TOKEN_BALANCE: TokenBalanceChecker(),
    GatingType.COMBINED: CombinedChecker(),
    GatingType.MEMBERSHIP_FLAG: MembershipFlagChecker(),
}
