# pricedrop/services/price_reduction_service.py
"""
Price reduction tick.

One tick:
1. selects eligible listings and groups them by account,
2. per account (accounts run concurrently, bounded): obtains ONE access
   credential, reconciles claims left behind by interrupted ticks, then
   walks its listings in ascending id order,
3. per listing: compute -> claim -> submit -> finalize (listing update and
   price history in one transaction), or release with a cooldown on failure.

A failure in one account or listing never stops the others. Listings not
reached before the soft deadline are left untouched for the next tick.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.config import Settings, get_settings
from pricedrop.core.crypto import get_cipher
from pricedrop.core.enums import ListingOutcome, OperationKind, ReductionStrategy, ReductionType
from pricedrop.core.exceptions import (
    CallError,
    ClaimLostError,
    StrategyConfigError,
    TokenError,
    TokenTransientError,
)
from pricedrop.models.listing import Listing
from pricedrop.models.types import to_money, utcnow
from pricedrop.services.ebay.auth import TokenLifecycleManager
from pricedrop.services.ebay.client import EbayBrowseClient
from pricedrop.services.ebay.token_manager import AccessCredential
from pricedrop.services.ebay.trading import EbayTradingClient
from pricedrop.services.listing_store import ListingRepository
from pricedrop.services.outcome_ledger import OutcomeLedger
from pricedrop.services.pricing import (
    PricingInput,
    StrategyParams,
    build_strategy_params,
    compute_next_price,
)
from pricedrop.services.rate_limit import RateLimitedCaller, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class ListingResult:
    listing_id: int
    account_id: str
    outcome: ListingOutcome
    reason: str
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "account_id": self.account_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "old_price": str(self.old_price) if self.old_price is not None else None,
            "new_price": str(self.new_price) if self.new_price is not None else None,
        }


@dataclass
class TickReport:
    tick_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[ListingResult] = field(default_factory=list)
    reconciled: List[ListingResult] = field(default_factory=list)
    account_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in ListingOutcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def for_listing(self, listing_id: int) -> Optional[ListingResult]:
        for result in self.results:
            if result.listing_id == listing_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "counts": self.counts,
            "results": [r.to_dict() for r in self.results],
            "reconciled": [r.to_dict() for r in self.reconciled],
            "account_errors": dict(self.account_errors),
        }


class _AccountAborted(Exception):
    """A token failure mid-account; the rest of the account is skipped this tick."""

    def __init__(self, error: TokenError):
        super().__init__(error.message)
        self.error = error


@dataclass
class _TickContext:
    tick_id: str
    trigger: str
    now: datetime
    deadline: float

    @property
    def reduction_type(self) -> ReductionType:
        return ReductionType.MANUAL if self.trigger == "manual" else ReductionType.SCHEDULED


class PriceReductionScheduler:
    """Runs price reduction ticks across every connected account."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        token_manager: TokenLifecycleManager,
        trading_client: EbayTradingClient,
        caller: RateLimitedCaller,
        settings: Optional[Settings] = None,
        browse_client: Optional[EbayBrowseClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.token_manager = token_manager
        self.trading_client = trading_client
        self.browse_client = browse_client
        self.caller = caller
        self.settings = settings or get_settings()
        self.retry_policy: RetryPolicy = caller.retry_policy
        self._clock = clock
        self._sleep = sleep

    # --- Entry point ---

    async def run_tick(
        self,
        now: Optional[datetime] = None,
        account_id: Optional[str] = None,
        listing_id: Optional[int] = None,
        force: bool = False,
        trigger: str = "scheduled",
    ) -> TickReport:
        """
        Run one tick.

        Args:
            now: Evaluation time (defaults to the current UTC time)
            account_id: Only process this account
            listing_id: Only process this listing
            force: Ignore next_reduction_at (manual re-runs only)
            trigger: "scheduled" or "manual"; manual changes are recorded as such
        """
        now = now or utcnow()
        ctx = _TickContext(
            tick_id=uuid.uuid4().hex,
            trigger=trigger,
            now=now,
            deadline=self._clock() + self.settings.TICK_SOFT_DEADLINE_SECONDS,
        )
        report = TickReport(tick_id=ctx.tick_id, trigger=trigger, started_at=utcnow())

        async with self.session_factory() as db:
            repo = ListingRepository(db)
            eligible = await repo.select_eligible(now, account_id=account_id, listing_id=listing_id, force=force)
            stale_accounts = []
            if listing_id is None:
                stale_accounts = await repo.accounts_with_stale_claims(self._stale_before(now))

        groups: "OrderedDict[str, List[Listing]]" = OrderedDict()
        for listing in eligible:
            groups.setdefault(listing.account_id, []).append(listing)
        for stale_account in stale_accounts:
            if account_id and stale_account != account_id:
                continue
            groups.setdefault(stale_account, [])

        logger.info(
            f"Tick {ctx.tick_id} ({trigger}): {len(eligible)} eligible listings "
            f"across {len(groups)} accounts"
        )

        semaphore = asyncio.Semaphore(max(1, self.settings.TICK_ACCOUNT_CONCURRENCY))

        async def bounded(acct: str, listings: List[Listing]):
            async with semaphore:
                return await self._run_account_isolated(acct, listings, ctx, report)

        account_results = await asyncio.gather(
            *(bounded(acct, listings) for acct, listings in groups.items())
        )
        for results in account_results:
            report.results.extend(results)

        report.finished_at = utcnow()
        logger.info(f"Tick {ctx.tick_id} finished: {report.counts}")
        return report

    # --- Account level ---

    async def _run_account_isolated(
        self, account_id: str, listings: List[Listing], ctx: _TickContext, report: TickReport
    ) -> List[ListingResult]:
        """Everything for one account; never raises."""
        results: List[ListingResult] = []
        try:
            await self._run_account(account_id, listings, ctx, report, results)
        except Exception as e:
            logger.exception(f"Tick {ctx.tick_id}: unexpected failure processing account {account_id}")
            report.account_errors[account_id] = "unexpected"
            await self._record_error(
                ctx, account_id, OperationKind.PRICING,
                classification="unexpected", message=f"{type(e).__name__}: {e}",
            )

        done = {r.listing_id for r in results}
        for listing in listings:
            if listing.id not in done:
                results.append(self._result(listing, ListingOutcome.FAILED, "account_aborted"))
        return results

    async def _run_account(
        self,
        account_id: str,
        listings: List[Listing],
        ctx: _TickContext,
        report: TickReport,
        results: List[ListingResult],
    ) -> None:
        if self._clock() >= ctx.deadline:
            logger.warning(
                f"Tick {ctx.tick_id}: soft deadline reached before account {account_id} started, "
                f"deferring {len(listings)} listings"
            )
            for listing in listings:
                results.append(self._result(listing, ListingOutcome.DEFERRED, "deadline"))
            return

        try:
            credential = await self._acquire_credential(account_id)
        except TokenError as e:
            logger.warning(f"Tick {ctx.tick_id}: account {account_id} unavailable ({e.classification})")
            report.account_errors[account_id] = e.classification
            await self._record_error(ctx, account_id, OperationKind.TOKEN_EXCHANGE, error=e)
            for listing in listings:
                results.append(
                    self._result(listing, ListingOutcome.SKIPPED, f"account_unavailable:{e.classification}")
                )
            return

        async def refresh() -> AccessCredential:
            return await self.token_manager.get_access_credential(account_id)

        async with self.session_factory() as db:
            repo = ListingRepository(db)
            try:
                credential = await self._reconcile_stale_claims(repo, account_id, credential, refresh, ctx, report)

                for index, listing in enumerate(listings):
                    if self._clock() >= ctx.deadline:
                        logger.warning(
                            f"Tick {ctx.tick_id}: soft deadline reached, deferring "
                            f"{len(listings) - index} listings of account {account_id}"
                        )
                        for deferred in listings[index:]:
                            results.append(self._result(deferred, ListingOutcome.DEFERRED, "deadline"))
                        return

                    try:
                        result, credential = await self._process_listing(repo, listing, credential, refresh, ctx)
                    except _AccountAborted:
                        raise
                    except Exception as e:
                        result = await self._fail_listing(repo, listing, ctx, e)
                    results.append(result)

            except _AccountAborted as aborted:
                e = aborted.error
                report.account_errors[account_id] = e.classification
                await self._record_error(ctx, account_id, OperationKind.TOKEN_EXCHANGE, error=e)
                done = {r.listing_id for r in results}
                for listing in listings:
                    if listing.id not in done:
                        results.append(
                            self._result(listing, ListingOutcome.SKIPPED, f"account_unavailable:{e.classification}")
                        )

    async def _acquire_credential(self, account_id: str) -> AccessCredential:
        """One token exchange per account per tick, retrying transient failures."""
        attempt = 0
        while True:
            try:
                return await self.token_manager.get_access_credential(account_id)
            except TokenTransientError as e:
                if attempt >= self.retry_policy.max_retries:
                    raise
                delay = self.retry_policy.next_backoff(attempt)
                logger.info(f"Token exchange for {account_id} failed transiently ({e.code}), retrying in {delay:.2f}s")
                attempt += 1
                await self._sleep(delay)

    # --- Listing level ---

    async def _process_listing(
        self,
        repo: ListingRepository,
        listing: Listing,
        credential: AccessCredential,
        refresh,
        ctx: _TickContext,
    ):
        """Returns (ListingResult, credential to use for the next call)."""
        cooldown_until = ctx.now + timedelta(hours=self.settings.FAILURE_COOLDOWN_HOURS)

        try:
            params = self._params_for(listing)
        except StrategyConfigError as e:
            await self._record_error(ctx, listing.account_id, OperationKind.PRICING, error=e, listing_id=listing.id)
            await repo.advance_schedule(listing, cooldown_until)
            return self._result(listing, ListingOutcome.FAILED, e.classification), credential

        market_data = None
        if listing.reduction_strategy == ReductionStrategy.MARKET_BASED.value:
            try:
                market_data, credential = await self._market_data(listing, credential, refresh)
            except TokenError as e:
                raise _AccountAborted(e)
            except CallError as e:
                await self._record_error(
                    ctx, listing.account_id, OperationKind.MARKET_DATA, error=e, listing_id=listing.id
                )
                await repo.advance_schedule(listing, cooldown_until)
                return self._result(listing, ListingOutcome.FAILED, e.classification), credential

        try:
            decision = compute_next_price(
                PricingInput(
                    current_price=listing.current_price,
                    floor_price=listing.floor_price,
                    strategy=ReductionStrategy(listing.reduction_strategy),
                    params=params,
                    listed_at=listing.listed_at,
                ),
                ctx.now,
                market_data,
            )
        except (StrategyConfigError, ValueError) as e:
            error = e if isinstance(e, StrategyConfigError) else StrategyConfigError(str(e))
            await self._record_error(
                ctx, listing.account_id, OperationKind.PRICING, error=error, listing_id=listing.id
            )
            await repo.advance_schedule(listing, cooldown_until)
            return self._result(listing, ListingOutcome.FAILED, error.classification), credential

        if not decision.is_change:
            await repo.advance_schedule(listing, decision.next_eligible_at)
            return self._result(listing, ListingOutcome.SKIPPED, decision.reason), credential

        claim = await repo.claim(listing, uuid.uuid4().hex, decision.new_price, decision.reason, ctx.now)
        if claim is None:
            return self._result(listing, ListingOutcome.SKIPPED, "claimed_elsewhere"), credential

        item_id = listing.external_item_id
        new_price = claim.pending_price

        try:
            call = await self.caller.call(
                listing.account_id,
                lambda c: self.trading_client.revise_price(c, item_id, new_price),
                credential,
                refresh,
            )
        except TokenError as e:
            await repo.release(listing.id, claim.token)
            raise _AccountAborted(e)
        except CallError as e:
            await repo.release(listing.id, claim.token, next_reduction_at=cooldown_until)
            await self._record_error(
                ctx, listing.account_id, OperationKind.PRICE_UPDATE, error=e, listing_id=listing.id
            )
            return self._result(listing, ListingOutcome.FAILED, e.classification, claim.old_price), credential
        except Exception as e:
            # Outcome unknown; the claim stays for reconciliation against the live price
            logger.exception(f"Tick {ctx.tick_id}: unexpected error submitting listing {listing.id}")
            await self._record_error(
                ctx, listing.account_id, OperationKind.PRICE_UPDATE,
                classification="unexpected", message=f"{type(e).__name__}: {e}", listing_id=listing.id,
            )
            return self._result(listing, ListingOutcome.FAILED, "unexpected", claim.old_price), credential

        credential = call.credential

        try:
            await repo.finalize(
                listing,
                claim.token,
                old_price=claim.old_price,
                new_price=new_price,
                next_reduction_at=decision.next_eligible_at,
                now=ctx.now,
                reduction_type=ctx.reduction_type,
                reason=decision.reason,
                tick_id=ctx.tick_id,
            )
        except ClaimLostError as e:
            logger.warning(f"Tick {ctx.tick_id}: listing {listing.id} price submitted but claim lost")
            await self._record_error(
                ctx, listing.account_id, OperationKind.PRICE_UPDATE, error=e, listing_id=listing.id
            )
            return self._result(listing, ListingOutcome.SKIPPED, e.classification, claim.old_price), credential
        except Exception as e:
            # Price is live remotely; the claim is reconciled on a later tick
            logger.exception(f"Tick {ctx.tick_id}: failed to record price change for listing {listing.id}")
            await self._record_error(
                ctx, listing.account_id, OperationKind.PRICE_UPDATE,
                classification="finalize_failed", message=f"{type(e).__name__}: {e}", listing_id=listing.id,
            )
            return self._result(listing, ListingOutcome.FAILED, "finalize_failed", claim.old_price), credential

        logger.info(
            f"Tick {ctx.tick_id}: listing {listing.id} ({item_id}) {claim.old_price} -> {new_price} "
            f"[{decision.reason}]"
        )
        return (
            self._result(listing, ListingOutcome.UPDATED, decision.reason, claim.old_price, new_price),
            credential,
        )

    async def _fail_listing(
        self, repo: ListingRepository, listing: Listing, ctx: _TickContext, error: Exception
    ) -> ListingResult:
        """Unexpected error for one listing: record it and cool the listing down if it is unclaimed."""
        logger.exception(f"Tick {ctx.tick_id}: unexpected error processing listing {listing.id}")
        await self._record_error(
            ctx, listing.account_id, OperationKind.PRICING,
            classification="unexpected", message=f"{type(error).__name__}: {error}", listing_id=listing.id,
        )
        try:
            await repo.db.rollback()
            await repo.advance_schedule(
                listing, ctx.now + timedelta(hours=self.settings.FAILURE_COOLDOWN_HOURS)
            )
        except Exception:
            logger.exception(f"Tick {ctx.tick_id}: could not apply cooldown to listing {listing.id}")
        return self._result(listing, ListingOutcome.FAILED, "unexpected")

    async def _market_data(self, listing: Listing, credential: AccessCredential, refresh):
        if self.browse_client is None or not listing.title:
            return [], credential
        title = listing.title
        item_id = listing.external_item_id
        call = await self.caller.call(
            listing.account_id,
            lambda c: self.browse_client.search_comparables(c, title, exclude_item_id=item_id),
            credential,
            refresh,
        )
        return call.value, call.credential

    # --- Reconciliation ---

    def _stale_before(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.settings.CLAIM_TIMEOUT_MINUTES)

    async def _reconcile_stale_claims(
        self,
        repo: ListingRepository,
        account_id: str,
        credential: AccessCredential,
        refresh,
        ctx: _TickContext,
        report: TickReport,
    ) -> AccessCredential:
        """
        Settle claims left by a tick that died between submitting and recording.

        The live price decides: pending price -> the change happened, record it;
        old price -> it never landed, release; anything else -> release with a
        cooldown and flag it.
        """
        for listing in await repo.stale_claims(account_id, self._stale_before(ctx.now)):
            token = listing.claim_token
            pending = listing.pending_price
            old_price = listing.current_price
            item_id = listing.external_item_id

            try:
                call = await self.caller.call(
                    account_id,
                    lambda c: self.trading_client.get_item_price(c, item_id),
                    credential,
                    refresh,
                )
            except TokenError as e:
                raise _AccountAborted(e)
            except CallError as e:
                await self._record_error(ctx, account_id, OperationKind.RECONCILE, error=e, listing_id=listing.id)
                continue

            credential = call.credential
            remote = to_money(call.value)

            if pending is not None and remote == pending:
                try:
                    await repo.finalize(
                        listing,
                        token,
                        old_price=old_price,
                        new_price=pending,
                        next_reduction_at=ctx.now + timedelta(days=self._interval_days(listing)),
                        now=ctx.now,
                        reduction_type=ReductionType.RECONCILED,
                        reason="reconciled",
                        tick_id=ctx.tick_id,
                    )
                except ClaimLostError:
                    logger.info(f"Listing {listing.id}: stale claim settled by another tick")
                    continue
                logger.info(f"Reconciled listing {listing.id}: {old_price} -> {pending} was applied")
                report.reconciled.append(
                    self._result(listing, ListingOutcome.UPDATED, "reconciled", old_price, pending)
                )
            elif remote == old_price:
                await repo.release(listing.id, token)
                logger.info(f"Reconciled listing {listing.id}: pending change never applied, released")
                report.reconciled.append(self._result(listing, ListingOutcome.SKIPPED, "released", old_price))
            else:
                cooldown_until = ctx.now + timedelta(hours=self.settings.FAILURE_COOLDOWN_HOURS)
                await repo.release(listing.id, token, next_reduction_at=cooldown_until)
                await self._record_error(
                    ctx, account_id, OperationKind.RECONCILE,
                    classification="reconcile_mismatch",
                    message=f"live price {remote}, expected {pending} or {old_price}",
                    listing_id=listing.id,
                )
                report.reconciled.append(
                    self._result(listing, ListingOutcome.FAILED, "reconcile_mismatch", old_price, remote)
                )

        return credential

    # --- Helpers ---

    def _params_for(self, listing: Listing) -> StrategyParams:
        s = self.settings
        return build_strategy_params(
            listing.strategy_params,
            default_percentage=s.DEFAULT_REDUCTION_PERCENTAGE,
            default_interval_days=s.DEFAULT_REDUCTION_INTERVAL_DAYS,
            default_tiers=s.time_based_tiers,
            target_percentile=s.MARKET_TARGET_PERCENTILE,
            move_fraction=s.MARKET_MOVE_FRACTION,
            max_step_percent=s.MARKET_MAX_STEP_PERCENT,
            min_comparables=s.MARKET_MIN_COMPARABLES,
        )

    def _interval_days(self, listing: Listing) -> int:
        try:
            return self._params_for(listing).interval_days
        except StrategyConfigError:
            return self.settings.DEFAULT_REDUCTION_INTERVAL_DAYS

    @staticmethod
    def _result(
        listing: Listing,
        outcome: ListingOutcome,
        reason: str,
        old_price: Optional[Decimal] = None,
        new_price: Optional[Decimal] = None,
    ) -> ListingResult:
        return ListingResult(
            listing_id=listing.id,
            account_id=listing.account_id,
            outcome=outcome,
            reason=reason,
            old_price=old_price if old_price is not None else listing.current_price,
            new_price=new_price,
        )

    async def _record_error(
        self,
        ctx: _TickContext,
        account_id: str,
        operation: OperationKind,
        error=None,
        classification: Optional[str] = None,
        message: Optional[str] = None,
        listing_id: Optional[int] = None,
    ) -> None:
        """Write a sync error in its own transaction."""
        try:
            async with self.session_factory() as db:
                await OutcomeLedger(db).record_error(
                    account_id=account_id,
                    operation=operation,
                    error=error,
                    classification=classification,
                    message=message,
                    listing_id=listing_id,
                    tick_id=ctx.tick_id,
                )
                await db.commit()
        except Exception:
            # Ledger unavailable; the log line is the record
            logger.exception(
                f"Tick {ctx.tick_id}: could not record {operation.value} error for "
                f"account {account_id} listing {listing_id}"
            )


def build_price_reduction_scheduler(
    session_factory: Callable[[], AsyncSession],
    settings: Optional[Settings] = None,
) -> PriceReductionScheduler:
    """Wire the scheduler from settings."""
    settings = settings or get_settings()
    return PriceReductionScheduler(
        session_factory=session_factory,
        token_manager=TokenLifecycleManager(session_factory, get_cipher(), settings),
        trading_client=EbayTradingClient(settings),
        caller=RateLimitedCaller.from_settings(settings),
        settings=settings,
        browse_client=EbayBrowseClient(settings),
    )
