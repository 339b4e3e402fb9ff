# pricedrop/services/ebay/importer.py
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.config import get_settings
from pricedrop.core.crypto import get_cipher
from pricedrop.core.enums import ConnectionStatus, ListingStatus, OperationKind
from pricedrop.core.exceptions import CallError, TokenError
from pricedrop.models.account import Account
from pricedrop.models.listing import Listing
from pricedrop.models.types import utcnow
from pricedrop.services.listing_store import ListingRepository
from pricedrop.services.outcome_ledger import OutcomeLedger
from pricedrop.services.rate_limit import RateLimitedCaller
from .auth import TokenLifecycleManager
from .trading import EbayTradingClient

logger = logging.getLogger(__name__)


class EbayListingSync:
    """Mirror an account's active eBay listings into the local listings table"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        token_manager: TokenLifecycleManager,
        trading_client: EbayTradingClient,
        caller: RateLimitedCaller,
        items_per_page: int = 200,
    ):
        self.session_factory = session_factory
        self.token_manager = token_manager
        self.trading_client = trading_client
        self.caller = caller
        self.items_per_page = items_per_page

    async def sync_account_listings(self, account_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Import all active listings of one account and reconcile the local mirror

        - new items are created with reductions disabled and no floor, so they
          are never picked up until someone configures them
        - known items get price/title/sku refreshed
        - local active items missing remotely become ``ended``
        - rows with an outstanding claim are left alone

        Returns:
            Dict[str, int]: Statistics about the sync

        Raises:
            TokenError / CallError: after recording them in the ledger
        """
        now = now or utcnow()
        stats = {"total": 0, "created": 0, "updated": 0, "ended": 0, "skipped_claimed": 0, "errors": 0}

        try:
            remote_items = await self._fetch_all(account_id)
        except (TokenError, CallError) as e:
            logger.error(f"Listing sync for account {account_id} failed: {e.classification}")
            operation = OperationKind.TOKEN_EXCHANGE if isinstance(e, TokenError) else OperationKind.LISTING_SYNC
            async with self.session_factory() as db:
                await OutcomeLedger(db).record_error(account_id=account_id, operation=operation, error=e)
                await db.commit()
            raise

        stats["total"] = len(remote_items)

        async with self.session_factory() as db:
            repo = ListingRepository(db)
            local = await repo.live_listings_for_account(account_id)

            for item_id, item in remote_items.items():
                listing = local.get(item_id)
                if listing is None:
                    db.add(self._new_listing(account_id, item, now))
                    stats["created"] += 1
                    continue

                if listing.claim_token:
                    stats["skipped_claimed"] += 1
                    continue

                if await repo.update_from_remote(
                    listing, price=item["price"], title=item.get("title"), sku=item.get("sku"), now=now
                ):
                    stats["updated"] += 1
                else:
                    stats["skipped_claimed"] += 1

            for item_id, listing in local.items():
                if item_id in remote_items or listing.status != ListingStatus.ACTIVE.value:
                    continue
                if await repo.mark_ended(listing, now):
                    stats["ended"] += 1
                else:
                    stats["skipped_claimed"] += 1

            try:
                await db.commit()
            except IntegrityError as e:
                # A concurrent sync created the same item first
                await db.rollback()
                stats["errors"] += 1
                logger.warning(f"Listing sync for account {account_id} lost a race: {e.orig}")
                await OutcomeLedger(db).record_error(
                    account_id=account_id,
                    operation=OperationKind.LISTING_SYNC,
                    classification="conflict",
                    message="concurrent listing sync created the same item",
                )
                await db.commit()

        logger.info(f"Listing sync for account {account_id}: {stats}")
        return stats

    async def _fetch_all(self, account_id: str) -> Dict[str, Dict]:
        credential = await self.token_manager.get_access_credential(account_id)

        async def refresh():
            return await self.token_manager.get_access_credential(account_id)

        items: Dict[str, Dict] = {}
        page = 1
        total_pages = 1
        while page <= total_pages:
            call = await self.caller.call(
                account_id,
                lambda c, p=page: self.trading_client.get_active_listings(c, p, self.items_per_page),
                credential,
                refresh,
            )
            credential = call.credential
            total_pages = call.value["total_pages"]
            for item in call.value["items"]:
                items[item["item_id"]] = item
            logger.debug(f"Account {account_id}: fetched page {page}/{total_pages}")
            page += 1
        return items

    @staticmethod
    def _new_listing(account_id: str, item: Dict, now: datetime) -> Listing:
        listed_at = None
        if item.get("listed_at"):
            try:
                listed_at = datetime.fromisoformat(item["listed_at"].replace("Z", "+00:00"))
                if listed_at.tzinfo is None:
                    listed_at = listed_at.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning(f"Unparseable StartTime for item {item['item_id']}: {item['listed_at']}")

        return Listing(
            account_id=account_id,
            external_item_id=item["item_id"],
            sku=item.get("sku"),
            title=(item.get("title") or "")[:255] or None,
            current_price=item["price"],
            floor_price=None,
            reduction_enabled=False,
            strategy_params={},
            status=ListingStatus.ACTIVE.value,
            listed_at=listed_at,
            last_synced_at=now,
            version=1,
        )

    async def archive(self, listing_id: int) -> bool:
        async with self.session_factory() as db:
            return await ListingRepository(db).archive(listing_id, utcnow())

    async def sync_all_accounts(self) -> Dict[str, Dict[str, int]]:
        """Sync every connected account; one account failing does not stop the rest"""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Account.account_id)
                .where(Account.connection_status == ConnectionStatus.CONNECTED.value)
                .order_by(Account.account_id)
            )
            account_ids = list(result.scalars().all())

        summary: Dict[str, Dict[str, int]] = {}
        for account_id in account_ids:
            try:
                summary[account_id] = await self.sync_account_listings(account_id)
            except (TokenError, CallError) as e:
                # Already in the ledger
                summary[account_id] = {"error": e.classification}
        return summary


def build_listing_sync(session_factory: Callable[[], AsyncSession], settings=None) -> EbayListingSync:
    settings = settings or get_settings()
    return EbayListingSync(
        session_factory=session_factory,
        token_manager=TokenLifecycleManager(session_factory, get_cipher(), settings),
        trading_client=EbayTradingClient(settings),
        caller=RateLimitedCaller.from_settings(settings),
    )
