# pricedrop/services/listing_store.py
"""
Listing store: selection and row-scoped conditional updates.

Every mutation is an UPDATE ... WHERE that names the row state it expects
(version, claim token). A zero rowcount means another writer got there
first; nothing here overwrites blindly.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.enums import ConnectionStatus, ListingStatus, ReductionType
from pricedrop.core.exceptions import ClaimLostError
from pricedrop.models.account import Account
from pricedrop.models.listing import Listing
from pricedrop.models.price_history import PriceHistory
from pricedrop.models.types import to_money
from pricedrop.services.outcome_ledger import OutcomeLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claim:
    listing_id: int
    token: str
    old_price: Decimal
    pending_price: Decimal
    reason: str
    version: int


class ListingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Selection ---

    async def select_eligible(
        self,
        now: datetime,
        account_id: Optional[str] = None,
        listing_id: Optional[int] = None,
        force: bool = False,
    ) -> List[Listing]:
        """
        Listings due for a reduction, ordered by account then listing id.

        ``force`` ignores the schedule (manual re-runs); every other
        condition still applies.
        """
        conditions = [
            Listing.status == ListingStatus.ACTIVE.value,
            Listing.reduction_enabled.is_(True),
            Listing.floor_price.is_not(None),
            Listing.current_price > Listing.floor_price,
            Listing.claim_token.is_(None),
            Account.connection_status == ConnectionStatus.CONNECTED.value,
        ]
        if not force:
            conditions.append(
                or_(Listing.next_reduction_at.is_(None), Listing.next_reduction_at <= now)
            )
        if account_id:
            conditions.append(Listing.account_id == account_id)
        if listing_id is not None:
            conditions.append(Listing.id == listing_id)

        result = await self.db.execute(
            select(Listing)
            .join(Account, Account.account_id == Listing.account_id)
            .where(and_(*conditions))
            .order_by(Listing.account_id, Listing.id)
        )
        return list(result.scalars().all())

    async def get(self, listing_id: int) -> Optional[Listing]:
        result = await self.db.execute(select(Listing).where(Listing.id == listing_id))
        return result.scalar_one_or_none()

    async def stale_claims(self, account_id: str, claimed_before: datetime) -> List[Listing]:
        result = await self.db.execute(
            select(Listing)
            .where(
                Listing.account_id == account_id,
                Listing.claim_token.is_not(None),
                Listing.claimed_at < claimed_before,
            )
            .order_by(Listing.id)
        )
        return list(result.scalars().all())

    async def accounts_with_stale_claims(self, claimed_before: datetime) -> List[str]:
        result = await self.db.execute(
            select(Listing.account_id)
            .join(Account, Account.account_id == Listing.account_id)
            .where(
                Listing.claim_token.is_not(None),
                Listing.claimed_at < claimed_before,
                Account.connection_status == ConnectionStatus.CONNECTED.value,
            )
            .distinct()
            .order_by(Listing.account_id)
        )
        return list(result.scalars().all())

    # --- Claim lifecycle ---

    async def claim(
        self, listing: Listing, token: str, pending_price: Decimal, reason: str, now: datetime
    ) -> Optional[Claim]:
        """
        Mark the listing as being processed by this tick.

        Succeeds only if the row still has the version we read and nobody
        else holds a claim. Returns None when the claim was lost.
        """
        pending_price = to_money(pending_price)
        read_version = listing.version
        old_price = to_money(listing.current_price)
        result = await self.db.execute(
            update(Listing)
            .where(
                Listing.id == listing.id,
                Listing.version == read_version,
                Listing.claim_token.is_(None),
                Listing.status == ListingStatus.ACTIVE.value,
            )
            .values(
                claim_token=token,
                claimed_at=now,
                pending_price=pending_price,
                pending_reason=reason[:255],
                version=Listing.version + 1,
            )
        )
        await self.db.commit()

        if result.rowcount != 1:
            logger.info(f"Listing {listing.id}: claim lost to a concurrent writer")
            return None
        return Claim(
            listing_id=listing.id,
            token=token,
            old_price=old_price,
            pending_price=pending_price,
            reason=reason,
            version=read_version + 1,
        )

    async def finalize(
        self,
        listing: Listing,
        claim_token: str,
        old_price: Decimal,
        new_price: Decimal,
        next_reduction_at: Optional[datetime],
        now: datetime,
        reduction_type: ReductionType = ReductionType.SCHEDULED,
        reason: Optional[str] = None,
        tick_id: Optional[str] = None,
    ) -> PriceHistory:
        """
        Apply a confirmed price change and append its history row, together.

        Both writes commit in one transaction. Raises ClaimLostError (and
        writes nothing) if the claim is no longer ours or the change was
        already recorded.
        """
        new_price = to_money(new_price)
        try:
            result = await self.db.execute(
                update(Listing)
                .where(Listing.id == listing.id, Listing.claim_token == claim_token)
                .values(
                    current_price=new_price,
                    next_reduction_at=next_reduction_at,
                    last_reduction_at=now,
                    claim_token=None,
                    claimed_at=None,
                    pending_price=None,
                    pending_reason=None,
                    version=Listing.version + 1,
                )
            )
            if result.rowcount != 1:
                raise ClaimLostError(f"Listing {listing.id}: claim {claim_token} no longer held")

            entry = await OutcomeLedger(self.db).append_price_change(
                listing_id=listing.id,
                account_id=listing.account_id,
                external_item_id=listing.external_item_id,
                old_price=old_price,
                new_price=new_price,
                change_key=claim_token,
                reduction_type=reduction_type,
                strategy=listing.reduction_strategy,
                reason=reason,
                tick_id=tick_id,
                applied_at=now,
            )
            await self.db.commit()
            return entry
        except IntegrityError:
            await self.db.rollback()
            raise ClaimLostError(f"Listing {listing.id}: change {claim_token} already recorded")
        except ClaimLostError:
            await self.db.rollback()
            raise

    async def release(
        self, listing_id: int, claim_token: str, next_reduction_at: Optional[datetime] = None
    ) -> bool:
        """Drop a claim without changing the price, optionally pushing the schedule out."""
        values = dict(
            claim_token=None,
            claimed_at=None,
            pending_price=None,
            pending_reason=None,
            version=Listing.version + 1,
        )
        if next_reduction_at is not None:
            values["next_reduction_at"] = next_reduction_at

        result = await self.db.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.claim_token == claim_token)
            .values(**values)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def advance_schedule(self, listing: Listing, next_reduction_at: datetime) -> bool:
        """Push next_reduction_at out after a NoChange, if nobody touched the row since we read it."""
        result = await self.db.execute(
            update(Listing)
            .where(
                Listing.id == listing.id,
                Listing.version == listing.version,
                Listing.claim_token.is_(None),
            )
            .values(next_reduction_at=next_reduction_at, version=Listing.version + 1)
        )
        await self.db.commit()
        return result.rowcount == 1

    # --- Mirror and lifecycle ---

    async def live_listings_for_account(self, account_id: str) -> Dict[str, Listing]:
        """Non-archived listings keyed by external item id."""
        result = await self.db.execute(
            select(Listing).where(
                Listing.account_id == account_id,
                Listing.status != ListingStatus.ARCHIVED.value,
            )
        )
        return {listing.external_item_id: listing for listing in result.scalars().all()}

    async def update_from_remote(
        self,
        listing: Listing,
        *,
        price: Decimal,
        title: Optional[str],
        sku: Optional[str],
        now: datetime,
    ) -> bool:
        """Refresh mirrored fields. Claimed rows are left alone."""
        values = dict(
            current_price=to_money(price),
            status=ListingStatus.ACTIVE.value,
            last_synced_at=now,
            version=Listing.version + 1,
        )
        if title is not None:
            values["title"] = title[:255]
        if sku is not None:
            values["sku"] = sku
        result = await self.db.execute(
            update(Listing)
            .where(
                Listing.id == listing.id,
                Listing.version == listing.version,
                Listing.claim_token.is_(None),
                Listing.status != ListingStatus.ARCHIVED.value,
            )
            .values(**values)
        )
        return result.rowcount == 1

    async def mark_ended(self, listing: Listing, now: datetime) -> bool:
        result = await self.db.execute(
            update(Listing)
            .where(
                Listing.id == listing.id,
                Listing.version == listing.version,
                Listing.claim_token.is_(None),
                Listing.status == ListingStatus.ACTIVE.value,
            )
            .values(status=ListingStatus.ENDED.value, last_synced_at=now, version=Listing.version + 1)
        )
        return result.rowcount == 1

    async def archive(self, listing_id: int, now: datetime) -> bool:
        """Soft-delete: the row and its history stay, selection never sees it again."""
        result = await self.db.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.status != ListingStatus.ARCHIVED.value,
                Listing.claim_token.is_(None),
            )
            .values(
                status=ListingStatus.ARCHIVED.value,
                archived_at=now,
                reduction_enabled=False,
                version=Listing.version + 1,
            )
        )
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Listing {listing_id} archived")
        return result.rowcount == 1
