# pricedrop/services/outcome_ledger.py
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import delete, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.enums import OperationKind, ReductionType
from pricedrop.core.exceptions import BaseServiceError
from pricedrop.models.price_history import PriceHistory
from pricedrop.models.sync_error import SyncError
from pricedrop.models.types import to_money, utcnow

logger = logging.getLogger(__name__)


class OutcomeLedger:
    """
    Append-only record of what every tick did.

    Price history rows are written inside the same transaction as the listing
    update they describe; sync error rows are written on their own. Nothing
    here updates an existing row. The caller owns the transaction: methods
    add and flush, they never commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append_price_change(
        self,
        *,
        listing_id: int,
        account_id: str,
        external_item_id: str,
        old_price: Decimal,
        new_price: Decimal,
        change_key: str,
        reduction_type: ReductionType,
        strategy: Optional[str] = None,
        reason: Optional[str] = None,
        tick_id: Optional[str] = None,
        applied_at: Optional[datetime] = None,
    ) -> PriceHistory:
        old_price = to_money(old_price)
        new_price = to_money(new_price)
        entry = PriceHistory(
            listing_id=listing_id,
            account_id=account_id,
            external_item_id=external_item_id,
            old_price=old_price,
            new_price=new_price,
            reduction_amount=old_price - new_price,
            strategy=strategy,
            reason=reason,
            reduction_type=ReductionType(reduction_type).value,
            tick_id=tick_id,
            change_key=change_key,
            applied_at=applied_at or utcnow(),
        )
        self.db.add(entry)
        await self.db.flush()
        logger.debug(f"Price change recorded: listing {listing_id} {old_price} -> {new_price}")
        return entry

    async def record_error(
        self,
        *,
        account_id: str,
        operation: OperationKind,
        error: Optional[BaseServiceError] = None,
        classification: Optional[str] = None,
        code: Optional[str] = None,
        message: Optional[str] = None,
        listing_id: Optional[int] = None,
        retry_count: int = 0,
        tick_id: Optional[str] = None,
    ) -> SyncError:
        """
        Record one failed operation.

        Pass either a classified ``error`` or an explicit ``classification``.
        """
        if error is not None:
            classification = classification or error.classification
            code = code or error.code
            message = message or error.message
            retry_count = max(retry_count, getattr(error, "attempts", 1) - 1)
        if not classification:
            raise ValueError("record_error needs an error or a classification")

        entry = SyncError(
            account_id=account_id,
            listing_id=listing_id,
            operation=OperationKind(operation).value,
            error_classification=classification,
            error_code=code,
            message=message,
            retry_count=retry_count,
            tick_id=tick_id,
            created_at=utcnow(),
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info(
            f"Sync error recorded: account={account_id} listing={listing_id} "
            f"op={entry.operation} class={classification}"
        )
        return entry

    async def purge_errors(self, older_than: datetime) -> int:
        """Delete sync errors created before ``older_than``. Price history is never purged."""
        result = await self.db.execute(delete(SyncError).where(SyncError.created_at < older_than))
        return result.rowcount or 0

    async def history_for_listing(self, listing_id: int, limit: int = 100) -> List[PriceHistory]:
        result = await self.db.execute(
            select(PriceHistory)
            .where(PriceHistory.listing_id == listing_id)
            .order_by(PriceHistory.applied_at, PriceHistory.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def recent_price_changes(self, account_id: Optional[str] = None, limit: int = 50) -> List[PriceHistory]:
        query = select(PriceHistory).order_by(desc(PriceHistory.applied_at), desc(PriceHistory.id)).limit(limit)
        if account_id:
            query = query.where(PriceHistory.account_id == account_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def recent_errors(self, account_id: Optional[str] = None, limit: int = 50) -> List[SyncError]:
        query = select(SyncError).order_by(desc(SyncError.created_at), desc(SyncError.id)).limit(limit)
        if account_id:
            query = query.where(SyncError.account_id == account_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def last_account_error(self, account_id: str) -> Optional[SyncError]:
        """Most recent account-level failure (one not tied to a listing)."""
        result = await self.db.execute(
            select(SyncError)
            .where(SyncError.account_id == account_id, SyncError.listing_id.is_(None))
            .order_by(desc(SyncError.created_at), desc(SyncError.id))
            .limit(1)
        )
        return result.scalar_one_or_none()
