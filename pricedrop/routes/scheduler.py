"""
Scheduler management endpoints
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.exceptions import CallError, TokenError
from pricedrop.core.security import get_current_username
from pricedrop.dependencies import get_db, get_listing_sync, get_price_reduction_service
from pricedrop.scheduler import get_scheduler, get_scheduler_status
from pricedrop.services.ebay.importer import EbayListingSync
from pricedrop.services.outcome_ledger import OutcomeLedger
from pricedrop.services.price_reduction_service import PriceReductionScheduler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


@router.get("/status", response_model=Dict[str, Any])
async def scheduler_status(
    current_user: str = Depends(get_current_username)
):
    """Get current scheduler status and configured jobs"""
    return await get_scheduler_status()


@router.post("/trigger-tick")
async def trigger_tick(
    account_id: Optional[str] = Query(None),
    listing_id: Optional[int] = Query(None),
    force: bool = Query(False),
    current_user: str = Depends(get_current_username),
    service: PriceReductionScheduler = Depends(get_price_reduction_service),
):
    """
    Run a price reduction tick now.

    Same ledger records as a scheduled tick; changes are recorded as manual.
    """
    logger.info(
        f"User {current_user} triggered a price reduction tick "
        f"(account={account_id}, listing={listing_id}, force={force})"
    )
    report = await service.run_tick(account_id=account_id, listing_id=listing_id, force=force, trigger="manual")
    return {"status": "success", "report": report.to_dict()}


@router.post("/trigger-sync")
async def trigger_listing_sync(
    account_id: Optional[str] = Query(None),
    current_user: str = Depends(get_current_username),
    listing_sync: EbayListingSync = Depends(get_listing_sync),
):
    """Mirror active eBay listings now, for one account or all of them"""
    logger.info(f"User {current_user} triggered listing sync (account={account_id})")
    if account_id is None:
        return {"status": "success", "accounts": await listing_sync.sync_all_accounts()}

    try:
        stats = await listing_sync.sync_account_listings(account_id)
    except (TokenError, CallError) as e:
        raise HTTPException(status_code=502, detail=f"Listing sync failed: {e.classification}")
    return {"status": "success", "accounts": {account_id: stats}}


@router.post("/pause")
async def pause_scheduler(
    current_user: str = Depends(get_current_username)
):
    """Pause all scheduled jobs"""
    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        scheduler.pause()
        logger.info(f"Scheduler paused by {current_user}")
        return {"status": "success", "message": "Scheduler paused"}
    return {"status": "warning", "message": "Scheduler not running"}


@router.post("/resume")
async def resume_scheduler(
    current_user: str = Depends(get_current_username)
):
    """Resume all scheduled jobs"""
    scheduler = get_scheduler()
    if scheduler:
        scheduler.resume()
        logger.info(f"Scheduler resumed by {current_user}")
        return {"status": "success", "message": "Scheduler resumed"}
    return {"status": "warning", "message": "Scheduler not initialized"}


@router.get("/ledger")
async def recent_ledger_entries(
    account_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    current_user: str = Depends(get_current_username),
    db: AsyncSession = Depends(get_db),
):
    """Most recent price changes and sync errors"""
    ledger = OutcomeLedger(db)
    changes = await ledger.recent_price_changes(account_id=account_id, limit=limit)
    errors = await ledger.recent_errors(account_id=account_id, limit=limit)
    return {
        "price_changes": [
            {
                "listing_id": c.listing_id,
                "account_id": c.account_id,
                "external_item_id": c.external_item_id,
                "old_price": str(c.old_price),
                "new_price": str(c.new_price),
                "reduction_type": c.reduction_type,
                "reason": c.reason,
                "tick_id": c.tick_id,
                "applied_at": c.applied_at.isoformat(),
            }
            for c in changes
        ],
        "errors": [
            {
                "account_id": e.account_id,
                "listing_id": e.listing_id,
                "operation": e.operation,
                "classification": e.error_classification,
                "code": e.error_code,
                "message": e.message,
                "retry_count": e.retry_count,
                "tick_id": e.tick_id,
                "created_at": e.created_at.isoformat(),
            }
            for e in errors
        ],
    }
