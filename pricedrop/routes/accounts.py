"""
Account connection and listing lifecycle endpoints
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.security import get_current_username
from pricedrop.dependencies import get_credential_store, get_db, get_listing_sync
from pricedrop.services.ebay.importer import EbayListingSync
from pricedrop.services.ebay.token_manager import ConnectionInfo, CredentialStore
from pricedrop.services.outcome_ledger import OutcomeLedger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["accounts"])


class ConnectRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)
    ebay_user_id: Optional[str] = None


def _info_dict(info: ConnectionInfo) -> dict:
    return {
        "account_id": info.account_id,
        "status": info.status.value,
        "connected_at": info.connected_at.isoformat() if info.connected_at else None,
        "status_changed_at": info.status_changed_at.isoformat() if info.status_changed_at else None,
        "ebay_user_id": info.ebay_user_id,
        "has_credential": info.has_credential,
    }


@router.get("/accounts")
async def list_accounts(
    current_user: str = Depends(get_current_username),
    store: CredentialStore = Depends(get_credential_store),
):
    return {"accounts": [_info_dict(info) for info in await store.list_accounts()]}


@router.get("/accounts/{account_id}/connection")
async def connection_status(
    account_id: str,
    current_user: str = Depends(get_current_username),
    store: CredentialStore = Depends(get_credential_store),
    db: AsyncSession = Depends(get_db),
):
    """Connection status plus the last account-level failure from the ledger"""
    info = await store.connection_status(account_id)
    last_error = await OutcomeLedger(db).last_account_error(account_id)

    result = _info_dict(info)
    result["last_error"] = None
    if last_error is not None:
        result["last_error"] = {
            "operation": last_error.operation,
            "classification": last_error.error_classification,
            "created_at": last_error.created_at.isoformat(),
        }
    return result


@router.post("/accounts/{account_id}/connect")
async def connect_account(
    account_id: str,
    payload: ConnectRequest,
    current_user: str = Depends(get_current_username),
    store: CredentialStore = Depends(get_credential_store),
):
    """Store a refresh credential obtained from the eBay consent flow"""
    info = await store.connect(account_id, payload.refresh_token, payload.ebay_user_id)
    logger.info(f"User {current_user} connected account {account_id}")
    return _info_dict(info)


@router.post("/accounts/{account_id}/disconnect")
async def disconnect_account(
    account_id: str,
    current_user: str = Depends(get_current_username),
    store: CredentialStore = Depends(get_credential_store),
):
    if not await store.disconnect(account_id):
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    logger.info(f"User {current_user} disconnected account {account_id}")
    return {"status": "success", "account_id": account_id}


@router.post("/listings/{listing_id}/archive")
async def archive_listing(
    listing_id: int,
    current_user: str = Depends(get_current_username),
    listing_sync: EbayListingSync = Depends(get_listing_sync),
):
    if not await listing_sync.archive(listing_id):
        raise HTTPException(status_code=409, detail=f"Listing {listing_id} not found, claimed or already archived")
    return {"status": "success", "listing_id": listing_id}


@router.get("/listings/{listing_id}/price-history")
async def price_history(
    listing_id: int,
    current_user: str = Depends(get_current_username),
    db: AsyncSession = Depends(get_db),
):
    entries = await OutcomeLedger(db).history_for_listing(listing_id)
    return {
        "listing_id": listing_id,
        "history": [
            {
                "old_price": str(e.old_price),
                "new_price": str(e.new_price),
                "reduction_amount": str(e.reduction_amount),
                "reduction_type": e.reduction_type,
                "strategy": e.strategy,
                "reason": e.reason,
                "applied_at": e.applied_at.isoformat(),
            }
            for e in entries
        ],
    }
