from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.crypto import get_cipher
from pricedrop.database import async_session
from pricedrop.services.ebay.importer import EbayListingSync, build_listing_sync
from pricedrop.services.ebay.token_manager import CredentialStore
from pricedrop.services.price_reduction_service import (
    PriceReductionScheduler,
    build_price_reduction_scheduler,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def get_credential_store() -> CredentialStore:
    return CredentialStore(async_session, get_cipher())


def get_price_reduction_service() -> PriceReductionScheduler:
    return build_price_reduction_scheduler(async_session)


def get_listing_sync() -> EbayListingSync:
    return build_listing_sync(async_session)
