# tests/integration/test_listing_sync.py
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from pricedrop.core.enums import ConnectionStatus, ListingStatus
from pricedrop.core.exceptions import RefreshRejectedError
from pricedrop.models import Listing, SyncError
from pricedrop.services.ebay.importer import EbayListingSync
from tests.conftest import NOW
from tests.mocks.fake_marketplace import rejected


def remote_item(item_id, price, title="Fender Stratocaster 1965", sku=None, listed_at="2026-01-15T10:00:00.000Z"):
    return {"item_id": item_id, "sku": sku, "title": title, "price": Decimal(price), "listed_at": listed_at}


@pytest.fixture
def listing_sync(session_factory, token_manager, marketplace, caller):
    return EbayListingSync(session_factory, token_manager, marketplace, caller, items_per_page=2)


async def listings_by_item(session_factory, account_id="acct-1"):
    async with session_factory() as db:
        result = await db.execute(select(Listing).where(Listing.account_id == account_id))
        return {l.external_item_id: l for l in result.scalars().all()}


@pytest.mark.asyncio
async def test_first_sync_creates_disabled_listings(session_factory, make_account, listing_sync, marketplace):
    """Test new items are imported with reductions off and no floor, across pages"""
    await make_account("acct-1")
    marketplace.active_listings = [
        remote_item("256000000001", "100.00", sku="RIFF-1"),
        remote_item("256000000002", "250.00"),
        remote_item("256000000003", "75.50", listed_at=None),
    ]

    stats = await listing_sync.sync_account_listings("acct-1", now=NOW)

    assert stats == {"total": 3, "created": 3, "updated": 0, "ended": 0, "skipped_claimed": 0, "errors": 0}
    local = await listings_by_item(session_factory)
    first = local["256000000001"]
    assert first.current_price == Decimal("100.00")
    assert first.sku == "RIFF-1"
    assert first.floor_price is None
    assert first.reduction_enabled is False
    assert first.listed_at == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
    assert local["256000000003"].listed_at is None


@pytest.mark.asyncio
async def test_resync_updates_and_ends(session_factory, make_account, make_listing, listing_sync, marketplace):
    await make_account("acct-1")
    kept = await make_listing("acct-1", external_item_id="256000000001", current_price="100.00")
    gone = await make_listing("acct-1", external_item_id="256000000002")
    marketplace.active_listings = [remote_item("256000000001", "95.00", title="Fender Stratocaster 1965 Sunburst")]

    stats = await listing_sync.sync_account_listings("acct-1", now=NOW)

    assert stats["updated"] == 1
    assert stats["ended"] == 1
    local = await listings_by_item(session_factory)
    assert local["256000000001"].current_price == Decimal("95.00")
    assert local["256000000001"].title == "Fender Stratocaster 1965 Sunburst"
    assert local["256000000001"].floor_price == kept.floor_price
    assert local["256000000001"].reduction_enabled is True
    assert local["256000000002"].status == ListingStatus.ENDED.value
    assert local["256000000002"].id == gone.id


@pytest.mark.asyncio
async def test_claimed_listing_is_not_touched(session_factory, make_account, make_listing, listing_sync, marketplace):
    await make_account("acct-1")
    listing = await make_listing("acct-1", external_item_id="256000000001")
    async with session_factory() as db:
        await db.execute(
            update(Listing).where(Listing.id == listing.id)
            .values(claim_token="in-flight", claimed_at=NOW, pending_price=Decimal("90.00"))
        )
        await db.commit()
    marketplace.active_listings = [remote_item("256000000001", "90.00")]

    stats = await listing_sync.sync_account_listings("acct-1", now=NOW)

    assert stats["skipped_claimed"] == 1
    stored = (await listings_by_item(session_factory))["256000000001"]
    assert stored.current_price == Decimal("100.00")
    assert stored.claim_token == "in-flight"


@pytest.mark.asyncio
async def test_archived_item_coming_back_is_a_new_row(session_factory, make_account, make_listing, listing_sync, marketplace):
    await make_account("acct-1")
    listing = await make_listing("acct-1", external_item_id="256000000001")
    assert await listing_sync.archive(listing.id) is True
    marketplace.active_listings = [remote_item("256000000001", "100.00")]

    stats = await listing_sync.sync_account_listings("acct-1", now=NOW)

    assert stats["created"] == 1
    async with session_factory() as db:
        rows = (await db.execute(select(Listing).order_by(Listing.id))).scalars().all()
    assert [r.status for r in rows] == [ListingStatus.ARCHIVED.value, ListingStatus.ACTIVE.value]


@pytest.mark.asyncio
async def test_token_failure_is_recorded_and_raised(session_factory, make_account, listing_sync, token_manager):
    await make_account("acct-1")
    token_manager.errors["acct-1"] = rejected("acct-1")

    with pytest.raises(RefreshRejectedError):
        await listing_sync.sync_account_listings("acct-1", now=NOW)

    async with session_factory() as db:
        [error] = (await db.execute(select(SyncError))).scalars().all()
    assert error.operation == "token_exchange"
    assert error.error_classification == "refresh_rejected"


@pytest.mark.asyncio
async def test_sync_all_accounts_isolates_failures(session_factory, make_account, listing_sync, marketplace, token_manager):
    await make_account("acct-1")
    await make_account("acct-2")
    await make_account("acct-3", status=ConnectionStatus.DISCONNECTED, refresh_token=None)
    token_manager.errors["acct-1"] = rejected("acct-1")
    marketplace.active_listings = [remote_item("256000000009", "40.00")]

    summary = await listing_sync.sync_all_accounts()

    assert summary["acct-1"] == {"error": "refresh_rejected"}
    assert summary["acct-2"]["created"] == 1
    assert "acct-3" not in summary


@pytest.mark.asyncio
async def test_synced_listing_needs_configuration_before_reduction(session_factory, make_account, listing_sync, marketplace, build_scheduler):
    await make_account("acct-1")
    marketplace.active_listings = [remote_item("256000000001", "100.00")]
    await listing_sync.sync_account_listings("acct-1", now=NOW)

    report = await build_scheduler().run_tick(now=NOW + timedelta(days=1))
    assert report.results == []

    async with session_factory() as db:
        await db.execute(
            update(Listing).values(
                floor_price=Decimal("60.00"), reduction_enabled=True,
                strategy_params={"percentage": "10", "interval_days": 7},
            )
        )
        await db.commit()

    report = await build_scheduler().run_tick(now=NOW + timedelta(days=1))
    assert report.counts["updated"] == 1
