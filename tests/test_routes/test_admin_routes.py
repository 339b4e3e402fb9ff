# tests/test_routes/test_admin_routes.py
from decimal import Decimal

import httpx
import pytest

from pricedrop.dependencies import (
    get_credential_store,
    get_db,
    get_listing_sync,
    get_price_reduction_service,
)
from pricedrop.main import app
from pricedrop.services.ebay.importer import EbayListingSync
from pricedrop.services.ebay.token_manager import CredentialStore
from tests.mocks.fake_marketplace import rejected

AUTH = ("admin", "test-password")


@pytest.fixture
async def client(session_factory, cipher, build_scheduler, token_manager, marketplace, caller):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_credential_store] = lambda: CredentialStore(session_factory, cipher)
    app.dependency_overrides[get_price_reduction_service] = lambda: build_scheduler()
    app.dependency_overrides[get_listing_sync] = lambda: EbayListingSync(
        session_factory, token_manager, marketplace, caller
    )

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


"""
1. Auth
"""

@pytest.mark.asyncio
async def test_endpoints_require_basic_auth(client):
    response = await client.get("/api/accounts")
    assert response.status_code == 401

    response = await client.get("/api/accounts", auth=("admin", "wrong"))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_health_is_open(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


"""
2. Accounts
"""

@pytest.mark.asyncio
async def test_connect_status_disconnect(client):
    response = await client.post(
        "/api/accounts/acct-1/connect", json={"refresh_token": "v^1.1#refresh", "ebay_user_id": "seller_1"}, auth=AUTH
    )
    assert response.status_code == 200
    assert response.json()["status"] == "connected"
    assert "v^1.1#refresh" not in response.text

    response = await client.get("/api/accounts/acct-1/connection", auth=AUTH)
    body = response.json()
    assert body["status"] == "connected"
    assert body["has_credential"] is True
    assert body["last_error"] is None

    response = await client.post("/api/accounts/acct-1/disconnect", auth=AUTH)
    assert response.status_code == 200

    response = await client.get("/api/accounts", auth=AUTH)
    assert response.json()["accounts"][0]["status"] == "disconnected"


@pytest.mark.asyncio
async def test_connect_rejects_empty_token(client):
    response = await client.post("/api/accounts/acct-1/connect", json={"refresh_token": ""}, auth=AUTH)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_disconnect_unknown_account(client):
    response = await client.post("/api/accounts/nobody/disconnect", auth=AUTH)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_connection_shows_last_account_error(client, make_account, make_listing, token_manager):
    await make_account("acct-1")
    await make_listing("acct-1")
    token_manager.errors["acct-1"] = rejected("acct-1")

    await client.post("/api/scheduler/trigger-tick", auth=AUTH)
    response = await client.get("/api/accounts/acct-1/connection", auth=AUTH)

    assert response.json()["last_error"]["classification"] == "refresh_rejected"


"""
3. Ticks, ledger and listings
"""

@pytest.mark.asyncio
async def test_trigger_tick_returns_report(client, make_account, make_listing):
    await make_account("acct-1")
    listing = await make_listing("acct-1")

    response = await client.post("/api/scheduler/trigger-tick", auth=AUTH)

    assert response.status_code == 200
    report = response.json()["report"]
    assert report["trigger"] == "manual"
    assert report["counts"]["updated"] == 1
    assert report["results"][0]["listing_id"] == listing.id
    assert report["results"][0]["new_price"] == "90.00"

    response = await client.get(f"/api/listings/{listing.id}/price-history", auth=AUTH)
    [entry] = response.json()["history"]
    assert entry["old_price"] == "100.00"
    assert entry["new_price"] == "90.00"
    assert entry["reduction_type"] == "manual"

    response = await client.get("/api/scheduler/ledger", auth=AUTH)
    assert len(response.json()["price_changes"]) == 1


@pytest.mark.asyncio
async def test_trigger_sync_failure_is_bad_gateway(client, make_account, token_manager):
    await make_account("acct-1")
    token_manager.errors["acct-1"] = rejected("acct-1")

    response = await client.post("/api/scheduler/trigger-sync", params={"account_id": "acct-1"}, auth=AUTH)

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_trigger_sync_for_account(client, make_account, marketplace):
    await make_account("acct-1")
    marketplace.active_listings = [
        {"item_id": "256000000001", "sku": None, "title": "Boss DS-1", "price": Decimal("39.99"), "listed_at": None}
    ]

    response = await client.post("/api/scheduler/trigger-sync", params={"account_id": "acct-1"}, auth=AUTH)

    assert response.status_code == 200
    assert response.json()["accounts"]["acct-1"]["created"] == 1


@pytest.mark.asyncio
async def test_archive_listing(client, make_account, make_listing):
    await make_account("acct-1")
    listing = await make_listing("acct-1")

    first = await client.post(f"/api/listings/{listing.id}/archive", auth=AUTH)
    second = await client.post(f"/api/listings/{listing.id}/archive", auth=AUTH)

    assert first.status_code == 200
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_scheduler_status_when_not_started(client):
    response = await client.get("/api/scheduler/status", auth=AUTH)
    assert response.json()["status"] == "not_initialized"
