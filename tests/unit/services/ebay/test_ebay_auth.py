# tests/unit/services/ebay/test_ebay_auth.py
from urllib.parse import parse_qs

import httpx
import pytest

from pricedrop.core.crypto import CredentialCipher
from pricedrop.core.enums import ConnectionStatus
from pricedrop.core.exceptions import (
    DecryptionFailedError,
    NotConnectedError,
    RefreshRejectedError,
    TokenExchangeError,
    TokenTransientError,
)
from pricedrop.models import Account
from pricedrop.services.ebay.auth import TokenLifecycleManager
from tests.conftest import OTHER_KEY


def token_endpoint(status=200, body=None, seen=None):
    """MockTransport handler answering every token request the same way"""
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body if body is not None else {})
    return handler


def manager_for(session_factory, cipher, settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenLifecycleManager(session_factory, cipher, settings=settings, http_client=client)


"""
1. Successful exchange
"""

@pytest.mark.asyncio
async def test_exchange_returns_access_credential(session_factory, cipher, test_settings, make_account):
    """Test the refresh credential is posted with basic auth and the access token comes back"""
    await make_account("acct-1", refresh_token="refresh-secret")
    seen = []
    manager = manager_for(
        session_factory, cipher, test_settings,
        token_endpoint(200, {"access_token": "v^1.1#access", "expires_in": 7200}, seen),
    )

    credential = await manager.get_access_credential("acct-1")

    assert credential.account_id == "acct-1"
    assert credential.token == "v^1.1#access"
    assert "v^1.1#access" not in repr(credential)

    request = seen[0]
    form = parse_qs(request.content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["refresh-secret"]
    assert request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_exchange_without_access_token_is_malformed(session_factory, cipher, test_settings, make_account):
    await make_account("acct-1")
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint(200, {"token_type": "User"}))

    with pytest.raises(TokenExchangeError) as exc_info:
        await manager.get_access_credential("acct-1")

    assert exc_info.value.code == "malformed_response"


"""
2. Account state errors
"""

@pytest.mark.asyncio
async def test_unknown_account_is_not_connected(session_factory, cipher, test_settings):
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint())

    with pytest.raises(NotConnectedError):
        await manager.get_access_credential("nobody")


@pytest.mark.asyncio
async def test_disconnected_account_is_not_connected(session_factory, cipher, test_settings, make_account):
    await make_account("acct-1", status=ConnectionStatus.DISCONNECTED, refresh_token=None)
    seen = []
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint(seen=seen))

    with pytest.raises(NotConnectedError):
        await manager.get_access_credential("acct-1")
    assert seen == []


@pytest.mark.asyncio
async def test_key_rotation_raises_decryption_failed(session_factory, test_settings, make_account):
    """Test a credential sealed under another key is never sent to eBay"""
    await make_account("acct-1")
    seen = []
    manager = manager_for(session_factory, CredentialCipher(OTHER_KEY), test_settings, token_endpoint(seen=seen))

    with pytest.raises(DecryptionFailedError):
        await manager.get_access_credential("acct-1")

    assert seen == []
    async with session_factory() as session:
        account = await session.get(Account, "acct-1")
        assert account.connection_status == ConnectionStatus.CONNECTED.value


"""
3. Rejections
"""

@pytest.mark.asyncio
async def test_invalid_grant_marks_account_invalid(session_factory, cipher, test_settings, make_account):
    await make_account("acct-1")
    manager = manager_for(
        session_factory, cipher, test_settings,
        token_endpoint(400, {"error": "invalid_grant", "error_description": "the provided authorization grant is invalid"}),
    )

    with pytest.raises(RefreshRejectedError):
        await manager.get_access_credential("acct-1")

    async with session_factory() as session:
        account = await session.get(Account, "acct-1")
        assert account.connection_status == ConnectionStatus.INVALID.value
        assert account.refresh_token_encrypted is None
        assert account.version == 2

    # a second attempt does not reach eBay at all
    with pytest.raises(NotConnectedError):
        await manager.get_access_credential("acct-1")


@pytest.mark.asyncio
async def test_other_client_error_is_exchange_error(session_factory, cipher, test_settings, make_account):
    await make_account("acct-1")
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint(401, {"error": "invalid_client"}))

    with pytest.raises(TokenExchangeError) as exc_info:
        await manager.get_access_credential("acct-1")

    assert exc_info.value.code == "invalid_client"
    async with session_factory() as session:
        account = await session.get(Account, "acct-1")
        assert account.connection_status == ConnectionStatus.CONNECTED.value


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_throttling_and_server_errors_are_transient(session_factory, cipher, test_settings, make_account, status):
    await make_account("acct-1")
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint(status, "<html>unavailable</html>"))

    with pytest.raises(TokenTransientError):
        await manager.get_access_credential("acct-1")


@pytest.mark.asyncio
async def test_network_error_is_transient(session_factory, cipher, test_settings, make_account):
    await make_account("acct-1")

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    manager = manager_for(session_factory, cipher, test_settings, handler)

    with pytest.raises(TokenTransientError) as exc_info:
        await manager.get_access_credential("acct-1")

    assert exc_info.value.code == "network"
    assert "refresh-secret" not in exc_info.value.message


"""
4. Credential store
"""

@pytest.mark.asyncio
async def test_connect_then_disconnect(session_factory, cipher, test_settings):
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint())
    store = manager.store

    info = await store.connect("acct-9", "new-refresh", ebay_user_id="seller_9")
    assert info.status == ConnectionStatus.CONNECTED
    assert await store.get_refresh_credential("acct-9") == "new-refresh"

    async with session_factory() as session:
        account = await session.get(Account, "acct-9")
        assert account.refresh_token_encrypted.startswith("ENC:v1:")
        assert "new-refresh" not in account.refresh_token_encrypted

    assert await store.disconnect("acct-9") is True
    status = await store.connection_status("acct-9")
    assert status.status == ConnectionStatus.DISCONNECTED
    assert status.has_credential is False
    assert await store.disconnect("unknown") is False


@pytest.mark.asyncio
async def test_reconnect_after_invalid(session_factory, cipher, test_settings, make_account):
    await make_account("acct-1", status=ConnectionStatus.INVALID, refresh_token=None)
    manager = manager_for(session_factory, cipher, test_settings, token_endpoint())

    await manager.store.connect("acct-1", "fresh-refresh")

    assert await manager.store.get_refresh_credential("acct-1") == "fresh-refresh"
    accounts = await manager.store.list_accounts()
    assert [(a.account_id, a.status) for a in accounts] == [("acct-1", ConnectionStatus.CONNECTED)]
