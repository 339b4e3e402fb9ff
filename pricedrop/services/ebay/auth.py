"""
eBay token lifecycle: exchange a stored refresh credential for an access credential.

Nothing is cached between calls. Each unit of work asks for a credential and
hands it down explicitly; no token ever lives in process-wide state, in files
or in the logs.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.config import Settings, get_settings
from pricedrop.core.crypto import CredentialCipher
from pricedrop.core.exceptions import (
    RefreshRejectedError,
    TokenExchangeError,
    TokenTransientError,
)
from pricedrop.models.types import utcnow
from .token_manager import AccessCredential, CredentialStore

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """
    Turns an account id into a usable AccessCredential.

    Errors:
        NotConnectedError      - nothing usable stored for the account
        DecryptionFailedError  - stored value cannot be opened with the current key
        RefreshRejectedError   - eBay says the refresh credential is no longer valid;
                                 the account is marked invalid
        TokenExchangeError     - any other rejection of the exchange request
        TokenTransientError    - network failure, throttling or 5xx; retry later
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        cipher: CredentialCipher,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.store = CredentialStore(session_factory, cipher)
        self.http_client = http_client
        self.token_url = self.settings.token_url

        if not self.settings.EBAY_CLIENT_ID or not self.settings.EBAY_CLIENT_SECRET:
            logger.warning("EBAY_CLIENT_ID / EBAY_CLIENT_SECRET are not configured")

    async def _post(self, data: dict) -> httpx.Response:
        auth = httpx.BasicAuth(self.settings.EBAY_CLIENT_ID, self.settings.EBAY_CLIENT_SECRET)
        if self.http_client is not None:
            return await self.http_client.post(self.token_url, data=data, auth=auth)
        async with httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
            return await client.post(self.token_url, data=data, auth=auth)

    async def get_access_credential(self, account_id: str) -> AccessCredential:
        """Exchange the account's refresh credential for a new access credential."""
        refresh_token = await self.store.get_refresh_credential(account_id)

        refresh_data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": self.settings.EBAY_SCOPES,
        }

        try:
            response = await self._post(refresh_data)
        except httpx.TimeoutException as e:
            logger.warning(f"Token exchange timed out for account {account_id}")
            raise TokenTransientError(f"Token endpoint timed out: {type(e).__name__}", code="timeout")
        except httpx.RequestError as e:
            logger.warning(f"Network error during token exchange for account {account_id}: {type(e).__name__}")
            raise TokenTransientError(f"Network error reaching token endpoint: {type(e).__name__}", code="network")

        if response.status_code == 200:
            token_data = response.json()
            access_token = token_data.get("access_token")
            if not access_token:
                raise TokenExchangeError("Token endpoint returned no access_token", code="malformed_response")
            expires_in = int(token_data.get("expires_in", 7200))
            logger.info(f"Obtained access credential for account {account_id} (expires in {expires_in}s)")
            return AccessCredential(
                account_id=account_id,
                token=access_token,
                expires_at=utcnow() + timedelta(seconds=expires_in),
            )

        status = response.status_code
        error_code = self._error_code(response)

        if status == 429 or status >= 500:
            logger.warning(f"Token endpoint returned {status} for account {account_id}")
            raise TokenTransientError(f"Token endpoint returned {status}", code=str(status))

        if error_code == "invalid_grant":
            logger.error(f"Refresh credential for account {account_id} was rejected (invalid_grant)")
            await self.store.mark_invalid(account_id)
            raise RefreshRejectedError(
                f"Refresh credential for account {account_id} was rejected, reconnect required",
                code=error_code,
            )

        logger.error(f"Token exchange failed for account {account_id}: {status} {error_code}")
        raise TokenExchangeError(f"Token exchange failed with {status}", code=error_code or str(status))

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get("error")
        return None
