"""
Refresh credential storage for seller accounts.

The refresh credential is only ever held encrypted in the accounts table.
Access credentials are never stored: each tick asks the token lifecycle
manager for a fresh one and passes it down explicitly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricedrop.core.crypto import CredentialCipher
from pricedrop.core.enums import ConnectionStatus
from pricedrop.core.exceptions import DecryptionFailedError, NotConnectedError
from pricedrop.models.account import Account
from pricedrop.models.types import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessCredential:
    """Short-lived bearer credential, scoped to one account and one unit of work."""
    account_id: str
    token: str = field(repr=False)
    expires_at: Optional[datetime] = None

    def __repr__(self):
        return f"AccessCredential(account_id='{self.account_id}', expires_at={self.expires_at})"


@dataclass(frozen=True)
class ConnectionInfo:
    account_id: str
    status: ConnectionStatus
    connected_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    ebay_user_id: Optional[str] = None
    has_credential: bool = False


class CredentialStore:
    """Reads and writes the encrypted refresh credential of each account."""

    def __init__(self, session_factory: Callable[[], AsyncSession], cipher: CredentialCipher):
        self.session_factory = session_factory
        self.cipher = cipher

    async def get_refresh_credential(self, account_id: str) -> str:
        """
        Return the decrypted refresh credential of a connected account.

        Raises NotConnectedError when there is nothing usable stored and
        DecryptionFailedError when the stored value cannot be opened.
        """
        async with self.session_factory() as session:
            account = await session.get(Account, account_id)

        if account is None:
            raise NotConnectedError(f"Account {account_id} is not known")
        if account.connection_status != ConnectionStatus.CONNECTED.value or not account.refresh_token_encrypted:
            raise NotConnectedError(
                f"Account {account_id} is {account.connection_status}, reconnect required"
            )

        try:
            return self.cipher.decrypt(account.refresh_token_encrypted)
        except DecryptionFailedError:
            logger.error(f"Stored refresh credential for account {account_id} cannot be decrypted")
            raise

    async def connect(self, account_id: str, refresh_token: str, ebay_user_id: Optional[str] = None) -> ConnectionInfo:
        """Store a new refresh credential and mark the account connected."""
        if not refresh_token:
            raise ValueError("refresh_token must not be empty")

        sealed = self.cipher.encrypt(refresh_token)
        now = utcnow()

        async with self.session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                account = Account(account_id=account_id, version=1)
                session.add(account)
            else:
                account.version = (account.version or 0) + 1

            account.refresh_token_encrypted = sealed
            account.connection_status = ConnectionStatus.CONNECTED.value
            account.connected_at = now
            account.status_changed_at = now
            if ebay_user_id:
                account.ebay_user_id = ebay_user_id
            await session.commit()

        logger.info(f"Account {account_id} connected")
        return ConnectionInfo(
            account_id=account_id,
            status=ConnectionStatus.CONNECTED,
            connected_at=now,
            status_changed_at=now,
            ebay_user_id=ebay_user_id,
            has_credential=True,
        )

    async def disconnect(self, account_id: str) -> bool:
        """Drop the stored credential. Returns False when the account is unknown."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Account)
                .where(Account.account_id == account_id)
                .values(
                    refresh_token_encrypted=None,
                    connection_status=ConnectionStatus.DISCONNECTED.value,
                    status_changed_at=utcnow(),
                    version=Account.version + 1,
                )
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Account {account_id} disconnected")
        return bool(result.rowcount)

    async def mark_invalid(self, account_id: str) -> bool:
        """
        Mark a connected account invalid after eBay rejected its refresh credential.

        Conditional on the account still being connected, so a reconnect that
        landed in the meantime is not overwritten.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Account)
                .where(
                    Account.account_id == account_id,
                    Account.connection_status == ConnectionStatus.CONNECTED.value,
                )
                .values(
                    refresh_token_encrypted=None,
                    connection_status=ConnectionStatus.INVALID.value,
                    status_changed_at=utcnow(),
                    version=Account.version + 1,
                )
            )
            await session.commit()

        if result.rowcount:
            logger.warning(f"Account {account_id} marked invalid, reconnect required")
        return bool(result.rowcount)

    async def connection_status(self, account_id: str) -> ConnectionInfo:
        async with self.session_factory() as session:
            account = await session.get(Account, account_id)

        if account is None:
            return ConnectionInfo(account_id=account_id, status=ConnectionStatus.DISCONNECTED)
        return _connection_info(account)

    async def list_accounts(self):
        async with self.session_factory() as session:
            result = await session.execute(select(Account).order_by(Account.account_id))
            return [_connection_info(a) for a in result.scalars().all()]


def _connection_info(account: Account) -> ConnectionInfo:
    return ConnectionInfo(
        account_id=account.account_id,
        status=ConnectionStatus(account.connection_status),
        connected_at=account.connected_at,
        status_changed_at=account.status_changed_at,
        ebay_user_id=account.ebay_user_id,
        has_credential=bool(account.refresh_token_encrypted),
    )
