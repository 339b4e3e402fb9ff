# pricedrop/models/account.py
from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import relationship

from pricedrop.core.enums import ConnectionStatus
from pricedrop.database import Base
from pricedrop.models.types import UTCDateTime, utcnow


class Account(Base):
    """
    One seller account and its eBay connection.

    Only the long-lived refresh credential is stored, and only encrypted.
    Access credentials never touch this table.
    """
    __tablename__ = "accounts"

    # Opaque id issued by the identity provider
    account_id = Column(String(100), primary_key=True)

    refresh_token_encrypted = Column(Text, nullable=True)
    connection_status = Column(
        String(20), nullable=False, default=ConnectionStatus.DISCONNECTED.value, index=True
    )
    connected_at = Column(UTCDateTime, nullable=True)
    status_changed_at = Column(UTCDateTime, nullable=True)
    ebay_user_id = Column(String(100), nullable=True)

    # Optimistic concurrency; every conditional update bumps it
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    listings = relationship("Listing", back_populates="account")

    def __repr__(self):
        return f"<Account(account_id='{self.account_id}', status='{self.connection_status}')>"
