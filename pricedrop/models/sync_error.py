# pricedrop/models/sync_error.py
from sqlalchemy import Column, Integer, String, Text

from pricedrop.database import Base
from pricedrop.models.types import UTCDateTime, utcnow


class SyncError(Base):
    """
    One row per failed or retried operation.

    Insert-only. Operators read it; nothing retries from it.
    """
    __tablename__ = "sync_errors"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(100), nullable=False, index=True)
    listing_id = Column(Integer, nullable=True, index=True)  # null for account-level failures

    operation = Column(String(30), nullable=False, index=True)
    error_classification = Column(String(60), nullable=False, index=True)
    error_code = Column(String(30), nullable=True)
    message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    tick_id = Column(String(64), nullable=True, index=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return (f"<SyncError(account='{self.account_id}', listing_id={self.listing_id}, "
                f"op='{self.operation}', class='{self.error_classification}')>")
