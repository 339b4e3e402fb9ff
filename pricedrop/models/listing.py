# pricedrop/models/listing.py
from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship

from pricedrop.core.enums import ListingStatus, ReductionStrategy
from pricedrop.database import Base
from pricedrop.models.types import Money, UTCDateTime, utcnow


class Listing(Base):
    """
    Local mirror of one eBay item owned by one account.

    Rows are archived, never deleted, so price history keeps its target.
    """
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(100), ForeignKey("accounts.account_id"), nullable=False, index=True)
    external_item_id = Column(String(50), nullable=False)
    sku = Column(String(100), nullable=True)
    title = Column(String(255), nullable=True)

    current_price = Column(Money, nullable=False)
    floor_price = Column(Money, nullable=True)  # unset means never eligible

    reduction_enabled = Column(Boolean, nullable=False, default=False)
    reduction_strategy = Column(String(30), nullable=False, default=ReductionStrategy.FIXED_PERCENTAGE.value)
    # e.g. {"percentage": "10", "interval_days": 7}
    strategy_params = Column(JSON, nullable=False, default=dict)

    status = Column(String(20), nullable=False, default=ListingStatus.ACTIVE.value, index=True)
    listed_at = Column(UTCDateTime, nullable=True)
    next_reduction_at = Column(UTCDateTime, nullable=True, index=True)
    last_reduction_at = Column(UTCDateTime, nullable=True)
    last_synced_at = Column(UTCDateTime, nullable=True)
    archived_at = Column(UTCDateTime, nullable=True)

    # Claim held by a tick between computing a price and recording the outcome
    claim_token = Column(String(64), nullable=True, index=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    pending_price = Column(Money, nullable=True)
    pending_reason = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="listings")
    price_history = relationship("PriceHistory", back_populates="listing")

    __table_args__ = (
        # One live row per eBay item per account; archived rows may repeat
        Index(
            "uq_listings_account_item_live",
            "account_id", "external_item_id",
            unique=True,
            postgresql_where=text("status <> 'archived'"),
            sqlite_where=text("status <> 'archived'"),
        ),
        Index("ix_listings_eligibility", "status", "reduction_enabled", "next_reduction_at"),
    )

    def __repr__(self):
        return (f"<Listing(id={self.id}, account='{self.account_id}', item='{self.external_item_id}', "
                f"price={self.current_price}, floor={self.floor_price}, status='{self.status}')>")
