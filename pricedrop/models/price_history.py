# pricedrop/models/price_history.py
from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from pricedrop.database import Base
from pricedrop.models.types import Money, UTCDateTime, utcnow


class PriceHistory(Base):
    """
    Append-only record of every applied price change.

    change_key is the claim token of the change, so one logical reduction can
    only ever produce one row no matter how many times it was submitted.
    """
    __tablename__ = "price_history"

    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    account_id = Column(String(100), nullable=False, index=True)
    external_item_id = Column(String(50), nullable=False, index=True)

    old_price = Column(Money, nullable=False)
    new_price = Column(Money, nullable=False)
    reduction_amount = Column(Money, nullable=False)

    strategy = Column(String(30), nullable=True)
    reason = Column(String(255), nullable=True)
    reduction_type = Column(String(20), nullable=False)  # scheduled, manual, reconciled
    tick_id = Column(String(64), nullable=True, index=True)
    change_key = Column(String(64), nullable=False)

    applied_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

    listing = relationship("Listing", back_populates="price_history")

    __table_args__ = (
        UniqueConstraint("listing_id", "change_key", name="uq_price_history_change"),
    )

    def __repr__(self):
        return (f"<PriceHistory(listing_id={self.listing_id}, {self.old_price} -> {self.new_price}, "
                f"type='{self.reduction_type}')>")
