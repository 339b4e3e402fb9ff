from .account import Account
from .listing import Listing
from .price_history import PriceHistory
from .sync_error import SyncError

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'Account',
    'Listing',
    'PriceHistory',
    'SyncError',
]
