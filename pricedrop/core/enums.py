"""
Shared enums and constants used across the application.
"""

from enum import Enum


class ConnectionStatus(str, Enum):
    """Seller account connection state, stored on the accounts row"""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    INVALID = "invalid"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    ARCHIVED = "archived"


class ReductionStrategy(str, Enum):
    FIXED_PERCENTAGE = "fixed_percentage"
    FIXED_AMOUNT = "fixed_amount"
    TIME_BASED = "time_based"
    MARKET_BASED = "market_based"


class ReductionType(str, Enum):
    """Who asked for the price change"""
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RECONCILED = "reconciled"


class ListingOutcome(str, Enum):
    """Per-listing result of one tick"""
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    DEFERRED = "deferred"  # soft deadline hit, still eligible next tick


class OperationKind(str, Enum):
    """Operation recorded against a sync error row"""
    TOKEN_EXCHANGE = "token_exchange"
    PRICE_UPDATE = "price_update"
    MARKET_DATA = "market_data"
    RECONCILE = "reconcile"
    LISTING_SYNC = "listing_sync"
    PRICING = "pricing"
