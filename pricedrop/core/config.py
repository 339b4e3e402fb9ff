# pricedrop/core/config.py

import os
from functools import lru_cache
from typing import List, Tuple

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


def _parse_tiers(value):
    """Parse "0:5,14:10,30:15" into [(0, "5"), (14, "10"), (30, "15")]."""
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        tiers: List[Tuple[int, str]] = []
        for chunk in value.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            age, _, pct = chunk.partition(":")
            tiers.append((int(age.strip()), pct.strip()))
        return tiers
    return [(int(age), str(pct)) for age, pct in value]


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Credential encryption (64 hex chars = 32 byte AES key)
    ENCRYPTION_KEY: str = ""

    # eBay application credentials (shared by every seller account)
    EBAY_CLIENT_ID: str = ""
    EBAY_CLIENT_SECRET: str = ""
    EBAY_SANDBOX_MODE: bool = False
    EBAY_SITE_ID: str = "3"
    EBAY_COMPATIBILITY_LEVEL: str = "1155"
    EBAY_MARKETPLACE_ID: str = "EBAY_GB"
    EBAY_CURRENCY: str = "GBP"
    EBAY_SCOPES: str = (
        "https://api.ebay.com/oauth/api_scope "
        "https://api.ebay.com/oauth/api_scope/sell.inventory"
    )

    # Outbound call layer
    HTTP_TIMEOUT_SECONDS: float = 30.0
    RATE_LIMIT_MAX_CONCURRENCY: int = 8
    RATE_LIMIT_ACCOUNT_MIN_INTERVAL_SECONDS: float = 1.0
    RETRY_MAX_RETRIES: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 1.0
    RETRY_BACKOFF_MAX_SECONDS: float = 30.0
    RETRY_JITTER_SECONDS: float = 0.25

    # Scheduler
    SCHEDULER_ENABLED: bool = False
    PRICE_REDUCTION_SCHEDULE: str = "10 1 * * *"  # 1:10 AM
    PRICE_REDUCTION_TIMEZONE: str = "America/Chicago"
    LISTING_SYNC_SCHEDULE: str = "0 */6 * * *"
    TICK_SOFT_DEADLINE_SECONDS: float = 600.0
    TICK_ACCOUNT_CONCURRENCY: int = 4
    FAILURE_COOLDOWN_HOURS: int = 24
    CLAIM_TIMEOUT_MINUTES: int = 30
    SYNC_ERROR_RETENTION_DAYS: int = 30

    # Strategy defaults
    DEFAULT_REDUCTION_PERCENTAGE: str = "5"
    DEFAULT_REDUCTION_INTERVAL_DAYS: int = 7
    TIME_BASED_TIERS: str = "0:5,14:10,30:15,60:20"  # listing age in days : percent
    MARKET_TARGET_PERCENTILE: str = "25"
    MARKET_MOVE_FRACTION: str = "0.5"
    MARKET_MAX_STEP_PERCENT: str = "10"
    MARKET_MIN_COMPARABLES: int = 3

    # Admin surface
    BASIC_AUTH_USERNAME: str = "admin"
    BASIC_AUTH_PASSWORD: str = ""

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def time_based_tiers(self) -> List[Tuple[int, str]]:
        return _parse_tiers(self.TIME_BASED_TIERS)

    @property
    def token_url(self) -> str:
        if self.EBAY_SANDBOX_MODE:
            return "https://api.sandbox.ebay.com/identity/v1/oauth2/token"
        return "https://api.ebay.com/identity/v1/oauth2/token"

    @property
    def trading_url(self) -> str:
        if self.EBAY_SANDBOX_MODE:
            return "https://api.sandbox.ebay.com/ws/api.dll"
        return "https://api.ebay.com/ws/api.dll"

    @property
    def browse_url(self) -> str:
        if self.EBAY_SANDBOX_MODE:
            return "https://api.sandbox.ebay.com/buy/browse/v1"
        return "https://api.ebay.com/buy/browse/v1"


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()


def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
