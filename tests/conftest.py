# tests/conftest.py
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Must be set before pricedrop.database is imported (it builds the engine at import time)
_TEST_DB_DIR = tempfile.mkdtemp(prefix="pricedrop-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/app.db")
os.environ.setdefault("ENCRYPTION_KEY", "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")
os.environ.setdefault("BASIC_AUTH_USERNAME", "admin")
os.environ.setdefault("BASIC_AUTH_PASSWORD", "test-password")
os.environ.setdefault("EBAY_CLIENT_ID", "test-client-id")
os.environ.setdefault("EBAY_CLIENT_SECRET", "test-client-secret")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricedrop.core.config import Settings
from pricedrop.core.crypto import CredentialCipher
from pricedrop.core.enums import ConnectionStatus, ListingStatus, ReductionStrategy
from pricedrop.database import Base
from pricedrop.models import Account, Listing
from pricedrop.services.rate_limit import RateLimitedCaller, RetryPolicy

TEST_KEY = os.environ["ENCRYPTION_KEY"]
OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"

NOW = datetime(2026, 3, 2, 7, 10, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def test_settings():
    """Settings tuned for fast tests: no backoff waits, no call spacing"""
    return Settings(
        DATABASE_URL=os.environ["DATABASE_URL"],
        ENCRYPTION_KEY=TEST_KEY,
        EBAY_CLIENT_ID="test-client-id",
        EBAY_CLIENT_SECRET="test-client-secret",
        RATE_LIMIT_MAX_CONCURRENCY=8,
        RATE_LIMIT_ACCOUNT_MIN_INTERVAL_SECONDS=0.0,
        RETRY_MAX_RETRIES=2,
        RETRY_BACKOFF_BASE_SECONDS=0.0,
        RETRY_BACKOFF_MAX_SECONDS=0.0,
        RETRY_JITTER_SECONDS=0.0,
        TICK_SOFT_DEADLINE_SECONDS=600.0,
        TICK_ACCOUNT_CONCURRENCY=4,
        FAILURE_COOLDOWN_HOURS=24,
        CLAIM_TIMEOUT_MINUTES=30,
        SYNC_ERROR_RETENTION_DAYS=30,
        DEFAULT_REDUCTION_PERCENTAGE="5",
        DEFAULT_REDUCTION_INTERVAL_DAYS=7,
    )


@pytest.fixture
async def test_engine(tmp_path):
    """Fresh SQLite database per test function"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cipher():
    return CredentialCipher(TEST_KEY)


@pytest.fixture
def caller(test_settings):
    return RateLimitedCaller(
        retry_policy=RetryPolicy.from_settings(test_settings),
        max_concurrency=test_settings.RATE_LIMIT_MAX_CONCURRENCY,
        account_min_interval=test_settings.RATE_LIMIT_ACCOUNT_MIN_INTERVAL_SECONDS,
        call_timeout=5.0,
    )


@pytest.fixture
def make_account(session_factory, cipher):
    """Create an account row; connected accounts get an encrypted refresh credential"""
    async def _make(account_id="acct-1", status=ConnectionStatus.CONNECTED, refresh_token="refresh-secret"):
        async with session_factory() as session:
            account = Account(
                account_id=account_id,
                connection_status=status.value,
                refresh_token_encrypted=cipher.encrypt(refresh_token) if refresh_token else None,
                connected_at=NOW - timedelta(days=30),
                version=1,
            )
            session.add(account)
            await session.commit()
            return account

    return _make


@pytest.fixture
def make_listing(session_factory):
    """Create a listing that is eligible at NOW unless told otherwise"""
    counter = {"n": 0}

    async def _make(
        account_id="acct-1",
        current_price="100.00",
        floor_price="50.00",
        strategy=ReductionStrategy.FIXED_PERCENTAGE,
        params=None,
        next_reduction_at=NOW,
        reduction_enabled=True,
        status=ListingStatus.ACTIVE,
        external_item_id=None,
        title="Fender Stratocaster 1965",
        listed_at=None,
    ):
        counter["n"] += 1
        async with session_factory() as session:
            listing = Listing(
                account_id=account_id,
                external_item_id=external_item_id or f"{account_id}-item-{counter['n']}",
                title=title,
                current_price=Decimal(current_price),
                floor_price=Decimal(floor_price) if floor_price is not None else None,
                reduction_enabled=reduction_enabled,
                reduction_strategy=strategy.value,
                strategy_params=params if params is not None else {"percentage": "10", "interval_days": 7},
                status=status.value,
                next_reduction_at=next_reduction_at,
                listed_at=listed_at or NOW - timedelta(days=10),
                version=1,
            )
            session.add(listing)
            await session.commit()
            return listing

    return _make


@pytest.fixture
def marketplace():
    from tests.mocks.fake_marketplace import FakeMarketplace
    return FakeMarketplace()


@pytest.fixture
def token_manager():
    from tests.mocks.fake_marketplace import FakeTokenManager
    return FakeTokenManager()


@pytest.fixture
def build_scheduler(session_factory, token_manager, marketplace, caller, test_settings):
    """PriceReductionScheduler wired to the in-memory marketplace"""
    from pricedrop.services.price_reduction_service import PriceReductionScheduler

    def _build(settings=None, caller_override=None, **kwargs):
        return PriceReductionScheduler(
            session_factory=session_factory,
            token_manager=kwargs.pop("token_manager", token_manager),
            trading_client=marketplace,
            caller=caller_override or caller,
            settings=settings or test_settings,
            **kwargs,
        )

    return _build
