# tests/conftest.py
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stocksync.core.config import Settings
from stocksync.database import Base
from stocksync.integrations.events import InMemoryEventSink
from stocksync.services.identifier_resolver import IdentifierResolver
from stocksync.services.inventory_store import InMemoryInventoryStore
from stocksync.services.resilience import CircuitBreaker, ResilientCaller
from tests.mocks.mock_channel import MockChannel

# In-memory SQLite, one fresh database per test function
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def settings():
    """Provide test settings: no delays, no backoff, small pools"""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        SHOPIFY_SHOP_URL="test-shop.myshopify.com",
        SHOPIFY_ADMIN_API_ACCESS_TOKEN="shpat_test_token",
        DEFAULT_BATCH_SIZE=10,
        DEFAULT_BATCH_DELAY=0,
        LOOKUP_SUB_BATCH_SIZE=500,
        LOOKUP_SUB_BATCH_DELAY=0,
        FUZZY_MATCH_THRESHOLD=80,
        EXTERNAL_CALL_TIMEOUT=5,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BACKOFF_BASE=0,
        RETRY_BACKOFF_MAX=0,
        RETRY_JITTER=0,
        BREAKER_FAIL_MAX=50,
        WORKER_CONCURRENCY_MANUAL=2,
        WORKER_CONCURRENCY_BATCH=1,
        WORKER_CONCURRENCY_SCHEDULED=1,
        JOB_RETRY_BASE_DELAY=0,
        JOB_RETRY_MAX_DELAY=0,
    )


@pytest.fixture
def inventory_store():
    return InMemoryInventoryStore()


@pytest.fixture
def mock_channel():
    return MockChannel()


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def fast_caller():
    """Retrying caller without backoff sleeps"""
    return ResilientCaller(
        breaker=CircuitBreaker("mock", fail_max=50),
        timeout=5,
        max_attempts=3,
        backoff_base=0,
        backoff_max=0,
        jitter=0,
    )


@pytest.fixture
def resolver(inventory_store, mock_channel, fast_caller):
    return IdentifierResolver(
        inventory_store,
        mock_channel,
        caller=fast_caller,
        sub_batch_size=500,
        sub_batch_delay=0,
        fuzzy_threshold=80,
    )


@pytest.fixture(scope="function")
async def test_engine():
    """Create and configure the test database engine (function-scoped)."""
    from stocksync import models  # noqa: F401  registers tables on Base.metadata

    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test engine"""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
