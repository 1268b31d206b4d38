"""
Centralized Test Configuration.
"""

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.api.deps import get_gateways
from backend.app.core.reliability import CircuitBreaker
from backend.app.db.session import get_db, get_session_factory, Base
from backend.app.db.unit_of_work import UnitOfWork
from backend.app.core.redis_client import get_redis
from backend.app.domain.billing.gateways import PayPalGateway
from backend.app.models.billing_enums import PaymentProvider
from backend.app.services.notification_service import DatabaseNotificationSink
from backend.tests.support import FakeStripeGateway, MockRedis, PayPalSandbox, test_settings
import backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture
def paypal_sandbox():
    return PayPalSandbox()


@pytest.fixture
def stripe_gateway():
    return FakeStripeGateway(test_settings)


@pytest.fixture
def paypal_gateway(redis_client_session, paypal_sandbox):
    return PayPalGateway(
        redis=redis_client_session,
        settings=test_settings,
        breaker=CircuitBreaker("paypal-test"),
        transport=httpx.MockTransport(paypal_sandbox),
    )


@pytest.fixture
def gateways(stripe_gateway, paypal_gateway):
    return {
        PaymentProvider.STRIPE: stripe_gateway,
        PaymentProvider.PAYPAL: paypal_gateway,
    }


@pytest.fixture(autouse=True)
def apply_overrides(redis_client_session, gateways):
    """Route the app's database, Redis and payment providers to the test doubles."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    async def override_get_gateways():
        return gateways

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_gateways] = override_get_gateways
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def uow():
    return UnitOfWork(TestingSessionLocal, attempts=3, backoff_base=0)


@pytest.fixture
def notifier():
    return DatabaseNotificationSink(TestingSessionLocal)
