"""Pytest configuration and fixtures for async testing."""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from subscription_analytics.auth.jwt import jwt_auth
from subscription_analytics.cache import InMemoryCache
from subscription_analytics.database import Base
from subscription_analytics.models.account import Account, PaymentProvider
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.services.metrics_service import MetricsService
from subscription_analytics.services.webhook_processor import WebhookProcessor

from utils.factories import AccountFactory, fake

TEST_CACHE_TTL = 3600


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory bound to a fresh SQLite database file per test.

    A file (not ``:memory:``) so that every session opened by the repository
    sees the same tables.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}", poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture(scope="function")
def cache() -> InMemoryCache:
    """Process-local metric cache."""
    return InMemoryCache(default_ttl=TEST_CACHE_TTL)


@pytest.fixture(scope="function")
def records(session_factory: async_sessionmaker[AsyncSession]) -> BillingRecordRepository:
    """Billing record repository over the test database."""
    return BillingRecordRepository(session_factory)


@pytest.fixture(scope="function")
def metrics_service(records: BillingRecordRepository, cache: InMemoryCache) -> MetricsService:
    """Metrics service over the test database and in-memory cache."""
    return MetricsService(records, cache, ttl=TEST_CACHE_TTL)


@pytest.fixture(scope="function")
def webhook_processor(records: BillingRecordRepository, metrics_service: MetricsService) -> WebhookProcessor:
    """Webhook processor wired to the test metrics service."""
    return WebhookProcessor(records, metrics_service)


@pytest.fixture(scope="function")
def user_id() -> str:
    """Dashboard user owning the test accounts."""
    return f"user_{fake.uuid4()}"


@pytest_asyncio.fixture(scope="function")
async def stripe_account(records: BillingRecordRepository, user_id: str) -> Account:
    """Active Stripe account of the test user."""
    return await records.add_account(**AccountFactory.create({"user_id": user_id}))


@pytest_asyncio.fixture(scope="function")
async def paypal_account(records: BillingRecordRepository, user_id: str) -> Account:
    """Active PayPal account of the test user."""
    return await records.add_account(
        **AccountFactory.create({"user_id": user_id, "provider": PaymentProvider.PAYPAL})
    )


@pytest.fixture(scope="function")
def auth_headers(user_id: str) -> dict[str, str]:
    """Bearer token for the test user."""
    return {"Authorization": f"Bearer {jwt_auth.create_access_token(user_id)}"}


@pytest_asyncio.fixture(scope="function")
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    cache: InMemoryCache,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client against the app with database and cache overrides.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from subscription_analytics.api.deps import get_cache
    from subscription_analytics.database import get_session_factory
    from subscription_analytics.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_cache] = lambda: cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
