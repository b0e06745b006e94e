"""Shared test fixtures for all test groups."""

import os

# Settings are cached on first use; pin test configuration before importing storefront
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")
os.environ.setdefault("ZOHO_ACCOUNT_ID", "60000000001")
os.environ.setdefault("ZOHO_ACCESS_TOKEN", "zoho-test-token")
os.environ.setdefault("ZOHO_WEBHOOK_SECRET", "whsec_test_secret")

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from storefront.db.base import Base
from storefront.db.models import Order, Product

WEBHOOK_SECRET = os.environ["ZOHO_WEBHOOK_SECRET"]


@pytest.fixture
def db_url(tmp_path) -> str:
    """TEST_DATABASE_URL, or a file-backed SQLite so several connections share one database."""
    return os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'storefront_test.db'}"


@pytest.fixture
async def engine(db_url) -> AsyncEngine:
    """Create the test engine, build the schema and install it as the global factory."""
    import storefront.db.base as db_mod
    import storefront.db.models  # noqa: F401

    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def redis_client():
    """Fake Redis installed as the shared client."""
    import storefront.db.redis as redis_mod

    client = aioredis.FakeRedis(decode_responses=True)
    redis_mod._redis = client
    yield client
    redis_mod._redis = None
    await client.flushall()
    await client.aclose()


@pytest.fixture
def make_order(session_factory):
    """Factory inserting an order; returns the persisted Order."""

    async def _make(**overrides) -> Order:
        values = {
            "customer_name": "Priya Raman",
            "customer_email": "priya@example.com",
            "items": [{"product_id": 1, "product_name": "Cold Pressed Groundnut Oil", "quantity": 2, "price": 425}],
            "total_amount": Decimal("900.00"),
            "status": "pending",
            "payment_status": "pending",
            "payment_method": "online",
            "payment_session_id": "ps_1001",
            "reference_number": "REF-1001",
            "shipping_address": {"state": "Tamil Nadu", "city": "Coimbatore"},
            "created_at": datetime.now(UTC) - timedelta(hours=1),
        }
        values.update(overrides)
        async with session_factory() as session:
            order = Order(**values)
            session.add(order)
            await session.commit()
            await session.refresh(order)
            return order

    return _make


@pytest.fixture
def make_product(session_factory):
    async def _make(**overrides) -> Product:
        values = {
            "name": "Cold Pressed Groundnut Oil",
            "price": Decimal("425.00"),
            "in_stock": True,
            "stock_quantity": 10,
        }
        values.update(overrides)
        async with session_factory() as session:
            product = Product(**values)
            session.add(product)
            await session.commit()
            await session.refresh(product)
            return product

    return _make


@pytest.fixture
def fetch_order(session_factory):
    async def _fetch(order_id: int) -> Order:
        async with session_factory() as session:
            return await session.get(Order, order_id)

    return _fetch
