"""API-specific test fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import aioredis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from storefront.core.auth import AuthenticatedUser, require_auth
from storefront.integrations.zoho import GatewayPayment


@pytest.fixture
def fake_gateway():
    """Gateway double shared by the session and verification routes."""
    gateway = MagicMock()
    gateway.create_session = AsyncMock(return_value="ps_api")
    gateway.get_session = AsyncMock(
        return_value=GatewayPayment(payment_id="pay_api", session_id="ps_1001", status="succeeded")
    )
    gateway.get_payment = AsyncMock(
        return_value=GatewayPayment(payment_id="pay_api", session_id="ps_1001", status="succeeded")
    )
    return gateway


@pytest.fixture
def shopper():
    return AuthenticatedUser(user_id="user_priya", email="priya@example.com", claims={"sub": "user_priya"})


@pytest.fixture
def api_client(engine, db_url, fake_gateway):
    """FastAPI test client with test database, fake Redis and a fake gateway.

    The engine fixture builds the schema; the lifespan re-initialises the
    global engine inside the TestClient's own event loop.
    """
    from fastapi import HTTPException

    from storefront.api.deps import get_gateway
    from storefront.api.routes import api_router
    from storefront.core.config import get_settings
    from storefront.db import close_db, close_redis, init_db, init_redis
    from storefront.main import generic_exception_handler, http_exception_handler
    from storefront.middleware.correlation import setup_correlation_middleware

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        import storefront.db.base as db_mod
        import storefront.db.redis as redis_mod

        db_mod._engine = None
        db_mod._session_factory = None
        redis_mod._redis = None
        await init_db(db_url, create_tables=False)
        await init_redis(client=aioredis.FakeRedis(decode_responses=True))
        yield
        await close_redis()
        await close_db()

    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=test_lifespan)

    setup_correlation_middleware(app)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)
    app.include_router(api_router, prefix="/api")
    app.dependency_overrides[get_gateway] = lambda: fake_gateway

    with TestClient(app) as client:
        yield client


@pytest.fixture
def authed_client(api_client, shopper):
    """api_client with require_auth resolved to ``shopper``."""

    async def _override():
        return shopper

    api_client.app.dependency_overrides[require_auth] = _override
    return api_client
