"""Test configuration and fixtures."""

import json
import os
import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables BEFORE importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["WHOP_APP_ID"] = "app_test123"
os.environ["WHOP_CLIENT_SECRET"] = "whop-client-secret"
os.environ["WHOP_WEBHOOK_SECRET"] = "whop-webhook-secret"

from whoplytics.api.deps import get_platform_client
from whoplytics.api.webhooks import compute_signature
from whoplytics.auth.handshake import ExchangeResult
from whoplytics.main import app
from whoplytics.models import Base

WEBHOOK_SECRET = os.environ["WHOP_WEBHOOK_SECRET"]

# Secure cookies are only sent back over https
BASE_URL = "https://testserver"


@pytest.fixture
def client():
    """Test client with a fresh in-memory database per test.

    Entering the client runs the app lifespan, which initializes the engine
    (StaticPool, so one shared in-memory connection) and creates the tables.
    """
    with TestClient(app, base_url=BASE_URL) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def db_session():
    """Async session bound to its own in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def send_webhook(client):
    """POST a signed Whop webhook event."""

    def _send(event, data, secret=WEBHOOK_SECRET, timestamp=None):
        body = json.dumps({"event": event, "data": data}).encode("utf-8")
        timestamp = timestamp or str(int(time.time()))
        return client.post(
            "/api/webhooks/whop",
            content=body,
            headers={
                "content-type": "application/json",
                "x-whop-signature": compute_signature(secret, timestamp, body),
                "x-whop-timestamp": timestamp,
            },
        )

    return _send


@pytest.fixture
def install(send_webhook):
    """Create an installation through the app.installed webhook."""

    def _install(company_id, experience_id, access_token="whop_at_test", plan=None):
        data = {
            "company_id": company_id,
            "experience_id": experience_id,
            "access_token": access_token,
        }
        if plan:
            data["plan"] = plan
        response = send_webhook("app.installed", data)
        assert response.status_code == 200, response.text
        return response

    return _install


@pytest.fixture
def platform(client):
    """Stand-in for the Whop token exchange."""
    fake = AsyncMock()
    fake.exchange_code.return_value = ExchangeResult(
        access_token="whop_at_callback",
        user_id="user_42",
        username="alice",
        company_id=None,
    )
    app.dependency_overrides[get_platform_client] = lambda: fake
    return fake
