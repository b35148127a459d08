"""Shared fixtures: test settings, in-memory database, HTTP client, seed helpers."""

from datetime import datetime, timezone
import hashlib
import hmac
import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import commerce_engine.models  # noqa: F401
from commerce_engine.models import Merchant, Product
from commerce_engine.services.credentials import update_credentials
from commerce_engine.services.platforms import Platform
from commerce_engine.settings import get_settings
from commerce_engine.stores import postgres

TEST_ENV = {
    "DATABASE_URL": "sqlite+aiosqlite://",
    "APP_BASE_URL": "https://app.test",
    "OAUTH_STATE_SECRET": "state-secret",
    "ADMIN_TOKEN": "admin-token",
    "SALLA_CLIENT_ID": "salla-client",
    "SALLA_CLIENT_SECRET": "salla-client-secret",
    "SALLA_REDIRECT_URI": "https://engine.test/salla/oauth/callback",
    "SALLA_WEBHOOK_SECRET": "salla-webhook-secret",
    "SALLA_API_BASE_URL": "https://api.salla.test/admin/v2",
    "SALLA_TOKEN_URL": "https://accounts.salla.test/oauth2/token",
    "ZID_CLIENT_ID": "zid-client",
    "ZID_CLIENT_SECRET": "zid-client-secret",
    "ZID_REDIRECT_URI": "https://engine.test/zid/oauth/callback",
    "ZID_WEBHOOK_SECRET": "zid-webhook-secret",
    "ZID_API_BASE_URL": "https://api.zid.test/v1",
    "ZID_TOKEN_URL": "https://oauth.zid.test/oauth/token",
}

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def settings(monkeypatch: pytest.MonkeyPatch):
    """Settings built from TEST_ENV (cache cleared around each test)."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def engine():
    """Single-connection in-memory SQLite shared by every session in the test.

    aiosqlite needs BEGIN emitted explicitly for SAVEPOINT (begin_nested) to work.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(postgres.Base.metadata.create_all)

    postgres.use_engine(engine)
    yield engine
    await postgres.close_db()


@pytest.fixture
async def client(engine):
    """Create test client."""
    from commerce_engine.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def envelope(data, **extra) -> dict:
    return {"status": 200, "success": True, "data": data, **extra}


async def seed_merchant(
    *,
    name: str = "Test Merchant",
    platform: Platform | None = Platform.SALLA,
    store_id: str = "1001",
    store_url: str = "https://demo.salla.sa",
    commission_rate: float = 5.0,
) -> int:
    """Create a merchant, optionally connected to `platform`. Returns the merchant id."""
    async with postgres.get_session() as session:
        merchant = Merchant(name=name, commission_rate=commission_rate)
        session.add(merchant)
        await session.flush()
        if platform is not None:
            patch = {
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "store_id": store_id,
                "store_url": store_url,
            }
            if platform is Platform.ZID:
                patch["manager_token"] = "manager-1"
            await update_credentials(session, merchant.id, platform, patch)
        return merchant.id


async def seed_product(
    merchant_id: int,
    *,
    external_id: str = "501",
    platform: Platform = Platform.SALLA,
    product_url: str = "https://demo.salla.sa/product/501",
    is_active: bool = True,
) -> int:
    async with postgres.get_session() as session:
        product = Product(
            merchant_id=merchant_id,
            title=f"Product {external_id}",
            slug=f"{merchant_id}-{external_id}-product-{external_id}",
            price=100.0,
            currency="SAR",
            product_url=product_url,
            is_active=is_active,
        )
        if platform is Platform.SALLA:
            product.salla_product_id = external_id
        else:
            product.zid_product_id = external_id
        session.add(product)
        await session.flush()
        return product.id


def dumps(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")
