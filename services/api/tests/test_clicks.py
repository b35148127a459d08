"""Tests for click tracking endpoints."""

from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from commerce_engine.models import OutboundClickEvent
from commerce_engine.stores.postgres import get_session
from conftest import seed_merchant, seed_product

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36",
    "Referer": "https://app.test/deals",
    "X-Forwarded-For": "198.51.100.4, 10.0.0.1",
}


@pytest.mark.asyncio
async def test_redirect_sends_browser_to_tracking_url(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)

    response = await client.get(f"/r/products/{product_id}", headers=BROWSER_HEADERS)

    assert response.status_code == 302
    assert response.headers["cache-control"] == "no-store"
    location = urlparse(response.headers["location"])
    assert location.netloc == "demo.salla.sa"
    assert parse_qs(location.query)["ref"][0].startswith("ce_")


@pytest.mark.asyncio
async def test_track_click_returns_json(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)

    response = await client.post("/v1/track/click", json={"productId": product_id}, headers=BROWSER_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["productId"] == product_id
    assert data["qualified"] is True
    assert data["trackingId"].startswith("ce_")
    assert data["redirectUrl"].startswith("https://demo.salla.sa/product/501?")
    assert data["expiresAt"] is not None


@pytest.mark.asyncio
async def test_bot_click_still_redirects_without_tracking(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)

    response = await client.post(
        "/v1/track/click",
        json={"productId": product_id},
        headers={**BROWSER_HEADERS, "User-Agent": "Googlebot/2.1 (+http://www.google.com/bot.html)"},
    )

    data = response.json()
    assert data["qualified"] is False
    assert data["reason"] == "BOT_UA"
    assert data["trackingId"] is None
    assert data["redirectUrl"] == "https://demo.salla.sa/product/501"


@pytest.mark.asyncio
async def test_forwarded_ip_is_hashed(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)

    await client.get(f"/r/products/{product_id}", headers=BROWSER_HEADERS)

    async with get_session() as session:
        event = (await session.execute(select(OutboundClickEvent))).scalar_one()
    assert event.ip_hash is not None
    assert "198.51.100.4" not in event.ip_hash
    assert event.referrer == "https://app.test/deals"


@pytest.mark.asyncio
async def test_unknown_product_is_404(client: AsyncClient):
    response = await client.get("/r/products/999", headers=BROWSER_HEADERS)
    assert response.status_code == 404
    assert response.json()["detail"]["error"]["code"] == "PRODUCT_NOT_FOUND"


@pytest.mark.asyncio
async def test_inactive_product_cannot_redirect(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id, is_active=False)

    response = await client.get(f"/r/products/{product_id}", headers=BROWSER_HEADERS)

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["error"]["code"] == "INVALID_DESTINATION"
    assert detail["error"]["detail"]["reason"] == "PRODUCT_INACTIVE"


@pytest.mark.asyncio
async def test_track_click_validates_body(client: AsyncClient):
    response = await client.post("/v1/track/click", json={"productId": 0})
    assert response.status_code == 422
