"""Tests for health endpoint."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test health endpoint returns ok."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


@pytest.mark.asyncio
async def test_openapi_lists_integration_routes(client: AsyncClient):
    """Webhook, OAuth, click and admin routes are all mounted."""
    response = await client.get("/openapi.json")
    assert response.status_code == 200
    paths = response.json()["paths"]

    assert "/webhooks/{platform}" in paths
    assert "/{platform}/oauth/callback" in paths
    assert "/{platform}/connection" in paths
    assert "/v1/track/click" in paths
    assert "/r/products/{product_id}" in paths
    assert "/v1/admin/webhook-events" in paths
