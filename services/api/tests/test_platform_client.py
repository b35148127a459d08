"""Platform API client: envelope checks, 401 refresh, 429 backoff."""

import dataclasses
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from commerce_engine.services.credentials import Credentials
from commerce_engine.services.errors import AuthError, RateLimited, UpstreamError
from commerce_engine.services.platform_client import (
    PlatformClient,
    RetryPolicy,
    parse_envelope,
    parse_retry_after,
)
from commerce_engine.services.platforms import Platform
from conftest import envelope

SALLA_CREDS = Credentials(merchant_id=7, platform=Platform.SALLA, access_token="access-1", store_id="1001")
ZID_CREDS = Credentials(
    merchant_id=8,
    platform=Platform.ZID,
    access_token="store-token",
    manager_token="Bearer manager-token",
    store_id="2002",
    store_url="https://oud.zid.store",
)


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def scripted(responses: list[httpx.Response], seen: list[httpx.Request]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses.pop(0)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_client(platform: Platform, http_client: httpx.AsyncClient, sleep: FakeSleep) -> PlatformClient:
    return PlatformClient(platform, http_client=http_client, sleep=sleep)


# ============================================================
# Envelope
# ============================================================


def test_envelope_accepts_success_with_data():
    response = httpx.Response(200, json=envelope([{"id": 1}], pagination={"next": "x"}))
    env = parse_envelope(response, platform=Platform.SALLA)
    assert env.data == [{"id": 1}]
    assert env.pagination == {"next": "x"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"status": 200, "success": False, "data": {"id": 1}}),
        httpx.Response(200, json={"status": 200, "success": True, "data": None}),
        httpx.Response(200, json={"status": 200, "success": "true", "data": {}}),
        httpx.Response(200, json=[{"id": 1}]),
        httpx.Response(200, content=b"<html>maintenance</html>"),
    ],
    ids=["success-false", "data-null", "success-string", "array-body", "html-body"],
)
def test_envelope_rejects_malformed_bodies(response):
    with pytest.raises(UpstreamError):
        parse_envelope(response, platform=Platform.ZID)


# ============================================================
# Retry-After
# ============================================================


def test_retry_after_seconds_and_dates():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_retry_after("2") == 2.0
    assert parse_retry_after("-5") == 0.0
    assert parse_retry_after("120", cap=30) == 30
    assert parse_retry_after("Sun, 01 Mar 2026 12:00:10 GMT", now=now) == pytest.approx(10.0)
    assert parse_retry_after("not a date") is None
    assert parse_retry_after(None) is None


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(max_attempts=6, base_delay=0.5, max_delay=3.0)
    assert [policy.backoff(n) for n in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


# ============================================================
# Rate limiting
# ============================================================


@pytest.mark.asyncio
async def test_429_waits_retry_after_then_succeeds():
    seen: list[httpx.Request] = []
    sleep = FakeSleep()
    responses = [
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(200, json=envelope({"id": 1})),
    ]
    async with scripted(responses, seen) as http_client:
        client = make_client(Platform.SALLA, http_client, sleep)
        env = await client.get(SALLA_CREDS, "products", retry=RetryPolicy(max_attempts=3))

    assert env.data == {"id": 1}
    assert len(seen) == 2
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_429_without_header_backs_off_then_raises():
    seen: list[httpx.Request] = []
    sleep = FakeSleep()
    responses = [httpx.Response(429) for _ in range(3)]
    async with scripted(responses, seen) as http_client:
        client = make_client(Platform.SALLA, http_client, sleep)
        with pytest.raises(RateLimited) as exc_info:
            await client.get(SALLA_CREDS, "products", retry=RetryPolicy(max_attempts=3, base_delay=1.0))

    assert exc_info.value.attempts == 3
    assert exc_info.value.merchant_id == 7
    assert len(seen) == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_server_errors_retry_then_raise_upstream():
    seen: list[httpx.Request] = []
    sleep = FakeSleep()
    responses = [httpx.Response(503), httpx.Response(502)]
    async with scripted(responses, seen) as http_client:
        client = make_client(Platform.ZID, http_client, sleep)
        with pytest.raises(UpstreamError) as exc_info:
            await client.get(ZID_CREDS, "products", retry=RetryPolicy(max_attempts=2, base_delay=0.1))

    assert exc_info.value.status_code == 502
    assert sleep.delays == [0.1]


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    seen: list[httpx.Request] = []
    async with scripted([httpx.Response(404, json={"success": False})], seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        with pytest.raises(UpstreamError) as exc_info:
            await client.get(SALLA_CREDS, "products/9")

    assert exc_info.value.status_code == 404
    assert len(seen) == 1


# ============================================================
# Token refresh
# ============================================================


@pytest.mark.asyncio
async def test_401_refreshes_once_and_retries_with_new_token():
    seen: list[httpx.Request] = []
    refreshes: list[int] = []

    async def refresh() -> str:
        refreshes.append(1)
        return "access-2"

    responses = [httpx.Response(401), httpx.Response(200, json=envelope([]))]
    async with scripted(responses, seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        credentials = dataclasses.replace(SALLA_CREDS)
        env = await client.get(credentials, "orders", refresh=refresh)

    assert env.data == []
    assert len(refreshes) == 1
    assert seen[0].headers["authorization"] == "Bearer access-1"
    assert seen[1].headers["authorization"] == "Bearer access-2"
    assert credentials.access_token == "access-2"


@pytest.mark.asyncio
async def test_second_401_after_refresh_is_auth_error():
    seen: list[httpx.Request] = []
    refreshes: list[int] = []

    async def refresh() -> str:
        refreshes.append(1)
        return "access-2"

    responses = [httpx.Response(401), httpx.Response(401)]
    async with scripted(responses, seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        with pytest.raises(AuthError):
            await client.get(dataclasses.replace(SALLA_CREDS), "orders", refresh=refresh)

    assert len(refreshes) == 1
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_401_without_refresh_callback_is_auth_error():
    seen: list[httpx.Request] = []
    async with scripted([httpx.Response(401)], seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        with pytest.raises(AuthError):
            await client.get(SALLA_CREDS, "orders")


@pytest.mark.asyncio
async def test_failing_refresh_becomes_auth_error():
    async def refresh() -> str:
        raise RuntimeError("token endpoint down")

    seen: list[httpx.Request] = []
    async with scripted([httpx.Response(401)], seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        with pytest.raises(AuthError):
            await client.get(SALLA_CREDS, "orders", refresh=refresh)


@pytest.mark.asyncio
async def test_missing_access_token_never_hits_network():
    seen: list[httpx.Request] = []
    creds = Credentials(merchant_id=9, platform=Platform.SALLA, store_id="1")
    async with scripted([], seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        with pytest.raises(AuthError):
            await client.get(creds, "orders")
    assert seen == []


# ============================================================
# Request shape
# ============================================================


@pytest.mark.asyncio
async def test_zid_requests_carry_manager_headers():
    seen: list[httpx.Request] = []
    async with scripted([httpx.Response(200, json=envelope({"ok": True}))], seen) as http_client:
        client = make_client(Platform.ZID, http_client, FakeSleep())
        await client.get(ZID_CREDS, "/products/", params={"page": 2})

    [request] = seen
    assert str(request.url) == "https://api.zid.test/v1/products/?page=2"
    assert request.headers["authorization"] == "Bearer store-token"
    assert request.headers["x-manager-token"] == "manager-token"
    assert request.headers["access-token"] == "store-token"
    assert request.headers["store-id"] == "2002"
    assert request.headers["role"] == "Manager"


@pytest.mark.asyncio
async def test_absolute_pagination_urls_are_followed_verbatim():
    seen: list[httpx.Request] = []
    next_url = "https://api.salla.test/admin/v2/products?page=3"
    async with scripted([httpx.Response(200, json=envelope([]))], seen) as http_client:
        client = make_client(Platform.SALLA, http_client, FakeSleep())
        await client.get(SALLA_CREDS, next_url)

    assert str(seen[0].url) == next_url
    assert "x-manager-token" not in seen[0].headers


def test_policy_from_settings(settings):
    policy = RetryPolicy.from_settings(settings)
    assert policy.max_attempts == settings.api_retry_max_attempts
    assert policy.base_delay == pytest.approx(settings.api_retry_base_delay_ms / 1000)
    assert timedelta(seconds=policy.max_delay) == timedelta(milliseconds=settings.api_retry_max_delay_ms)
