"""Platform REST API client.

Stateless wrapper around httpx used for every outbound Salla/Zid call.

Per call:
1. Attach the access token (plus Zid manager headers) as a bearer credential
2. HTTP 401 -> invoke the caller's refresh callback once, retry once, else AuthError
3. HTTP 429 -> wait Retry-After (seconds or HTTP-date), else min(base * 2^attempt, cap);
   bounded by the caller's RetryPolicy, then RateLimited
4. HTTP 2xx -> body must be {"success": true, "data": <non-null>}, else UpstreamError

The retry budget is a per-call parameter; the client keeps no shared counters.
Callers own timeouts/cancellation above this layer.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import json
import logging
from typing import Any

import httpx

from commerce_engine.services.credentials import Credentials
from commerce_engine.services.errors import AuthError, RateLimited, UpstreamError
from commerce_engine.services.platforms import Platform, build_api_headers
from commerce_engine.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

RETRYABLE_SERVER_STATUSES = frozenset({500, 502, 503, 504})

RefreshCallback = Callable[[], Awaitable[str]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one call.

    `max_attempts` counts requests, so max_attempts=3 allows two waits.
    Delays are in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.api_retry_max_attempts,
            base_delay=settings.api_retry_base_delay_ms / 1000,
            max_delay=settings.api_retry_max_delay_ms / 1000,
        )

    def backoff(self, attempt: int) -> float:
        """Exponential delay for the given zero-based retry number."""
        return min(self.base_delay * (2**attempt), self.max_delay)


def parse_retry_after(value: str | None, *, now: datetime | None = None, cap: float | None = None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP-date.

    Returns None when the header is absent or unparseable. Negative values
    clamp to 0 and, when `cap` is given, large values clamp to `cap`.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    seconds: float | None
    try:
        seconds = float(text)
    except ValueError:
        try:
            when = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        seconds = (when - now).total_seconds()

    seconds = max(0.0, seconds)
    if cap is not None:
        seconds = min(seconds, cap)
    return seconds


@dataclass
class Envelope:
    """Validated platform response."""

    data: Any
    pagination: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


def parse_envelope(response: httpx.Response, *, platform: Platform) -> Envelope:
    """Validate the `{success: true, data: ...}` envelope.

    Raises:
        UpstreamError: Body is not JSON, not an object, success is not true, or data is missing/null.
    """
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise UpstreamError(
            f"{platform.label} returned non-JSON body",
            status_code=response.status_code,
            platform=platform.value,
        ) from e

    if not isinstance(body, dict):
        raise UpstreamError(
            f"{platform.label} returned {type(body).__name__} instead of an envelope object",
            status_code=response.status_code,
            platform=platform.value,
        )
    if body.get("success") is not True:
        raise UpstreamError(
            f"{platform.label} envelope success={body.get('success')!r}",
            status_code=response.status_code,
            platform=platform.value,
        )
    if body.get("data") is None:
        raise UpstreamError(
            f"{platform.label} envelope has no data",
            status_code=response.status_code,
            platform=platform.value,
        )

    pagination = body.get("pagination")
    return Envelope(
        data=body["data"],
        pagination=pagination if isinstance(pagination, dict) else {},
        raw=body,
    )


class PlatformClient:
    """Async client for one platform's REST API."""

    def __init__(
        self,
        platform: Platform,
        *,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self.platform = Platform(platform)
        self.base_url = (base_url or settings.platform_config(self.platform).api_base_url).rstrip("/")
        self._timeout = timeout or settings.api_timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client (only if this instance created it)."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def call(
        self,
        credentials: Credentials,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        refresh: RefreshCallback | None = None,
        retry: RetryPolicy | None = None,
    ) -> Envelope:
        """Perform one logical API call.

        Args:
            credentials: Token set for the merchant (platform must match this client).
            method: HTTP method.
            path: Path relative to the API base URL (or an absolute pagination URL).
            params: Query parameters.
            json_body: JSON request body.
            refresh: Called at most once on HTTP 401; must return a fresh access token.
            retry: Backoff budget for HTTP 429 and transient 5xx responses.

        Returns:
            Validated envelope.

        Raises:
            AuthError: No token, 401 without refresh, or 401 after refreshing.
            RateLimited: 429 persisted for `retry.max_attempts` requests.
            UpstreamError: Other error statuses, transport failures, or a bad envelope.
        """
        retry = retry or RetryPolicy.from_settings()
        merchant_id = credentials.merchant_id
        token = credentials.access_token
        if not token:
            raise AuthError(
                f"No {self.platform.value} access token for merchant {merchant_id}",
                platform=self.platform.value,
                merchant_id=merchant_id,
            )

        client = await self._get_client()
        url = self._url(path)
        attempt = 0
        refreshed = False

        while True:
            attempt += 1
            headers = build_api_headers(
                self.platform,
                access_token=token,
                manager_token=credentials.manager_token,
                store_id=credentials.store_id,
            )
            try:
                response = await client.request(method, url, params=params, json=json_body, headers=headers)
            except httpx.HTTPError as e:
                logger.warning(
                    f"{self.platform.label} API {method} {path} transport error "
                    f"merchant={merchant_id} attempt={attempt}: {e}"
                )
                raise UpstreamError(
                    f"{self.platform.label} request failed: {e}",
                    platform=self.platform.value,
                    merchant_id=merchant_id,
                ) from e

            status = response.status_code

            if status == 401:
                if refresh is None or refreshed:
                    logger.warning(
                        f"{self.platform.label} API {method} {path} unauthorized "
                        f"merchant={merchant_id} refreshed={refreshed}"
                    )
                    raise AuthError(
                        f"{self.platform.label} rejected credentials for merchant {merchant_id}",
                        platform=self.platform.value,
                        merchant_id=merchant_id,
                    )
                refreshed = True
                try:
                    token = await refresh()
                except AuthError:
                    raise
                except Exception as e:
                    raise AuthError(
                        f"{self.platform.label} token refresh failed for merchant {merchant_id}: {e}",
                        platform=self.platform.value,
                        merchant_id=merchant_id,
                    ) from e
                # Later calls with the same snapshot use the new token.
                credentials.access_token = token
                logger.info(f"{self.platform.label} token refreshed for merchant={merchant_id}; retrying {path}")
                # The single post-refresh retry does not consume the 429 budget.
                attempt -= 1
                continue

            if status == 429 or status in RETRYABLE_SERVER_STATUSES:
                if attempt >= retry.max_attempts:
                    logger.warning(
                        f"{self.platform.label} API {method} {path} -> {status} "
                        f"merchant={merchant_id} attempts={attempt}; giving up"
                    )
                    if status == 429:
                        raise RateLimited(
                            f"{self.platform.label} rate limit persisted after {attempt} attempts",
                            attempts=attempt,
                            retry_after=parse_retry_after(response.headers.get("retry-after")),
                            platform=self.platform.value,
                            merchant_id=merchant_id,
                        )
                    raise UpstreamError(
                        f"{self.platform.label} returned {status} after {attempt} attempts",
                        status_code=status,
                        platform=self.platform.value,
                        merchant_id=merchant_id,
                    )
                delay = parse_retry_after(response.headers.get("retry-after"), cap=retry.max_delay)
                if delay is None:
                    delay = retry.backoff(attempt - 1)
                logger.info(
                    f"{self.platform.label} API {method} {path} -> {status} merchant={merchant_id} "
                    f"attempt={attempt}/{retry.max_attempts}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            if status >= 400:
                logger.warning(
                    f"{self.platform.label} API {method} {path} -> {status} merchant={merchant_id} "
                    f"attempt={attempt}"
                )
                raise UpstreamError(
                    f"{self.platform.label} returned HTTP {status}",
                    status_code=status,
                    platform=self.platform.value,
                    merchant_id=merchant_id,
                )

            try:
                return parse_envelope(response, platform=self.platform)
            except UpstreamError as e:
                e.merchant_id = merchant_id
                logger.error(f"{self.platform.label} API {method} {path} bad envelope merchant={merchant_id}: {e}")
                raise

    async def get(self, credentials: Credentials, path: str, **kwargs: Any) -> Envelope:
        return await self.call(credentials, "GET", path, **kwargs)
