"""OAuth connector for Salla and Zid.

Flow per connection attempt:
    STATE_ISSUED -> CODE_RECEIVED -> TOKEN_EXCHANGED -> CREDENTIALS_STORED
    (FAILED on any mismatch or HTTP error)

State token:
- base64url(JSON {merchantId, platform, ts, nonce}) + "." + base64url(HMAC-SHA256)
- self-verifying, no server-side session storage
- echoed through a short-lived http-only cookie; the callback requires the
  query state and the cookie to match exactly before verifying the signature

Fail closed: nothing touches the network until the state checks pass, and
nothing touches the credential store until the token exchange succeeds.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import hashlib
import hmac
import json
import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_engine.models import Merchant
from commerce_engine.services.credentials import (
    Credentials,
    find_merchant_id_by_store,
    get_credentials,
    mask_sensitive,
    update_credentials,
)
from commerce_engine.services.errors import AuthError, OAuthStateError, UpstreamError
from commerce_engine.services.platform_client import PlatformClient, RefreshCallback
from commerce_engine.services.platforms import (
    Platform,
    TokenGrant,
    first_str,
    parse_token_grant,
)
from commerce_engine.settings import Settings, get_settings
from commerce_engine.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

# Where to look up the store identity when the token response omits it
STORE_PROFILE_URLS = {
    Platform.SALLA: "https://accounts.salla.sa/oauth2/user/info",
    Platform.ZID: "managers/account/profile",
}


class OAuthStep(str, Enum):
    STATE_ISSUED = "STATE_ISSUED"
    CODE_RECEIVED = "CODE_RECEIVED"
    TOKEN_EXCHANGED = "TOKEN_EXCHANGED"
    CREDENTIALS_STORED = "CREDENTIALS_STORED"
    FAILED = "FAILED"


def state_cookie_name(platform: Platform) -> str:
    return f"ce_{platform.value}_oauth_state"


# ============================================================
# State tokens
# ============================================================


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(encoded: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


@dataclass(frozen=True)
class OAuthState:
    """Verified contents of a state token."""

    platform: Platform
    merchant_id: int | None
    issued_at: int


def create_state(
    platform: Platform,
    merchant_id: int | None,
    *,
    secret: str,
    now: datetime | None = None,
) -> str:
    """Issue a signed state token. merchant_id is None for the join flow."""
    if not secret:
        raise AuthError("OAuth state secret is not configured", platform=platform.value)
    now = now or datetime.now(timezone.utc)
    payload = {
        "merchantId": merchant_id,
        "platform": platform.value,
        "ts": int(now.timestamp()),
        "nonce": secrets.token_urlsafe(8),
    }
    encoded = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{_sign(encoded, secret)}"


def verify_state(
    token: str,
    *,
    platform: Platform,
    secret: str,
    max_age: int,
    now: datetime | None = None,
) -> OAuthState:
    """Verify signature, platform and age of a state token.

    Raises:
        OAuthStateError: On any malformed, forged, foreign or expired token.
    """
    if not secret:
        raise OAuthStateError("OAuth state secret is not configured", platform=platform.value)
    encoded, sep, signature = token.partition(".")
    if not sep or not encoded or not signature:
        raise OAuthStateError("Malformed OAuth state", platform=platform.value)

    expected = _sign(encoded, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", errors="replace")):
        raise OAuthStateError("OAuth state signature mismatch", platform=platform.value)

    try:
        payload = json.loads(_b64decode(encoded))
    except (ValueError, UnicodeDecodeError) as e:
        raise OAuthStateError("OAuth state payload is not valid JSON", platform=platform.value) from e
    if not isinstance(payload, dict):
        raise OAuthStateError("OAuth state payload is not an object", platform=platform.value)

    if payload.get("platform") != platform.value:
        raise OAuthStateError("OAuth state issued for a different platform", platform=platform.value)

    issued_at = payload.get("ts")
    if not isinstance(issued_at, int):
        raise OAuthStateError("OAuth state has no timestamp", platform=platform.value)
    now = now or datetime.now(timezone.utc)
    age = now.timestamp() - issued_at
    if age > max_age or age < -60:
        raise OAuthStateError("OAuth state expired", platform=platform.value)

    merchant_id = payload.get("merchantId")
    if merchant_id is not None and not isinstance(merchant_id, int):
        raise OAuthStateError("OAuth state merchant id is invalid", platform=platform.value)

    return OAuthState(platform=platform, merchant_id=merchant_id, issued_at=issued_at)


# ============================================================
# Authorization flow
# ============================================================


@dataclass
class AuthorizationRequest:
    """Redirect target plus the state to bind into the cookie."""

    url: str
    state: str
    cookie_name: str


@dataclass
class OAuthResult:
    """Outcome of a completed authorization."""

    merchant_id: int
    platform: Platform
    credentials: Credentials
    created_merchant: bool = False
    steps: list[OAuthStep] = field(default_factory=list)

    @property
    def step(self) -> OAuthStep:
        return self.steps[-1] if self.steps else OAuthStep.FAILED


def begin_authorization(
    platform: Platform,
    merchant_id: int | None = None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> AuthorizationRequest:
    """Build the platform authorization URL with a freshly signed state."""
    settings = settings or get_settings()
    config = settings.platform_config(platform)
    if not config.client_id or not config.redirect_uri:
        raise AuthError(f"{platform.label} OAuth is not configured", platform=platform.value)

    state = create_state(platform, merchant_id, secret=settings.state_secret_for(platform), now=now)
    params = {
        "client_id": config.client_id,
        "response_type": "code",
        "redirect_uri": config.redirect_uri,
        "state": state,
    }
    if config.scopes:
        params["scope"] = config.scopes
    separator = "&" if "?" in config.auth_url else "?"
    flow = "start" if merchant_id is not None else "join"
    logger.info(f"OAuth {platform.value} {flow} issued state for merchant={merchant_id}")
    return AuthorizationRequest(
        url=f"{config.auth_url}{separator}{urlencode(params)}",
        state=state,
        cookie_name=state_cookie_name(platform),
    )


async def _post_token_form(
    platform: Platform,
    form: dict[str, str],
    *,
    settings: Settings,
    http_client: httpx.AsyncClient | None,
) -> TokenGrant:
    config = settings.platform_config(platform)
    client = http_client or httpx.AsyncClient(timeout=settings.api_timeout_seconds)
    try:
        response = await client.post(
            config.token_url,
            data=form,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        raise AuthError(f"{platform.label} token endpoint unreachable: {e}", platform=platform.value) from e
    finally:
        if http_client is None:
            await client.aclose()

    if response.status_code >= 400:
        logger.warning(
            f"OAuth {platform.value} token endpoint returned {response.status_code} "
            f"grant_type={form.get('grant_type')}"
        )
        raise AuthError(
            f"{platform.label} token endpoint returned HTTP {response.status_code}",
            platform=platform.value,
        )

    try:
        body = response.json()
    except ValueError as e:
        raise AuthError(f"{platform.label} token response is not JSON", platform=platform.value) from e

    grant = parse_token_grant(body)
    if grant is None:
        logger.warning(f"OAuth {platform.value} token response without access token: {mask_sensitive(body)}")
        raise AuthError(f"{platform.label} token response has no access token", platform=platform.value)
    return grant


async def exchange_code(
    platform: Platform,
    code: str,
    *,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> TokenGrant:
    """Exchange an authorization code for tokens."""
    settings = settings or get_settings()
    config = settings.platform_config(platform)
    return await _post_token_form(
        platform,
        {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "redirect_uri": config.redirect_uri,
        },
        settings=settings,
        http_client=http_client,
    )


async def _fill_store_identity(
    platform: Platform,
    grant: TokenGrant,
    *,
    http_client: httpx.AsyncClient | None,
) -> None:
    """Best-effort lookup of store id/url when the token response omits them."""
    if grant.store_id and (grant.store_url or platform is Platform.SALLA):
        return
    transient = Credentials(
        merchant_id=0,
        platform=platform,
        access_token=grant.access_token,
        manager_token=grant.manager_token,
    )
    try:
        async with PlatformClient(platform, http_client=http_client) as client:
            envelope = await client.get(transient, STORE_PROFILE_URLS[platform])
    except (AuthError, UpstreamError) as e:
        logger.warning(f"OAuth {platform.value} store profile lookup failed: {e}")
        return
    data = envelope.data
    grant.store_id = grant.store_id or first_str(data, ("merchant.id", "store.id", "user.store.id", "id"))
    grant.store_url = grant.store_url or first_str(
        data, ("merchant.domain", "store.url", "user.store.url", "domain")
    )
    grant.store_name = grant.store_name or first_str(
        data, ("merchant.name", "store.title", "store.name", "user.store.title", "name")
    )


async def _resolve_join_merchant(
    session: AsyncSession,
    platform: Platform,
    grant: TokenGrant,
    *,
    settings: Settings,
) -> tuple[int, bool]:
    """Find the merchant owning the store, or create one. Returns (merchant_id, created)."""
    if not grant.store_id:
        raise AuthError(f"{platform.label} did not report a store id", platform=platform.value)

    existing = await find_merchant_id_by_store(session, platform, grant.store_id)
    if existing is not None:
        return existing, False

    merchant = Merchant(
        name=grant.store_name or f"{platform.label} store {grant.store_id}",
        commission_rate=settings.default_commission_rate,
    )
    session.add(merchant)
    await session.flush()
    logger.info(f"OAuth {platform.value} join created merchant={merchant.id} store={grant.store_id}")
    return merchant.id, True


async def complete_authorization(
    session: AsyncSession,
    platform: Platform,
    *,
    code: str | None,
    state: str | None,
    cookie_state: str | None,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> OAuthResult:
    """Handle the OAuth callback.

    Raises:
        OAuthStateError: State missing, not matching the cookie, or not verifiable.
        AuthError: Code exchange failed, or the store is owned by another merchant
            (including one that connected it concurrently).
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    steps = [OAuthStep.STATE_ISSUED]

    try:
        if not state or not cookie_state:
            raise OAuthStateError("OAuth state or cookie missing", platform=platform.value)
        if not hmac.compare_digest(state.encode("utf-8"), cookie_state.encode("utf-8")):
            raise OAuthStateError("OAuth state does not match cookie", platform=platform.value)
        verified = verify_state(
            state,
            platform=platform,
            secret=settings.state_secret_for(platform),
            max_age=settings.oauth_state_max_age_seconds,
            now=now,
        )
        if not code:
            raise AuthError("OAuth callback without code", platform=platform.value)
        steps.append(OAuthStep.CODE_RECEIVED)

        grant = await exchange_code(platform, code, settings=settings, http_client=http_client)
        await _fill_store_identity(platform, grant, http_client=http_client)
        steps.append(OAuthStep.TOKEN_EXCHANGED)

        created = False
        if verified.merchant_id is None:
            merchant_id, created = await _resolve_join_merchant(session, platform, grant, settings=settings)
        else:
            merchant_id = verified.merchant_id
            if grant.store_id:
                owner = await find_merchant_id_by_store(session, platform, grant.store_id)
                if owner is not None and owner != merchant_id:
                    raise AuthError(
                        f"{platform.label} store {grant.store_id} is connected to another merchant",
                        platform=platform.value,
                        merchant_id=merchant_id,
                    )

        try:
            await update_credentials(session, merchant_id, platform, grant.credential_patch(now))
        except IntegrityError as e:
            # Another callback claimed the store between the lookup and the write.
            raise AuthError(
                f"{platform.label} store {grant.store_id} was connected concurrently",
                platform=platform.value,
                merchant_id=merchant_id,
            ) from e
        credentials = await get_credentials(session, merchant_id, platform)
        steps.append(OAuthStep.CREDENTIALS_STORED)
    except AuthError as e:
        logger.warning(f"OAuth {platform.value} failed after {steps[-1].value}: {e}")
        raise

    logger.info(
        f"OAuth {platform.value} connected merchant={merchant_id} store={credentials.store_id} "
        f"connected={credentials.connected}"
    )
    return OAuthResult(
        merchant_id=merchant_id,
        platform=platform,
        credentials=credentials,
        created_merchant=created,
        steps=steps,
    )


# ============================================================
# Token refresh
# ============================================================


async def refresh_access_token(
    merchant_id: int,
    platform: Platform,
    *,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> str:
    """Exchange the stored refresh token for a new access token.

    Runs in its own short sessions: one to read the refresh token, one to
    write the new token set, committed before returning. No session is open
    during the token request, and a later failure in the caller's
    transaction cannot roll the new tokens back.

    Raises:
        AuthError: No refresh token, or the token endpoint rejected it.
    """
    settings = settings or get_settings()
    config = settings.platform_config(platform)
    async with get_session() as session:
        credentials = await get_credentials(session, merchant_id, platform)
    if not credentials.refresh_token:
        raise AuthError(
            f"No {platform.value} refresh token for merchant {merchant_id}",
            platform=platform.value,
            merchant_id=merchant_id,
        )

    try:
        grant = await _post_token_form(
            platform,
            {
                "grant_type": "refresh_token",
                "refresh_token": credentials.refresh_token,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
            settings=settings,
            http_client=http_client,
        )
    except AuthError as e:
        e.merchant_id = merchant_id
        raise

    patch: dict[str, Any] = grant.credential_patch(now or datetime.now(timezone.utc))
    # Refresh responses must not move the connection to another store.
    patch.pop("store_id", None)
    patch.pop("store_url", None)
    async with get_session() as session:
        await update_credentials(session, merchant_id, platform, patch)
    logger.info(f"OAuth {platform.value} refreshed token for merchant={merchant_id}")
    return grant.access_token


def make_refresh_callback(
    merchant_id: int,
    platform: Platform,
    *,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> RefreshCallback:
    """Bind refresh_access_token for use as PlatformClient.call(refresh=...)."""

    async def _refresh() -> str:
        return await refresh_access_token(
            merchant_id,
            platform,
            settings=settings,
            http_client=http_client,
        )

    return _refresh
