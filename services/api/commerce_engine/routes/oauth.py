"""OAuth and connection endpoints.

GET /{platform}/oauth/start    - connect an existing merchant (X-Merchant-Id header)
GET /{platform}/oauth/join     - install flow; merchant resolved from the store on callback
GET /{platform}/oauth/callback - verify state + cookie, exchange code, store credentials
GET /{platform}/connection     - connection state derived from stored credentials

The state cookie is cleared on every callback outcome. The callback always
ends in a redirect to the merchant dashboard with ?connected= or ?error=.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from commerce_engine.models import Merchant
from commerce_engine.schemas import ConnectionStatus, error_body
from commerce_engine.services.credentials import find_credentials
from commerce_engine.services.errors import AuthError, OAuthStateError
from commerce_engine.services.oauth import begin_authorization, complete_authorization, state_cookie_name
from commerce_engine.services.platforms import Platform, get_profile
from commerce_engine.settings import get_settings
from commerce_engine.stores.postgres import get_session

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _dashboard_url(**params: str) -> str:
    base = get_settings().app_base_url.rstrip("/")
    return f"{base}/merchant/dashboard?{urlencode(params)}"


def _authorization_redirect(platform: Platform, merchant_id: int | None) -> RedirectResponse:
    settings = get_settings()
    try:
        auth = begin_authorization(platform, merchant_id, settings=settings)
    except AuthError as e:
        raise HTTPException(status_code=503, detail=error_body("OAUTH_NOT_CONFIGURED", str(e)))

    response = RedirectResponse(url=auth.url, status_code=302)
    response.set_cookie(
        auth.cookie_name,
        auth.state,
        max_age=settings.oauth_state_max_age_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.oauth_cookie_secure,
    )
    return response


@router.get("/{platform}/oauth/start")
async def oauth_start(
    platform: Platform,
    merchant_id: int = Header(alias="X-Merchant-Id", ge=1),
) -> RedirectResponse:
    """Redirect an authenticated merchant to the platform consent screen."""
    async with get_session() as session:
        merchant = await session.get(Merchant, merchant_id)
    if merchant is None:
        raise HTTPException(
            status_code=404,
            detail=error_body("MERCHANT_NOT_FOUND", f"Merchant {merchant_id} not found", {"merchant_id": merchant_id}),
        )
    return _authorization_redirect(platform, merchant_id)


@router.get("/{platform}/oauth/join")
async def oauth_join(platform: Platform) -> RedirectResponse:
    """Start the install flow for a store that has no merchant account yet."""
    return _authorization_redirect(platform, None)


@router.get("/{platform}/oauth/callback")
async def oauth_callback(
    platform: Platform,
    request: Request,
    code: str | None = Query(default=None, max_length=2048),
    state: str | None = Query(default=None, max_length=4096),
    error: str | None = Query(default=None, max_length=200),
) -> RedirectResponse:
    """Finish the authorization and redirect back to the dashboard."""
    cookie_name = state_cookie_name(platform)
    cookie_state = request.cookies.get(cookie_name)

    if error:
        logger.warning(f"OAuth {platform.value} callback returned error={error}")
        target = _dashboard_url(error="access_denied")
    else:
        try:
            async with get_session() as session:
                result = await complete_authorization(
                    session,
                    platform,
                    code=code,
                    state=state,
                    cookie_state=cookie_state,
                )
            target = _dashboard_url(connected=platform.value)
            logger.info(f"OAuth {platform.value} callback stored credentials merchant={result.merchant_id}")
        except OAuthStateError:
            target = _dashboard_url(error="invalid_state")
        except AuthError:
            target = _dashboard_url(error="oauth_failed")

    response = RedirectResponse(url=target, status_code=302)
    response.delete_cookie(cookie_name, httponly=True, samesite="lax", secure=get_settings().oauth_cookie_secure)
    return response


@router.get("/{platform}/connection", response_model=ConnectionStatus, response_model_by_alias=True)
async def connection_status(
    platform: Platform,
    merchant_id: int = Header(alias="X-Merchant-Id", ge=1),
) -> ConnectionStatus:
    """Connection state for the calling merchant, computed from the credential row."""
    async with get_session() as session:
        credentials = await find_credentials(session, merchant_id, platform)
    if credentials is None:
        return ConnectionStatus(
            platform=platform.value,
            connected=False,
            missing=list(get_profile(platform).required_credentials),
        )
    return ConnectionStatus(
        platform=platform.value,
        connected=credentials.connected,
        store_id=credentials.store_id,
        store_url=credentials.store_url,
        token_expires_at=credentials.token_expires_at,
        missing=credentials.missing,
    )
