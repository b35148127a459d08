"""Click tracking endpoints.

POST /v1/track/click        - record a click, return the redirect target as JSON
GET  /r/products/{productId} - record a click, 302 to the store

Both paths go through record_click: a qualified click redirects to the
tracking URL (ref + utm params); a disqualified one redirects to the plain
product URL, or fails when the destination itself is not allowed.

Security:
- Only redirect to http(s) URLs with a host
- Block javascript:, data:, file: schemes
"""

from urllib.parse import urlparse

from fastapi import APIRouter, HTTPException, Path, Request
from fastapi.responses import RedirectResponse

from commerce_engine.schemas import ClickRequest, ClickResponse, error_body
from commerce_engine.services.attribution import ClickContext, ClickResult, record_click
from commerce_engine.stores.postgres import get_session

track_router = APIRouter()
redirect_router = APIRouter()

# Blocked URL schemes for security
BLOCKED_SCHEMES = {"javascript", "data", "file", "vbscript"}


def _is_safe_url(url: str | None) -> bool:
    """Validate URL is safe for redirect."""
    if not url:
        return False
    parsed = urlparse(url)
    if parsed.scheme.lower() in BLOCKED_SCHEMES:
        return False
    if parsed.scheme.lower() not in ("https", "http"):
        return False
    return bool(parsed.netloc)


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _click_context(request: Request) -> ClickContext:
    return ClickContext(
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
        sec_fetch_site=request.headers.get("sec-fetch-site"),
    )


async def _track(product_id: int, request: Request) -> ClickResult:
    async with get_session() as session:
        result = await record_click(session, product_id, _click_context(request))
    if result is None:
        raise HTTPException(
            status_code=404,
            detail=error_body("PRODUCT_NOT_FOUND", f"Product {product_id} not found", {"product_id": product_id}),
        )
    return result


@track_router.post("/click", response_model=ClickResponse, response_model_by_alias=True)
async def track_click(body: ClickRequest, request: Request) -> ClickResponse:
    """Record an outbound click and return where the browser should go."""
    result = await _track(body.product_id, request)
    return ClickResponse(
        product_id=result.product_id,
        qualified=result.qualified,
        redirect_url=result.redirect_url if _is_safe_url(result.redirect_url) else None,
        tracking_id=result.tracking_id,
        expires_at=result.expires_at,
        reason=result.reason.value if result.reason else None,
    )


@redirect_router.get("/products/{product_id}")
async def redirect_to_product(
    request: Request,
    product_id: int = Path(description="Product ID to redirect to", ge=1),
) -> RedirectResponse:
    """Record a click and redirect to the store product page.

    Raises:
        HTTPException 404: Product not found.
        HTTPException 502: No safe destination (inactive product or foreign host).
    """
    result = await _track(product_id, request)

    if not _is_safe_url(result.redirect_url):
        raise HTTPException(
            status_code=502,
            detail=error_body(
                "INVALID_DESTINATION",
                "Product destination is not available for redirect",
                {"product_id": product_id, "reason": result.reason.value if result.reason else None},
            ),
        )

    return RedirectResponse(
        url=result.redirect_url,
        status_code=302,
        headers={"Cache-Control": "no-store"},
    )
