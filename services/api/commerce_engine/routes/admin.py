"""Admin endpoints for sync, maintenance and webhook triage.

All routes require the X-Admin-Token header to equal ADMIN_TOKEN. With no
ADMIN_TOKEN configured the admin surface is disabled (403 for every call).

POST /v1/admin/sync/{platform}/{merchantId} - poll-sync one merchant's catalog
POST /v1/admin/repair-categories            - category repair pass (dry run by default)
GET  /v1/admin/webhook-events               - recent webhook events, filter by status/platform
"""

from dataclasses import asdict
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from commerce_engine.models import WebhookEventStatus
from commerce_engine.schemas import (
    RepairRequest,
    RepairResponse,
    SyncResponse,
    WebhookEventItem,
    WebhookEventList,
    error_body,
)
from commerce_engine.services.errors import AuthError, CredentialsNotFound, RateLimited, UpstreamError
from commerce_engine.services.platforms import Platform
from commerce_engine.services.sync import repair_categories, sync_merchant
from commerce_engine.services.webhooks import list_events
from commerce_engine.settings import get_settings
from commerce_engine.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")


async def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = get_settings().admin_token
    if not expected:
        raise HTTPException(status_code=403, detail=error_body("ADMIN_DISABLED", "Admin token is not configured"))
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail=error_body("UNAUTHORIZED", "Invalid admin token"))


router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/sync/{platform}/{merchant_id}", response_model=SyncResponse)
async def trigger_sync(
    platform: Platform,
    merchant_id: int = Path(ge=1),
    max_pages: int = Query(default=200, ge=1, le=1000, alias="maxPages"),
) -> SyncResponse:
    """Pull the merchant's categories and products from the platform."""
    try:
        async with get_session() as session:
            stats = await sync_merchant(session, merchant_id, platform, max_pages=max_pages)
    except CredentialsNotFound as e:
        raise HTTPException(status_code=404, detail=error_body("NOT_CONNECTED", str(e)))
    except AuthError as e:
        raise HTTPException(status_code=409, detail=error_body("AUTH_FAILED", str(e)))
    except RateLimited as e:
        raise HTTPException(
            status_code=429,
            detail=error_body("RATE_LIMITED", str(e), {"attempts": e.attempts, "retry_after": e.retry_after}),
        )
    except UpstreamError as e:
        raise HTTPException(
            status_code=502,
            detail=error_body("UPSTREAM_ERROR", str(e), {"status_code": e.status_code}),
        )

    return SyncResponse(success=True, stats=asdict(stats))


@router.post("/repair-categories", response_model=RepairResponse)
async def trigger_repair(request: RepairRequest) -> RepairResponse:
    """Assign categories to active products that have none.

    Run with dry_run=true first and review the proposed assignments.
    """
    async with get_session() as session:
        stats = await repair_categories(
            session,
            dry_run=request.dry_run,
            merchant_id=request.merchant_id,
            limit=request.limit,
        )
    return RepairResponse(success=True, dry_run=stats.dry_run, stats=asdict(stats))


@router.get("/webhook-events", response_model=WebhookEventList, response_model_by_alias=True)
async def get_webhook_events(
    status: WebhookEventStatus | None = Query(default=None),
    platform: Platform | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
) -> WebhookEventList:
    """List recent webhook events, newest first."""
    async with get_session() as session:
        events = await list_events(session, status=status, platform=platform, limit=limit)
        items = [
            WebhookEventItem(
                id=event.id,
                platform=event.platform.value,
                store_id=event.store_id,
                event_type=event.event_type,
                idempotency_key=event.idempotency_key,
                status=event.status.value,
                error_message=event.error_message,
                created_at=event.created_at,
                processed_at=event.processed_at,
            )
            for event in events
        ]
    return WebhookEventList(count=len(items), items=items)
