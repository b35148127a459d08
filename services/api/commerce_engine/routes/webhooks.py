"""Webhook receiver.

POST /webhooks/{platform} - signed delivery from Salla or Zid.

Status codes:
- 200: processed, duplicate, or skipped (no store id); the platform must not retry
- 400: signed body is not a JSON object
- 401: signature missing or invalid (nothing persisted)
- 500: handler failed; event row is FAILED and the platform may retry
"""

from fastapi import APIRouter, HTTPException, Request

from commerce_engine.schemas import WebhookAck, error_body
from commerce_engine.services.errors import HandlerFailed, InvalidPayload, SignatureError
from commerce_engine.services.platforms import Platform
from commerce_engine.services.webhooks import ingest

router = APIRouter()


@router.post("/{platform}", response_model=WebhookAck, response_model_by_alias=True)
async def receive_webhook(platform: Platform, request: Request) -> WebhookAck:
    """Verify and process one webhook delivery.

    The signature is computed over the raw request bytes, so the body is read
    before any JSON parsing.
    """
    raw_body = await request.body()
    try:
        result = await ingest(platform, dict(request.headers), raw_body)
    except SignatureError as e:
        raise HTTPException(status_code=401, detail=error_body("INVALID_SIGNATURE", str(e)))
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail=error_body("INVALID_JSON", str(e)))
    except HandlerFailed as e:
        raise HTTPException(
            status_code=500,
            detail=error_body("HANDLER_FAILED", "Webhook handler failed", {"event_id": e.event_id}),
        )

    return WebhookAck(
        status=result.status,
        event_type=result.event_type,
        event_id=result.event_id,
        reason=result.reason,
    )
