"""Webhook gateway for Salla and Zid.

ingest(platform, headers, raw_body):
1. Verify HMAC-SHA256 of the raw body against the platform secret (constant-time);
   missing/mismatched signature -> SignatureError, body never parsed
2. Parse JSON and resolve the platform event (store id / event type via aliases);
   no store id -> accepted and skipped
3. Insert the WebhookEvent row keyed on (platform, store_id, idempotency_key) in its
   own transaction; a unique violation means a duplicate delivery -> short-circuit
4. Dispatch to the event handler in a second transaction; if it raises, the row is
   marked FAILED with the error and HandlerFailed propagates (HTTP 500)

Idempotency key = "<event_type>:<delivery header id>" or "<event_type>:<sha256(body)>".
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_engine.models import Merchant, SubscriptionStatus, WebhookEvent, WebhookEventStatus
from commerce_engine.services.attribution import attribute_order
from commerce_engine.services.credentials import (
    find_credentials,
    find_merchant_id_by_store,
    revoke_credentials,
)
from commerce_engine.services.errors import (
    DuplicateEvent,
    HandlerFailed,
    InvalidPayload,
    SignatureError,
)
from commerce_engine.services.oauth import make_refresh_callback
from commerce_engine.services.platform_client import PlatformClient
from commerce_engine.services.platforms import (
    EventKind,
    Platform,
    PlatformEvent,
    parse_datetime,
    resolve_event,
    to_str,
)
from commerce_engine.services.sync import (
    deactivate_product,
    fetch_product,
    normalize_product,
    upsert_order,
    upsert_product,
)
from commerce_engine.settings import Settings, get_settings
from commerce_engine.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

MAX_ERROR_MESSAGE_LENGTH = 2000

# Customer PII removed before the payload is stored
REDACTED_PATHS = (
    ("customer",),
    ("consignee",),
    ("data", "customer"),
    ("data", "consignee"),
    ("order", "customer"),
    ("order", "consignee"),
)

ClientFactory = Callable[[Platform], PlatformClient]


@dataclass
class IngestResult:
    """Outcome of one webhook delivery."""

    status: str  # "processed" | "duplicate" | "skipped"
    platform: Platform
    event_type: str | None = None
    store_id: str | None = None
    idempotency_key: str | None = None
    event_id: int | None = None
    reason: str | None = None
    duplicate: DuplicateEvent | None = None


@dataclass
class HandlerContext:
    """What a handler needs besides the session and the event."""

    merchant_id: int | None
    settings: Settings
    client_factory: ClientFactory
    now: datetime


Handler = Callable[[AsyncSession, PlatformEvent, HandlerContext], Awaitable[str | None]]


# ============================================================
# Signature & keys
# ============================================================


def normalize_signature(value: str | None) -> str:
    """Strip whitespace and an optional "sha256=" prefix; hex is compared lowercase."""
    text = (value or "").strip()
    if text.lower().startswith("sha256="):
        text = text[7:]
    return text.strip().lower()


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    platform: Platform,
    headers: Mapping[str, str],
    raw_body: bytes,
    *,
    settings: Settings | None = None,
) -> None:
    """Raise SignatureError unless the header carries HMAC-SHA256(secret, raw_body)."""
    settings = settings or get_settings()
    config = settings.platform_config(platform)
    if not config.webhook_secret:
        # Unconfigured secret rejects every delivery.
        raise SignatureError(f"{platform.label} webhook secret not configured", platform=platform.value)

    lowered = {k.lower(): v for k, v in headers.items()}
    provided = normalize_signature(lowered.get(config.webhook_header))
    if not provided:
        raise SignatureError(f"Missing {config.webhook_header} header", platform=platform.value)

    expected = compute_signature(config.webhook_secret, raw_body)
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
        raise SignatureError(f"{platform.label} webhook signature mismatch", platform=platform.value)


def compute_idempotency_key(event: PlatformEvent, raw_body: bytes) -> str:
    delivery = event.delivery_id or hashlib.sha256(raw_body).hexdigest()
    return f"{event.event_type}:{delivery}"[:300]


def redact_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-copy the payload without customer/consignee blocks."""
    copy = json.loads(json.dumps(payload))
    for path in REDACTED_PATHS:
        node = copy
        for key in path[:-1]:
            node = node.get(key) if isinstance(node, dict) else None
            if node is None:
                break
        if isinstance(node, dict):
            node.pop(path[-1], None)
    return copy


# ============================================================
# Handlers
# ============================================================


async def handle_order(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    if ctx.merchant_id is None:
        return "unknown_store"
    normalized = event.normalize_order()
    if normalized is None:
        return "missing_order_id"
    order, created = await upsert_order(session, ctx.merchant_id, event.platform, normalized)
    result = await attribute_order(session, order, settings=ctx.settings, now=ctx.now)
    if result.created:
        return "commission_created"
    if result.commission is not None:
        return "commission_updated" if result.status_changed else "commission_exists"
    return f"unattributed:{result.miss}" if result.miss else ("order_created" if created else "order_updated")


async def handle_product_upsert(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    if ctx.merchant_id is None:
        return "unknown_store"
    data = event.entity()
    if normalize_product(event.platform, data) is None:
        external_id = event.product_external_id()
        if not external_id:
            return "missing_product_id"
        credentials = await find_credentials(session, ctx.merchant_id, event.platform)
        if credentials is None or not credentials.access_token:
            return "product_fetch_skipped"
        async with ctx.client_factory(event.platform) as client:
            data = await fetch_product(
                credentials,
                client,
                external_id,
                refresh=make_refresh_callback(ctx.merchant_id, event.platform, settings=ctx.settings),
            )
    result = await upsert_product(session, ctx.merchant_id, event.platform, data)
    if result is None:
        return "invalid_product_payload"
    return "product_created" if result.created else "product_updated"


async def handle_product_delete(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    if ctx.merchant_id is None:
        return "unknown_store"
    external_id = event.product_external_id()
    if not external_id:
        return "missing_product_id"
    found = await deactivate_product(session, ctx.merchant_id, event.platform, external_id)
    return "product_deactivated" if found else "product_unknown"


async def handle_subscription(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    if ctx.merchant_id is None:
        return "unknown_store"
    status_name = event.subscription_status()
    if status_name is None:
        return "unhandled_event"
    status = SubscriptionStatus(status_name)
    data = event.data
    values: dict[str, Any] = {"subscription_status": status}
    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
        values["subscription_plan"] = to_str(data.get("plan_name")) or to_str(data.get("plan"))
        values["subscription_start_date"] = (
            parse_datetime(data.get("start_date")) or parse_datetime(data.get("renew_date")) or ctx.now
        )
    if status is not SubscriptionStatus.EXPIRED:
        values["subscription_end_date"] = parse_datetime(data.get("end_date"))
    await session.execute(update(Merchant).where(Merchant.id == ctx.merchant_id).values(**values))
    logger.info(f"Subscription {status.value} for merchant={ctx.merchant_id} via {event.event_type}")
    return f"subscription_{status.value.lower()}"


async def handle_install(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    return "installed"


async def handle_uninstall(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    if ctx.merchant_id is None:
        return "unknown_store"
    await revoke_credentials(session, ctx.merchant_id, event.platform)
    return "credentials_revoked"


async def handle_unknown(session: AsyncSession, event: PlatformEvent, ctx: HandlerContext) -> str | None:
    logger.info(f"Unhandled {event.platform.value} webhook event {event.event_type}")
    return "unhandled_event"


HANDLERS: dict[EventKind, Handler] = {
    EventKind.ORDER: handle_order,
    EventKind.PRODUCT_UPSERT: handle_product_upsert,
    EventKind.PRODUCT_DELETE: handle_product_delete,
    EventKind.SUBSCRIPTION: handle_subscription,
    EventKind.INSTALL: handle_install,
    EventKind.UNINSTALL: handle_uninstall,
    EventKind.UNKNOWN: handle_unknown,
}


# ============================================================
# Ingestion
# ============================================================


async def _record_event(event: PlatformEvent, key: str, payload: Mapping[str, Any]) -> int | None:
    """Insert the audit row. Returns its id, or None on a duplicate delivery."""
    try:
        async with get_session() as session:
            row = WebhookEvent(
                platform=event.platform,
                store_id=event.store_id,
                event_type=event.event_type,
                idempotency_key=key,
                payload_json=json.dumps(redact_payload(payload), ensure_ascii=False),
                status=WebhookEventStatus.PROCESSED,
            )
            session.add(row)
            await session.flush()
            return row.id
    except IntegrityError:
        return None


async def _mark_failed(event_id: int, error: BaseException) -> None:
    message = f"{type(error).__name__}: {error}"[:MAX_ERROR_MESSAGE_LENGTH]
    async with get_session() as session:
        await session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.FAILED,
                error_message=message,
                processed_at=datetime.now(timezone.utc),
            )
        )


async def ingest(
    platform: Platform,
    headers: Mapping[str, str],
    raw_body: bytes,
    *,
    settings: Settings | None = None,
    client_factory: ClientFactory | None = None,
    now: datetime | None = None,
) -> IngestResult:
    """Verify, deduplicate, persist and dispatch one webhook delivery.

    Raises:
        SignatureError: Signature missing or wrong (nothing is persisted).
        InvalidPayload: Body is not a JSON object (nothing is persisted).
        HandlerFailed: Handler raised; the event row is left FAILED.
    """
    settings = settings or get_settings()
    client_factory = client_factory or PlatformClient
    now = now or datetime.now(timezone.utc)

    verify_signature(platform, headers, raw_body, settings=settings)

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidPayload(f"{platform.label} webhook body is not JSON", platform=platform.value) from e
    if not isinstance(payload, dict):
        raise InvalidPayload(f"{platform.label} webhook body is not an object", platform=platform.value)

    event = resolve_event(platform, payload, headers)
    if not event.store_id:
        logger.warning(f"{platform.label} webhook {event.event_type} without store id; skipped")
        return IngestResult(
            status="skipped",
            platform=platform,
            event_type=event.event_type,
            reason="missing_store_id",
        )

    key = compute_idempotency_key(event, raw_body)
    event_id = await _record_event(event, key, payload)
    if event_id is None:
        logger.info(f"{platform.label} webhook duplicate store={event.store_id} key={key}")
        return IngestResult(
            status="duplicate",
            platform=platform,
            event_type=event.event_type,
            store_id=event.store_id,
            idempotency_key=key,
            duplicate=DuplicateEvent(key, platform=platform.value),
        )

    try:
        async with get_session() as session:
            merchant_id = await find_merchant_id_by_store(session, platform, event.store_id)
            ctx = HandlerContext(
                merchant_id=merchant_id,
                settings=settings,
                client_factory=client_factory,
                now=now,
            )
            reason = await HANDLERS[event.kind](session, event, ctx)
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .values(processed_at=datetime.now(timezone.utc))
            )
    except Exception as e:
        logger.exception(
            f"{platform.label} webhook handler failed event_id={event_id} type={event.event_type} "
            f"store={event.store_id}"
        )
        await _mark_failed(event_id, e)
        raise HandlerFailed(str(e) or type(e).__name__, event_id=event_id, platform=platform.value) from e

    logger.info(
        f"{platform.label} webhook processed event_id={event_id} type={event.event_type} "
        f"store={event.store_id} result={reason}"
    )
    return IngestResult(
        status="processed",
        platform=platform,
        event_type=event.event_type,
        store_id=event.store_id,
        idempotency_key=key,
        event_id=event_id,
        reason=reason,
    )


async def list_events(
    session: AsyncSession,
    *,
    status: WebhookEventStatus | None = None,
    platform: Platform | None = None,
    limit: int = 100,
) -> list[WebhookEvent]:
    """Recent webhook events, newest first (admin triage)."""
    query = select(WebhookEvent).order_by(WebhookEvent.id.desc()).limit(limit)
    if status is not None:
        query = query.where(WebhookEvent.status == status)
    if platform is not None:
        query = query.where(WebhookEvent.platform == platform)
    return list((await session.execute(query)).scalars().all())


async def prune_events(
    session: AsyncSession,
    *,
    older_than: datetime,
    dry_run: bool = False,
) -> int:
    """Delete webhook events created before `older_than`. Returns the affected count."""
    condition = WebhookEvent.created_at < older_than
    count = (await session.execute(select(func.count()).select_from(WebhookEvent).where(condition))).scalar_one()
    if not dry_run and count:
        await session.execute(delete(WebhookEvent).where(condition).execution_options(synchronize_session=False))
    logger.info(f"Webhook retention dry_run={dry_run}: {count} events older than {older_than.isoformat()}")
    return count
