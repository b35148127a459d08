"""Webhook gateway: signature, idempotency, dispatch and failure recording."""

from datetime import timedelta
import json

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from commerce_engine.models import (
    ClickTracking,
    Commission,
    CommissionStatus,
    Merchant,
    Order,
    Product,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from commerce_engine.services import webhooks
from commerce_engine.services.credentials import find_credentials
from commerce_engine.services.platforms import EventKind, Platform, resolve_event
from commerce_engine.stores.postgres import get_session
from conftest import T0, dumps, seed_merchant, seed_product, sign

SALLA_SECRET = "salla-webhook-secret"
ZID_SECRET = "zid-webhook-secret"


def salla_headers(body: bytes, *, delivery_id: str | None = None, secret: str = SALLA_SECRET) -> dict[str, str]:
    headers = {"content-type": "application/json", "x-salla-signature": sign(secret, body)}
    if delivery_id:
        headers["x-salla-event-id"] = delivery_id
    return headers


def salla_order(order_id: int = 9001, **data) -> dict:
    return {
        "event": "order.created",
        "merchant": 1001,
        "created_at": T0.isoformat(),
        "data": {
            "id": order_id,
            "status": {"slug": "under_review"},
            "payment_status": "pending",
            "amounts": {"total": {"amount": 200, "currency": "SAR"}},
            "items": [{"product": {"id": 501}, "quantity": 1}],
            "customer": {"first_name": "Sara", "mobile": "+966500000000"},
            "created_at": (T0 + timedelta(hours=1)).isoformat(),
            **data,
        },
    }


async def _count(model) -> int:
    async with get_session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _events() -> list[WebhookEvent]:
    async with get_session() as session:
        return list((await session.execute(select(WebhookEvent).order_by(WebhookEvent.id))).scalars().all())


# ============================================================
# Pure helpers
# ============================================================


def test_normalize_signature_strips_prefix_and_case():
    assert webhooks.normalize_signature("  sha256=ABCDEF ") == "abcdef"
    assert webhooks.normalize_signature(None) == ""


def test_idempotency_key_prefers_delivery_header():
    body = dumps({"event": "order.created", "merchant": 1})
    with_header = resolve_event(Platform.SALLA, {"event": "order.created", "merchant": 1}, {"X-Salla-Event-Id": "d-1"})
    without = resolve_event(Platform.SALLA, {"event": "order.created", "merchant": 1}, {})

    assert webhooks.compute_idempotency_key(with_header, body) == "order.created:d-1"
    key = webhooks.compute_idempotency_key(without, body)
    assert key.startswith("order.created:")
    assert len(key.split(":", 1)[1]) == 64


def test_redact_payload_drops_customer_blocks():
    payload = salla_order()
    redacted = webhooks.redact_payload(payload)
    assert "customer" not in redacted["data"]
    assert redacted["data"]["id"] == 9001
    # Original is untouched
    assert "customer" in payload["data"]


# ============================================================
# Boundary
# ============================================================


@pytest.mark.asyncio
async def test_wrong_secret_rejected_without_row(client: AsyncClient):
    await seed_merchant()
    body = dumps(salla_order())

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body, secret="not-the-secret"))

    assert resp.status_code == 401
    assert resp.json()["detail"]["error"]["code"] == "INVALID_SIGNATURE"
    assert await _count(WebhookEvent) == 0


@pytest.mark.asyncio
async def test_missing_signature_rejected(client: AsyncClient):
    body = dumps(salla_order())
    resp = await client.post("/webhooks/salla", content=body, headers={"content-type": "application/json"})
    assert resp.status_code == 401
    assert await _count(WebhookEvent) == 0


@pytest.mark.asyncio
async def test_signature_over_raw_bytes_not_reserialized_json(client: AsyncClient):
    await seed_merchant()
    # Same JSON, different bytes: a signature over one serialization must not validate another.
    payload = salla_order()
    signed = dumps(payload)
    compact = json.dumps(payload, separators=(",", ":")).encode("utf-8")

    resp = await client.post("/webhooks/salla", content=compact, headers=salla_headers(signed))

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_signed_non_json_body_is_bad_request(client: AsyncClient):
    body = b"not json"
    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"]["code"] == "INVALID_JSON"
    assert await _count(WebhookEvent) == 0


@pytest.mark.asyncio
async def test_missing_store_id_is_skipped(client: AsyncClient):
    body = dumps({"event": "order.created", "data": {"id": 1}})

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.status_code == 200
    assert resp.json()["status"] == "skipped"
    assert resp.json()["reason"] == "missing_store_id"
    assert await _count(WebhookEvent) == 0


@pytest.mark.asyncio
async def test_unknown_platform_is_404(client: AsyncClient):
    resp = await client.post("/webhooks/shopify", content=b"{}")
    assert resp.status_code in (404, 422)


# ============================================================
# Idempotency
# ============================================================


@pytest.mark.asyncio
async def test_duplicate_delivery_runs_handler_once(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    await seed_merchant()
    calls: list[str] = []

    async def counting_handler(session, event, ctx):
        calls.append(event.event_type)
        return "counted"

    monkeypatch.setitem(webhooks.HANDLERS, EventKind.ORDER, counting_handler)
    body = dumps(salla_order())
    headers = salla_headers(body, delivery_id="delivery-1")

    first = await client.post("/webhooks/salla", content=body, headers=headers)
    second = await client.post("/webhooks/salla", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert first.json()["reason"] == "counted"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert calls == ["order.created"]
    assert await _count(WebhookEvent) == 1


@pytest.mark.asyncio
async def test_body_hash_key_when_no_delivery_header(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    await seed_merchant()

    async def noop(session, event, ctx):
        return None

    monkeypatch.setitem(webhooks.HANDLERS, EventKind.ORDER, noop)
    body_a = dumps(salla_order(9001))
    body_b = dumps(salla_order(9002))

    await client.post("/webhooks/salla", content=body_a, headers=salla_headers(body_a))
    dup = await client.post("/webhooks/salla", content=body_a, headers=salla_headers(body_a))
    await client.post("/webhooks/salla", content=body_b, headers=salla_headers(body_b))

    assert dup.json()["status"] == "duplicate"
    assert await _count(WebhookEvent) == 2


@pytest.mark.asyncio
async def test_stored_payload_is_redacted(client: AsyncClient):
    await seed_merchant()
    body = dumps(salla_order())

    await client.post("/webhooks/salla", content=body, headers=salla_headers(body, delivery_id="d-redact"))

    [event] = await _events()
    assert "Sara" not in event.payload_json
    assert event.store_id == "1001"
    assert event.idempotency_key == "order.created:d-redact"


# ============================================================
# Failure recording
# ============================================================


@pytest.mark.asyncio
async def test_handler_failure_marks_event_failed(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    await seed_merchant()

    async def boom(session, event, ctx):
        raise ValueError("boom")

    monkeypatch.setitem(webhooks.HANDLERS, EventKind.ORDER, boom)
    body = dumps(salla_order())

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body, delivery_id="d-fail"))

    assert resp.status_code == 500
    assert resp.json()["detail"]["error"]["code"] == "HANDLER_FAILED"
    [event] = await _events()
    assert event.status == WebhookEventStatus.FAILED
    assert "boom" in event.error_message
    assert resp.json()["detail"]["error"]["detail"]["event_id"] == event.id


@pytest.mark.asyncio
async def test_handler_failure_rolls_back_handler_writes(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    merchant_id = await seed_merchant()

    async def partial_then_fail(session, event, ctx):
        session.add(Order(merchant_id=merchant_id, platform=Platform.SALLA, salla_order_id="half-written"))
        await session.flush()
        raise RuntimeError("after write")

    monkeypatch.setitem(webhooks.HANDLERS, EventKind.ORDER, partial_then_fail)
    body = dumps(salla_order())

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.status_code == 500
    assert await _count(Order) == 0


@pytest.mark.asyncio
async def test_failed_events_listed_for_admin(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    await seed_merchant()

    async def boom(session, event, ctx):
        raise ValueError("boom")

    monkeypatch.setitem(webhooks.HANDLERS, EventKind.ORDER, boom)
    body = dumps(salla_order())
    await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    resp = await client.get(
        "/v1/admin/webhook-events",
        params={"status": "FAILED"},
        headers={"X-Admin-Token": "admin-token"},
    )

    assert resp.status_code == 200
    assert resp.json()["count"] == 1
    assert resp.json()["items"][0]["eventType"] == "order.created"


# ============================================================
# Handlers end to end
# ============================================================


@pytest.mark.asyncio
async def test_order_webhook_creates_one_commission(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    async with get_session() as session:
        session.add(
            ClickTracking(
                tracking_id="ce_abcdefabcdef",
                product_id=product_id,
                merchant_id=merchant_id,
                platform=Platform.SALLA,
                destination_url="https://demo.salla.sa/product/501",
                tracking_url="https://demo.salla.sa/product/501?ref=ce_abcdefabcdef",
                clicked_at=T0,
                expires_at=T0 + timedelta(days=30),
                converted=False,
                converted_count=0,
            )
        )

    created = dumps(salla_order(referer_code="ce_abcdefabcdef"))
    paid = dumps(salla_order(referer_code="ce_abcdefabcdef", payment_status="paid") | {"event": "order.updated"})

    first = await client.post("/webhooks/salla", content=created, headers=salla_headers(created, delivery_id="o-1"))
    second = await client.post("/webhooks/salla", content=paid, headers=salla_headers(paid, delivery_id="o-2"))

    assert first.json()["reason"] == "commission_created"
    assert second.json()["reason"] == "commission_updated"
    async with get_session() as session:
        commissions = (await session.execute(select(Commission))).scalars().all()
        click = (await session.execute(select(ClickTracking))).scalar_one()
    assert len(commissions) == 1
    assert commissions[0].commission_amount == 10.0
    assert commissions[0].status == CommissionStatus.APPROVED
    assert click.converted is True
    assert click.converted_count == 1
    assert await _count(Order) == 1


@pytest.mark.asyncio
async def test_order_for_unknown_store_is_recorded(client: AsyncClient):
    body = dumps(salla_order() | {"merchant": 4242})

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.status_code == 200
    assert resp.json()["reason"] == "unknown_store"
    assert await _count(Order) == 0


@pytest.mark.asyncio
async def test_product_deleted_deactivates(client: AsyncClient):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    body = dumps({"event": "product.deleted", "merchant": 1001, "data": {"id": 501}})

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.json()["reason"] == "product_deactivated"
    async with get_session() as session:
        product = await session.get(Product, product_id)
    assert product is not None
    assert product.is_active is False


@pytest.mark.asyncio
async def test_zid_product_update_upserts(client: AsyncClient):
    await seed_merchant(platform=Platform.ZID, store_id="2002", store_url="https://oud.zid.store")
    body = dumps(
        {
            "event": "product.update",
            "store_id": 2002,
            "data": {
                "id": "777",
                "name": {"ar": "عود", "en": "Oud Oil"},
                "price": 150,
                "sale_price": 0,
                "status": "published",
                "html_url": "https://oud.zid.store/products/777",
            },
        }
    )
    headers = {"x-zid-signature": sign(ZID_SECRET, body), "x-zid-webhook-id": "z-1"}

    resp = await client.post("/webhooks/zid", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["reason"] == "product_created"
    async with get_session() as session:
        product = (await session.execute(select(Product))).scalar_one()
    assert product.zid_product_id == "777"
    assert product.title == "Oud Oil"
    assert product.price == 150.0


@pytest.mark.asyncio
async def test_uninstall_revokes_credentials(client: AsyncClient):
    merchant_id = await seed_merchant()
    body = dumps({"event": "app.uninstalled", "merchant": 1001, "data": {}})

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.json()["reason"] == "credentials_revoked"
    async with get_session() as session:
        creds = await find_credentials(session, merchant_id, Platform.SALLA)
    assert creds is not None
    assert creds.access_token is None
    assert creds.connected is False
    assert creds.store_id == "1001"


@pytest.mark.asyncio
async def test_subscription_event_updates_merchant(client: AsyncClient):
    merchant_id = await seed_merchant()
    body = dumps(
        {
            "event": "app.subscription.started",
            "merchant": 1001,
            "data": {"plan_name": "Pro", "start_date": "2026-03-01", "end_date": "2026-04-01"},
        }
    )

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.json()["reason"] == "subscription_active"
    async with get_session() as session:
        merchant = await session.get(Merchant, merchant_id)
    assert merchant.subscription_status == SubscriptionStatus.ACTIVE
    assert merchant.subscription_plan == "Pro"


@pytest.mark.asyncio
async def test_unknown_event_recorded_as_unhandled(client: AsyncClient):
    await seed_merchant()
    body = dumps({"event": "shipment.created", "merchant": 1001, "data": {}})

    resp = await client.post("/webhooks/salla", content=body, headers=salla_headers(body))

    assert resp.json() == {
        "ok": True,
        "status": "processed",
        "eventType": "shipment.created",
        "eventId": resp.json()["eventId"],
        "reason": "unhandled_event",
    }
    [event] = await _events()
    assert event.status == WebhookEventStatus.PROCESSED
    assert event.processed_at is not None
