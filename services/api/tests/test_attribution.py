"""Click qualification, attribution window, one commission per order."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select

from commerce_engine.models import ClickTracking, Commission, CommissionStatus, OutboundClickEvent, Product
from commerce_engine.services.attribution import (
    ClickContext,
    ClickState,
    DisqualifyReason,
    attribute_order,
    build_tracking_url,
    click_state,
    commission_status_for,
    is_allowed_destination,
    is_suspicious_user_agent,
    is_valid_referrer,
    record_click,
)
from commerce_engine.services.platforms import NormalizedOrder, Platform
from commerce_engine.services.sync import upsert_order
from commerce_engine.stores.postgres import get_session
from conftest import T0, seed_merchant, seed_product

BROWSER = ClickContext(
    ip="203.0.113.7",
    user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Safari/605.1.15",
    referrer="https://app.test/products/oud-oil",
    sec_fetch_site="same-site",
)


async def allow_all(key: str, limit: int) -> bool:
    return True


async def deny_all(key: str, limit: int) -> bool:
    return False


def window_settings(settings, hours: int = 24, **extra):
    return settings.model_copy(update={"attribution_window_hours": hours, **extra})


async def click(product_id: int, settings, *, at=T0, context: ClickContext = BROWSER, limiter=allow_all):
    async with get_session() as session:
        return await record_click(session, product_id, context, settings=settings, now=at, rate_limiter=limiter)


async def place_order(
    merchant_id: int,
    order_id: str,
    *,
    at,
    settings,
    total: float = 200.0,
    referrer_code: str | None = None,
    products: list[str] | None = None,
    payment_status: str = "pending",
    order_status: str = "created",
):
    normalized = NormalizedOrder(
        order_id=order_id,
        store_id="1001",
        total=total,
        currency="SAR",
        payment_status=payment_status,
        order_status=order_status,
        referrer_code=referrer_code,
        product_external_ids=["501"] if products is None else products,
        created_at=at,
    )
    async with get_session() as session:
        order, _ = await upsert_order(session, merchant_id, Platform.SALLA, normalized)
        return await attribute_order(session, order, settings=settings, now=at)


async def _count(model) -> int:
    async with get_session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ============================================================
# Helpers
# ============================================================


def test_tracking_url_replaces_existing_ref():
    url = build_tracking_url("https://demo.salla.sa/product/501?ref=old&color=red", "ce_abc", "oud-oil")
    query = parse_qs(urlparse(url).query)
    assert query["ref"] == ["ce_abc"]
    assert query["color"] == ["red"]
    assert query["utm_medium"] == ["affiliate"]
    assert query["utm_campaign"] == ["oud-oil"]


def test_allowed_destinations():
    assert is_allowed_destination("https://demo.salla.sa/product/501", Platform.SALLA, None)
    assert is_allowed_destination("https://shop.example.com/anything", Platform.SALLA, "https://shop.example.com")
    assert is_allowed_destination("https://oud.zid.store/products/z1", Platform.ZID, None)
    assert not is_allowed_destination("https://oud.zid.store/cart", Platform.ZID, None)
    assert not is_allowed_destination("https://evil.example/product/1", Platform.SALLA, "https://demo.salla.sa")
    assert not is_allowed_destination("javascript:alert(1)", Platform.SALLA, None)


def test_user_agent_and_referrer_checks():
    assert is_suspicious_user_agent("Googlebot/2.1")
    assert is_suspicious_user_agent("")
    assert not is_suspicious_user_agent(BROWSER.user_agent)
    assert is_valid_referrer(None, "https://app.test")
    assert is_valid_referrer("https://app.test/x", "https://app.test")
    assert not is_valid_referrer("https://other.test/x", "https://app.test")


@pytest.mark.parametrize(
    ("payment", "status", "expected"),
    [
        ("pending", "created", CommissionStatus.PENDING),
        ("paid", "processing", CommissionStatus.APPROVED),
        (None, "delivered", CommissionStatus.APPROVED),
        ("refunded", "completed", CommissionStatus.REJECTED),
        ("paid", "cancelled", CommissionStatus.REJECTED),
    ],
)
def test_commission_status_mapping(payment, status, expected):
    assert commission_status_for(payment, status) is expected


# ============================================================
# Clicks
# ============================================================


@pytest.mark.asyncio
async def test_qualified_click_gets_tracking_id(engine, settings):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    cfg = window_settings(settings, hours=24)

    result = await click(product_id, cfg)

    assert result.qualified is True
    assert result.tracking_id.startswith("ce_")
    assert result.expires_at == T0 + timedelta(hours=24)
    assert parse_qs(urlparse(result.redirect_url).query)["ref"] == [result.tracking_id]
    async with get_session() as session:
        product = await session.get(Product, product_id)
        event = (await session.execute(select(OutboundClickEvent))).scalar_one()
        tracked = (await session.execute(select(ClickTracking))).scalar_one()
    assert product.click_count == 1
    assert event.qualified is True
    assert event.ip_hash != BROWSER.ip
    assert len(event.ip_hash) == 64
    assert tracked.commission_rate == 5.0
    assert click_state(tracked, T0 + timedelta(hours=1)) is ClickState.CLICKED
    assert click_state(tracked, T0 + timedelta(hours=24)) is ClickState.EXPIRED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("context", "limiter", "reason"),
    [
        (ClickContext(ip="1.1.1.1", user_agent="curl/8.4.0"), allow_all, DisqualifyReason.BOT_UA),
        (
            ClickContext(ip="1.1.1.1", user_agent=BROWSER.user_agent, referrer="https://spam.test/"),
            allow_all,
            DisqualifyReason.INVALID_REFERRER,
        ),
        (
            ClickContext(ip="1.1.1.1", user_agent=BROWSER.user_agent, sec_fetch_site="cross-site"),
            allow_all,
            DisqualifyReason.SEC_FETCH_SITE,
        ),
        (BROWSER, deny_all, DisqualifyReason.RATE_LIMIT),
    ],
    ids=["bot", "referrer", "fetch-site", "rate-limit"],
)
async def test_disqualified_clicks_are_logged_without_tracking(engine, settings, context, limiter, reason):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)

    result = await click(product_id, settings, context=context, limiter=limiter)

    assert result.qualified is False
    assert result.reason is reason
    assert result.tracking_id is None
    assert result.redirect_url == "https://demo.salla.sa/product/501"
    assert await _count(ClickTracking) == 0
    async with get_session() as session:
        event = (await session.execute(select(OutboundClickEvent))).scalar_one()
    assert event.disqualify_reason == reason.value


@pytest.mark.asyncio
async def test_inactive_product_and_foreign_destination(engine, settings):
    merchant_id = await seed_merchant()
    inactive = await seed_product(merchant_id, external_id="501", is_active=False)
    foreign = await seed_product(merchant_id, external_id="502", product_url="https://evil.example/product/502")

    first = await click(inactive, settings)
    second = await click(foreign, settings)

    assert first.reason is DisqualifyReason.PRODUCT_INACTIVE
    assert first.redirect_url is None
    assert second.reason is DisqualifyReason.INVALID_DESTINATION
    assert second.redirect_url is None


@pytest.mark.asyncio
async def test_repeat_click_reuses_recent_tracking_id(engine, settings):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)

    first = await click(product_id, settings)
    second = await click(product_id, settings, at=T0 + timedelta(seconds=5))
    third = await click(product_id, settings, at=T0 + timedelta(seconds=60))

    assert second.reason is DisqualifyReason.DUPLICATE_RECENT
    assert second.tracking_id == first.tracking_id
    assert second.redirect_url == first.redirect_url
    assert third.qualified is True
    assert third.tracking_id != first.tracking_id
    assert await _count(ClickTracking) == 2


@pytest.mark.asyncio
async def test_unknown_product_returns_none(engine, settings):
    assert await click(12345, settings) is None


# ============================================================
# Attribution
# ============================================================


@pytest.mark.asyncio
async def test_order_outside_window_gets_no_commission(engine, settings):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    cfg = window_settings(settings, hours=24)
    tracked = await click(product_id, cfg)

    by_product = await place_order(merchant_id, "9001", at=T0 + timedelta(hours=25), settings=cfg)
    by_code = await place_order(
        merchant_id, "9002", at=T0 + timedelta(hours=25), settings=cfg, referrer_code=tracked.tracking_id
    )

    assert by_product.commission is None
    assert str(by_product.miss) == "no_matching_click"
    assert by_code.commission is None
    assert str(by_code.miss) == "click_expired"
    assert await _count(Commission) == 0


@pytest.mark.asyncio
async def test_order_inside_window_creates_one_commission(engine, settings):
    merchant_id = await seed_merchant(commission_rate=7.5)
    product_id = await seed_product(merchant_id)
    cfg = window_settings(settings, hours=24)
    tracked = await click(product_id, cfg)

    first = await place_order(merchant_id, "9001", at=T0 + timedelta(hours=2), settings=cfg)
    again = await place_order(
        merchant_id, "9001", at=T0 + timedelta(hours=3), settings=cfg, payment_status="paid"
    )
    rejected = await place_order(
        merchant_id, "9001", at=T0 + timedelta(hours=4), settings=cfg, payment_status="refunded"
    )
    revived = await place_order(merchant_id, "9001", at=T0 + timedelta(hours=5), settings=cfg, payment_status="paid")

    assert first.created is True
    assert first.click.tracking_id == tracked.tracking_id
    assert first.commission.commission_amount == 15.0
    assert first.commission.status is CommissionStatus.PENDING
    assert again.created is False
    assert again.status_changed is True
    assert rejected.status_changed is True
    assert revived.status_changed is False
    assert await _count(Commission) == 1
    async with get_session() as session:
        commission = (await session.execute(select(Commission))).scalar_one()
        click_row = (await session.execute(select(ClickTracking))).scalar_one()
    assert commission.status is CommissionStatus.REJECTED
    assert click_row.converted is True
    assert click_row.converted_count == 1
    assert click_state(click_row, T0 + timedelta(hours=30)) is ClickState.CONVERTED


@pytest.mark.asyncio
async def test_click_conversion_cap(engine, settings):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    tracked = await click(product_id, settings)

    first = await place_order(merchant_id, "9001", at=T0 + timedelta(hours=1), settings=settings)
    second = await place_order(
        merchant_id, "9002", at=T0 + timedelta(hours=2), settings=settings, referrer_code=tracked.tracking_id
    )
    third = await place_order(merchant_id, "9003", at=T0 + timedelta(hours=2), settings=settings)

    assert first.created is True
    assert str(second.miss) == "conversion_cap_reached"
    assert str(third.miss) == "no_matching_click"
    assert await _count(Commission) == 1


@pytest.mark.asyncio
async def test_referrer_code_must_match_order_products(engine, settings):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    await seed_product(merchant_id, external_id="777", product_url="https://demo.salla.sa/product/777")
    tracked = await click(product_id, settings)

    other = await place_order(
        merchant_id, "9001", at=T0 + timedelta(hours=1), settings=settings,
        referrer_code=tracked.tracking_id, products=["777"],
    )
    unknown_items = await place_order(
        merchant_id, "9002", at=T0 + timedelta(hours=1), settings=settings,
        referrer_code=tracked.tracking_id, products=[],
    )

    assert other.commission is None
    assert unknown_items.created is True
    assert unknown_items.click.tracking_id == tracked.tracking_id


@pytest.mark.asyncio
async def test_click_before_order_only(engine, settings):
    merchant_id = await seed_merchant()
    product_id = await seed_product(merchant_id)
    await click(product_id, settings, at=T0 + timedelta(hours=1))

    result = await place_order(merchant_id, "9001", at=T0, settings=settings)

    assert result.commission is None
    assert str(result.miss) == "no_matching_click"
