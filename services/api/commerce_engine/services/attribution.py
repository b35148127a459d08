"""Click attribution and commission pipeline.

Clicks:
- every click attempt lands in outbound_click_events (IP/UA stored as SHA-256)
- disqualified attempts carry a reason code and never create a ClickTracking row
- qualified clicks get a tracking id and expires_at = clicked_at + attribution window

Orders:
- tracking code on the order (referrer) wins when it names a live click
- otherwise the most recent unexpired click on any of the order's products
- the click is marked converted and its counter incremented, capped by
  max_conversions_per_click
- one Commission per order, enforced by the unique order_id constraint;
  later events may move its status but never create a second row

Click state is derived, never stored:
    CLICKED -> CONVERTED (attributed within window)
    CLICKED -> EXPIRED   (window passed, terminal)
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import hashlib
import logging
import re
import secrets
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_engine.models import (
    ClickTracking,
    Commission,
    CommissionStatus,
    Merchant,
    Order,
    OutboundClickEvent,
    PlatformConnection,
    Product,
)
from commerce_engine.services.errors import AttributionMiss
from commerce_engine.services.platforms import Platform, as_utc
from commerce_engine.services.sync import order_product_external_ids, product_platform
from commerce_engine.settings import Settings, get_settings
from commerce_engine.stores.redis import hit_rate_limit

logger = logging.getLogger("uvicorn.error")

TRACKING_ID_PREFIX = "ce_"
TRACKING_CODE_PATTERN = re.compile(r"^(ce_|ce:|click_)", re.IGNORECASE)

BOT_USER_AGENT_SNIPPETS = (
    "bot",
    "crawler",
    "spider",
    "headless",
    "slurp",
    "curl",
    "wget",
    "python-requests",
    "httpclient",
)

PLATFORM_HOSTS = {
    Platform.SALLA: ("salla.sa", "salla.shop"),
    Platform.ZID: ("zid.store", "zid.sa"),
}

_TRACKING_PARAMS = frozenset({"ref", "utm_source", "utm_medium", "utm_campaign"})

PAID_PAYMENT_STATUSES = frozenset({"paid", "completed", "success", "successful", "confirmed", "approved"})
DELIVERED_ORDER_STATUSES = frozenset({"delivered", "completed", "complete", "fulfilled"})
CANCELLED_PAYMENT_STATUSES = frozenset({"refunded", "refund", "voided", "void", "canceled", "cancelled", "cancel"})
CANCELLED_ORDER_STATUSES = CANCELLED_PAYMENT_STATUSES | {"rejected"}

RateLimitFn = Callable[[str, int], Awaitable[bool]]


class DisqualifyReason(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    BOT_UA = "BOT_UA"
    INVALID_REFERRER = "INVALID_REFERRER"
    SEC_FETCH_SITE = "SEC_FETCH_SITE"
    DUPLICATE_RECENT = "DUPLICATE_RECENT"
    PRODUCT_INACTIVE = "PRODUCT_INACTIVE"
    INVALID_DESTINATION = "INVALID_DESTINATION"


class ClickState(str, Enum):
    CLICKED = "CLICKED"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"


# ============================================================
# Click helpers
# ============================================================


def generate_tracking_id() -> str:
    return TRACKING_ID_PREFIX + secrets.token_urlsafe(12)[:12]


def is_tracking_code(value: str | None) -> bool:
    return bool(value and TRACKING_CODE_PATTERN.match(value.strip()))


def hash_value(value: str | None) -> str | None:
    if not value or value == "unknown":
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def is_suspicious_user_agent(user_agent: str | None) -> bool:
    text = (user_agent or "").strip()
    if len(text) < 8:
        return True
    lowered = text.lower()
    return any(snippet in lowered for snippet in BOT_USER_AGENT_SNIPPETS)


def is_valid_fetch_site(value: str | None) -> bool:
    if not value:
        return True
    return value.strip().lower() in ("same-origin", "same-site", "none")


def is_valid_referrer(referrer: str | None, app_base_url: str) -> bool:
    """A referrer, when sent, must come from our own app origin."""
    if not referrer:
        return True
    ref = urlparse(referrer)
    app = urlparse(app_base_url)
    return (ref.scheme, ref.netloc.lower()) == (app.scheme, app.netloc.lower())


def is_allowed_destination(url: str | None, platform: Platform, store_url: str | None) -> bool:
    """Only redirect to the merchant's own store host or a platform product page."""
    if not url:
        return False
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()

    store_host = urlparse(store_url).hostname if store_url else None
    if store_host and host == store_host.lower():
        return True

    allowed = PLATFORM_HOSTS[platform]
    if not any(host == h or host.endswith(f".{h}") for h in allowed):
        return False
    path = parsed.path.lower()
    if platform is Platform.ZID:
        return "/products/" in path
    return "/product/" in path or "/products/" in path


def build_tracking_url(destination_url: str, tracking_id: str, campaign: str) -> str:
    """Append ref + UTM parameters to the destination."""
    parsed = urlparse(destination_url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in _TRACKING_PARAMS]
    query += [
        ("ref", tracking_id),
        ("utm_source", "commerce_engine"),
        ("utm_medium", "affiliate"),
        ("utm_campaign", campaign),
    ]
    return urlunparse(parsed._replace(query=urlencode(query)))


def click_state(click: ClickTracking, now: datetime | None = None) -> ClickState:
    if click.converted:
        return ClickState.CONVERTED
    now = now or datetime.now(timezone.utc)
    if as_utc(click.expires_at) <= as_utc(now):
        return ClickState.EXPIRED
    return ClickState.CLICKED


def product_destination(product: Product, store_url: str | None) -> str | None:
    if product.product_url:
        return product.product_url
    if not store_url:
        return None
    base = store_url.rstrip("/")
    if product.zid_product_id and not product.salla_product_id:
        return f"{base}/products/{product.zid_product_id}"
    if product.salla_product_id:
        return f"{base}/product/{product.salla_product_id}"
    return None


# ============================================================
# Click recording
# ============================================================


@dataclass
class ClickContext:
    """Request facts used for qualification. IP and user agent are stored only as hashes."""

    ip: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    sec_fetch_site: str | None = None


@dataclass
class ClickResult:
    product_id: int
    qualified: bool
    redirect_url: str | None
    tracking_id: str | None = None
    expires_at: datetime | None = None
    reason: DisqualifyReason | None = None


async def record_click(
    session: AsyncSession,
    product_id: int,
    context: ClickContext,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
    rate_limiter: RateLimitFn | None = None,
) -> ClickResult | None:
    """Qualify one outbound click and record it.

    Returns None if the product does not exist.
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    rate_limiter = rate_limiter or hit_rate_limit

    product = await session.get(Product, product_id)
    if product is None:
        return None

    platform = product_platform(product)
    store_url = (
        await session.execute(
            select(PlatformConnection.store_url).where(
                PlatformConnection.merchant_id == product.merchant_id,
                PlatformConnection.platform == platform,
            )
        )
    ).scalar_one_or_none()
    destination = product_destination(product, store_url)
    ip_hash = hash_value(context.ip)
    ua_hash = hash_value(context.user_agent)

    async def _log(reason: DisqualifyReason | None, tracking_id: str | None = None) -> None:
        session.add(
            OutboundClickEvent(
                tracking_id=tracking_id,
                product_id=product.id,
                merchant_id=product.merchant_id,
                platform=platform,
                destination_url=destination,
                referrer=context.referrer,
                ip_hash=ip_hash,
                ua_hash=ua_hash,
                qualified=reason is None,
                disqualify_reason=reason.value if reason else None,
                created_at=now,
            )
        )
        await session.flush()

    def _disqualified(reason: DisqualifyReason, redirect_url: str | None, tracking_id: str | None = None) -> ClickResult:
        logger.info(f"Click disqualified product={product.id} reason={reason.value}")
        return ClickResult(
            product_id=product.id,
            qualified=False,
            redirect_url=redirect_url,
            tracking_id=tracking_id,
            reason=reason,
        )

    if not product.is_active:
        await _log(DisqualifyReason.PRODUCT_INACTIVE)
        return _disqualified(DisqualifyReason.PRODUCT_INACTIVE, None)

    if not is_allowed_destination(destination, platform, store_url):
        await _log(DisqualifyReason.INVALID_DESTINATION)
        return _disqualified(DisqualifyReason.INVALID_DESTINATION, None)

    reason: DisqualifyReason | None = None
    ip_key = ip_hash or "unknown"
    ip_allowed = await rate_limiter(f"click:ip:{ip_key}", settings.click_rate_limit_per_ip)
    product_allowed = await rate_limiter(
        f"click:ip:{ip_key}:product:{product.id}", settings.click_rate_limit_per_product
    )
    if not ip_allowed or not product_allowed:
        reason = DisqualifyReason.RATE_LIMIT
    elif is_suspicious_user_agent(context.user_agent):
        reason = DisqualifyReason.BOT_UA
    elif not is_valid_referrer(context.referrer, settings.app_base_url):
        reason = DisqualifyReason.INVALID_REFERRER
    elif not is_valid_fetch_site(context.sec_fetch_site):
        reason = DisqualifyReason.SEC_FETCH_SITE

    if reason is not None:
        await _log(reason)
        return _disqualified(reason, destination)

    if ip_hash and ua_hash and settings.click_duplicate_window_seconds:
        since = now - timedelta(seconds=settings.click_duplicate_window_seconds)
        recent = (
            await session.execute(
                select(ClickTracking)
                .join(OutboundClickEvent, OutboundClickEvent.tracking_id == ClickTracking.tracking_id)
                .where(
                    OutboundClickEvent.product_id == product.id,
                    OutboundClickEvent.ip_hash == ip_hash,
                    OutboundClickEvent.ua_hash == ua_hash,
                    OutboundClickEvent.qualified.is_(True),
                    OutboundClickEvent.created_at >= since,
                )
                .order_by(ClickTracking.clicked_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if recent is not None:
            await _log(DisqualifyReason.DUPLICATE_RECENT, recent.tracking_id)
            return _disqualified(DisqualifyReason.DUPLICATE_RECENT, recent.tracking_url, recent.tracking_id)

    tracking_id = generate_tracking_id()
    expires_at = now + timedelta(hours=settings.attribution_window_hours)
    merchant_rate = (
        await session.execute(select(Merchant.commission_rate).where(Merchant.id == product.merchant_id))
    ).scalar_one_or_none()
    click = ClickTracking(
        tracking_id=tracking_id,
        product_id=product.id,
        merchant_id=product.merchant_id,
        platform=platform,
        destination_url=destination,
        tracking_url=build_tracking_url(destination, tracking_id, product.slug),
        commission_rate=merchant_rate,
        clicked_at=now,
        expires_at=expires_at,
        converted=False,
        converted_count=0,
    )
    session.add(click)
    await session.execute(
        update(Product).where(Product.id == product.id).values(click_count=Product.click_count + 1)
    )
    await _log(None, tracking_id)
    logger.info(f"Click tracked product={product.id} tracking_id={tracking_id}")
    return ClickResult(
        product_id=product.id,
        qualified=True,
        redirect_url=click.tracking_url,
        tracking_id=tracking_id,
        expires_at=expires_at,
    )


# ============================================================
# Order attribution
# ============================================================


def commission_status_for(payment_status: str | None, order_status: str | None) -> CommissionStatus:
    payment = (payment_status or "").strip().lower()
    status = (order_status or "").strip().lower()
    if payment in CANCELLED_PAYMENT_STATUSES or status in CANCELLED_ORDER_STATUSES:
        return CommissionStatus.REJECTED
    if payment in PAID_PAYMENT_STATUSES or status in DELIVERED_ORDER_STATUSES:
        return CommissionStatus.APPROVED
    return CommissionStatus.PENDING


def _status_transition_allowed(current: CommissionStatus, new: CommissionStatus) -> bool:
    if current == new or current == CommissionStatus.REJECTED:
        return False
    if current == CommissionStatus.APPROVED:
        return new == CommissionStatus.REJECTED
    return True


@dataclass
class AttributionResult:
    """Outcome of attributing one order."""

    order_id: int
    commission: Commission | None = None
    click: ClickTracking | None = None
    created: bool = False
    status_changed: bool = False
    miss: AttributionMiss | None = None


async def _order_product_ids(session: AsyncSession, order: Order) -> list[int]:
    external_ids = order_product_external_ids(order)
    if not external_ids:
        return []
    column = Product.salla_product_id if order.platform is Platform.SALLA else Product.zid_product_id
    result = await session.execute(
        select(Product.id).where(Product.merchant_id == order.merchant_id, column.in_(external_ids))
    )
    return list(result.scalars().all())


async def _find_click(
    session: AsyncSession,
    order: Order,
    order_time: datetime,
    cap: int,
) -> tuple[ClickTracking | None, str | None]:
    """Pick the click to credit. Returns (click, miss_reason)."""
    product_ids = await _order_product_ids(session, order)

    if is_tracking_code(order.referrer_code):
        click = (
            await session.execute(
                select(ClickTracking).where(
                    ClickTracking.tracking_id == order.referrer_code.strip(),
                    ClickTracking.merchant_id == order.merchant_id,
                )
            )
        ).scalar_one_or_none()
        if click is not None and (not product_ids or click.product_id in product_ids):
            if not (as_utc(click.clicked_at) <= order_time < as_utc(click.expires_at)):
                return None, "click_expired"
            if click.converted_count >= cap:
                return None, "conversion_cap_reached"
            return click, None

    if not product_ids:
        return None, "no_matching_click"

    click = (
        await session.execute(
            select(ClickTracking)
            .where(
                ClickTracking.merchant_id == order.merchant_id,
                ClickTracking.product_id.in_(product_ids),
                ClickTracking.clicked_at <= order_time,
                ClickTracking.expires_at > order_time,
                ClickTracking.converted_count < cap,
            )
            .order_by(ClickTracking.clicked_at.desc(), ClickTracking.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if click is None:
        return None, "no_matching_click"
    return click, None


async def _existing_commission(session: AsyncSession, order_id: int) -> Commission | None:
    result = await session.execute(select(Commission).where(Commission.order_id == order_id))
    return result.scalar_one_or_none()


async def _apply_status(session: AsyncSession, commission: Commission, status: CommissionStatus) -> bool:
    if not _status_transition_allowed(commission.status, status):
        return False
    logger.info(f"Commission order={commission.order_id} {commission.status.value} -> {status.value}")
    commission.status = status
    await session.flush()
    return True


async def attribute_order(
    session: AsyncSession,
    order: Order,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> AttributionResult:
    """Credit an order to a tracked click and create its commission (at most once)."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    status = commission_status_for(order.payment_status, order.status)

    existing = await _existing_commission(session, order.id)
    if existing is not None:
        changed = await _apply_status(session, existing, status)
        return AttributionResult(order_id=order.id, commission=existing, status_changed=changed)

    order_time = as_utc(order.ordered_at or now)
    cap = settings.max_conversions_per_click
    click, miss_reason = await _find_click(session, order, order_time, cap)
    if click is None:
        logger.info(f"Order {order.id} unattributed: {miss_reason}")
        return AttributionResult(
            order_id=order.id,
            miss=AttributionMiss(miss_reason or "no_matching_click", platform=order.platform.value, merchant_id=order.merchant_id),
        )

    rate = click.commission_rate
    if rate is None:
        rate = (
            await session.execute(select(Merchant.commission_rate).where(Merchant.id == order.merchant_id))
        ).scalar_one_or_none()
    if rate is None:
        rate = settings.default_commission_rate
    amount = round(float(order.total) * float(rate) / 100, 2)

    commission = Commission(
        order_id=order.id,
        merchant_id=order.merchant_id,
        click_id=click.id,
        order_total=order.total,
        currency=order.currency,
        commission_rate=rate,
        commission_amount=amount,
        status=status,
    )
    try:
        async with session.begin_nested():
            claimed = await session.execute(
                update(ClickTracking)
                .where(ClickTracking.id == click.id, ClickTracking.converted_count < cap)
                .values(
                    converted=True,
                    converted_count=ClickTracking.converted_count + 1,
                    converted_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not claimed.rowcount:
                raise _CapReached()
            session.add(commission)
            await session.flush()
    except _CapReached:
        logger.info(f"Order {order.id} unattributed: click {click.tracking_id} reached conversion cap")
        return AttributionResult(
            order_id=order.id,
            miss=AttributionMiss("conversion_cap_reached", platform=order.platform.value, merchant_id=order.merchant_id),
        )
    except IntegrityError:
        # Another delivery of the same order committed its commission first.
        existing = await _existing_commission(session, order.id)
        if existing is None:
            raise
        changed = await _apply_status(session, existing, status)
        return AttributionResult(order_id=order.id, commission=existing, status_changed=changed)

    await session.refresh(click)
    logger.info(
        f"Commission created order={order.id} click={click.tracking_id} amount={amount} "
        f"{order.currency} rate={rate} status={status.value}"
    )
    return AttributionResult(order_id=order.id, commission=commission, click=click, created=True)


class _CapReached(Exception):
    pass
