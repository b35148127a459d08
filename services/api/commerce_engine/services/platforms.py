"""Platform profiles and the tagged webhook event variant.

Salla and Zid disagree on almost every field name. All of that knowledge is
kept here, so the rest of the engine works with:

- `Platform`: the closed set of integrations
- `PlatformProfile`: credential requirements, header names, payload aliases
- `PlatformEvent = SallaEvent | ZidEvent`: resolved once at ingestion
- `TokenGrant`: a normalized OAuth token response

Nothing in this module touches the database or the network.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Mapping


class Platform(str, Enum):
    """Supported commerce platforms."""

    SALLA = "salla"
    ZID = "zid"

    @property
    def label(self) -> str:
        return self.value.capitalize()


def parse_platform(value: str) -> Platform:
    """Parse a path/query platform name. Raises ValueError for unknown names."""
    return Platform(value.strip().lower())


class EventKind(str, Enum):
    """What a webhook event asks the engine to do."""

    ORDER = "order"
    PRODUCT_UPSERT = "product_upsert"
    PRODUCT_DELETE = "product_delete"
    SUBSCRIPTION = "subscription"
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UNKNOWN = "unknown"


# ============================================================
# Payload helpers
# ============================================================


def dig(obj: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts. Returns None on any miss."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


def first_value(obj: Any, paths: tuple[str, ...] | list[str]) -> Any:
    """Return the first non-empty value found at any of `paths`."""
    for path in paths:
        value = dig(obj, path)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def to_str(value: Any) -> str | None:
    """Coerce ids that may arrive as ints or strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def first_str(obj: Any, paths: tuple[str, ...] | list[str]) -> str | None:
    """Like `first_value`, but skips values that are not id-like scalars."""
    for path in paths:
        value = to_str(dig(obj, path))
        if value:
            return value
    return None


def to_float(value: Any, default: float | None = None) -> float | None:
    """Parse numbers that may arrive as strings, ints, or {amount: ...} dicts."""
    if isinstance(value, Mapping):
        value = value.get("amount", value.get("value"))
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip())
        except ValueError:
            return default
    return default


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (some drivers drop tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 strings, "YYYY-MM-DD HH:MM:SS" strings, or epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, Mapping):
        # Salla sends {"date": "2024-01-01 10:00:00.000000", "timezone": "Asia/Riyadh"}
        return parse_datetime(value.get("date"))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def strip_bearer(token: str | None) -> str | None:
    """Remove a leading "Bearer " that some token endpoints include."""
    if token is None:
        return None
    token = token.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


# ============================================================
# Platform profiles
# ============================================================


@dataclass(frozen=True)
class PlatformProfile:
    """Static per-platform knowledge."""

    platform: Platform
    # Credential fields that must all be non-empty for the merchant to count as connected
    required_credentials: tuple[str, ...]
    # Headers carrying a per-delivery id, in preference order
    delivery_id_headers: tuple[str, ...]
    store_id_paths: tuple[str, ...]
    event_type_paths: tuple[str, ...] = ("event", "event_type", "type")
    order_events: frozenset[str] = frozenset()
    product_upsert_events: frozenset[str] = frozenset()
    product_delete_events: frozenset[str] = frozenset()
    # event type -> target subscription status name
    subscription_events: Mapping[str, str] = field(default_factory=dict)
    install_events: frozenset[str] = frozenset()
    uninstall_events: frozenset[str] = frozenset()

    def event_kind(self, event_type: str) -> EventKind:
        if event_type in self.order_events:
            return EventKind.ORDER
        if event_type in self.product_upsert_events:
            return EventKind.PRODUCT_UPSERT
        if event_type in self.product_delete_events:
            return EventKind.PRODUCT_DELETE
        if event_type in self.subscription_events:
            return EventKind.SUBSCRIPTION
        if event_type in self.install_events:
            return EventKind.INSTALL
        if event_type in self.uninstall_events:
            return EventKind.UNINSTALL
        return EventKind.UNKNOWN


_SUBSCRIPTION_EVENTS = {
    "app.subscription.started": "ACTIVE",
    "app.subscription.renewed": "ACTIVE",
    "app.subscription.canceled": "CANCELED",
    "app.subscription.expired": "EXPIRED",
    "app.trial.started": "TRIAL",
}

SALLA_PROFILE = PlatformProfile(
    platform=Platform.SALLA,
    required_credentials=("access_token", "store_id"),
    delivery_id_headers=("x-salla-event-id", "x-webhook-id"),
    store_id_paths=("merchant.id", "merchant", "data.merchant.id", "data.store.id", "store_id"),
    order_events=frozenset(
        {
            "order.created",
            "order.updated",
            "order.status.updated",
            "order.paid",
            "order.payment_status.update",
            "order.refunded",
            "order.cancelled",
        }
    ),
    product_upsert_events=frozenset({"product.created", "product.updated"}),
    product_delete_events=frozenset({"product.deleted"}),
    subscription_events=_SUBSCRIPTION_EVENTS,
    install_events=frozenset({"app.installed", "app.store.authorize"}),
    uninstall_events=frozenset({"app.uninstalled"}),
)

ZID_PROFILE = PlatformProfile(
    platform=Platform.ZID,
    required_credentials=("access_token", "manager_token", "store_id", "store_url"),
    delivery_id_headers=("x-zid-webhook-id", "x-webhook-id"),
    store_id_paths=("store_id", "data.store_id", "store.id", "data.store.id"),
    order_events=frozenset(
        {
            "order.created",
            "order.create",
            "order.updated",
            "order.update",
            "order.paid",
            "order.payment_status.update",
            "order.status.update",
        }
    ),
    product_upsert_events=frozenset({"product.created", "product.create", "product.updated", "product.update"}),
    product_delete_events=frozenset({"product.deleted", "product.delete", "product.removed", "product.remove"}),
    subscription_events={
        **_SUBSCRIPTION_EVENTS,
        "app.market.subscription.active": "ACTIVE",
        "app.market.subscription.renew": "ACTIVE",
        "app.market.subscription.suspended": "CANCELED",
        "app.market.subscription.expired": "EXPIRED",
    },
    install_events=frozenset({"app.installed", "store.connected"}),
    uninstall_events=frozenset({"app.uninstalled"}),
)

PROFILES: dict[Platform, PlatformProfile] = {
    Platform.SALLA: SALLA_PROFILE,
    Platform.ZID: ZID_PROFILE,
}


def get_profile(platform: Platform) -> PlatformProfile:
    return PROFILES[Platform(platform)]


def missing_credentials(platform: Platform, values: Mapping[str, Any]) -> list[str]:
    """Names of required credential fields that are empty for `platform`."""
    return [name for name in get_profile(platform).required_credentials if not values.get(name)]


def is_connected(platform: Platform, values: Mapping[str, Any]) -> bool:
    """Connection state, derived from credential completeness."""
    return not missing_credentials(platform, values)


def build_api_headers(
    platform: Platform,
    *,
    access_token: str,
    manager_token: str | None = None,
    store_id: str | None = None,
) -> dict[str, str]:
    """Request headers for a platform REST call."""
    token = strip_bearer(access_token) or ""
    headers = {
        "Authorization": f"Bearer {token}",
        "Accept": "application/json",
    }
    if Platform(platform) is Platform.ZID:
        headers["Role"] = "Manager"
        headers["Accept-Language"] = "en"
        if manager_token:
            # Zid expects the manager token in X-Manager-Token and the store token in Access-Token.
            headers["X-Manager-Token"] = strip_bearer(manager_token) or ""
            headers["Access-Token"] = token
        if store_id:
            headers["Store-Id"] = store_id
    return headers


# ============================================================
# OAuth token responses
# ============================================================


@dataclass
class TokenGrant:
    """Normalized token endpoint response."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    manager_token: str | None = None
    store_id: str | None = None
    store_url: str | None = None
    store_name: str | None = None
    scope: str | None = None

    def credential_patch(self, now: datetime) -> dict[str, Any]:
        """Fields to write into the credential store."""
        patch: dict[str, Any] = {"access_token": self.access_token}
        if self.refresh_token:
            patch["refresh_token"] = self.refresh_token
        if self.expires_in:
            patch["token_expires_at"] = datetime.fromtimestamp(
                now.timestamp() + self.expires_in, tz=timezone.utc
            )
        if self.manager_token:
            patch["manager_token"] = self.manager_token
        if self.store_id:
            patch["store_id"] = self.store_id
        if self.store_url:
            patch["store_url"] = self.store_url
        if self.scope:
            patch["scope"] = self.scope
        return patch


def parse_token_grant(body: Any) -> TokenGrant | None:
    """Extract a TokenGrant from a token endpoint JSON body.

    Returns None when no access token can be found.
    """
    if not isinstance(body, Mapping):
        return None
    access_token = strip_bearer(to_str(first_value(body, ("access_token", "accessToken", "data.access_token"))))
    if not access_token:
        return None
    expires_raw = first_value(body, ("expires_in", "expiresIn", "data.expires_in"))
    expires_in = int(to_float(expires_raw, 0) or 0) or None
    scope = first_value(body, ("scope", "data.scope"))
    return TokenGrant(
        access_token=access_token,
        refresh_token=to_str(first_value(body, ("refresh_token", "refreshToken", "data.refresh_token"))),
        expires_in=expires_in,
        manager_token=strip_bearer(
            to_str(first_value(body, ("manager_token", "managerToken", "x_manager_token", "Authorization")))
        ),
        store_id=to_str(
            first_value(body, ("store_id", "storeId", "store.id", "merchant.id", "data.merchant.id", "data.store.id"))
        ),
        store_url=to_str(first_value(body, ("store_url", "storeUrl", "store.url", "merchant.domain", "data.merchant.domain"))),
        store_name=to_str(first_value(body, ("store_name", "store.name", "store.title", "merchant.name", "data.merchant.name"))),
        scope=" ".join(scope) if isinstance(scope, list) else to_str(scope),
    )


# ============================================================
# Normalized orders
# ============================================================


@dataclass
class NormalizedOrder:
    """Order fields common to both platforms."""

    order_id: str
    store_id: str
    total: float
    currency: str
    payment_status: str | None
    order_status: str | None
    referrer_code: str | None
    product_external_ids: list[str]
    created_at: datetime | None


def _normalize_status(value: Any) -> str | None:
    if isinstance(value, Mapping):
        value = value.get("slug") or value.get("code") or value.get("name")
    text = to_str(value)
    return text.lower() if text else None


def _item_product_ids(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    ids: list[str] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        pid = to_str(first_value(item, ("product.id", "product_id", "id")))
        if pid and pid not in ids:
            ids.append(pid)
    return ids


# ============================================================
# Tagged event variant
# ============================================================


@dataclass(frozen=True)
class _BaseEvent:
    event_type: str
    store_id: str | None
    payload: Mapping[str, Any]
    delivery_id: str | None = None

    platform: ClassVar[Platform]

    @property
    def profile(self) -> PlatformProfile:
        return get_profile(self.platform)

    @property
    def kind(self) -> EventKind:
        return self.profile.event_kind(self.event_type)

    @property
    def data(self) -> Mapping[str, Any]:
        data = self.payload.get("data")
        return data if isinstance(data, Mapping) else {}

    def subscription_status(self) -> str | None:
        return self.profile.subscription_events.get(self.event_type)


@dataclass(frozen=True)
class SallaEvent(_BaseEvent):
    """Salla webhook: the entity is always under `data`."""

    platform: ClassVar[Platform] = Platform.SALLA

    def entity(self) -> Mapping[str, Any]:
        return self.data

    def product_external_id(self) -> str | None:
        return to_str(first_value(self.data, ("id", "product_id")))

    def normalize_order(self) -> NormalizedOrder | None:
        data = self.data
        order_id = to_str(first_value(data, ("id", "order_id")) or dig(self.payload, "order.id"))
        if not order_id or not self.store_id:
            return None
        total = to_float(first_value(data, ("total.amount", "amounts.total.amount", "amounts.total", "total")), 0.0)
        currency = to_str(first_value(data, ("total.currency", "currency", "currency_code", "amounts.total.currency")))
        return NormalizedOrder(
            order_id=order_id,
            store_id=self.store_id,
            total=total or 0.0,
            currency=(currency or "SAR").upper(),
            payment_status=_normalize_status(first_value(data, ("payment.status", "payment_status"))),
            order_status=_normalize_status(first_value(data, ("status", "order_status"))),
            referrer_code=to_str(
                first_value(data, ("referer_code", "referrer_code", "referrer", "source", "tracking_id"))
            ),
            product_external_ids=_item_product_ids(data.get("items")),
            created_at=parse_datetime(first_value(data, ("created_at", "date.created", "date"))),
        )


@dataclass(frozen=True)
class ZidEvent(_BaseEvent):
    """Zid webhook: the entity may be top-level, under `data`, or under `order`."""

    platform: ClassVar[Platform] = Platform.ZID

    def entity(self) -> Mapping[str, Any]:
        if self.data:
            return self.data
        order = self.payload.get("order")
        if isinstance(order, Mapping):
            return order
        return self.payload

    def product_external_id(self) -> str | None:
        return to_str(first_value(self.payload, ("product_id", "data.id", "data.product_id", "id")))

    def normalize_order(self) -> NormalizedOrder | None:
        payload = self.payload
        order_id = to_str(first_value(payload, ("order_id", "data.id", "data.order_id", "order.id", "id")))
        if not order_id or not self.store_id:
            return None
        total = to_float(
            first_value(
                payload,
                (
                    "total",
                    "order_total",
                    "data.total",
                    "data.order_total",
                    "data.amounts.total",
                    "order.total",
                ),
            ),
            0.0,
        )
        currency = to_str(first_value(payload, ("currency", "currency_code", "data.currency_code", "data.currency")))
        entity = self.entity()
        return NormalizedOrder(
            order_id=order_id,
            store_id=self.store_id,
            total=total or 0.0,
            currency=(currency or "SAR").upper(),
            payment_status=_normalize_status(
                first_value(payload, ("payment_status", "data.payment_status", "order.payment_status"))
            ),
            order_status=_normalize_status(
                first_value(payload, ("status", "order_status", "data.status", "data.order_status", "order.status"))
            ),
            referrer_code=to_str(
                first_value(
                    payload,
                    (
                        "referer_code",
                        "referrer_code",
                        "data.referer_code",
                        "data.referrer_code",
                        "order.referer_code",
                        "data.source",
                        "data.tracking_id",
                    ),
                )
            ),
            product_external_ids=_item_product_ids(entity.get("products") or entity.get("items")),
            created_at=parse_datetime(first_value(payload, ("created_at", "issue_date", "data.created_at", "data.issue_date"))),
        )


PlatformEvent = SallaEvent | ZidEvent

_EVENT_TYPES: dict[Platform, type[SallaEvent] | type[ZidEvent]] = {
    Platform.SALLA: SallaEvent,
    Platform.ZID: ZidEvent,
}


def resolve_event(
    platform: Platform,
    payload: Mapping[str, Any],
    headers: Mapping[str, str] | None = None,
) -> PlatformEvent:
    """Resolve a parsed webhook body into the platform's event variant."""
    profile = get_profile(platform)
    event_type = first_str(payload, profile.event_type_paths) or "unknown"
    store_id = first_str(payload, profile.store_id_paths)
    delivery_id = None
    if headers is not None:
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in profile.delivery_id_headers:
            if lowered.get(name, "").strip():
                delivery_id = lowered[name].strip()
                break
    return _EVENT_TYPES[profile.platform](
        event_type=event_type.lower(),
        store_id=store_id,
        payload=payload,
        delivery_id=delivery_id,
    )
