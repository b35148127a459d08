"""SQLAlchemy ORM models.

Models represent database tables:
- merchants: Store owners, commission terms, subscription state
- platform_connections: Per-platform OAuth credentials (connection state is derived)
- categories / products / orders: Normalized catalog and order data
- webhook_events: Exactly-once webhook audit log
- click_trackings / outbound_click_events: Attribution table and raw click log
- commissions: At most one per order
"""

from commerce_engine.models.merchant import Merchant, SubscriptionStatus
from commerce_engine.models.platform_connection import PlatformConnection
from commerce_engine.models.category import Category
from commerce_engine.models.product import Product
from commerce_engine.models.order import Order
from commerce_engine.models.webhook_event import WebhookEvent, WebhookEventStatus
from commerce_engine.models.click import ClickTracking, OutboundClickEvent
from commerce_engine.models.commission import Commission, CommissionStatus

__all__ = [
    "Category",
    "ClickTracking",
    "Commission",
    "CommissionStatus",
    "Merchant",
    "Order",
    "OutboundClickEvent",
    "PlatformConnection",
    "Product",
    "SubscriptionStatus",
    "WebhookEvent",
    "WebhookEventStatus",
]
