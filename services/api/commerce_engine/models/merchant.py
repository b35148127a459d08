"""Merchant model.

Represents a store owner selling through one of the connected commerce
platforms. Platform credentials live in `platform_connections`; whether a
merchant is "connected" is derived from those rows, never stored here.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, String, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.stores.postgres import Base


class SubscriptionStatus(str, PyEnum):
    """Billing state reported by the platform's app-subscription webhooks."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    TRIAL = "TRIAL"


class Merchant(Base):
    """Merchant identity, commission terms and subscription state."""

    __tablename__ = "merchants"

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(String(200), index=True)
    email: Mapped[str | None] = mapped_column(String(320))

    # Percentage applied to attributed order totals (e.g. 5.0 = 5%)
    commission_rate: Mapped[float] = mapped_column(default=5.0)

    # Subscription
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status"),
        default=SubscriptionStatus.INACTIVE,
    )
    subscription_plan: Mapped[str | None] = mapped_column(String(100))
    subscription_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    subscription_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Merchant {self.id} {self.name}>"
