"""Click tracking models.

- click_trackings: qualified outbound clicks, the attribution table
- outbound_click_events: every click attempt, including disqualified ones
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.services.platforms import Platform
from commerce_engine.stores.postgres import Base


class ClickTracking(Base):
    """Qualified click with a bounded attribution window."""

    __tablename__ = "click_trackings"

    id: Mapped[int] = mapped_column(primary_key=True)

    tracking_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    platform: Mapped[Platform] = mapped_column(Enum(Platform, name="platform"))

    destination_url: Mapped[str] = mapped_column(Text)
    tracking_url: Mapped[str] = mapped_column(Text)

    # Rate snapshot at click time (falls back to the merchant rate when null)
    commission_rate: Mapped[float | None] = mapped_column()

    clicked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    converted: Mapped[bool] = mapped_column(Boolean, default=False)
    converted_count: Mapped[int] = mapped_column(default=0)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<ClickTracking {self.tracking_id} product={self.product_id}>"


class OutboundClickEvent(Base):
    """Superset click log; disqualified clicks carry a reason code."""

    __tablename__ = "outbound_click_events"

    id: Mapped[int] = mapped_column(primary_key=True)

    tracking_id: Mapped[str | None] = mapped_column(String(64), index=True)
    product_id: Mapped[int | None] = mapped_column(ForeignKey("products.id"), index=True)
    merchant_id: Mapped[int | None] = mapped_column(ForeignKey("merchants.id"))
    platform: Mapped[Platform | None] = mapped_column(Enum(Platform, name="platform"))

    destination_url: Mapped[str | None] = mapped_column(Text)
    referrer: Mapped[str | None] = mapped_column(Text)

    # SHA-256 hex digests; raw values are never stored
    ip_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    ua_hash: Mapped[str | None] = mapped_column(String(64))

    qualified: Mapped[bool] = mapped_column(Boolean, default=True)
    disqualify_reason: Mapped[str | None] = mapped_column(String(50), index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    def __repr__(self) -> str:
        return f"<OutboundClickEvent product={self.product_id} reason={self.disqualify_reason}>"
