"""WebhookEvent model.

Audit row for every accepted webhook delivery. The unique
(platform, store_id, idempotency_key) constraint is what makes ingestion
exactly-once across concurrent workers.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.services.platforms import Platform
from commerce_engine.stores.postgres import Base


class WebhookEventStatus(str, PyEnum):
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class WebhookEvent(Base):
    """Raw webhook delivery with its processing outcome."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "platform",
            "store_id",
            "idempotency_key",
            name="uq_webhook_events_platform_store_key",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    platform: Mapped[Platform] = mapped_column(Enum(Platform, name="platform"))
    store_id: Mapped[str] = mapped_column(String(100), index=True)
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    idempotency_key: Mapped[str] = mapped_column(String(300))

    # Redacted payload as JSON text
    payload_json: Mapped[str] = mapped_column(Text)

    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus, name="webhook_event_status"),
        default=WebhookEventStatus.PROCESSED,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.platform.value}:{self.store_id} {self.event_type} {self.status.value}>"
