"""Order model.

Orders reported by platform webhooks (or pulled by sync). The per-platform
order id columns are unique, so repeated deliveries converge on one row.
"""

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.services.platforms import Platform
from commerce_engine.stores.postgres import Base


class Order(Base):
    """Normalized order."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)

    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    platform: Mapped[Platform] = mapped_column(Enum(Platform, name="platform"))

    salla_order_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    zid_order_id: Mapped[str | None] = mapped_column(String(100), unique=True)

    total: Mapped[float] = mapped_column(default=0)
    currency: Mapped[str] = mapped_column(String(3), default="SAR")
    status: Mapped[str | None] = mapped_column(String(100))
    payment_status: Mapped[str | None] = mapped_column(String(100))

    # Attribution inputs
    referrer_code: Mapped[str | None] = mapped_column(String(200), index=True)
    product_external_ids_json: Mapped[str | None] = mapped_column(Text)

    ordered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def external_id(self) -> str | None:
        return self.salla_order_id or self.zid_order_id

    def __repr__(self) -> str:
        return f"<Order {self.platform.value}:{self.external_id}>"
