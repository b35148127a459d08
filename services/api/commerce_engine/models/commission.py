"""Commission model.

At most one commission per order, enforced by the unique order_id column.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.stores.postgres import Base


class CommissionStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Commission(Base):
    """Commission owed by a merchant for an attributed order."""

    __tablename__ = "commissions"

    id: Mapped[int] = mapped_column(primary_key=True)

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), unique=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    click_id: Mapped[int | None] = mapped_column(ForeignKey("click_trackings.id"), index=True)

    order_total: Mapped[float] = mapped_column()
    currency: Mapped[str] = mapped_column(String(3), default="SAR")
    commission_rate: Mapped[float] = mapped_column()
    commission_amount: Mapped[float] = mapped_column()

    status: Mapped[CommissionStatus] = mapped_column(
        Enum(CommissionStatus, name="commission_status"),
        default=CommissionStatus.PENDING,
        index=True,
    )

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
        return f"<Commission order={self.order_id} {self.commission_amount} {self.status.value}>"
