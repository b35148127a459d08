"""Product model.

Normalized catalog entry keyed internally, with one optional external id per
platform. Deleting a product upstream only deactivates the row so click and
commission history keep their references.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.stores.postgres import Base


class Product(Base):
    """Normalized product mirrored from a platform store."""

    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("merchant_id", "salla_product_id", name="uq_products_merchant_salla"),
        UniqueConstraint("merchant_id", "zid_product_id", name="uq_products_merchant_zid"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), index=True)

    title: Mapped[str] = mapped_column(String(500))
    slug: Mapped[str] = mapped_column(String(300), unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text)

    # Pricing & stock
    price: Mapped[float] = mapped_column(default=0)
    regular_price: Mapped[float | None] = mapped_column()
    currency: Mapped[str] = mapped_column(String(3), default="SAR")
    quantity: Mapped[int | None] = mapped_column()

    # Media & links
    image_url: Mapped[str | None] = mapped_column(Text)
    product_url: Mapped[str | None] = mapped_column(Text)

    # External ids (at most one is populated in practice)
    salla_product_id: Mapped[str | None] = mapped_column(String(100))
    zid_product_id: Mapped[str | None] = mapped_column(String(100))

    # Category name as reported upstream; input for category repair
    category_hint: Mapped[str | None] = mapped_column(String(200))

    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    click_count: Mapped[int] = mapped_column(default=0)

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
        return f"<Product {self.slug}>"
