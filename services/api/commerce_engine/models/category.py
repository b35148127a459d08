"""Category model.

Catalog categories mirrored from platform stores. The slug embeds the
platform, merchant and external id so categories from different stores never
collide.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.stores.postgres import Base


class Category(Base):
    """Normalized catalog category."""

    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint("merchant_id", "salla_category_id", name="uq_categories_merchant_salla"),
        UniqueConstraint("merchant_id", "zid_category_id", name="uq_categories_merchant_zid"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    merchant_id: Mapped[int | None] = mapped_column(ForeignKey("merchants.id"), index=True)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"))

    name: Mapped[str] = mapped_column(String(200))
    slug: Mapped[str] = mapped_column(String(300), unique=True, index=True)

    # External ids (at most one is populated in practice)
    salla_category_id: Mapped[str | None] = mapped_column(String(100))
    zid_category_id: Mapped[str | None] = mapped_column(String(100))

    is_active: Mapped[bool] = mapped_column(default=True)

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
        return f"<Category {self.slug}>"
