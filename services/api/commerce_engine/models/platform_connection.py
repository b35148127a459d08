"""PlatformConnection model.

One row per (merchant, platform): external store identity plus OAuth tokens.
Rows are only written by the OAuth connector and the token refresh path, and
a revoked connection keeps its row with the token columns cleared.
"""

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from commerce_engine.services.platforms import Platform
from commerce_engine.stores.postgres import Base


class PlatformConnection(Base):
    """Credential record for a merchant on a single platform."""

    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint("merchant_id", "platform", name="uq_platform_connections_merchant_platform"),
        UniqueConstraint("platform", "store_id", name="uq_platform_connections_platform_store"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    platform: Mapped[Platform] = mapped_column(Enum(Platform, name="platform"))

    # External store identity
    store_id: Mapped[str | None] = mapped_column(String(100))
    store_url: Mapped[str | None] = mapped_column(Text)

    # Tokens
    access_token: Mapped[str | None] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    manager_token: Mapped[str | None] = mapped_column(Text)  # Zid X-Manager-Token
    scope: Mapped[str | None] = mapped_column(String(500))

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
        return f"<PlatformConnection merchant={self.merchant_id} {self.platform.value} store={self.store_id}>"
