"""Schemas for webhook, OAuth, click and admin endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    """Acknowledgement returned to the platform for an accepted delivery."""

    ok: bool = True
    status: str  # processed | duplicate | skipped
    event_type: str | None = Field(alias="eventType", default=None)
    event_id: int | None = Field(alias="eventId", default=None)
    reason: str | None = None

    model_config = {"populate_by_name": True}


class ConnectionStatus(BaseModel):
    """Connection state of a merchant on one platform, derived from stored credentials."""

    platform: str
    connected: bool
    store_id: str | None = Field(alias="storeId", default=None)
    store_url: str | None = Field(alias="storeUrl", default=None)
    token_expires_at: datetime | None = Field(alias="tokenExpiresAt", default=None)
    missing: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class ClickRequest(BaseModel):
    product_id: int = Field(alias="productId", ge=1)

    model_config = {"populate_by_name": True}


class ClickResponse(BaseModel):
    product_id: int = Field(alias="productId")
    qualified: bool
    redirect_url: str | None = Field(alias="redirectUrl", default=None)
    tracking_id: str | None = Field(alias="trackingId", default=None)
    expires_at: datetime | None = Field(alias="expiresAt", default=None)
    reason: str | None = None

    model_config = {"populate_by_name": True}


class SyncResponse(BaseModel):
    success: bool
    stats: dict[str, Any]


class RepairRequest(BaseModel):
    dry_run: bool = True
    merchant_id: int | None = None
    limit: int | None = Field(default=None, ge=1, le=10000)


class RepairResponse(BaseModel):
    success: bool
    dry_run: bool
    stats: dict[str, Any]


class WebhookEventItem(BaseModel):
    id: int
    platform: str
    store_id: str = Field(alias="storeId")
    event_type: str = Field(alias="eventType")
    idempotency_key: str = Field(alias="idempotencyKey")
    status: str
    error_message: str | None = Field(alias="errorMessage", default=None)
    created_at: datetime | None = Field(alias="createdAt", default=None)
    processed_at: datetime | None = Field(alias="processedAt", default=None)

    model_config = {"populate_by_name": True}


class WebhookEventList(BaseModel):
    count: int
    items: list[WebhookEventItem]
