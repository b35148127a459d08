"""Pydantic schemas for API request/response validation."""

from commerce_engine.schemas.common import ErrorDetail, ErrorResponse, error_body
from commerce_engine.schemas.integration import (
    ClickRequest,
    ClickResponse,
    ConnectionStatus,
    RepairRequest,
    RepairResponse,
    SyncResponse,
    WebhookAck,
    WebhookEventItem,
    WebhookEventList,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "error_body",
    "ClickRequest",
    "ClickResponse",
    "ConnectionStatus",
    "RepairRequest",
    "RepairResponse",
    "SyncResponse",
    "WebhookAck",
    "WebhookEventItem",
    "WebhookEventList",
]
