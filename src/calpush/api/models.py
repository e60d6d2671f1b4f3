"""Pydantic response models for the calpush HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from calpush.core.ledger import ChangeKind

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    retryable: bool = False


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class SyncResponse(BaseModel):
    """Result of a sync trigger: ``{"syncType": "full"|"delta", "items": [...]}``."""

    model_config = ConfigDict(populate_by_name=True)

    sync_type: ChangeKind = Field(alias="syncType")
    items: list[dict[str, Any]] = Field(default_factory=list)


class ChannelInfo(BaseModel):
    channel_id: str
    resource_id: str | None = None
    expires_at: datetime | None = None


class LastSyncInfo(BaseModel):
    at: str | None = None
    kind: ChangeKind | None = None
    error: str | None = None
    item_count: int = 0


class SyncStatusResponse(BaseModel):
    """Per-user view of the ledger, the last reconcile, the channel and the stream."""

    user_id: str
    has_token: bool
    syncing: bool
    stream_open: bool
    last_sync: LastSyncInfo
    channel: ChannelInfo | None = None


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


class NotificationAck(BaseModel):
    status: str


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    open_streams: int = 0
