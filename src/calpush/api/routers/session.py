"""Session teardown and per-user sync status."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from calpush.api.deps import get_current_user, get_runtime
from calpush.api.models import ChannelInfo, LastSyncInfo, MessageResponse, SyncStatusResponse
from calpush.runtime import CalpushRuntime

router = APIRouter(prefix="/api", tags=["session"])


@router.post("/logout", response_model=MessageResponse)
async def logout(
    user_id: str = Depends(get_current_user),
    runtime: CalpushRuntime = Depends(get_runtime),
) -> MessageResponse:
    """Close the live stream, revoke the push channel and drop all sync state."""
    await runtime.logout(user_id)
    return MessageResponse(message="Logged out successfully")


@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status(
    user_id: str = Depends(get_current_user),
    runtime: CalpushRuntime = Depends(get_runtime),
) -> SyncStatusResponse:
    snapshot = await runtime.sync_status(user_id)
    status = snapshot["status"]
    binding = snapshot["channel"]
    return SyncStatusResponse(
        user_id=user_id,
        has_token=snapshot["has_token"],
        syncing=snapshot["syncing"],
        stream_open=snapshot["stream_open"],
        last_sync=LastSyncInfo(
            at=status.last_sync_at,
            kind=status.last_sync_kind,
            error=status.last_error,
            item_count=status.last_item_count,
        ),
        channel=(
            ChannelInfo(
                channel_id=binding.channel_id,
                resource_id=binding.resource_id,
                expires_at=binding.expires_at,
            )
            if binding is not None
            else None
        ),
    )
