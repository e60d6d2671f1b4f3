"""Push notification webhook: the address registered with Google's ``events.watch``.

Google only inspects the status code and retries on anything but 2xx, so
every request is acknowledged with 200 whatever the dispatcher decides.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header

from calpush.api.deps import get_runtime
from calpush.api.models import NotificationAck
from calpush.core.dispatcher import SignalKind
from calpush.runtime import CalpushRuntime

router = APIRouter(prefix="/api", tags=["notifications"])


@router.post("/notifications", response_model=NotificationAck)
async def receive_notification(
    runtime: CalpushRuntime = Depends(get_runtime),
    channel_id: str | None = Header(default=None, alias="X-Goog-Channel-ID"),
    resource_state: str | None = Header(default=None, alias="X-Goog-Resource-State"),
    channel_token: str | None = Header(default=None, alias="X-Goog-Channel-Token"),
) -> NotificationAck:
    outcome = await runtime.dispatcher.on_external_signal(
        channel_id,
        SignalKind.from_resource_state(resource_state),
        channel_token=channel_token,
    )
    return NotificationAck(status=outcome.value)
