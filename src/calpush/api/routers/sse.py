"""Server-Sent Events (SSE) endpoint for live calendar updates.

Each user holds at most one stream.  Messages are wake-ups only; the
client answers a ``calendar_update`` by calling ``GET /api/events``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends
from starlette.requests import Request
from starlette.responses import StreamingResponse

from calpush.api.deps import get_current_user, get_runtime
from calpush.core.streams import CONNECTED_MESSAGE, SHUTDOWN, LiveStream
from calpush.runtime import CalpushRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sse"])


def _format(message: dict) -> str:
    return f"data: {json.dumps(message)}\n\n"


async def _event_generator(
    request: Request,
    runtime: CalpushRuntime,
    user_id: str,
    stream: LiveStream,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted messages until the client disconnects or the stream is closed."""
    keepalive = runtime.config.stream.keepalive_seconds
    try:
        yield _format(CONNECTED_MESSAGE)

        while True:
            if await request.is_disconnected():
                break
            try:
                message = await asyncio.wait_for(stream.queue.get(), timeout=keepalive)
                if message is SHUTDOWN:
                    break
                yield _format(message)
            except TimeoutError:
                # Keepalive comment so proxies do not time the connection out
                yield ": keepalive\n\n"
    finally:
        if runtime.directory.close(user_id, stream):
            logger.info("Live stream closed for user %s", user_id)


@router.get("/events/sse")
async def sse_events(
    request: Request,
    user_id: str = Depends(get_current_user),
    runtime: CalpushRuntime = Depends(get_runtime),
) -> StreamingResponse:
    """Live update stream for the authenticated user.

    Messages:
    - ``{"message": "Connection established"}``: sent once on connect
    - ``{"type": "calendar_update"}``: the calendar changed; re-sync
    - keepalive comments, not delivered to ``onmessage`` handlers

    Opening a second stream for the same user closes the first one.  When
    push channels are enabled, the user's channel is ensured in the background.
    """
    stream = runtime.directory.open(user_id)
    logger.info("Live stream opened for user %s", user_id)
    if runtime.channels.settings.webhook_address:
        runtime.channels.ensure_in_background(user_id)
    return StreamingResponse(
        _event_generator(request, runtime, user_id, stream),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
