"""Live-update directory: at most one open push stream per user.

A :class:`LiveStream` is a bounded ``asyncio.Queue`` drained by the SSE
response generator.  Writers never await: a wake-up that does not fit in
the queue is dropped, because one pending wake-up already tells the client
to re-sync.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Sentinel placed on a stream's queue to end its generator.
SHUTDOWN = object()

CONNECTED_MESSAGE: dict[str, Any] = {"message": "Connection established"}
CALENDAR_UPDATE_MESSAGE: dict[str, Any] = {"type": "calendar_update"}

DEFAULT_QUEUE_SIZE = 16


@dataclass(eq=False)
class LiveStream:
    """Write-once-per-message handle to one client connection."""

    user_id: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_QUEUE_SIZE))
    closed: bool = False

    def write(self, message: dict[str, Any]) -> bool:
        """Enqueue *message*; returns False when closed or full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.debug("Live stream queue full for user %s; dropping message", self.user_id)
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(SHUTDOWN)
        except asyncio.QueueFull:
            # Make room for the sentinel; pending wake-ups are moot once closed.
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait(SHUTDOWN)


class LiveUpdateDirectory:
    """Process-local ``user_id -> LiveStream`` map."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._streams: dict[str, LiveStream] = {}
        self._queue_size = queue_size

    def open(self, user_id: str) -> LiveStream:
        """Install a new stream for *user_id*, closing any stream it replaces."""
        previous = self._streams.pop(user_id, None)
        if previous is not None:
            logger.info("Replacing existing live stream for user %s", user_id)
            previous.close()
        stream = LiveStream(user_id=user_id, queue=asyncio.Queue(maxsize=self._queue_size))
        self._streams[user_id] = stream
        return stream

    def get(self, user_id: str) -> LiveStream | None:
        return self._streams.get(user_id)

    def close(self, user_id: str, stream: LiveStream | None = None) -> bool:
        """Remove and close the user's stream.

        When *stream* is given, only that exact handle is removed, so a
        replaced connection shutting down cannot evict its successor.
        """
        current = self._streams.get(user_id)
        if current is None or (stream is not None and current is not stream):
            if stream is not None:
                stream.close()
            return False
        del self._streams[user_id]
        current.close()
        return True

    def write(self, user_id: str, message: dict[str, Any]) -> bool:
        """Write to the user's stream; no-op (False) when none is open."""
        stream = self._streams.get(user_id)
        if stream is None:
            return False
        return stream.write(message)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def close_all(self) -> None:
        for stream in self._streams.values():
            stream.close()
        self._streams.clear()
