"""Tests for the live-update SSE endpoint.

The generator is exercised directly with a mock ``Request``: HTTP-level
streaming tests are avoided because ``BaseHTTPMiddleware`` buffers streaming
responses in ASGI test transports.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from calpush.api.app import create_app
from calpush.api.routers.sse import _event_generator, sse_events
from calpush.config import ServiceConfig
from calpush.core.dispatcher import SignalKind
from calpush.core.streams import CALENDAR_UPDATE_MESSAGE
from calpush.providers.base import SubscriptionError

pytestmark = pytest.mark.unit


def _mock_request(*, disconnected: bool = False) -> AsyncMock:
    """Create a mock Starlette Request with configurable is_disconnected()."""
    request = AsyncMock()
    request.is_disconnected = AsyncMock(return_value=disconnected)
    return request


def _payload(chunk: str) -> dict:
    assert chunk.startswith("data: ")
    assert chunk.endswith("\n\n")
    return json.loads(chunk[len("data: ") :])


class TestEventGenerator:
    async def test_initial_connected_message(self, runtime):
        stream = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(), runtime, "u1", stream)
        try:
            first = await gen.__anext__()
            assert _payload(first) == {"message": "Connection established"}
        finally:
            await gen.aclose()

    async def test_delivers_calendar_update(self, runtime):
        stream = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(), runtime, "u1", stream)
        try:
            await gen.__anext__()
            stream.write(dict(CALENDAR_UPDATE_MESSAGE))
            chunk = await asyncio.wait_for(gen.__anext__(), timeout=1.0)
            assert _payload(chunk) == {"type": "calendar_update"}
        finally:
            await gen.aclose()

    async def test_keepalive_on_idle(self, runtime):
        stream = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(), runtime, "u1", stream)
        try:
            await gen.__anext__()
            chunk = await asyncio.wait_for(gen.__anext__(), timeout=1.0)
            assert chunk == ": keepalive\n\n"
        finally:
            await gen.aclose()

    async def test_disconnect_removes_stream(self, runtime):
        stream = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(disconnected=True), runtime, "u1", stream)
        chunks = [chunk async for chunk in gen]
        assert len(chunks) == 1
        assert "u1" not in runtime.directory
        assert stream.closed

    async def test_replacement_ends_old_generator_only(self, runtime):
        old = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(), runtime, "u1", old)
        await gen.__anext__()

        new = runtime.directory.open("u1")
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(gen.__anext__(), timeout=1.0)

        assert runtime.directory.get("u1") is new
        assert not new.closed

    async def test_logout_ends_generator(self, runtime):
        stream = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(), runtime, "u1", stream)
        await gen.__anext__()

        await runtime.logout("u1")

        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(gen.__anext__(), timeout=1.0)

    async def test_webhook_to_stream_end_to_end(self, runtime):
        channel_id = await runtime.channels.ensure_active("u1")
        stream = runtime.directory.open("u1")
        gen = _event_generator(_mock_request(), runtime, "u1", stream)
        try:
            await gen.__anext__()
            await runtime.dispatcher.on_external_signal(
                channel_id, SignalKind.RESOURCE_CHANGE, channel_token="verify-me"
            )
            chunk = await asyncio.wait_for(gen.__anext__(), timeout=1.0)
            assert _payload(chunk) == CALENDAR_UPDATE_MESSAGE
        finally:
            await gen.aclose()


class TestSseEndpoint:
    async def test_opens_stream_and_sets_headers(self, runtime):
        response = await sse_events(_mock_request(), user_id="u1", runtime=runtime)

        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        assert "u1" in runtime.directory
        await response.body_iterator.aclose()

    async def test_second_connection_replaces_first(self, runtime):
        first = await sse_events(_mock_request(), user_id="u1", runtime=runtime)
        stream = runtime.directory.get("u1")
        second = await sse_events(_mock_request(), user_id="u1", runtime=runtime)

        assert stream.closed
        assert runtime.directory.get("u1") is not stream
        await first.body_iterator.aclose()
        await second.body_iterator.aclose()

    async def test_opening_stream_ensures_push_channel(self, runtime, calendar):
        response = await sse_events(_mock_request(), user_id="u1", runtime=runtime)
        await runtime.channels.ensure_in_background("u1")

        binding = await runtime.registry.binding_for_user("u1")
        assert binding is not None
        assert len(calendar.subscriptions) == 1
        await response.body_iterator.aclose()

    async def test_channel_failure_does_not_block_stream(self, runtime, calendar):
        calendar.subscription_error = SubscriptionError("watch refused")
        response = await sse_events(_mock_request(), user_id="u1", runtime=runtime)

        assert await runtime.channels.ensure_in_background("u1") is None
        assert "u1" in runtime.directory
        first = await response.body_iterator.__anext__()
        assert _payload(first) == {"message": "Connection established"}
        await response.body_iterator.aclose()

    async def test_no_channel_without_webhook_address(self, store, clients, calendar):
        runtime = create_app(ServiceConfig(), store=store, client_factory=clients).state.runtime
        response = await sse_events(_mock_request(), user_id="u1", runtime=runtime)

        await asyncio.sleep(0)
        assert calendar.subscriptions == []
        assert await runtime.registry.binding_for_user("u1") is None
        await response.body_iterator.aclose()
