"""Tests for calpush.core.dispatcher: inbound signal to live-stream wake-up."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from calpush.core.dispatcher import DispatchOutcome, NotificationDispatcher, SignalKind
from calpush.core.registry import ChannelBinding, SubscriptionRegistry
from calpush.core.streams import CALENDAR_UPDATE_MESSAGE, LiveUpdateDirectory

pytestmark = pytest.mark.unit


@pytest.fixture
async def registry(store) -> SubscriptionRegistry:
    registry = SubscriptionRegistry(store)
    await registry.bind(ChannelBinding(channel_id="c1", user_id="u1"))
    return registry


@pytest.fixture
def directory() -> LiveUpdateDirectory:
    return LiveUpdateDirectory(queue_size=2)


@pytest.fixture
def dispatcher(registry, directory) -> NotificationDispatcher:
    return NotificationDispatcher(registry, directory)


class TestSignalKind:
    @pytest.mark.parametrize("state", ["sync", "SYNC", " sync "])
    def test_sync_is_handshake(self, state):
        assert SignalKind.from_resource_state(state) is SignalKind.SYNC_HANDSHAKE

    @pytest.mark.parametrize("state", ["exists", "not_exists", None, ""])
    def test_everything_else_is_change(self, state):
        assert SignalKind.from_resource_state(state) is SignalKind.RESOURCE_CHANGE


class TestOnExternalSignal:
    async def test_change_wakes_owner_stream(self, dispatcher, directory):
        stream = directory.open("u1")
        outcome = await dispatcher.on_external_signal("c1", SignalKind.RESOURCE_CHANGE)
        assert outcome is DispatchOutcome.DELIVERED
        assert stream.queue.get_nowait() == CALENDAR_UPDATE_MESSAGE

    async def test_handshake_is_noop(self, dispatcher, directory):
        stream = directory.open("u1")
        outcome = await dispatcher.on_external_signal("c1", SignalKind.SYNC_HANDSHAKE)
        assert outcome is DispatchOutcome.HANDSHAKE
        assert stream.queue.empty()

    async def test_unknown_channel_is_dropped(self, dispatcher, directory):
        stream = directory.open("u1")
        outcome = await dispatcher.on_external_signal("ghost", SignalKind.RESOURCE_CHANGE)
        assert outcome is DispatchOutcome.UNRESOLVED
        assert stream.queue.empty()

    async def test_missing_channel_id(self, dispatcher):
        outcome = await dispatcher.on_external_signal(None, SignalKind.RESOURCE_CHANGE)
        assert outcome is DispatchOutcome.UNRESOLVED

    async def test_no_stream(self, dispatcher):
        outcome = await dispatcher.on_external_signal("c1", SignalKind.RESOURCE_CHANGE)
        assert outcome is DispatchOutcome.NO_STREAM

    async def test_closed_stream_receives_nothing(self, dispatcher, directory):
        stream = directory.open("u1")
        directory.close("u1")
        outcome = await dispatcher.on_external_signal("c1", SignalKind.RESOURCE_CHANGE)
        assert outcome is DispatchOutcome.NO_STREAM
        assert stream.queue.qsize() == 1  # only the shutdown sentinel

    async def test_replaced_stream_never_receives(self, dispatcher, directory):
        old = directory.open("u1")
        new = directory.open("u1")
        await dispatcher.on_external_signal("c1", SignalKind.RESOURCE_CHANGE)
        assert old.queue.qsize() == 1  # only the shutdown sentinel
        assert new.queue.get_nowait() == CALENDAR_UPDATE_MESSAGE

    async def test_full_queue_coalesces(self, dispatcher, directory):
        directory.open("u1")
        outcomes = [
            await dispatcher.on_external_signal("c1", SignalKind.RESOURCE_CHANGE)
            for _ in range(3)
        ]
        assert outcomes == [
            DispatchOutcome.DELIVERED,
            DispatchOutcome.DELIVERED,
            DispatchOutcome.COALESCED,
        ]

    async def test_registry_failure_never_raises(self, directory):
        registry = AsyncMock(spec=SubscriptionRegistry)
        registry.resolve.side_effect = ConnectionError("store offline")
        dispatcher = NotificationDispatcher(registry, directory)
        outcome = await dispatcher.on_external_signal("c1", SignalKind.RESOURCE_CHANGE)
        assert outcome is DispatchOutcome.FAILED


class TestChannelToken:
    @pytest.fixture
    def guarded(self, registry, directory) -> NotificationDispatcher:
        return NotificationDispatcher(registry, directory, channel_token="s3cret")

    async def test_matching_token_delivers(self, guarded, directory):
        directory.open("u1")
        outcome = await guarded.on_external_signal(
            "c1", SignalKind.RESOURCE_CHANGE, channel_token="s3cret"
        )
        assert outcome is DispatchOutcome.DELIVERED

    @pytest.mark.parametrize("token", [None, "", "wrong"])
    async def test_bad_token_rejected(self, guarded, directory, token):
        stream = directory.open("u1")
        outcome = await guarded.on_external_signal(
            "c1", SignalKind.RESOURCE_CHANGE, channel_token=token
        )
        assert outcome is DispatchOutcome.REJECTED
        assert stream.queue.empty()
