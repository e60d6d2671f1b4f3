"""Shared fixtures and in-process doubles for the calpush test suite."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from calpush.core.state import InMemoryKeyValueStore
from calpush.providers.base import (
    CalendarClient,
    CalendarClientFactory,
    EventRecord,
    FetchResult,
    Subscription,
    SubscriptionError,
)


def make_event(
    event_id: str,
    start: str | None = "2026-01-01T10:00:00Z",
    *,
    status: str = "confirmed",
    all_day: bool = False,
    **extra: Any,
) -> EventRecord:
    """Build an EventRecord from a Google-shaped payload."""
    payload: dict[str, Any] = {"id": event_id, "status": status, **extra}
    if start is not None:
        payload["start"] = {"date": start} if all_day else {"dateTime": start}
    return EventRecord.from_payload(payload)


def cancelled(event_id: str) -> EventRecord:
    return EventRecord.from_payload({"id": event_id, "status": "cancelled"})


@dataclass
class FakeCalendarClient(CalendarClient):
    """Scripted calendar client.

    ``full_responses`` / ``delta_responses`` are consumed in order; an
    Exception entry is raised instead of returned.
    """

    full_responses: list[FetchResult | Exception] = field(default_factory=list)
    delta_responses: list[FetchResult | Exception] = field(default_factory=list)
    full_calls: list[datetime] = field(default_factory=list)
    delta_calls: list[str] = field(default_factory=list)
    subscriptions: list[dict[str, Any]] = field(default_factory=list)
    stopped: list[tuple[str, str | None]] = field(default_factory=list)
    subscription_error: Exception | None = None
    stop_error: Exception | None = None
    subscription_lifetime: timedelta = timedelta(days=7)
    fetch_gate: asyncio.Event | None = None
    subscription_gate: asyncio.Event | None = None
    close_count: int = 0

    async def _next(self, responses: list[FetchResult | Exception]) -> FetchResult:
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if not responses:
            raise AssertionError("unexpected fetch: no scripted response left")
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def fetch_full(self, *, window_start: datetime) -> FetchResult:
        self.full_calls.append(window_start)
        return await self._next(self.full_responses)

    async def fetch_delta(self, *, token: str) -> FetchResult:
        self.delta_calls.append(token)
        return await self._next(self.delta_responses)

    async def create_subscription(
        self,
        address: str,
        *,
        channel_id: str,
        token: str | None = None,
        ttl_seconds: int | None = None,
    ) -> Subscription:
        if self.subscription_gate is not None:
            await self.subscription_gate.wait()
        if self.subscription_error is not None:
            raise self.subscription_error
        self.subscriptions.append(
            {"address": address, "channel_id": channel_id, "token": token, "ttl": ttl_seconds}
        )
        return Subscription(
            channel_id=channel_id,
            resource_id=f"resource-{len(self.subscriptions)}",
            expires_at=datetime.now(UTC) + self.subscription_lifetime,
        )

    async def stop_subscription(self, *, channel_id: str, resource_id: str | None) -> None:
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped.append((channel_id, resource_id))

    async def aclose(self) -> None:
        self.close_count += 1


class FakeClientFactory(CalendarClientFactory):
    """Hands out the same :class:`FakeCalendarClient` for every user."""

    def __init__(self, client: FakeCalendarClient) -> None:
        self.client = client
        self.requested: list[str] = []
        self.closed = False

    async def client_for(self, user_id: str) -> FakeCalendarClient:
        self.requested.append(user_id)
        return self.client

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def calendar() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def clients(calendar: FakeCalendarClient) -> FakeClientFactory:
    return FakeClientFactory(calendar)


@pytest.fixture
def failing_subscription() -> SubscriptionError:
    return SubscriptionError("watch refused")
