"""Calendar client capability consumed by the sync core.

The core depends only on :class:`CalendarClient`; concrete SDKs (Google,
test doubles) implement it.  Credential acquisition and refresh happen
outside this package: clients are handed bearer tokens ready to use.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

CANCELLED_STATUS = "cancelled"


class CalendarClientError(RuntimeError):
    """Base error raised by calendar client implementations."""


class CalendarRequestError(CalendarClientError):
    """Raised when a calendar API request fails (network, quota, auth)."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Calendar API request failed: {message}")
        else:
            super().__init__(f"Calendar API request failed ({status_code}): {message}")

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class SyncTokenExpiredError(CalendarClientError):
    """Raised when a continuation token is expired or invalid; a full sync is required."""


class SubscriptionError(CalendarClientError):
    """Raised when a push subscription cannot be created."""


def _parse_boundary(value: Any) -> datetime | None:
    """Parse a Google-style ``{"dateTime": ...}`` / ``{"date": ...}`` boundary to UTC."""
    if not isinstance(value, dict):
        return None
    raw_dt = value.get("dateTime")
    if isinstance(raw_dt, str) and raw_dt.strip():
        try:
            parsed = datetime.fromisoformat(raw_dt.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    raw_date = value.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        try:
            day = date.fromisoformat(raw_date.strip())
        except ValueError:
            return None
        return datetime(day.year, day.month, day.day, tzinfo=UTC)
    return None


class EventRecord(BaseModel):
    """A calendar item as seen by the sync core.

    The core only relies on the identity, the cancelled flag and the start
    time; everything else travels untouched in ``raw``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    status: str | None = None
    start_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> EventRecord:
        """Build a record from a provider payload (Google Calendar event resource shape)."""
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ValueError("event payload is missing a non-empty 'id'")
        status = payload.get("status")
        return cls(
            id=event_id.strip(),
            status=status.strip().lower() if isinstance(status, str) else None,
            start_at=_parse_boundary(payload.get("start")),
            raw=dict(payload),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == CANCELLED_STATUS

    def sort_key(self) -> tuple[bool, datetime, str]:
        """Ascending start time, undated items last, ties broken by identity."""
        return (
            self.start_at is None,
            self.start_at or datetime.min.replace(tzinfo=UTC),
            self.id,
        )

    def to_payload(self) -> dict[str, Any]:
        if self.raw:
            return dict(self.raw)
        payload: dict[str, Any] = {"id": self.id}
        if self.status is not None:
            payload["status"] = self.status
        if self.start_at is not None:
            payload["start"] = {"dateTime": self.start_at.isoformat()}
        return payload


@dataclass
class FetchResult:
    """One complete fetch (all pages) and the token to resume from, if any."""

    items: list[EventRecord] = field(default_factory=list)
    continuation_token: str | None = None


@dataclass(frozen=True)
class Subscription:
    """A push channel issued by the provider."""

    channel_id: str
    resource_id: str | None = None
    expires_at: datetime | None = None


class CalendarClient(abc.ABC):
    """Credentialed calendar client for a single user."""

    @abc.abstractmethod
    async def fetch_full(self, *, window_start: datetime) -> FetchResult:
        """Return every event starting at or after *window_start*.

        Recurring events are expanded into concrete instances and items are
        ordered by start time, ascending.
        """
        ...

    @abc.abstractmethod
    async def fetch_delta(self, *, token: str) -> FetchResult:
        """Return only items changed or deleted since *token* was issued.

        Raises:
            SyncTokenExpiredError: when the provider rejects *token*.
        """
        ...

    @abc.abstractmethod
    async def create_subscription(
        self,
        address: str,
        *,
        channel_id: str,
        token: str | None = None,
        ttl_seconds: int | None = None,
    ) -> Subscription:
        """Register a push channel delivering change signals to *address*.

        Raises:
            SubscriptionError: when the provider refuses the subscription.
        """
        ...

    @abc.abstractmethod
    async def stop_subscription(self, *, channel_id: str, resource_id: str | None) -> None:
        """Stop a previously issued push channel."""
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        return None


class CalendarClientFactory(abc.ABC):
    """Produces a credentialed :class:`CalendarClient` for a user."""

    @abc.abstractmethod
    async def client_for(self, user_id: str) -> CalendarClient: ...

    async def aclose(self) -> None:
        return None
