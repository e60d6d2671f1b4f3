"""Calendar client capability and its Google implementation."""

from calpush.providers.base import (
    CalendarClient,
    CalendarClientError,
    CalendarClientFactory,
    CalendarRequestError,
    EventRecord,
    FetchResult,
    Subscription,
    SubscriptionError,
    SyncTokenExpiredError,
)

__all__ = [
    "CalendarClient",
    "CalendarClientError",
    "CalendarClientFactory",
    "CalendarRequestError",
    "EventRecord",
    "FetchResult",
    "Subscription",
    "SubscriptionError",
    "SyncTokenExpiredError",
]
