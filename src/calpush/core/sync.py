"""Sync engine: full-vs-delta fetch, delta merge and continuation-token bookkeeping.

Flow for one ``reconcile(user_id)``:

1. Make sure a push channel exists (failure is logged, never fatal).
2. No token in the ledger -> FULL fetch over the look-back window; the
   result replaces the cached event set.
3. Token present -> DELTA fetch; the delta is merged onto the cached set.
4. A new continuation token replaces the old one; a missing token leaves
   the ledger untouched.

Reconciles for the same user are single-flight: a caller arriving while one
is running awaits the in-flight result instead of issuing a second fetch
against the same token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from calpush.core.channels import ChannelLifecycleManager
from calpush.core.ledger import (
    ChangeKind,
    EventCache,
    SyncStatusStore,
    TokenLedger,
)
from calpush.core.logging import user_context
from calpush.providers.base import (
    CalendarClient,
    CalendarClientError,
    CalendarClientFactory,
    EventRecord,
    SyncTokenExpiredError,
)

logger = logging.getLogger(__name__)

DEFAULT_FULL_SYNC_WINDOW_DAYS = 30


class SyncRetryRequiredError(RuntimeError):
    """The continuation token was rejected and has been cleared; retrying performs a full sync."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("Sync token invalid. Please refresh.")


@dataclass(frozen=True)
class ReconcileResult:
    kind: ChangeKind
    events: list[EventRecord]


def sort_events(events: Iterable[EventRecord]) -> list[EventRecord]:
    """Ascending start time; ties (and undated items, which go last) ordered by id."""
    return sorted(events, key=EventRecord.sort_key)


def merge_delta(base: Iterable[EventRecord], delta: Iterable[EventRecord]) -> list[EventRecord]:
    """Apply *delta* onto *base*: cancelled items are removed, everything else upserted.

    Applying the same delta twice yields the same result as applying it once.
    """
    merged: dict[str, EventRecord] = {event.id: event for event in base}
    for item in delta:
        if item.is_cancelled:
            merged.pop(item.id, None)
        else:
            merged[item.id] = item
    return sort_events(merged.values())


def snapshot_events(items: Iterable[EventRecord]) -> list[EventRecord]:
    """Normalise a full snapshot: drop cancelled items, last occurrence of an id wins."""
    return merge_delta([], items)


class SyncEngine:
    """Per-user reconcile against a credentialed calendar client."""

    def __init__(
        self,
        *,
        clients: CalendarClientFactory,
        ledger: TokenLedger,
        cache: EventCache,
        status: SyncStatusStore,
        channels: ChannelLifecycleManager | None = None,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clients = clients
        self._ledger = ledger
        self._cache = cache
        self._status = status
        self._channels = channels
        self._window = timedelta(days=full_sync_window_days)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._inflight: dict[str, asyncio.Task[ReconcileResult]] = {}

    def is_syncing(self, user_id: str) -> bool:
        return user_id in self._inflight

    async def reconcile(self, user_id: str) -> ReconcileResult:
        """Bring the user's event set up to date.

        Raises:
            SyncRetryRequiredError: the token expired and was cleared.
            CalendarClientError: any other provider failure; the token is kept.
        """
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._reconcile(user_id), name=f"reconcile:{user_id}")
            self._inflight[user_id] = task
            task.add_done_callback(lambda done: self._finish(user_id, done))
        else:
            logger.debug("Joining in-flight reconcile for user %s", user_id)
        # Shielded so a disconnecting caller never cancels a fetch others are awaiting.
        return await asyncio.shield(task)

    def _finish(self, user_id: str, task: asyncio.Task[ReconcileResult]) -> None:
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]
        if not task.cancelled():
            # Mark the exception retrieved; every awaiting caller still receives it.
            task.exception()

    async def _reconcile(self, user_id: str) -> ReconcileResult:
        with user_context(user_id):
            client = await self._clients.client_for(user_id)
            try:
                await self._ensure_channel(user_id, client)
                return await self._fetch_and_merge(user_id, client)
            finally:
                await client.aclose()

    async def _ensure_channel(self, user_id: str, client: CalendarClient) -> None:
        if self._channels is None:
            return
        try:
            await self._channels.ensure_active(user_id, client=client)
        except Exception as exc:
            logger.warning(
                "Push channel unavailable for user %s; continuing without live updates: %s",
                user_id,
                exc,
            )

    async def _fetch_and_merge(self, user_id: str, client: CalendarClient) -> ReconcileResult:
        token = await self._ledger.get(user_id)
        now = self._clock()

        try:
            if token is None:
                kind = ChangeKind.FULL
                logger.info("Performing full sync for user %s", user_id)
                result = await client.fetch_full(window_start=now - self._window)
                events = snapshot_events(result.items)
            else:
                kind = ChangeKind.DELTA
                logger.info("Performing incremental sync for user %s", user_id)
                result = await client.fetch_delta(token=token)
                base = await self._cache.load(user_id)
                events = merge_delta(base, result.items)
        except SyncTokenExpiredError as exc:
            logger.warning(
                "Sync token invalid for user %s; clearing token and forcing full sync", user_id
            )
            await self._ledger.clear(user_id)
            await self._record(user_id, now, kind=ChangeKind.DELTA, error=exc)
            raise SyncRetryRequiredError(user_id) from exc
        except CalendarClientError as exc:
            logger.error("Calendar fetch failed for user %s: %s", user_id, exc)
            await self._record(user_id, now, kind=kind, error=exc)
            raise

        await self._cache.replace(user_id, events)
        if result.continuation_token:
            await self._ledger.set(user_id, result.continuation_token)
            logger.debug("Stored new continuation token for user %s", user_id)
        else:
            logger.warning(
                "%s sync for user %s returned no continuation token; keeping the existing one",
                kind.value,
                user_id,
            )

        await self._record(user_id, now, kind=kind, item_count=len(events))
        return ReconcileResult(kind=kind, events=events)

    async def _record(
        self,
        user_id: str,
        now: datetime,
        *,
        kind: ChangeKind,
        error: Exception | None = None,
        item_count: int | None = None,
    ) -> None:
        status = await self._status.load(user_id)
        status.last_sync_at = now.isoformat()
        status.last_sync_kind = kind
        status.last_error = " ".join(str(error).split())[:200] if error is not None else None
        if item_count is not None:
            status.last_item_count = item_count
        await self._status.save(user_id, status)

    async def forget(self, user_id: str) -> None:
        """Drop every piece of sync state held for *user_id*.

        An in-flight reconcile is allowed to finish first, so its writes cannot
        land after the state has been cleared.
        """
        task = self._inflight.get(user_id)
        if task is not None:
            await asyncio.wait({task})
        await self._ledger.clear(user_id)
        await self._cache.clear(user_id)
        await self._status.clear(user_id)

