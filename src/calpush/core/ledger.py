"""Per-user sync bookkeeping: continuation tokens, cached event sets, sync status.

Key layout in the backing :class:`~calpush.core.state.KeyValueStore`::

    sync::token::{user_id}    -> "opaque continuation token"
    sync::events::{user_id}   -> [event payload, ...]
    sync::status::{user_id}   -> SyncStatus
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from calpush.core.state import KeyValueStore
from calpush.providers.base import EventRecord

logger = logging.getLogger(__name__)

TOKEN_KEY_PREFIX = "sync::token::"
EVENTS_KEY_PREFIX = "sync::events::"
STATUS_KEY_PREFIX = "sync::status::"


class ChangeKind(StrEnum):
    FULL = "full"
    DELTA = "delta"


class TokenLedger:
    """At most one continuation token per user.

    Absence of a token means no sync has ever succeeded for the user; the
    sync engine is the only writer.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"{TOKEN_KEY_PREFIX}{user_id}"

    async def get(self, user_id: str) -> str | None:
        value = await self._store.get(self.key_for(user_id))
        if isinstance(value, str) and value:
            return value
        return None

    async def set(self, user_id: str, token: str) -> None:
        if not token:
            raise ValueError("continuation token must be a non-empty string")
        await self._store.set(self.key_for(user_id), token)

    async def clear(self, user_id: str) -> None:
        await self._store.delete(self.key_for(user_id))


class EventCache:
    """Last merged event set per user; seeds the next delta merge."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"{EVENTS_KEY_PREFIX}{user_id}"

    async def load(self, user_id: str) -> list[EventRecord]:
        value = await self._store.get(self.key_for(user_id))
        if not isinstance(value, list):
            return []
        records: list[EventRecord] = []
        for payload in value:
            if not isinstance(payload, dict):
                continue
            try:
                records.append(EventRecord.from_payload(payload))
            except ValueError:
                logger.warning("Dropping malformed cached event for user %s", user_id)
        return records

    async def replace(self, user_id: str, events: list[EventRecord]) -> None:
        await self._store.set(self.key_for(user_id), [event.to_payload() for event in events])

    async def clear(self, user_id: str) -> None:
        await self._store.delete(self.key_for(user_id))


class SyncStatus(BaseModel):
    """Observability record for the most recent reconcile attempt."""

    model_config = ConfigDict(extra="ignore")

    last_sync_at: str | None = None  # ISO-8601 UTC timestamp
    last_sync_kind: ChangeKind | None = None
    last_error: str | None = None
    last_item_count: int = 0


class SyncStatusStore:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"{STATUS_KEY_PREFIX}{user_id}"

    async def load(self, user_id: str) -> SyncStatus:
        value: Any = await self._store.get(self.key_for(user_id))
        if not isinstance(value, dict):
            return SyncStatus()
        return SyncStatus.model_validate(value)

    async def save(self, user_id: str, status: SyncStatus) -> None:
        await self._store.set(self.key_for(user_id), status.model_dump(mode="json"))

    async def clear(self, user_id: str) -> None:
        await self._store.delete(self.key_for(user_id))
