"""Key-value state stores.

Every piece of per-user or per-channel state (continuation tokens, channel
bindings, cached event sets, sync status) lives behind :class:`KeyValueStore`
so the backing technology can change without touching the engine logic.

Two implementations ship:

- :class:`InMemoryKeyValueStore`: process-local dict (dev default, tests).
- :class:`PostgresKeyValueStore`: asyncpg-backed JSONB table.
"""

from __future__ import annotations

import abc
import copy
import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

STATE_TABLE = "calpush_state"

_CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {STATE_TABLE} (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered.  Normally one ``json.loads`` pass suffices; a value that was
    double-encoded on write needs a second pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class KeyValueStore(abc.ABC):
    """Async ``get/set/delete`` over string keys holding JSON-serialisable values."""

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value for *key*, or ``None`` if the key does not exist."""
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Insert or replace *key*."""
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Delete *key*.  No-op if the key does not exist."""
        ...

    async def close(self) -> None:
        """Release backing resources."""
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store.

    Values are deep-copied on the way in and out so callers can never mutate
    stored state by holding on to a reference.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class PostgresKeyValueStore(KeyValueStore):
    """JSONB key-value table on an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, *, owns_pool: bool = False) -> None:
        self._pool = pool
        self._owns_pool = owns_pool

    @classmethod
    async def connect(cls, dsn: str) -> PostgresKeyValueStore:
        """Create a pool for *dsn*, ensure the state table exists, and return a store."""
        pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
        store = cls(pool, owns_pool=True)
        await store.ensure_schema()
        logger.info("PostgreSQL state store ready (table=%s)", STATE_TABLE)
        return store

    async def ensure_schema(self) -> None:
        await self._pool.execute(_CREATE_TABLE_SQL)

    async def get(self, key: str) -> Any | None:
        row = await self._pool.fetchval(
            f"SELECT value FROM {STATE_TABLE} WHERE key = $1",
            key,
        )
        if row is None:
            return None
        return decode_jsonb(row)

    async def set(self, key: str, value: Any) -> None:
        await self._pool.execute(
            f"""
            INSERT INTO {STATE_TABLE} (key, value, updated_at, version)
            VALUES ($1, $2::jsonb, now(), 1)
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now(),
                    version = {STATE_TABLE}.version + 1
            """,
            key,
            json.dumps(value),
        )

    async def delete(self, key: str) -> None:
        await self._pool.execute(f"DELETE FROM {STATE_TABLE} WHERE key = $1", key)

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()
