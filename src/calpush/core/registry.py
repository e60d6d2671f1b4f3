"""Subscription registry: externally issued channel id <-> owning user id.

Stored as two keys so both directions are a single lookup::

    channel::binding::{channel_id} -> ChannelBinding
    channel::owner::{user_id}      -> channel_id   (the user's current channel)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from calpush.core.state import KeyValueStore

logger = logging.getLogger(__name__)

BINDING_KEY_PREFIX = "channel::binding::"
OWNER_KEY_PREFIX = "channel::owner::"


class ChannelBinding(BaseModel):
    """Immutable record of a push channel issued for a user."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    channel_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    resource_id: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        """True when the channel is expired or will expire within *seconds*.

        A binding without a known expiry never counts as expiring.
        """
        if self.expires_at is None:
            return False
        current = now or datetime.now(UTC)
        return self.expires_at - current <= timedelta(seconds=seconds)


class SubscriptionRegistry:
    """Bidirectional channel/user mapping.

    Bindings are never mutated: issuing a new channel for a user writes a new
    binding and repoints the owner key.  The superseded binding stays
    resolvable until :meth:`unbind` removes it.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def bind(self, binding: ChannelBinding) -> None:
        await self._store.set(
            f"{BINDING_KEY_PREFIX}{binding.channel_id}",
            binding.model_dump(mode="json"),
        )
        await self._store.set(f"{OWNER_KEY_PREFIX}{binding.user_id}", binding.channel_id)

    async def get(self, channel_id: str) -> ChannelBinding | None:
        value = await self._store.get(f"{BINDING_KEY_PREFIX}{channel_id}")
        if not isinstance(value, dict):
            return None
        return ChannelBinding.model_validate(value)

    async def resolve(self, channel_id: str) -> str | None:
        """Return the user owning *channel_id*, or ``None`` for unknown channels."""
        binding = await self.get(channel_id)
        return binding.user_id if binding is not None else None

    async def binding_for_user(self, user_id: str) -> ChannelBinding | None:
        channel_id = await self._store.get(f"{OWNER_KEY_PREFIX}{user_id}")
        if not isinstance(channel_id, str) or not channel_id:
            return None
        binding = await self.get(channel_id)
        if binding is None:
            logger.warning(
                "Owner entry for user %s points at missing channel %s", user_id, channel_id
            )
        return binding

    async def unbind(self, channel_id: str) -> None:
        """Remove a binding; clears the owner key only if it still points here."""
        binding = await self.get(channel_id)
        await self._store.delete(f"{BINDING_KEY_PREFIX}{channel_id}")
        if binding is None:
            return
        owner_key = f"{OWNER_KEY_PREFIX}{binding.user_id}"
        if await self._store.get(owner_key) == channel_id:
            await self._store.delete(owner_key)
