"""Channel lifecycle manager: keeps one live, non-expired push channel per user.

A channel is reused until it gets within ``renew_window_seconds`` of its
expiry.  Renewal binds the new channel first and then stops the superseded
one at the provider, so the user is never without a binding and stops
receiving duplicate notifications once the old channel is gone.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass

from calpush.core.registry import ChannelBinding, SubscriptionRegistry
from calpush.providers.base import (
    CalendarClient,
    CalendarClientError,
    CalendarClientFactory,
    SubscriptionError,
)

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_RENEW_WINDOW_SECONDS = 60 * 60


@dataclass(frozen=True)
class ChannelSettings:
    webhook_address: str | None = None
    channel_token: str | None = None
    ttl_seconds: int = DEFAULT_CHANNEL_TTL_SECONDS
    renew_window_seconds: int = DEFAULT_RENEW_WINDOW_SECONDS


class ChannelLifecycleManager:
    """Creates, renews and revokes provider push channels and records their bindings."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        clients: CalendarClientFactory,
        settings: ChannelSettings,
    ) -> None:
        self._registry = registry
        self._clients = clients
        self._settings = settings
        # Entries vanish once no caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._background: dict[str, asyncio.Task[str | None]] = {}

    @property
    def settings(self) -> ChannelSettings:
        return self._settings

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def ensure_active(self, user_id: str, *, client: CalendarClient | None = None) -> str:
        """Return the id of a live channel for *user_id*, issuing one if needed.

        Raises:
            SubscriptionError: when a new channel is needed and cannot be
                created.  No binding is written in that case.
        """
        async with self._lock_for(user_id):
            current = await self._registry.binding_for_user(user_id)
            if current is not None and not current.expires_within(
                self._settings.renew_window_seconds
            ):
                return current.channel_id

            address = self._settings.webhook_address
            if not address:
                raise SubscriptionError("No webhook address configured; push channels disabled")

            if client is not None:
                binding = await self._issue(user_id, client, address, superseded=current)
            else:
                owned = await self._clients.client_for(user_id)
                try:
                    binding = await self._issue(user_id, owned, address, superseded=current)
                finally:
                    await owned.aclose()
            return binding.channel_id

    def ensure_in_background(self, user_id: str) -> asyncio.Task[str | None]:
        """Start :meth:`ensure_active` without waiting for it.

        Failures are logged and the task resolves to None.  A second call for
        a user whose ensure is still running returns the pending task.
        """
        task = self._background.get(user_id)
        if task is None or task.done():
            task = asyncio.create_task(
                self._ensure_logged(user_id), name=f"ensure-channel:{user_id}"
            )
            self._background[user_id] = task
            task.add_done_callback(lambda done: self._discard_background(user_id, done))
        return task

    def _discard_background(self, user_id: str, task: asyncio.Task[str | None]) -> None:
        if self._background.get(user_id) is task:
            del self._background[user_id]

    async def _ensure_logged(self, user_id: str) -> str | None:
        try:
            return await self.ensure_active(user_id)
        except Exception as exc:
            logger.warning("Could not ensure push channel for user %s: %s", user_id, exc)
            return None

    async def _cancel_background(self, user_id: str) -> None:
        task = self._background.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def aclose(self) -> None:
        """Cancel every pending background ensure."""
        for user_id in list(self._background):
            await self._cancel_background(user_id)

    async def _issue(
        self,
        user_id: str,
        client: CalendarClient,
        address: str,
        *,
        superseded: ChannelBinding | None,
    ) -> ChannelBinding:
        subscription = await client.create_subscription(
            address,
            channel_id=str(uuid.uuid4()),
            token=self._settings.channel_token,
            ttl_seconds=self._settings.ttl_seconds,
        )
        binding = ChannelBinding(
            channel_id=subscription.channel_id,
            user_id=user_id,
            resource_id=subscription.resource_id,
            expires_at=subscription.expires_at,
        )
        await self._registry.bind(binding)
        logger.info(
            "Issued push channel %s for user %s (expires %s)",
            binding.channel_id,
            user_id,
            binding.expires_at.isoformat() if binding.expires_at else "unknown",
        )

        if superseded is not None:
            await self._stop_quietly(client, superseded)
            await self._registry.unbind(superseded.channel_id)
        return binding

    async def _stop_quietly(self, client: CalendarClient, binding: ChannelBinding) -> None:
        try:
            await client.stop_subscription(
                channel_id=binding.channel_id,
                resource_id=binding.resource_id,
            )
        except CalendarClientError as exc:
            logger.warning(
                "Failed to stop superseded channel %s for user %s: %s",
                binding.channel_id,
                binding.user_id,
                exc,
            )

    async def revoke(self, user_id: str) -> bool:
        """Stop and unbind the user's current channel.  Returns False when none exists."""
        await self._cancel_background(user_id)
        async with self._lock_for(user_id):
            current = await self._registry.binding_for_user(user_id)
            if current is None:
                return False
            client = await self._clients.client_for(user_id)
            try:
                await self._stop_quietly(client, current)
            finally:
                await client.aclose()
            await self._registry.unbind(current.channel_id)
            logger.info("Revoked push channel %s for user %s", current.channel_id, user_id)
            return True
