"""Process-wide wiring of the sync components.

One :class:`CalpushRuntime` is built per application.  Everything that
persists goes through a single :class:`KeyValueStore`; the live-update
directory is process-local because it holds open connections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from calpush.config import ServiceConfig
from calpush.core.channels import ChannelLifecycleManager, ChannelSettings
from calpush.core.dispatcher import NotificationDispatcher
from calpush.core.ledger import EventCache, SyncStatusStore, TokenLedger
from calpush.core.registry import SubscriptionRegistry
from calpush.core.state import KeyValueStore
from calpush.core.streams import LiveUpdateDirectory
from calpush.core.sync import SyncEngine
from calpush.providers.base import CalendarClientFactory
from calpush.providers.google import GoogleClientFactory, StoredAccessTokenSource

logger = logging.getLogger(__name__)


@dataclass
class CalpushRuntime:
    config: ServiceConfig
    store: KeyValueStore
    clients: CalendarClientFactory
    ledger: TokenLedger
    cache: EventCache
    status: SyncStatusStore
    registry: SubscriptionRegistry
    directory: LiveUpdateDirectory
    channels: ChannelLifecycleManager
    engine: SyncEngine
    dispatcher: NotificationDispatcher
    credentials: StoredAccessTokenSource | None = None

    @classmethod
    def build(
        cls,
        config: ServiceConfig,
        store: KeyValueStore,
        *,
        client_factory: CalendarClientFactory | None = None,
    ) -> CalpushRuntime:
        """Wire every component on top of *store*.

        Without an explicit *client_factory* the Google client is used, with
        bearer tokens read from the store (``credentials::{user_id}``).
        """
        credentials: StoredAccessTokenSource | None = None
        if client_factory is None:
            credentials = StoredAccessTokenSource(store)
            client_factory = GoogleClientFactory(credentials, calendar_id=config.sync.calendar_id)

        ledger = TokenLedger(store)
        cache = EventCache(store)
        status = SyncStatusStore(store)
        registry = SubscriptionRegistry(store)
        directory = LiveUpdateDirectory(queue_size=config.stream.queue_size)
        channels = ChannelLifecycleManager(
            registry,
            client_factory,
            ChannelSettings(
                webhook_address=config.channels.webhook_address,
                channel_token=config.channels.channel_token,
                ttl_seconds=config.channels.ttl_seconds,
                renew_window_seconds=config.channels.renew_window_seconds,
            ),
        )
        if config.channels.webhook_address is None:
            logger.warning("channels.webhook_address is not set; live updates are disabled")

        engine = SyncEngine(
            clients=client_factory,
            ledger=ledger,
            cache=cache,
            status=status,
            channels=channels if config.channels.webhook_address else None,
            full_sync_window_days=config.sync.full_sync_window_days,
        )
        dispatcher = NotificationDispatcher(
            registry,
            directory,
            channel_token=config.channels.channel_token,
        )
        return cls(
            config=config,
            store=store,
            clients=client_factory,
            ledger=ledger,
            cache=cache,
            status=status,
            registry=registry,
            directory=directory,
            channels=channels,
            engine=engine,
            dispatcher=dispatcher,
            credentials=credentials,
        )

    async def sync_status(self, user_id: str) -> dict[str, Any]:
        """Snapshot of everything held for *user_id*, for the status endpoint."""
        status = await self.status.load(user_id)
        binding = await self.registry.binding_for_user(user_id)
        return {
            "user_id": user_id,
            "has_token": await self.ledger.get(user_id) is not None,
            "syncing": self.engine.is_syncing(user_id),
            "stream_open": user_id in self.directory,
            "status": status,
            "channel": binding,
        }

    async def logout(self, user_id: str) -> None:
        """Tear down the user's stream, sync state and push channel."""
        if self.directory.close(user_id):
            logger.info("Closed live stream for user %s on logout", user_id)
        await self.engine.forget(user_id)
        await self.channels.revoke(user_id)
        if self.credentials is not None:
            await self.credentials.remove(user_id)

    async def aclose(self) -> None:
        self.directory.close_all()
        await self.channels.aclose()
        await self.clients.aclose()
        await self.store.close()
