"""Notification dispatcher: inbound change signal -> wake-up on the owner's live stream.

The dispatcher never fetches.  It resolves the channel to a user and drops a
``{"type": "calendar_update"}`` message on that user's stream; the receiver
decides when to reconcile.  Every outcome is an acknowledgment: the caller
answers the external source with a 2xx no matter what happened here.
"""

from __future__ import annotations

import hmac
import logging
from enum import StrEnum

from calpush.core.registry import SubscriptionRegistry
from calpush.core.streams import CALENDAR_UPDATE_MESSAGE, LiveUpdateDirectory

logger = logging.getLogger(__name__)

SYNC_RESOURCE_STATE = "sync"


class SignalKind(StrEnum):
    SYNC_HANDSHAKE = "sync_handshake"
    RESOURCE_CHANGE = "resource_change"

    @classmethod
    def from_resource_state(cls, resource_state: str | None) -> SignalKind:
        """Map Google's ``X-Goog-Resource-State`` onto a signal kind.

        ``sync`` is the one-off handshake sent when a channel is created;
        every other state (``exists``, ``not_exists``, ...) reports a change.
        """
        if resource_state is not None and resource_state.strip().lower() == SYNC_RESOURCE_STATE:
            return cls.SYNC_HANDSHAKE
        return cls.RESOURCE_CHANGE


class DispatchOutcome(StrEnum):
    HANDSHAKE = "handshake"
    DELIVERED = "delivered"
    COALESCED = "coalesced"
    NO_STREAM = "no_stream"
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"
    FAILED = "failed"


class NotificationDispatcher:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        directory: LiveUpdateDirectory,
        *,
        channel_token: str | None = None,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._channel_token = channel_token

    def _token_matches(self, presented: str | None) -> bool:
        if not self._channel_token:
            return True
        if presented is None:
            return False
        return hmac.compare_digest(presented.encode(), self._channel_token.encode())

    async def on_external_signal(
        self,
        channel_id: str | None,
        signal_kind: SignalKind,
        *,
        channel_token: str | None = None,
    ) -> DispatchOutcome:
        """Handle one inbound signal.  Never raises."""
        try:
            return await self._dispatch(channel_id, signal_kind, channel_token)
        except Exception:
            logger.error(
                "Error dispatching signal for channel %s", channel_id, exc_info=True
            )
            return DispatchOutcome.FAILED

    async def _dispatch(
        self,
        channel_id: str | None,
        signal_kind: SignalKind,
        channel_token: str | None,
    ) -> DispatchOutcome:
        if not self._token_matches(channel_token):
            logger.warning("Dropping signal for channel %s: channel token mismatch", channel_id)
            return DispatchOutcome.REJECTED

        if signal_kind is SignalKind.SYNC_HANDSHAKE:
            logger.info("Sync handshake received for channel %s", channel_id)
            return DispatchOutcome.HANDSHAKE

        if not channel_id:
            logger.info("Dropping change signal without a channel id")
            return DispatchOutcome.UNRESOLVED

        user_id = await self._registry.resolve(channel_id)
        if user_id is None:
            logger.info("No binding for channel %s; dropping change signal", channel_id)
            return DispatchOutcome.UNRESOLVED

        stream = self._directory.get(user_id)
        if stream is None:
            logger.info("No active live stream for user %s (channel %s)", user_id, channel_id)
            return DispatchOutcome.NO_STREAM

        if not stream.write(dict(CALENDAR_UPDATE_MESSAGE)):
            # Queue full: the client already has wake-ups pending.
            return DispatchOutcome.COALESCED

        logger.info("Notified user %s of a calendar update", user_id)
        return DispatchOutcome.DELIVERED
