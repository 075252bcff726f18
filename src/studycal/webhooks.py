"""Push-notification channels: registration, renewal, and inbound validation.

A notification only says "something changed"; the handler checks it against
the stored channel and turns it into a sync trigger.  Renewal registers the
replacement channel first and stops the old one once the new one is active.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import NoReturn

from studycal.client import RemoteEventClient
from studycal.core.metrics import EngineMetrics
from studycal.errors import CalendarError, InvalidArgumentError, NotFoundError
from studycal.models import WatchChannel, utcnow
from studycal.storage.base import CalendarStore
from studycal.sync.coordinator import SyncCoordinator, TriggerOutcome

logger = logging.getLogger(__name__)

# Resource state Google sends once when a channel is created.
HANDSHAKE_STATE = "sync"


class WebhookChannelManager:
    def __init__(
        self,
        store: CalendarStore,
        client: RemoteEventClient,
        coordinator: SyncCoordinator,
        *,
        callback_url: str | None = None,
        renewal_window: timedelta = timedelta(hours=24),
        channel_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._coordinator = coordinator
        self._callback_url = callback_url
        self._renewal_window = renewal_window
        self._channel_ttl = channel_ttl
        self._clock = clock
        self._metrics = metrics or EngineMetrics(client.provider_name)

    def _needs_renewal(self, channel: WatchChannel) -> bool:
        return channel.expires_at - self._clock() <= self._renewal_window

    async def ensure_channel(
        self, account_id: str, calendar_id: str, callback_url: str | None = None
    ) -> WatchChannel:
        """Return an active channel, registering a replacement when needed."""
        url = callback_url or self._callback_url
        if not url:
            raise InvalidArgumentError("A webhook callback URL is required to watch a calendar")

        existing = await self._store.get_active_channel(account_id, calendar_id)
        if (
            existing is not None
            and existing.callback_url == url
            and not self._needs_renewal(existing)
        ):
            return existing

        token = secrets.token_urlsafe(24)
        registration = await self._client.watch(
            account_id,
            calendar_id,
            channel_id=uuid.uuid4().hex,
            callback_url=url,
            token=token,
            ttl=self._channel_ttl,
        )
        channel = await self._store.save_channel(
            WatchChannel(
                channel_id=registration.channel_id,
                resource_id=registration.resource_id,
                account_id=account_id,
                calendar_id=calendar_id,
                callback_url=url,
                expires_at=registration.expires_at,
                token=token,
                created_at=self._clock(),
            )
        )
        logger.info(
            "Registered watch channel %s for calendar %s (expires %s)",
            channel.channel_id,
            calendar_id,
            channel.expires_at.isoformat(),
        )
        if existing is not None:
            await self.stop_channel(existing)
        return channel

    async def stop_channel(self, channel: WatchChannel) -> None:
        """Stop a channel remotely (best effort) and forget it locally."""
        try:
            await self._client.stop_channel(
                channel.account_id, channel.channel_id, channel.resource_id
            )
        except CalendarError as exc:
            logger.warning("Failed to stop watch channel %s: %s", channel.channel_id, exc)
        await self._store.delete_channel(channel.channel_id)

    async def stop_all(self, account_id: str) -> int:
        channels = await self._store.list_channels(account_id)
        for channel in channels:
            await self.stop_channel(channel)
        return len(channels)

    async def renew_expiring(self) -> list[WatchChannel]:
        """Replace every active channel that expires within the renewal window."""
        renewed: list[WatchChannel] = []
        for channel in await self._store.list_channels():
            if not self._needs_renewal(channel):
                continue
            try:
                renewed.append(
                    await self.ensure_channel(
                        channel.account_id, channel.calendar_id, channel.callback_url
                    )
                )
            except CalendarError as exc:
                logger.warning(
                    "Failed to renew watch channel %s for calendar %s: %s",
                    channel.channel_id,
                    channel.calendar_id,
                    exc,
                )
        return renewed

    async def handle_notification(
        self,
        channel_id: str,
        resource_id: str,
        change_type: str,
        token: str | None = None,
    ) -> TriggerOutcome | None:
        """Validate a notification and trigger an incremental sync.

        Raises ``NotFoundError`` for unknown, stopped, expired, or mismatched
        channels.  Returns None for the initial handshake.
        """
        channel = await self._store.get_channel(channel_id)
        if channel is None or not channel.active:
            self._reject(channel_id, "unknown channel")
        if channel.resource_id != resource_id:
            self._reject(channel_id, "resource id mismatch")
        if channel.token is not None and not secrets.compare_digest(channel.token, token or ""):
            self._reject(channel_id, "channel token mismatch")
        if channel.expires_at <= self._clock():
            self._reject(channel_id, "channel expired")

        if change_type == HANDSHAKE_STATE:
            self._metrics.webhook_notification("handshake")
            logger.debug("Watch channel %s handshake received", channel_id)
            return None

        outcome = self._coordinator.trigger(
            channel.account_id, channel.calendar_id, reason="webhook"
        )
        self._metrics.webhook_notification("accepted")
        logger.info(
            "Webhook %s for calendar %s: sync %s",
            change_type,
            channel.calendar_id,
            outcome.value,
        )
        return outcome

    def _reject(self, channel_id: str, why: str) -> NoReturn:
        self._metrics.webhook_notification("rejected")
        logger.warning("Rejected webhook notification for channel %s: %s", channel_id, why)
        raise NotFoundError(f"Unknown watch channel {channel_id!r}")
