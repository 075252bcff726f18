"""Provider capability set consumed by the remote event client.

Implementations are stateless with respect to credentials: every call takes
the access token to use, so token refresh, rate limiting, and retries stay in
one place above the provider.  Failures are raised as ``studycal.errors``
types (``UnauthorizedError`` for a rejected access token).
"""

from __future__ import annotations

import abc
from datetime import timedelta

from studycal.models import (
    CalendarInfo,
    ChannelRegistration,
    EventDraft,
    EventPage,
    EventPatch,
    OAuthTokens,
    RemoteEvent,
)
from studycal.scheduling import Interval


class CalendarProvider(abc.ABC):
    """Provider abstraction: OAuth, event CRUD, free/busy, and push channels."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    # -- OAuth ---------------------------------------------------------------

    @abc.abstractmethod
    def authorization_url(self, *, state: str, login_hint: str | None = None) -> str:
        """Consent URL requesting offline access."""
        ...

    @abc.abstractmethod
    async def exchange_code(self, *, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        ...

    @abc.abstractmethod
    async def refresh_access_token(self, *, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Raises ``AuthError(reauth_required=True)`` when the refresh token was
        revoked or is otherwise invalid.
        """
        ...

    @abc.abstractmethod
    async def revoke_token(self, *, token: str) -> None:
        ...

    # -- Calendars and events -----------------------------------------------

    @abc.abstractmethod
    async def list_calendars(self, *, access_token: str) -> list[CalendarInfo]:
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_range: Interval | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
        page_size: int = 250,
    ) -> EventPage:
        """Return one page of events, including cancelled ones.

        With *sync_token* only changes since that token are returned and
        ``SyncTokenExpiredError`` is raised if the provider rejects it.  The
        last page carries ``next_sync_token``.
        """
        ...

    @abc.abstractmethod
    async def get_event(
        self, *, access_token: str, calendar_id: str, event_id: str
    ) -> RemoteEvent:
        """Fetch one event; raises ``NotFoundError`` if it does not exist."""
        ...

    @abc.abstractmethod
    async def create_event(
        self, *, access_token: str, calendar_id: str, draft: EventDraft
    ) -> RemoteEvent:
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        etag: str | None = None,
    ) -> RemoteEvent:
        """Patch an event; with *etag* a concurrent change raises ``ConflictError``."""
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        etag: str | None = None,
    ) -> None:
        ...

    @abc.abstractmethod
    async def free_busy(
        self,
        *,
        access_token: str,
        calendar_ids: list[str],
        time_range: Interval,
    ) -> dict[str, list[Interval]]:
        """Busy intervals per calendar id within *time_range*."""
        ...

    # -- Push notifications --------------------------------------------------

    @abc.abstractmethod
    async def watch(
        self,
        *,
        access_token: str,
        calendar_id: str,
        channel_id: str,
        callback_url: str,
        token: str | None,
        ttl: timedelta,
    ) -> ChannelRegistration:
        ...

    @abc.abstractmethod
    async def stop_channel(self, *, access_token: str, channel_id: str, resource_id: str) -> None:
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...
