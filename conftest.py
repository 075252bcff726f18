"""Root conftest: shared fakes and fixtures for the studycal test suite.

``FakeCalendarProvider`` is an in-memory stand-in for the provider capability
set.  It keeps remote events per calendar, a change log that backs sync
tokens, and queues of injected failures per operation so tests can script
401s, throttling, and transient errors without HTTP.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from studycal.config import EngineConfig
from studycal.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    SyncTokenExpiredError,
    UnauthorizedError,
)
from studycal.models import (
    CalendarAccount,
    CalendarInfo,
    ChannelRegistration,
    EventDraft,
    EventPage,
    EventPatch,
    OAuthTokens,
    RemoteEvent,
)
from studycal.providers.base import CalendarProvider
from studycal.ratelimit import RateLimiter
from studycal.scheduling import Interval, merge_intervals
from studycal.storage.memory import InMemoryCalendarStore
from studycal.tokens import TokenLifecycleManager

ACCOUNT_ID = "acct-1"
USER_ID = "user-1"
CALENDAR_ID = "primary"


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += max(delay, 0.0)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Provider fake
# ---------------------------------------------------------------------------


class FakeCalendarProvider(CalendarProvider):
    """In-memory provider with scriptable failures."""

    def __init__(self, *, name: str = "fake", token_ttl: timedelta = timedelta(hours=1)) -> None:
        self._name = name
        self.token_ttl = token_ttl
        self.calendars = [
            CalendarInfo(calendar_id=CALENDAR_ID, summary="Primary", primary=True),
            CalendarInfo(calendar_id="study", summary="Study"),
        ]
        self.events: dict[str, dict[str, RemoteEvent]] = {}
        self.changes: list[tuple[str, str]] = []
        self.extra_busy: dict[str, list[Interval]] = defaultdict(list)
        self.valid_access_tokens: set[str] = set()
        self.valid_refresh_tokens: set[str] = set()
        self.expired_sync_tokens: set[str] = set()
        self.failures: dict[str, list[BaseException]] = defaultdict(list)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.channels: dict[str, dict[str, Any]] = {}
        self.stopped_channels: list[str] = []
        self.revoked_tokens: list[str] = []
        self.refresh_gate: asyncio.Event | None = None
        self.call_gate: asyncio.Event | None = None
        self.shut_down = False
        self._counter = itertools.count(1)

    @property
    def name(self) -> str:
        return self._name

    # -- test helpers --------------------------------------------------------

    def issue_tokens(self, *, refresh_token: str | None = "refresh-1") -> OAuthTokens:
        access_token = f"access-{next(self._counter)}"
        self.valid_access_tokens.add(access_token)
        if refresh_token is not None:
            self.valid_refresh_tokens.add(refresh_token)
        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(UTC) + self.token_ttl,
            scopes=["calendar"],
        )

    def fail(self, operation: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls of *operation*, in order."""
        self.failures[operation].extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def current_sync_token(self) -> str:
        return f"sync-{len(self.changes)}"

    def _etag(self) -> str:
        return f'"etag-{next(self._counter)}"'

    def _record(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        self.events.setdefault(calendar_id, {})[event.provider_event_id] = event
        self.changes.append((calendar_id, event.provider_event_id))
        return event

    def put_event(
        self,
        calendar_id: str = CALENDAR_ID,
        *,
        start: datetime,
        end: datetime,
        title: str = "Remote event",
        event_id: str | None = None,
        **fields: Any,
    ) -> RemoteEvent:
        event = RemoteEvent(
            provider_event_id=event_id or f"evt-{next(self._counter)}",
            calendar_id=calendar_id,
            title=title,
            start_at=start,
            end_at=end,
            etag=self._etag(),
            updated_at=datetime.now(UTC),
            **fields,
        )
        return self._record(calendar_id, event)

    def edit_event(self, calendar_id: str, event_id: str, **fields: Any) -> RemoteEvent:
        current = self.events[calendar_id][event_id]
        data = {**current.model_dump(), **fields}
        data.update(etag=self._etag(), updated_at=datetime.now(UTC))
        return self._record(calendar_id, RemoteEvent.model_validate(data))

    def remove_event(self, calendar_id: str, event_id: str) -> None:
        current = self.events[calendar_id][event_id]
        self._record(
            calendar_id,
            current.model_copy(
                update={"cancelled": True, "etag": self._etag(), "updated_at": datetime.now(UTC)}
            ),
        )

    def live_events(self, calendar_id: str = CALENDAR_ID) -> list[RemoteEvent]:
        return [e for e in self.events.get(calendar_id, {}).values() if not e.cancelled]

    async def _enter(self, operation: str, access_token: str | None = None, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if self.call_gate is not None:
            await self.call_gate.wait()
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)
        if access_token is not None and access_token not in self.valid_access_tokens:
            raise UnauthorizedError("access token rejected")

    # -- OAuth ---------------------------------------------------------------

    def authorization_url(self, *, state: str, login_hint: str | None = None) -> str:
        hint = f"&login_hint={login_hint}" if login_hint else ""
        return f"https://auth.example.test/authorize?state={state}&access_type=offline{hint}"

    async def exchange_code(self, *, code: str) -> OAuthTokens:
        await self._enter("exchange_code", code=code)
        if code == "no-refresh":
            return self.issue_tokens(refresh_token=None)
        return self.issue_tokens(refresh_token=f"refresh-{code}")

    async def refresh_access_token(self, *, refresh_token: str) -> OAuthTokens:
        await self._enter("refresh_access_token")
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if refresh_token not in self.valid_refresh_tokens:
            raise AuthError("invalid_grant: token has been revoked", reauth_required=True)
        return self.issue_tokens(refresh_token=None)

    async def revoke_token(self, *, token: str) -> None:
        await self._enter("revoke_token")
        self.revoked_tokens.append(token)
        self.valid_refresh_tokens.discard(token)
        self.valid_access_tokens.discard(token)

    # -- Calendars and events -----------------------------------------------

    async def list_calendars(self, *, access_token: str) -> list[CalendarInfo]:
        await self._enter("list_calendars", access_token)
        return list(self.calendars)

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
        await self._enter(
            "list_events",
            access_token,
            calendar_id=calendar_id,
            sync_token=sync_token,
            page_token=page_token,
        )
        calendar_events = self.events.get(calendar_id, {})
        if sync_token is not None:
            if sync_token in self.expired_sync_tokens:
                raise SyncTokenExpiredError(f"sync token {sync_token} expired")
            since = int(sync_token.removeprefix("sync-"))
            changed: list[str] = []
            for cal, event_id in self.changes[since:]:
                if cal == calendar_id and event_id not in changed:
                    changed.append(event_id)
            events = [calendar_events[event_id] for event_id in changed]
        else:
            events = [
                e
                for e in calendar_events.values()
                if not e.cancelled
                and (
                    time_range is None
                    or (e.start_at < time_range.end and time_range.start < e.end_at)
                )
            ]
        offset = int(page_token or 0)
        page = events[offset : offset + page_size]
        if offset + page_size < len(events):
            return EventPage(events=page, next_page_token=str(offset + page_size))
        return EventPage(events=page, next_sync_token=self.current_sync_token())

    async def get_event(self, *, access_token: str, calendar_id: str, event_id: str) -> RemoteEvent:
        await self._enter("get_event", access_token, event_id=event_id)
        event = self.events.get(calendar_id, {}).get(event_id)
        if event is None:
            raise NotFoundError(f"event {event_id} not found")
        return event

    async def create_event(
        self, *, access_token: str, calendar_id: str, draft: EventDraft
    ) -> RemoteEvent:
        await self._enter("create_event", access_token, calendar_id=calendar_id, title=draft.title)
        fields = draft.model_dump()
        return self.put_event(
            calendar_id,
            start=fields.pop("start_at"),
            end=fields.pop("end_at"),
            title=fields.pop("title"),
            **fields,
        )

    async def update_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        etag: str | None = None,
    ) -> RemoteEvent:
        await self._enter("update_event", access_token, event_id=event_id, etag=etag)
        current = self.events.get(calendar_id, {}).get(event_id)
        if current is None or current.cancelled:
            raise NotFoundError(f"event {event_id} not found")
        if etag is not None and etag != current.etag:
            raise ConflictError(f"etag mismatch for {event_id}")
        return self.edit_event(calendar_id, event_id, **patch.changes())

    async def delete_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        etag: str | None = None,
    ) -> None:
        await self._enter("delete_event", access_token, event_id=event_id, etag=etag)
        current = self.events.get(calendar_id, {}).get(event_id)
        if current is None or current.cancelled:
            return
        if etag is not None and etag != current.etag:
            raise ConflictError(f"etag mismatch for {event_id}")
        self.remove_event(calendar_id, event_id)

    async def free_busy(
        self,
        *,
        access_token: str,
        calendar_ids: list[str],
        time_range: Interval,
    ) -> dict[str, list[Interval]]:
        await self._enter("free_busy", access_token, calendar_ids=calendar_ids)
        result: dict[str, list[Interval]] = {}
        for calendar_id in calendar_ids:
            busy = [
                Interval(e.start_at, e.end_at)
                for e in self.live_events(calendar_id)
                if e.start_at < time_range.end and time_range.start < e.end_at
            ]
            busy.extend(b for b in self.extra_busy[calendar_id] if b.overlaps(time_range))
            # Like Google, report merged busy periods without event ids.
            result[calendar_id] = merge_intervals(busy)
        return result

    # -- Push notifications --------------------------------------------------

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
        await self._enter("watch", access_token, calendar_id=calendar_id, channel_id=channel_id)
        self.channels[channel_id] = {
            "calendar_id": calendar_id,
            "callback_url": callback_url,
            "token": token,
        }
        return ChannelRegistration(
            channel_id=channel_id,
            resource_id=f"resource-{calendar_id}",
            expires_at=datetime.now(UTC) + ttl,
        )

    async def stop_channel(self, *, access_token: str, channel_id: str, resource_id: str) -> None:
        await self._enter("stop_channel", access_token, channel_id=channel_id)
        self.stopped_channels.append(channel_id)

    async def shutdown(self) -> None:
        self.shut_down = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_time() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
def rate_limiter(fake_time: FakeClock) -> RateLimiter:
    return RateLimiter(
        capacity=10, refill_per_second=5.0, clock=fake_time, sleep=fake_time.sleep
    )


@pytest.fixture
def token_manager(
    store: InMemoryCalendarStore, provider: FakeCalendarProvider
) -> TokenLifecycleManager:
    return TokenLifecycleManager(store, provider)


@pytest.fixture
async def account(
    store: InMemoryCalendarStore, provider: FakeCalendarProvider
) -> CalendarAccount:
    """A connected account holding a valid access token and refresh token."""
    tokens = provider.issue_tokens()
    return await store.save_account(
        CalendarAccount(
            account_id=ACCOUNT_ID,
            user_id=USER_ID,
            provider=provider.name,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
            default_calendar_id=CALENDAR_ID,
        )
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig.model_validate(
        {
            "retry": {"jitter": False},
            "webhooks": {"callback_url": "https://hooks.example.test/webhooks/calendar"},
        }
    )
