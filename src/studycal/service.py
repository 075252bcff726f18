"""Caller-facing calendar engine.

``CalendarService`` wires the token manager, rate limiter, remote client,
batch executor, sync orchestrator, and webhook manager from one
:class:`~studycal.config.EngineConfig` and exposes the operations the
scheduling domain uses: connect/disconnect, conflict checks, free-slot
search, scheduling, updates, cancellation, sync, and push channels.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import httpx

from studycal.batch import BatchOperationExecutor
from studycal.client import RemoteEventClient, RetryPolicy
from studycal.config import EngineConfig
from studycal.core.locks import KeyedLock
from studycal.core.metrics import EngineMetrics
from studycal.errors import (
    CalendarError,
    ConfigError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    RateLimitedError,
    StoreConflictError,
    TransientError,
    build_structured_error,
)
from studycal.models import (
    BatchOperationResult,
    CalendarAccount,
    CalendarEvent,
    CalendarInfo,
    ConflictCheck,
    ConflictPolicy,
    ConflictRecord,
    DiscardedChange,
    EventDraft,
    EventPatch,
    RateLimitStatus,
    RemoteEvent,
    ScheduleOutcome,
    ScheduleStatus,
    SyncResult,
    SyncState,
    TimeSlot,
    WatchChannel,
    utcnow,
)
from studycal.providers.base import CalendarProvider
from studycal.providers.google import GoogleCalendarProvider
from studycal.ratelimit import RateLimiter
from studycal.scheduling import (
    DEFAULT_SUGGESTION_DAYS,
    Interval,
    PreferredHours,
    find_conflicts,
    find_free_slots,
    find_next_free_slot,
    plan_study_sessions,
    subtract_interval,
    suggest_alternatives,
)
from studycal.storage.base import CalendarStore
from studycal.storage.memory import InMemoryCalendarStore
from studycal.storage.postgres import PostgresCalendarStore
from studycal.sync.coordinator import SyncCoordinator, SyncPoller, TriggerOutcome
from studycal.sync.engine import SyncOrchestrator
from studycal.tokens import TokenLifecycleManager
from studycal.webhooks import WebhookChannelManager

logger = logging.getLogger(__name__)

# Failures that leave a scheduled event pending for the next sync instead of failing it.
_DEFERRABLE = (TransientError, RateLimitedError)


def _slot(interval: Interval) -> TimeSlot:
    return TimeSlot(start=interval.start, end=interval.end, event_id=interval.id)


class CalendarService:
    """Provider-agnostic calendar API for the scheduling domain."""

    def __init__(
        self,
        *,
        config: EngineConfig,
        store: CalendarStore,
        provider: CalendarProvider,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.provider = provider
        self._clock = clock
        self._tz = ZoneInfo(config.scheduling.timezone)
        metrics = EngineMetrics(provider.name)

        self.rate_limiter = rate_limiter or RateLimiter(
            capacity=config.rate_limit.capacity,
            refill_per_second=config.rate_limit.refill_per_second,
            backoff_base=config.rate_limit.backoff_base_s,
            backoff_max=config.rate_limit.backoff_max_s,
            sleep=sleep,
            metrics=metrics,
        )
        self.tokens = TokenLifecycleManager(
            store,
            provider,
            expiry_buffer=timedelta(seconds=config.tokens.expiry_buffer_s),
            call_timeout=config.provider.request_timeout_s,
            clock=clock,
            metrics=metrics,
        )
        self.client = RemoteEventClient(
            provider,
            self.tokens,
            self.rate_limiter,
            retry=RetryPolicy.from_config(config.retry),
            call_timeout=config.provider.request_timeout_s,
            sleep=sleep,
            metrics=metrics,
        )
        self.batch = BatchOperationExecutor(
            self.client, concurrency=config.batch.concurrency, metrics=metrics
        )
        self.orchestrator = SyncOrchestrator(
            store,
            self.client,
            policy=config.sync.conflict_policy,
            past_days=config.sync.past_days,
            future_days=config.sync.future_days,
            page_size=config.sync.page_size,
            locks=KeyedLock(),
            clock=clock,
            metrics=metrics,
        )
        self.coordinator = SyncCoordinator(self.orchestrator)
        self.webhooks = WebhookChannelManager(
            store,
            self.client,
            self.coordinator,
            callback_url=config.webhooks.callback_url,
            renewal_window=timedelta(hours=config.webhooks.renewal_window_hours),
            channel_ttl=timedelta(hours=config.webhooks.channel_ttl_hours),
            clock=clock,
            metrics=metrics,
        )
        self.poller = SyncPoller(
            store,
            self.coordinator,
            interval_seconds=config.sync.interval_minutes * 60,
            renew_channels=self.webhooks.renew_expiring,
        )

    @classmethod
    async def from_config(
        cls, config: EngineConfig, *, http_client: httpx.AsyncClient | None = None
    ) -> CalendarService:
        """Build the provider and store named by *config*."""
        if config.provider.name != "google":
            raise ConfigError(
                f"Unsupported calendar provider {config.provider.name!r}. "
                "Supported providers: google"
            )
        provider = GoogleCalendarProvider(config.provider, http_client)
        store: CalendarStore
        if config.database.dsn:
            store = await PostgresCalendarStore.connect(config.database.dsn)
        else:
            logger.info("No database DSN configured; using the in-memory calendar store")
            store = InMemoryCalendarStore()
        return cls(config=config, store=store, provider=provider)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.config.sync.enabled:
            self.poller.start()

    def force_sync(self) -> None:
        self.poller.force_sync()

    async def shutdown(self) -> None:
        await self.poller.stop()
        await self.coordinator.shutdown()
        await self.provider.shutdown()
        await self.store.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, *, login_hint: str | None = None) -> str:
        return self.tokens.authorization_url(state=state, login_hint=login_hint)

    async def connect_account(self, user_id: str, code: str) -> CalendarAccount:
        """Exchange an OAuth code and pick the primary calendar as the default."""
        account = await self.tokens.connect(user_id, code)
        try:
            calendars = await self.client.list_calendars(account.account_id)
        except CalendarError as exc:
            logger.warning(
                "Connected account %s but could not list calendars: %s", account.account_id, exc
            )
            return account
        primary = next((c for c in calendars if c.primary), calendars[0] if calendars else None)
        if primary is None:
            return account
        return await self.tokens.set_default_calendar(account.account_id, primary.calendar_id)

    async def disconnect_account(self, account_id: str) -> CalendarAccount:
        """Stop push channels (best effort), revoke tokens, and mark the account revoked."""
        stopped = await self.webhooks.stop_all(account_id)
        account = await self.tokens.revoke(account_id)
        self.rate_limiter.forget(account_id)
        logger.info("Account %s disconnected (%d channel(s) stopped)", account_id, stopped)
        return account

    async def get_account(self, account_id: str) -> CalendarAccount:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Calendar account {account_id!r} not found")
        return account

    async def list_calendars(self, account_id: str) -> list[CalendarInfo]:
        return await self.client.list_calendars(account_id)

    async def _calendar_for(self, account_id: str, calendar_id: str | None) -> str:
        if calendar_id:
            return calendar_id
        account = await self.get_account(account_id)
        if not account.default_calendar_id:
            raise InvalidArgumentError(
                f"Account {account_id} has no default calendar; pass calendar_id explicitly"
            )
        return account.default_calendar_id

    def describe_error(self, exc: Exception, *, account_id: str | None = None) -> dict:
        """Caller-facing error payload (redacted, with ``reauth_required``)."""
        return build_structured_error(exc, provider=self.provider.name, account_id=account_id)

    # ------------------------------------------------------------------
    # Conflicts and free slots
    # ------------------------------------------------------------------

    async def busy_intervals(
        self,
        account_id: str,
        window: Interval,
        *,
        calendar_id: str | None = None,
        exclude_id: str | None = None,
    ) -> list[Interval]:
        """Remote free/busy plus every local event of the calendar.

        Free/busy blocks are merged by the provider, so the excluded event's
        span is cut out of them; local events overlapping that span are
        added back individually.
        """
        calendar = await self._calendar_for(account_id, calendar_id)
        remote = await self.client.free_busy(account_id, [calendar], window)
        busy = list(remote.get(calendar, []))

        excluded: CalendarEvent | None = None
        if exclude_id is not None:
            excluded = await self.store.get_event(exclude_id)
            if excluded is not None and (excluded.account_id, excluded.calendar_id) == (
                account_id,
                calendar,
            ):
                busy = subtract_interval(busy, Interval(excluded.start_at, excluded.end_at))
        for event in await self.store.list_events(account_id, calendar, time_range=window):
            if event.local_id == exclude_id:
                continue
            busy.append(Interval(event.start_at, event.end_at, event.local_id))
        return busy

    async def check_conflict(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
        *,
        calendar_id: str | None = None,
        exclude_id: str | None = None,
        preferred_hours: PreferredHours | None = None,
    ) -> ConflictCheck:
        """Check a candidate time; on a conflict include alternatives nearest to it."""
        candidate = Interval(start, end)
        window = Interval(
            candidate.start, candidate.end + timedelta(days=DEFAULT_SUGGESTION_DAYS)
        )
        busy = await self.busy_intervals(
            account_id, window, calendar_id=calendar_id, exclude_id=exclude_id
        )
        conflicts = find_conflicts(candidate, busy, exclude_id=exclude_id)
        if not conflicts:
            return ConflictCheck(status="clear", candidate=_slot(candidate))
        suggestions = suggest_alternatives(
            candidate,
            busy,
            count=self.config.scheduling.suggestion_count,
            search_window=window,
            preferred_hours=preferred_hours,
            exclude_id=exclude_id,
            tz=self._tz,
        )
        return ConflictCheck(
            status=ScheduleStatus.slot_unavailable.value,
            candidate=_slot(candidate),
            conflicts=[_slot(c) for c in conflicts],
            suggestions=[_slot(s) for s in suggestions],
        )

    def _default_break(self, value: timedelta | None) -> timedelta:
        if value is not None:
            return value
        return timedelta(minutes=self.config.scheduling.default_break_minutes)

    async def find_free_slot(
        self,
        account_id: str,
        window_start: datetime,
        window_end: datetime,
        duration: timedelta,
        *,
        calendar_id: str | None = None,
        break_before: timedelta | None = None,
        break_after: timedelta | None = None,
        preferred_hours: PreferredHours | None = None,
        max_days: int | None = None,
    ) -> TimeSlot | None:
        window = Interval(window_start, window_end)
        busy = await self.busy_intervals(account_id, window, calendar_id=calendar_id)
        slot = find_next_free_slot(
            busy,
            window,
            duration,
            break_before=self._default_break(break_before),
            break_after=self._default_break(break_after),
            preferred_hours=preferred_hours,
            max_days=max_days or self.config.scheduling.max_search_days,
            tz=self._tz,
        )
        return _slot(slot) if slot is not None else None

    async def find_free_slots(
        self,
        account_id: str,
        window_start: datetime,
        window_end: datetime,
        duration: timedelta,
        *,
        calendar_id: str | None = None,
        break_between: timedelta | None = None,
        preferred_hours: PreferredHours | None = None,
        max_days: int | None = None,
    ) -> list[TimeSlot]:
        window = Interval(window_start, window_end)
        busy = await self.busy_intervals(account_id, window, calendar_id=calendar_id)
        slots = find_free_slots(
            busy,
            window,
            duration,
            break_between=self._default_break(break_between),
            preferred_hours=preferred_hours,
            max_days=max_days or self.config.scheduling.max_search_days,
            tz=self._tz,
        )
        return [_slot(s) for s in slots]

    async def plan_study_sessions(
        self,
        account_id: str,
        window_start: datetime,
        window_end: datetime,
        total: timedelta,
        *,
        calendar_id: str | None = None,
        session: timedelta = timedelta(minutes=90),
        break_between: timedelta = timedelta(minutes=15),
        preferred_hours: PreferredHours | None = None,
        per_day_limit: int | None = None,
    ) -> list[TimeSlot]:
        window = Interval(window_start, window_end)
        busy = await self.busy_intervals(account_id, window, calendar_id=calendar_id)
        planned = plan_study_sessions(
            busy,
            window,
            total,
            session=session,
            break_between=break_between,
            preferred_hours=preferred_hours,
            per_day_limit=per_day_limit,
            tz=self._tz,
        )
        return [_slot(s) for s in planned]

    # ------------------------------------------------------------------
    # Scheduling and edits
    # ------------------------------------------------------------------

    def _from_remote(
        self, account_id: str, calendar_id: str, remote: RemoteEvent, **extra: object
    ) -> CalendarEvent:
        now = self._clock()
        return CalendarEvent(
            account_id=account_id,
            calendar_id=calendar_id,
            provider_event_id=remote.provider_event_id,
            remote_version=remote.etag,
            remote_updated_at=remote.updated_at,
            synced_snapshot=remote.field_snapshot(),
            created_at=now,
            updated_at=now,
            **{**remote.to_fields(), **extra},
        )

    async def schedule_event(
        self,
        account_id: str,
        draft: EventDraft,
        *,
        calendar_id: str | None = None,
        timeout: float | None = None,
    ) -> ScheduleOutcome:
        """Conflict-check *draft* and create it remotely.

        A busy slot returns ``slot_unavailable`` with alternatives.  When the
        provider is temporarily unavailable the event is kept locally as
        ``pending`` and pushed by the next sync.
        """
        async with asyncio.timeout(timeout):
            calendar = await self._calendar_for(account_id, calendar_id)
            check = await self.check_conflict(
                account_id, draft.start_at, draft.end_at, calendar_id=calendar
            )
            if not check.available:
                return ScheduleOutcome(status=ScheduleStatus.slot_unavailable, conflict=check)

            try:
                remote = await self.client.create_event(account_id, calendar, draft)
            except _DEFERRABLE as exc:
                now = self._clock()
                pending = CalendarEvent(
                    account_id=account_id,
                    calendar_id=calendar,
                    dirty=True,
                    created_at=now,
                    updated_at=now,
                    **draft.model_dump(),
                )
                saved = await self.store.update_event_if_version(pending, 0)
                logger.warning(
                    "Remote create deferred for event %s: %s", saved.local_id, exc
                )
                return ScheduleOutcome(
                    status=ScheduleStatus.pending,
                    event=saved,
                    error=self.describe_error(exc, account_id=account_id),
                )

            event = self._from_remote(account_id, calendar, remote)
            saved = await self.store.update_event_if_version(event, 0)
            return ScheduleOutcome(status=ScheduleStatus.scheduled, event=saved)

    async def schedule_events(
        self,
        account_id: str,
        drafts: Sequence[EventDraft],
        *,
        calendar_id: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchOperationResult:
        """Create several events remotely in one batch and record the successes locally."""
        calendar = await self._calendar_for(account_id, calendar_id)
        result = await self.batch.batch_create(
            account_id, calendar, drafts, timeout=timeout, cancel_event=cancel_event
        )
        for success in result.successes:
            if success.event is not None:
                await self.store.save_event(self._from_remote(account_id, calendar, success.event))
        return result

    async def _require_event(self, local_id: str) -> CalendarEvent:
        event = await self.store.get_event(local_id)
        if event is None or event.deleted:
            raise NotFoundError(f"Event {local_id!r} not found")
        return event

    async def _record_push(self, saved: CalendarEvent, remote: RemoteEvent) -> CalendarEvent:
        try:
            return await self.store.update_event_if_version(
                saved.model_copy(
                    update={
                        "provider_event_id": remote.provider_event_id,
                        "remote_version": remote.etag,
                        "remote_updated_at": remote.updated_at,
                        "synced_snapshot": remote.field_snapshot(),
                        "dirty": False,
                    }
                ),
                saved.row_version,
            )
        except StoreConflictError:
            # A sync touched the event meanwhile; it reconciles on the next pass.
            logger.info("Event %s changed while pushing; leaving it for sync", saved.local_id)
            return await self._require_event(saved.local_id)

    async def update_event(self, local_id: str, patch: EventPatch) -> ScheduleOutcome:
        """Apply a local edit, then push it.

        The local write is compare-and-set against the version read here, so
        an edit racing a sync raises ``StoreConflictError`` instead of being
        lost.  A moved event is conflict-checked against everything but itself.
        """
        event = await self._require_event(local_id)
        changes = patch.changes()
        updated = event.apply_fields(changes)
        if "start_at" in changes or "end_at" in changes:
            check = await self.check_conflict(
                event.account_id,
                updated.start_at,
                updated.end_at,
                calendar_id=event.calendar_id,
                exclude_id=local_id,
            )
            if not check.available:
                return ScheduleOutcome(
                    status=ScheduleStatus.slot_unavailable, event=event, conflict=check
                )

        saved = await self.store.update_event_if_version(
            updated.model_copy(update={"dirty": True, "updated_at": self._clock()}),
            event.row_version,
        )
        try:
            if saved.provider_event_id is None:
                remote = await self.client.create_event(
                    saved.account_id,
                    saved.calendar_id,
                    EventDraft.model_validate(saved.field_snapshot()),
                )
            else:
                remote = await self.client.update_event(
                    saved.account_id,
                    saved.calendar_id,
                    saved.provider_event_id,
                    patch,
                    etag=saved.remote_version,
                )
        except ConflictError as exc:
            self.coordinator.trigger(saved.account_id, saved.calendar_id, reason="edit-conflict")
            return ScheduleOutcome(
                status=ScheduleStatus.pending,
                event=saved,
                error=self.describe_error(exc, account_id=saved.account_id),
            )
        except _DEFERRABLE as exc:
            return ScheduleOutcome(
                status=ScheduleStatus.pending,
                event=saved,
                error=self.describe_error(exc, account_id=saved.account_id),
            )
        return ScheduleOutcome(
            status=ScheduleStatus.scheduled, event=await self._record_push(saved, remote)
        )

    async def cancel_event(self, local_id: str) -> ScheduleOutcome:
        """Soft-delete locally and delete remotely; a failed remote delete is retried by sync."""
        event = await self._require_event(local_id)
        if event.provider_event_id is None:
            await self.store.delete_event(local_id)
            return ScheduleOutcome(
                status=ScheduleStatus.scheduled,
                event=event.model_copy(update={"deleted": True, "dirty": False}),
            )

        saved = await self.store.update_event_if_version(
            event.model_copy(update={"deleted": True, "dirty": True, "updated_at": self._clock()}),
            event.row_version,
        )
        try:
            await self.client.delete_event(
                saved.account_id,
                saved.calendar_id,
                saved.provider_event_id,
                etag=saved.remote_version,
            )
        except ConflictError as exc:
            self.coordinator.trigger(saved.account_id, saved.calendar_id, reason="cancel-conflict")
            return ScheduleOutcome(
                status=ScheduleStatus.pending,
                event=saved,
                error=self.describe_error(exc, account_id=saved.account_id),
            )
        except _DEFERRABLE as exc:
            return ScheduleOutcome(
                status=ScheduleStatus.pending,
                event=saved,
                error=self.describe_error(exc, account_id=saved.account_id),
            )
        try:
            saved = await self.store.update_event_if_version(
                saved.model_copy(update={"dirty": False}), saved.row_version
            )
        except StoreConflictError:
            logger.info("Event %s changed while cancelling; leaving it for sync", local_id)
        return ScheduleOutcome(status=ScheduleStatus.scheduled, event=saved)

    async def cancel_events(
        self,
        account_id: str,
        local_ids: Sequence[str],
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchOperationResult:
        """Cancel several events with one batch delete.

        Result item ids are provider event ids; events never created
        remotely are dropped locally and are not part of the batch.
        """
        marked: dict[str, CalendarEvent] = {}
        calendars: set[str] = set()
        for local_id in local_ids:
            event = await self._require_event(local_id)
            if event.account_id != account_id:
                raise InvalidArgumentError(f"Event {local_id} belongs to another account")
            if event.provider_event_id is None:
                await self.store.delete_event(local_id)
                continue
            saved = await self.store.update_event_if_version(
                event.model_copy(update={"deleted": True, "dirty": True}), event.row_version
            )
            marked[event.provider_event_id] = saved
            calendars.add(event.calendar_id)

        if len(calendars) > 1:
            raise InvalidArgumentError("cancel_events works on one calendar at a time")
        if not marked:
            return BatchOperationResult(total=0)

        calendar = calendars.pop()
        result = await self.batch.batch_delete(
            account_id, calendar, list(marked), timeout=timeout, cancel_event=cancel_event
        )
        for success in result.successes:
            saved = marked[success.item_id]
            try:
                await self.store.update_event_if_version(
                    saved.model_copy(update={"dirty": False}), saved.row_version
                )
            except StoreConflictError:
                logger.info(
                    "Event %s changed while cancelling; leaving it for sync", saved.local_id
                )
        return result

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def trigger_sync(
        self, account_id: str, calendar_id: str | None = None, *, force_full: bool = False
    ) -> TriggerOutcome:
        calendar = await self._calendar_for(account_id, calendar_id)
        return self.coordinator.trigger(account_id, calendar, force_full=force_full)

    async def sync_now(
        self, account_id: str, calendar_id: str | None = None, *, force_full: bool = False
    ) -> SyncResult:
        calendar = await self._calendar_for(account_id, calendar_id)
        return await self.orchestrator.sync(account_id, calendar, force_full=force_full)

    async def get_sync_status(self, account_id: str, calendar_id: str | None = None) -> SyncState:
        calendar = await self._calendar_for(account_id, calendar_id)
        state = await self.store.get_sync_state(account_id, calendar)
        return state or SyncState(account_id=account_id, calendar_id=calendar)

    async def list_conflicts(
        self, account_id: str, calendar_id: str | None = None
    ) -> list[ConflictRecord]:
        return await self.store.list_conflicts(account_id, calendar_id)

    async def resolve_conflict(
        self, conflict_id: str, choice: ConflictPolicy | str
    ) -> CalendarEvent | None:
        return await self.orchestrator.resolve_conflict(conflict_id, choice)

    async def list_discarded_changes(
        self, account_id: str, calendar_id: str | None = None
    ) -> list[DiscardedChange]:
        return await self.store.list_discarded_changes(account_id, calendar_id)

    def rate_limit_status(self, account_id: str) -> RateLimitStatus:
        return self.rate_limiter.status(account_id)

    # ------------------------------------------------------------------
    # Push channels
    # ------------------------------------------------------------------

    async def ensure_watch(
        self,
        account_id: str,
        calendar_id: str | None = None,
        *,
        callback_url: str | None = None,
    ) -> WatchChannel:
        calendar = await self._calendar_for(account_id, calendar_id)
        return await self.webhooks.ensure_channel(account_id, calendar, callback_url)

    async def renew_watches(self) -> list[WatchChannel]:
        return await self.webhooks.renew_expiring()

    async def handle_notification(
        self,
        channel_id: str,
        resource_id: str,
        change_type: str,
        token: str | None = None,
    ) -> TriggerOutcome | None:
        return await self.webhooks.handle_notification(
            channel_id, resource_id, change_type, token
        )
