"""Bidirectional sync between canonical local events and the provider.

A run for one (account, calendar) pulls remote changes (incremental with the
stored sync token, or a full listing over the configured window), diffs them
against local events by provider event id, applies the conflict policy where
both sides changed, then pushes pending local edits.  Runs for the same
calendar are serialized by a keyed lock; the sync token is only advanced
after the whole pass has been applied.

Deletions on one side always win over field edits on the other under
``merge``; discarded local values go to the side log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from studycal.client import RemoteEventClient
from studycal.core.locks import KeyedLock
from studycal.core.logging import account_context
from studycal.core.metrics import EngineMetrics
from studycal.core.telemetry import get_tracer, tag_calendar_span
from studycal.errors import (
    AuthError,
    CalendarError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    StoreConflictError,
    SyncTokenExpiredError,
    sanitize_error_message,
)
from studycal.models import (
    CalendarEvent,
    ConflictPolicy,
    ConflictRecord,
    DiscardedChange,
    EventDraft,
    EventPatch,
    RemoteEvent,
    SyncMode,
    SyncResult,
    SyncState,
    SyncStatus,
    utcnow,
)
from studycal.scheduling import Interval
from studycal.storage.base import CalendarStore
from studycal.sync.resolution import resolve

logger = logging.getLogger(__name__)


@dataclass
class _Pass:
    """Mutable bookkeeping for one sync run."""

    account_id: str
    calendar_id: str
    result: SyncResult
    needs_full_sync: bool = False


class SyncOrchestrator:
    """Runs sync passes and resolves conflicts left open by the ``manual`` policy."""

    def __init__(
        self,
        store: CalendarStore,
        client: RemoteEventClient,
        *,
        policy: ConflictPolicy = ConflictPolicy.merge,
        past_days: int = 30,
        future_days: int = 180,
        page_size: int = 250,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._policy = policy
        self._past = timedelta(days=past_days)
        self._future = timedelta(days=future_days)
        self._page_size = page_size
        self._locks = locks or KeyedLock()
        self._clock = clock
        self._metrics = metrics or EngineMetrics(client.provider_name)

    @property
    def policy(self) -> ConflictPolicy:
        return self._policy

    def is_running(self, account_id: str, calendar_id: str) -> bool:
        return self._locks.locked((account_id, calendar_id))

    def sync_window(self) -> Interval:
        now = self._clock()
        return Interval(now - self._past, now + self._future)

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    async def sync(
        self, account_id: str, calendar_id: str, *, force_full: bool = False
    ) -> SyncResult:
        """Run one sync pass; waits for any run already in progress for this calendar.

        Raises ``AuthError`` when the account must be reconnected and other
        ``CalendarError`` types for unrecoverable failures; in both cases the
        sync state is left in ``error`` with the message retained.
        """
        async with self._locks.hold((account_id, calendar_id)):
            with (
                account_context(account_id),
                get_tracer().start_as_current_span("studycal.sync") as span,
            ):
                tag_calendar_span(span, account_id, calendar_id)
                result = await self._run(account_id, calendar_id, force_full=force_full)
                span.set_attribute("studycal.sync.mode", result.mode.value)
                span.set_attribute("studycal.sync.local_mutations", result.local_mutations)
                return result

    async def _run(self, account_id: str, calendar_id: str, *, force_full: bool) -> SyncResult:
        started = time.monotonic()
        state = await self._store.get_sync_state(account_id, calendar_id) or SyncState(
            account_id=account_id, calendar_id=calendar_id
        )
        state = await self._store.save_sync_state(
            state.model_copy(update={"status": SyncStatus.running})
        )
        incremental = not force_full and not state.needs_full_sync and bool(state.sync_token)
        run = _Pass(
            account_id=account_id,
            calendar_id=calendar_id,
            result=SyncResult(
                account_id=account_id,
                calendar_id=calendar_id,
                mode=SyncMode.incremental if incremental else SyncMode.full,
                started_at=self._clock(),
            ),
        )
        logger.info(
            "Starting %s sync for calendar %s of account %s",
            run.result.mode.value,
            calendar_id,
            account_id,
        )

        try:
            remote_events, next_token, window = await self._pull(run, state)
            await self._apply_remote(run, remote_events, window)
            await self._push_local(run)
        except asyncio.CancelledError:
            await self._store.save_sync_state(
                state.model_copy(
                    update={"status": SyncStatus.error, "last_error": "Sync cancelled"}
                )
            )
            raise
        except CalendarError as exc:
            message = sanitize_error_message(exc)
            update: dict[str, Any] = {"status": SyncStatus.error, "last_error": message}
            if isinstance(exc, AuthError):
                message = f"Reconnect required: {message}"
                update["last_error"] = message
            await self._store.save_sync_state(state.model_copy(update=update))
            run.result.finished_at = self._clock()
            outcome = "auth" if isinstance(exc, AuthError) else "error"
            self._metrics.sync_run(run.result.mode.value, outcome, _elapsed_ms(started))
            logger.warning(
                "Sync failed for calendar %s of account %s: %s", calendar_id, account_id, message
            )
            raise

        if next_token is None:
            logger.warning(
                "Provider returned no sync token for calendar %s; next run will be a full sync",
                calendar_id,
            )
        now = self._clock()
        full = run.result.mode is SyncMode.full
        await self._store.save_sync_state(
            state.model_copy(
                update={
                    "status": SyncStatus.idle,
                    "last_error": None,
                    "sync_token": next_token,
                    "needs_full_sync": run.needs_full_sync or next_token is None,
                    "last_sync_at": now,
                    "last_full_sync_at": now if full else state.last_full_sync_at,
                }
            )
        )
        run.result.finished_at = now
        self._metrics.sync_run(run.result.mode.value, "ok", _elapsed_ms(started))
        logger.info(
            "Finished %s sync for calendar %s: created=%d updated=%d deleted=%d pushed=%d "
            "conflicts=%d errors=%d",
            run.result.mode.value,
            calendar_id,
            run.result.created,
            run.result.updated,
            run.result.deleted,
            run.result.pushed,
            run.result.conflicts,
            len(run.result.errors),
        )
        return run.result

    async def _pull(
        self, run: _Pass, state: SyncState
    ) -> tuple[list[RemoteEvent], str | None, Interval | None]:
        if run.result.mode is SyncMode.incremental:
            try:
                events, token = await self._client.list_all_events(
                    run.account_id,
                    run.calendar_id,
                    sync_token=state.sync_token,
                    page_size=self._page_size,
                )
                return events, token, None
            except SyncTokenExpiredError:
                logger.info(
                    "Sync token for calendar %s expired; falling back to full sync",
                    run.calendar_id,
                )
                await self._store.save_sync_state(
                    state.model_copy(
                        update={
                            "status": SyncStatus.running,
                            "sync_token": None,
                            "needs_full_sync": True,
                        }
                    )
                )
                run.result.mode = SyncMode.full

        window = self.sync_window()
        events, token = await self._client.list_all_events(
            run.account_id, run.calendar_id, time_range=window, page_size=self._page_size
        )
        return events, token, window

    async def _apply_remote(
        self, run: _Pass, remote_events: list[RemoteEvent], window: Interval | None
    ) -> None:
        local_events = await self._store.list_events(
            run.account_id, run.calendar_id, include_deleted=True
        )
        by_provider_id = {e.provider_event_id: e for e in local_events if e.provider_event_id}

        seen: set[str] = set()
        for remote in remote_events:
            seen.add(remote.provider_event_id)
            local = by_provider_id.get(remote.provider_event_id)
            await self._guarded(
                run,
                remote.provider_event_id,
                lambda local=local, remote=remote: self._reconcile_with_retry(run, local, remote),
                on_error_full_sync=True,
            )

        if window is None:
            return
        # A full listing is complete for its window: anything missing was deleted remotely.
        for local in local_events:
            if local.provider_event_id is None or local.provider_event_id in seen:
                continue
            if not (local.start_at < window.end and window.start < local.end_at):
                continue
            await self._guarded(
                run,
                local.provider_event_id,
                lambda local=local: self._reconcile_with_retry(run, local, None),
                on_error_full_sync=True,
            )

    async def _guarded(
        self,
        run: _Pass,
        label: str,
        op: Callable[[], Awaitable[None]],
        *,
        on_error_full_sync: bool,
    ) -> None:
        """Run a per-event step; record its failure instead of aborting the pass."""
        try:
            await op()
        except AuthError:
            raise
        except CalendarError as exc:
            message = sanitize_error_message(exc)
            run.result.errors.append(f"{label}: {message}")
            if on_error_full_sync or isinstance(exc, StoreConflictError):
                run.needs_full_sync = True
            logger.warning("Sync step for event %s failed: %s", label, message)

    async def _reconcile_with_retry(
        self, run: _Pass, local: CalendarEvent | None, remote: RemoteEvent | None
    ) -> None:
        try:
            await self._reconcile(run, local, remote)
        except StoreConflictError:
            logger.info("Local event changed during sync; re-reading and retrying once")
            if local is not None:
                fresh = await self._store.get_event(local.local_id)
            else:
                assert remote is not None
                fresh = await self._store.find_event_by_provider_id(
                    run.account_id, run.calendar_id, remote.provider_event_id
                )
            await self._reconcile(run, fresh, remote)

    async def _reconcile(
        self, run: _Pass, local: CalendarEvent | None, remote: RemoteEvent | None
    ) -> None:
        if remote is None or remote.cancelled:
            if local is not None:
                await self._on_remote_deleted(run, local, self._policy)
            return
        if local is None:
            await self._create_local(run, remote)
            return

        remote_changed = _remote_changed(local, remote)
        if not local.dirty:
            if remote_changed:
                await self._take_remote(run, local, remote)
            return
        if not remote_changed:
            # Only the local side changed; the push phase sends it.
            return
        await self._on_both_changed(run, local, remote, self._policy)

    async def _create_local(self, run: _Pass, remote: RemoteEvent) -> None:
        if remote.start_at is None or remote.end_at is None:
            raise InvalidArgumentError(
                f"Remote event {remote.provider_event_id} has no start/end; skipped"
            )
        now = self._clock()
        event = CalendarEvent(
            account_id=run.account_id,
            calendar_id=run.calendar_id,
            provider_event_id=remote.provider_event_id,
            remote_version=remote.etag,
            remote_updated_at=remote.updated_at,
            synced_snapshot=remote.field_snapshot(),
            created_at=now,
            updated_at=now,
            **remote.to_fields(),
        )
        await self._store.update_event_if_version(event, 0)
        run.result.created += 1

    def _absorb(
        self,
        event: CalendarEvent,
        remote: RemoteEvent,
        fields: dict[str, Any] | None = None,
    ) -> CalendarEvent:
        """Copy of *event* carrying *fields* (default: remote's) and remote's sync bookkeeping."""
        updated = event.apply_fields(fields if fields is not None else remote.to_fields())
        return updated.model_copy(
            update={
                "provider_event_id": remote.provider_event_id,
                "remote_version": remote.etag,
                "remote_updated_at": remote.updated_at,
                "synced_snapshot": remote.field_snapshot(),
                "dirty": False,
                "deleted": False,
                "updated_at": self._clock(),
            }
        )

    async def _take_remote(self, run: _Pass, local: CalendarEvent, remote: RemoteEvent) -> None:
        changed = local.deleted or local.field_snapshot() != remote.field_snapshot()
        await self._store.update_event_if_version(self._absorb(local, remote), local.row_version)
        if changed:
            run.result.updated += 1

    async def _mark_deleted(self, local: CalendarEvent) -> CalendarEvent:
        return await self._store.update_event_if_version(
            local.model_copy(update={"deleted": True, "dirty": False, "updated_at": self._clock()}),
            local.row_version,
        )

    async def _on_remote_deleted(
        self, run: _Pass, local: CalendarEvent, policy: ConflictPolicy
    ) -> None:
        if local.deleted:
            if local.dirty:
                # Deleted on both sides; nothing left to push.
                await self._mark_deleted(local)
            return
        if not local.dirty:
            await self._mark_deleted(local)
            run.result.deleted += 1
            return

        run.result.conflicts += 1
        if policy is ConflictPolicy.manual:
            await self._open_conflict(run, local, None)
            return
        if policy is ConflictPolicy.keep_local:
            created = await self._client.create_event(
                run.account_id, run.calendar_id, EventDraft.model_validate(local.field_snapshot())
            )
            await self._commit_push(local, created)
            run.result.pushed += 1
            logger.info("Re-created remotely deleted event %s (keep-local)", local.local_id)
            return
        if policy is ConflictPolicy.merge and local.synced_snapshot is not None:
            snapshot = local.field_snapshot()
            for name, value in snapshot.items():
                if value != local.synced_snapshot.get(name):
                    await self._log_discarded(run, local, name, value, None)
        await self._mark_deleted(local)
        run.result.deleted += 1

    async def _on_both_changed(
        self,
        run: _Pass,
        local: CalendarEvent,
        remote: RemoteEvent,
        policy: ConflictPolicy,
    ) -> None:
        run.result.conflicts += 1
        if policy is ConflictPolicy.manual:
            await self._open_conflict(run, local, remote)
            return

        if local.deleted:
            if policy is ConflictPolicy.keep_remote:
                await self._take_remote(run, local, remote)
                return
            await self._client.delete_event(
                run.account_id, run.calendar_id, remote.provider_event_id, etag=remote.etag
            )
            await self._mark_deleted(local)
            run.result.pushed += 1
            return

        resolution = resolve(
            policy, local.synced_snapshot, local.field_snapshot(), remote.field_snapshot()
        )
        merged = self._absorb(local, remote, resolution.fields)
        if resolution.push:
            pushed = await self._client.update_event(
                run.account_id,
                run.calendar_id,
                remote.provider_event_id,
                EventPatch.model_validate(resolution.push),
                etag=remote.etag,
            )
            merged = merged.model_copy(
                update={
                    "remote_version": pushed.etag,
                    "remote_updated_at": pushed.updated_at,
                    "synced_snapshot": pushed.field_snapshot(),
                }
            )
            run.result.pushed += 1
        await self._store.update_event_if_version(merged, local.row_version)
        if merged.field_snapshot() != local.field_snapshot():
            run.result.updated += 1
        for name, (local_value, remote_value) in resolution.discarded.items():
            await self._log_discarded(run, local, name, local_value, remote_value)
        logger.info(
            "Resolved conflict on event %s with %s (pushed=%s, discarded=%s)",
            local.local_id,
            policy.value,
            sorted(resolution.push),
            sorted(resolution.discarded),
        )

    async def _log_discarded(
        self,
        run: _Pass,
        local: CalendarEvent,
        field_name: str,
        local_value: Any,
        remote_value: Any,
    ) -> None:
        await self._store.add_discarded_change(
            DiscardedChange(
                account_id=run.account_id,
                calendar_id=run.calendar_id,
                local_id=local.local_id,
                field_name=field_name,
                local_value=local_value,
                remote_value=remote_value,
                recorded_at=self._clock(),
            )
        )
        run.result.discarded += 1

    async def _open_conflict(
        self, run: _Pass, local: CalendarEvent, remote: RemoteEvent | None
    ) -> None:
        existing = await self._store.find_open_conflict(local.local_id, run.account_id)
        record = existing or ConflictRecord(
            account_id=run.account_id,
            calendar_id=run.calendar_id,
            local_id=local.local_id,
            provider_event_id=local.provider_event_id,
        )
        await self._store.save_conflict(
            record.model_copy(
                update={
                    "local_fields": local.field_snapshot(),
                    "remote_fields": remote.field_snapshot() if remote is not None else None,
                    "remote_version": remote.etag if remote is not None else None,
                    "remote_deleted": remote is None or remote.cancelled,
                    "detected_at": self._clock(),
                }
            )
        )
        logger.info("Event %s left for manual conflict resolution", local.local_id)

    # ------------------------------------------------------------------
    # Pushing local edits
    # ------------------------------------------------------------------

    async def _push_local(self, run: _Pass) -> None:
        dirty = await self._store.list_dirty_events(run.account_id, run.calendar_id)
        if not dirty:
            return
        held = {
            c.local_id for c in await self._store.list_conflicts(run.account_id, run.calendar_id)
        }
        for event in dirty:
            if event.local_id in held:
                continue
            await self._guarded(
                run,
                event.provider_event_id or event.local_id,
                lambda event=event: self._push_one(run, event),
                on_error_full_sync=False,
            )

    async def _fetch_remote(
        self, account_id: str, calendar_id: str, provider_event_id: str
    ) -> RemoteEvent | None:
        try:
            return await self._client.get_event(account_id, calendar_id, provider_event_id)
        except NotFoundError:
            return None

    async def _push_one(self, run: _Pass, event: CalendarEvent) -> None:
        a, c = run.account_id, run.calendar_id
        if event.deleted:
            if event.provider_event_id is None:
                await self._store.delete_event(event.local_id)
                return
            try:
                await self._client.delete_event(
                    a, c, event.provider_event_id, etag=event.remote_version
                )
            except ConflictError:
                remote = await self._fetch_remote(a, c, event.provider_event_id)
                await self._reconcile(run, event, remote)
                return
            await self._mark_deleted(event)
            run.result.pushed += 1
            return

        if event.provider_event_id is None:
            created = await self._client.create_event(
                a, c, EventDraft.model_validate(event.field_snapshot())
            )
            await self._commit_push(event, created)
            run.result.pushed += 1
            return

        changes = _local_changes(event)
        if not changes:
            await self._store.update_event_if_version(
                event.model_copy(update={"dirty": False}), event.row_version
            )
            return
        try:
            updated = await self._client.update_event(
                a,
                c,
                event.provider_event_id,
                EventPatch.model_validate(changes),
                etag=event.remote_version,
            )
        except ConflictError:
            remote = await self._fetch_remote(a, c, event.provider_event_id)
            await self._reconcile(run, event, remote)
            return
        except NotFoundError:
            await self._reconcile(run, event, None)
            return
        await self._commit_push(event, updated)
        run.result.pushed += 1

    async def _commit_push(self, pushed_from: CalendarEvent, remote: RemoteEvent) -> CalendarEvent:
        """Record a successful push; local edits that raced the push stay dirty."""
        current: CalendarEvent | None = pushed_from
        for attempt in range(2):
            if attempt:
                current = await self._store.get_event(pushed_from.local_id)
            if current is None:
                raise NotFoundError(f"Local event {pushed_from.local_id} vanished during sync")
            still_dirty = (
                current.deleted != pushed_from.deleted
                or current.field_snapshot() != pushed_from.field_snapshot()
            )
            updated = current.model_copy(
                update={
                    "provider_event_id": remote.provider_event_id,
                    "remote_version": remote.etag,
                    "remote_updated_at": remote.updated_at,
                    "synced_snapshot": remote.field_snapshot(),
                    "dirty": still_dirty,
                    "updated_at": self._clock(),
                }
            )
            try:
                return await self._store.update_event_if_version(updated, current.row_version)
            except StoreConflictError:
                if attempt:
                    raise
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self, conflict_id: str, choice: ConflictPolicy | str
    ) -> CalendarEvent | None:
        """Resolve an open conflict with ``keep-local`` or ``keep-remote``.

        Returns the local event afterwards (soft-deleted events included).
        """
        try:
            policy = ConflictPolicy(choice)
        except ValueError as exc:
            raise InvalidArgumentError(f"Unknown conflict resolution: {choice!r}") from exc
        if policy not in (ConflictPolicy.keep_local, ConflictPolicy.keep_remote):
            raise InvalidArgumentError(
                "Conflicts can only be resolved with keep-local or keep-remote"
            )

        conflict = await self._store.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id!r} not found")
        if conflict.resolved:
            return await self._store.get_event(conflict.local_id)

        a, c = conflict.account_id, conflict.calendar_id
        async with self._locks.hold((a, c)):
            with account_context(a):
                local = await self._store.get_event(conflict.local_id)
                if local is None:
                    raise NotFoundError(f"Local event {conflict.local_id!r} not found")
                remote = None
                if local.provider_event_id is not None:
                    remote = await self._fetch_remote(a, c, local.provider_event_id)
                run = _Pass(
                    account_id=a,
                    calendar_id=c,
                    result=SyncResult(account_id=a, calendar_id=c, mode=SyncMode.incremental),
                )
                if remote is None or remote.cancelled:
                    await self._on_remote_deleted(run, local, policy)
                elif local.provider_event_id is None:
                    await self._push_one(run, local)
                else:
                    await self._on_both_changed(run, local, remote, policy)

                await self._store.save_conflict(
                    conflict.model_copy(
                        update={
                            "resolved": True,
                            "resolution": policy,
                            "resolved_at": self._clock(),
                        }
                    )
                )
                logger.info("Conflict %s resolved with %s", conflict_id, policy.value)
                return await self._store.get_event(conflict.local_id)


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


def _remote_changed(local: CalendarEvent, remote: RemoteEvent) -> bool:
    """Whether the provider's copy moved on since the local event last synced."""
    if remote.etag is not None and local.remote_version is not None:
        return remote.etag != local.remote_version
    if remote.updated_at is not None and local.remote_updated_at is not None:
        return remote.updated_at > local.remote_updated_at
    return remote.field_snapshot() != local.synced_snapshot


def _local_changes(event: CalendarEvent) -> dict[str, Any]:
    snapshot = event.field_snapshot()
    if event.synced_snapshot is None:
        return snapshot
    return {k: v for k, v in snapshot.items() if event.synced_snapshot.get(k) != v}
