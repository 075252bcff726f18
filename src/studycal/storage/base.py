"""Typed persistence for calendar records over a versioned key-value layout.

Every record is stored as ``(kind, key) -> (JSON value, version)``.  Typed
accessors live here once; backends implement five primitives.  Versions
start at 1 and increase on every write; a record's ``row_version`` mirrors
the stored version so callers can compare-and-set.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel

from studycal.errors import StoreConflictError
from studycal.models import (
    CalendarAccount,
    CalendarEvent,
    ConflictRecord,
    ConnectionStatus,
    DiscardedChange,
    SyncState,
    WatchChannel,
)
from studycal.scheduling import Interval

KIND_ACCOUNT = "account"
KIND_EVENT = "event"
KIND_SYNC_STATE = "sync_state"
KIND_CHANNEL = "channel"
KIND_CONFLICT = "conflict"
KIND_DISCARDED = "discarded"

# JSON fields backends may filter on (string-valued).
FILTERABLE_FIELDS = frozenset(
    {"account_id", "calendar_id", "provider_event_id", "user_id", "provider", "status"}
)

RecordT = TypeVar("RecordT", bound=BaseModel)


def sync_state_key(account_id: str, calendar_id: str) -> str:
    return f"{account_id}::{calendar_id}"


def _dump(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude={"row_version"})


def _load(model: type[RecordT], value: dict[str, Any], version: int) -> RecordT:
    return model.model_validate({**value, "row_version": version})


class CalendarStore(abc.ABC):
    """Persistent store for accounts, events, sync states, channels, and conflicts."""

    # -- backend primitives --------------------------------------------------

    @abc.abstractmethod
    async def _fetch(self, kind: str, key: str) -> tuple[dict[str, Any], int] | None:
        ...

    @abc.abstractmethod
    async def _upsert(self, kind: str, key: str, value: dict[str, Any]) -> int:
        """Insert or overwrite; returns the new version."""
        ...

    @abc.abstractmethod
    async def _compare_and_set(
        self,
        kind: str,
        key: str,
        expected_version: int,
        value: dict[str, Any],
    ) -> int:
        """Write only if the stored version equals *expected_version*.

        An *expected_version* of 0 means "insert only if absent".  Raises
        ``StoreConflictError`` otherwise.
        """
        ...

    @abc.abstractmethod
    async def _remove(self, kind: str, key: str) -> None:
        ...

    @abc.abstractmethod
    async def _select(
        self, kind: str, filters: Mapping[str, str] | None = None
    ) -> list[tuple[dict[str, Any], int]]:
        """All records of *kind* whose string fields equal *filters*."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""

    # -- generic helpers -----------------------------------------------------

    async def _get_record(self, model: type[RecordT], kind: str, key: str) -> RecordT | None:
        row = await self._fetch(kind, key)
        if row is None:
            return None
        value, version = row
        return _load(model, value, version)

    async def _save_record(self, record: RecordT, kind: str, key: str) -> RecordT:
        version = await self._upsert(kind, key, _dump(record))
        return record.model_copy(update={"row_version": version})

    async def _list_records(
        self,
        model: type[RecordT],
        kind: str,
        filters: Mapping[str, str] | None = None,
    ) -> list[RecordT]:
        unknown = set(filters or {}) - FILTERABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported filter field(s): {sorted(unknown)}")
        rows = await self._select(kind, filters)
        return [_load(model, value, version) for value, version in rows]

    # -- accounts ------------------------------------------------------------

    async def get_account(self, account_id: str) -> CalendarAccount | None:
        return await self._get_record(CalendarAccount, KIND_ACCOUNT, account_id)

    async def find_account(self, user_id: str, provider: str) -> CalendarAccount | None:
        matches = await self._list_records(
            CalendarAccount, KIND_ACCOUNT, {"user_id": user_id, "provider": provider}
        )
        return matches[0] if matches else None

    async def list_accounts(
        self, *, status: ConnectionStatus | None = None
    ) -> list[CalendarAccount]:
        filters = {"status": status.value} if status is not None else None
        accounts = await self._list_records(CalendarAccount, KIND_ACCOUNT, filters)
        return sorted(accounts, key=lambda a: a.created_at)

    async def save_account(self, account: CalendarAccount) -> CalendarAccount:
        return await self._save_record(account, KIND_ACCOUNT, account.account_id)

    # -- events --------------------------------------------------------------

    async def get_event(self, local_id: str) -> CalendarEvent | None:
        return await self._get_record(CalendarEvent, KIND_EVENT, local_id)

    async def find_event_by_provider_id(
        self, account_id: str, calendar_id: str, provider_event_id: str
    ) -> CalendarEvent | None:
        matches = await self._list_records(
            CalendarEvent,
            KIND_EVENT,
            {
                "account_id": account_id,
                "calendar_id": calendar_id,
                "provider_event_id": provider_event_id,
            },
        )
        return matches[0] if matches else None

    async def list_events(
        self,
        account_id: str,
        calendar_id: str | None = None,
        *,
        include_deleted: bool = False,
        time_range: Interval | None = None,
    ) -> list[CalendarEvent]:
        """Events of an account (optionally one calendar), ordered by start."""
        filters = {"account_id": account_id}
        if calendar_id is not None:
            filters["calendar_id"] = calendar_id
        events = await self._list_records(CalendarEvent, KIND_EVENT, filters)
        if not include_deleted:
            events = [e for e in events if not e.deleted]
        if time_range is not None:
            events = [
                e for e in events if e.start_at < time_range.end and time_range.start < e.end_at
            ]
        return sorted(events, key=lambda e: (e.start_at, e.local_id))

    async def list_dirty_events(self, account_id: str, calendar_id: str) -> list[CalendarEvent]:
        events = await self.list_events(account_id, calendar_id, include_deleted=True)
        return [e for e in events if e.dirty]

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        """Unconditional upsert."""
        await self._check_provider_id_unique(event)
        return await self._save_record(event, KIND_EVENT, event.local_id)

    async def update_event_if_version(
        self, event: CalendarEvent, expected_version: int
    ) -> CalendarEvent:
        """Write *event* only if the stored row is still at *expected_version*.

        Use 0 to insert a record that must not exist yet.  Raises
        ``StoreConflictError`` when another writer got there first.
        """
        await self._check_provider_id_unique(event)
        version = await self._compare_and_set(
            KIND_EVENT, event.local_id, expected_version, _dump(event)
        )
        return event.model_copy(update={"row_version": version})

    async def delete_event(self, local_id: str) -> None:
        await self._remove(KIND_EVENT, local_id)

    async def _check_provider_id_unique(self, event: CalendarEvent) -> None:
        if event.provider_event_id is None:
            return
        existing = await self.find_event_by_provider_id(
            event.account_id, event.calendar_id, event.provider_event_id
        )
        if existing is not None and existing.local_id != event.local_id:
            raise StoreConflictError(
                key=event.local_id,
                expected_version=event.row_version,
                actual_version=None,
                message=(
                    f"provider event id {event.provider_event_id!r} already belongs to "
                    f"local event {existing.local_id!r}"
                ),
            )

    # -- sync state ----------------------------------------------------------

    async def get_sync_state(self, account_id: str, calendar_id: str) -> SyncState | None:
        return await self._get_record(
            SyncState, KIND_SYNC_STATE, sync_state_key(account_id, calendar_id)
        )

    async def save_sync_state(self, state: SyncState) -> SyncState:
        return await self._save_record(
            state, KIND_SYNC_STATE, sync_state_key(state.account_id, state.calendar_id)
        )

    async def list_sync_states(self, account_id: str) -> list[SyncState]:
        return await self._list_records(SyncState, KIND_SYNC_STATE, {"account_id": account_id})

    async def delete_sync_state(self, account_id: str, calendar_id: str) -> None:
        await self._remove(KIND_SYNC_STATE, sync_state_key(account_id, calendar_id))

    # -- watch channels ------------------------------------------------------

    async def get_channel(self, channel_id: str) -> WatchChannel | None:
        return await self._get_record(WatchChannel, KIND_CHANNEL, channel_id)

    async def list_channels(
        self,
        account_id: str | None = None,
        calendar_id: str | None = None,
        *,
        active_only: bool = True,
    ) -> list[WatchChannel]:
        filters: dict[str, str] = {}
        if account_id is not None:
            filters["account_id"] = account_id
        if calendar_id is not None:
            filters["calendar_id"] = calendar_id
        channels = await self._list_records(WatchChannel, KIND_CHANNEL, filters or None)
        if active_only:
            channels = [c for c in channels if c.active]
        return sorted(channels, key=lambda c: c.expires_at)

    async def get_active_channel(self, account_id: str, calendar_id: str) -> WatchChannel | None:
        """The active channel expiring last, if any."""
        channels = await self.list_channels(account_id, calendar_id)
        return channels[-1] if channels else None

    async def save_channel(self, channel: WatchChannel) -> WatchChannel:
        return await self._save_record(channel, KIND_CHANNEL, channel.channel_id)

    async def delete_channel(self, channel_id: str) -> None:
        await self._remove(KIND_CHANNEL, channel_id)

    # -- conflicts and the discarded-value side log ---------------------------

    async def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        return await self._get_record(ConflictRecord, KIND_CONFLICT, conflict_id)

    async def save_conflict(self, conflict: ConflictRecord) -> ConflictRecord:
        return await self._save_record(conflict, KIND_CONFLICT, conflict.conflict_id)

    async def list_conflicts(
        self,
        account_id: str,
        calendar_id: str | None = None,
        *,
        unresolved_only: bool = True,
    ) -> list[ConflictRecord]:
        filters = {"account_id": account_id}
        if calendar_id is not None:
            filters["calendar_id"] = calendar_id
        conflicts = await self._list_records(ConflictRecord, KIND_CONFLICT, filters)
        if unresolved_only:
            conflicts = [c for c in conflicts if not c.resolved]
        return sorted(conflicts, key=lambda c: c.detected_at)

    async def find_open_conflict(self, local_id: str, account_id: str) -> ConflictRecord | None:
        for conflict in await self.list_conflicts(account_id):
            if conflict.local_id == local_id:
                return conflict
        return None

    async def add_discarded_change(self, change: DiscardedChange) -> DiscardedChange:
        return await self._save_record(change, KIND_DISCARDED, change.change_id)

    async def list_discarded_changes(
        self, account_id: str, calendar_id: str | None = None
    ) -> list[DiscardedChange]:
        filters = {"account_id": account_id}
        if calendar_id is not None:
            filters["calendar_id"] = calendar_id
        changes = await self._list_records(DiscardedChange, KIND_DISCARDED, filters)
        return sorted(changes, key=lambda c: c.recorded_at)
