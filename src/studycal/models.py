"""Canonical records and value objects shared across the engine.

Persisted records (accounts, events, sync states, watch channels, conflicts)
carry a ``row_version`` that the store bumps on every write; compare-and-set
updates use it to detect lost updates.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from studycal.errors import FailureReason

# Event fields that round-trip through the provider and take part in sync diffs.
SYNCED_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "location",
    "start_at",
    "end_at",
    "timezone",
    "attendees",
    "recurrence_rule",
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class ConnectionStatus(StrEnum):
    """Connection state of a calendar account."""

    connected = "connected"
    revoked = "revoked"
    error = "error"


class SyncStatus(StrEnum):
    idle = "idle"
    running = "running"
    error = "error"


class SyncMode(StrEnum):
    incremental = "incremental"
    full = "full"


class ConflictPolicy(StrEnum):
    """How the sync orchestrator resolves an event changed on both sides."""

    keep_remote = "keep-remote"
    keep_local = "keep-local"
    merge = "merge"
    manual = "manual"


class AttendeeResponseStatus(StrEnum):
    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class ScheduleStatus(StrEnum):
    """Outcome of a caller-initiated scheduling request."""

    scheduled = "scheduled"
    pending = "pending"
    slot_unavailable = "slot_unavailable"


class AttendeeInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    display_name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action
    optional: bool = False


class EventFields(BaseModel):
    """Provider-neutral event content; the fields sync compares and merges.

    Boundaries must be timezone-aware and are normalised to UTC; the IANA zone
    the event was authored in is kept in ``timezone``.
    """

    title: str = ""
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    attendees: list[AttendeeInfo] = Field(default_factory=list)
    recurrence_rule: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("event boundaries must be timezone-aware")
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _check_order(self) -> EventFields:
        if self.start_at >= self.end_at:
            raise ValueError("start_at must be before end_at")
        return self

    def field_snapshot(self) -> dict[str, Any]:
        """JSON-safe values of the synced fields, used as a diff baseline."""
        return self.model_dump(mode="json", include=set(SYNCED_FIELDS))


class EventDraft(EventFields):
    """Payload for creating an event remotely."""

    model_config = ConfigDict(extra="forbid")


class EventPatch(BaseModel):
    """Partial update; fields left unset are not changed."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    attendees: list[AttendeeInfo] | None = None
    recurrence_rule: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("event boundaries must be timezone-aware")
        return value.astimezone(UTC)

    def changes(self) -> dict[str, Any]:
        """Explicitly set fields; an explicit ``None`` clears the field."""
        return self.model_dump(exclude_unset=True)


class CalendarAccount(BaseModel):
    """One connected (user, provider) calendar account.

    Token fields are mutated only by the token lifecycle manager.
    """

    account_id: str = Field(default_factory=new_id)
    user_id: str
    provider: str = "google"
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    token_expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    default_calendar_id: str | None = None
    status: ConnectionStatus = ConnectionStatus.connected
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    row_version: int = 0


class CalendarEvent(EventFields):
    """Canonical, locally owned event.

    ``synced_snapshot`` holds the synced field values as of the last
    successful sync; together with ``remote_version`` it tells the sync
    orchestrator which side changed.
    """

    local_id: str = Field(default_factory=new_id)
    account_id: str
    calendar_id: str
    provider_event_id: str | None = None
    remote_version: str | None = None
    remote_updated_at: datetime | None = None
    dirty: bool = False
    deleted: bool = False
    synced_snapshot: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    row_version: int = 0

    def apply_fields(self, values: dict[str, Any]) -> CalendarEvent:
        """Return a copy with the given synced fields replaced and revalidated."""
        data = self.model_dump()
        data.update(values)
        return CalendarEvent.model_validate(data)


class RemoteEvent(BaseModel):
    """An event as reported by the provider.

    Cancelled events in incremental listings may omit everything but the id,
    so the boundaries are optional here.
    """

    provider_event_id: str
    calendar_id: str | None = None
    title: str = ""
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str = "UTC"
    attendees: list[AttendeeInfo] = Field(default_factory=list)
    recurrence_rule: str | None = None
    etag: str | None = None
    updated_at: datetime | None = None
    cancelled: bool = False

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def to_fields(self) -> dict[str, Any]:
        """Synced field values for applying to a canonical event."""
        return self.model_dump(include=set(SYNCED_FIELDS))

    def field_snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json", include=set(SYNCED_FIELDS))


class EventPage(BaseModel):
    events: list[RemoteEvent] = Field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


class CalendarInfo(BaseModel):
    calendar_id: str
    summary: str = ""
    primary: bool = False
    timezone: str | None = None
    access_role: str | None = None


class OAuthTokens(BaseModel):
    """Result of an authorization-code exchange or refresh."""

    access_token: str = Field(repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime
    scopes: list[str] = Field(default_factory=list)


class ChannelRegistration(BaseModel):
    """Provider confirmation of a push-notification channel."""

    channel_id: str
    resource_id: str
    expires_at: datetime


class WatchChannel(BaseModel):
    channel_id: str
    resource_id: str
    account_id: str
    calendar_id: str
    callback_url: str
    expires_at: datetime
    token: str | None = Field(default=None, repr=False)
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    row_version: int = 0


class SyncState(BaseModel):
    """Per-(account, calendar) sync bookkeeping; mutated only by the orchestrator."""

    account_id: str
    calendar_id: str
    sync_token: str | None = None
    last_full_sync_at: datetime | None = None
    last_sync_at: datetime | None = None
    status: SyncStatus = SyncStatus.idle
    last_error: str | None = None
    needs_full_sync: bool = True
    row_version: int = 0


class SyncResult(BaseModel):
    account_id: str
    calendar_id: str
    mode: SyncMode
    created: int = 0
    updated: int = 0
    deleted: int = 0
    pushed: int = 0
    conflicts: int = 0
    discarded: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @computed_field
    @property
    def local_mutations(self) -> int:
        return self.created + self.updated + self.deleted


class BatchItemSuccess(BaseModel):
    index: int
    item_id: str
    event: RemoteEvent | None = None


class BatchItemFailure(BaseModel):
    index: int
    item_id: str
    reason: FailureReason
    error: str


class BatchOperationResult(BaseModel):
    """Per-item outcome of a batch; entries are in input order."""

    total: int
    successes: list[BatchItemSuccess] = Field(default_factory=list)
    failures: list[BatchItemFailure] = Field(default_factory=list)
    cancelled: bool = False
    # Cut off mid-call; the provider may or may not have applied these.
    interrupted: list[str] = Field(default_factory=list)
    not_attempted: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded(self) -> int:
        return len(self.successes)

    @computed_field
    @property
    def failed(self) -> int:
        return len(self.failures)

    def retryable(self) -> list[BatchItemFailure]:
        return [f for f in self.failures if f.reason is FailureReason.transient]


class ConflictRecord(BaseModel):
    """An event changed on both sides and left for the user to resolve."""

    conflict_id: str = Field(default_factory=new_id)
    account_id: str
    calendar_id: str
    local_id: str
    provider_event_id: str | None = None
    local_fields: dict[str, Any] = Field(default_factory=dict)
    remote_fields: dict[str, Any] | None = None
    remote_version: str | None = None
    remote_deleted: bool = False
    detected_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolution: ConflictPolicy | None = None
    resolved_at: datetime | None = None
    row_version: int = 0


class DiscardedChange(BaseModel):
    """A local field value overwritten by remote during a merge."""

    change_id: str = Field(default_factory=new_id)
    account_id: str
    calendar_id: str
    local_id: str
    field_name: str
    local_value: Any = None
    remote_value: Any = None
    recorded_at: datetime = Field(default_factory=utcnow)
    row_version: int = 0


class RateLimitStatus(BaseModel):
    account_id: str
    capacity: int
    remaining: float
    reset_at: datetime | None = None
    blocked_until: datetime | None = None


class TimeSlot(BaseModel):
    start: datetime
    end: datetime
    event_id: str | None = None


class ConflictCheck(BaseModel):
    """Structured result of a conflict check.

    ``status`` is ``clear`` or ``slot_unavailable``; on a conflict the
    overlapping intervals and suggested alternatives are included.
    """

    status: str
    candidate: TimeSlot
    conflicts: list[TimeSlot] = Field(default_factory=list)
    suggestions: list[TimeSlot] = Field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.status == "clear"


class ScheduleOutcome(BaseModel):
    status: ScheduleStatus
    event: CalendarEvent | None = None
    conflict: ConflictCheck | None = None
    error: dict[str, Any] | None = None
