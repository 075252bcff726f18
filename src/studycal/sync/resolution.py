"""Conflict-resolution policies for events changed on both sides.

All inputs are JSON snapshots of the synced fields (see
``EventFields.field_snapshot``).  ``base`` is the snapshot recorded at the last
successful sync; without one, every differing field counts as changed on
both sides.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from studycal.models import SYNCED_FIELDS, ConflictPolicy


@dataclass(frozen=True)
class Resolution:
    """Outcome of applying a policy to one conflicting event."""

    policy: ConflictPolicy
    fields: dict[str, Any]
    """Synced field values the local event should hold afterwards."""

    push: dict[str, Any] = field(default_factory=dict)
    """Fields whose local value must be written to the remote event."""

    discarded: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    """Field name -> (local value, remote value) for local edits that lost."""

    manual: bool = False
    """True when nothing was resolved and the conflict must be surfaced."""


def _as_datetime(value: Any) -> datetime:
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


def _changed(snapshot: dict[str, Any], base: dict[str, Any] | None, name: str) -> bool:
    if base is None:
        return True
    return snapshot.get(name) != base.get(name)


def _merge(
    base: dict[str, Any] | None, local: dict[str, Any], remote: dict[str, Any]
) -> Resolution:
    merged: dict[str, Any] = {}
    push: dict[str, Any] = {}
    discarded: dict[str, tuple[Any, Any]] = {}
    for name in SYNCED_FIELDS:
        local_value = local.get(name)
        remote_value = remote.get(name)
        if local_value == remote_value:
            merged[name] = remote_value
            continue
        local_changed = _changed(local, base, name)
        remote_changed = _changed(remote, base, name)
        if local_changed and not remote_changed:
            merged[name] = local_value
            push[name] = local_value
        else:
            merged[name] = remote_value
            if local_changed:
                discarded[name] = (local_value, remote_value)

    # Boundaries merged independently can invert; take both from remote then.
    if _as_datetime(merged["start_at"]) >= _as_datetime(merged["end_at"]):
        for name in ("start_at", "end_at"):
            if name in push:
                discarded[name] = (push.pop(name), remote.get(name))
            merged[name] = remote.get(name)

    return Resolution(ConflictPolicy.merge, merged, push=push, discarded=discarded)


def resolve(
    policy: ConflictPolicy,
    base: dict[str, Any] | None,
    local: dict[str, Any],
    remote: dict[str, Any],
) -> Resolution:
    """Apply *policy* to a local and remote snapshot that both changed since *base*."""
    if policy is ConflictPolicy.keep_remote:
        return Resolution(policy, dict(remote))
    if policy is ConflictPolicy.keep_local:
        push = {
            name: local.get(name)
            for name in SYNCED_FIELDS
            if local.get(name) != remote.get(name)
        }
        return Resolution(policy, dict(local), push=push)
    if policy is ConflictPolicy.merge:
        return _merge(base, local, remote)
    return Resolution(policy, dict(local), manual=True)
