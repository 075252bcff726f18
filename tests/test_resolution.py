"""Tests for the conflict-resolution policies."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from studycal.models import ConflictPolicy, EventDraft
from studycal.sync.resolution import resolve

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _snapshot(**overrides) -> dict:
    fields = {
        "title": "Algebra review",
        "description": "Chapters 1-3",
        "start_at": START,
        "end_at": START + timedelta(hours=1),
    }
    fields.update(overrides)
    return EventDraft(**fields).field_snapshot()


BASE = _snapshot()
LOCAL = _snapshot(title="Algebra exam prep")
REMOTE = _snapshot(description="Chapters 1-4")


class TestMerge:
    def test_disjoint_field_changes_combine(self):
        resolution = resolve(ConflictPolicy.merge, BASE, LOCAL, REMOTE)
        assert resolution.fields["title"] == "Algebra exam prep"
        assert resolution.fields["description"] == "Chapters 1-4"
        assert resolution.push == {"title": "Algebra exam prep"}
        assert resolution.discarded == {}
        assert resolution.manual is False

    def test_overlapping_field_remote_wins_and_local_is_discarded(self):
        remote = _snapshot(title="Algebra midterm")
        resolution = resolve(ConflictPolicy.merge, BASE, LOCAL, remote)
        assert resolution.fields["title"] == "Algebra midterm"
        assert resolution.push == {}
        assert resolution.discarded == {"title": ("Algebra exam prep", "Algebra midterm")}

    def test_identical_edits_are_not_conflicts(self):
        resolution = resolve(ConflictPolicy.merge, BASE, LOCAL, LOCAL)
        assert resolution.push == {}
        assert resolution.discarded == {}

    def test_without_base_every_difference_goes_to_remote(self):
        resolution = resolve(ConflictPolicy.merge, None, LOCAL, REMOTE)
        assert resolution.fields["title"] == "Algebra review"
        assert resolution.fields["description"] == "Chapters 1-4"
        assert set(resolution.discarded) == {"title", "description"}

    def test_inverted_boundaries_fall_back_to_remote(self):
        # Local moved the start later; remote moved the end earlier.
        local = _snapshot(start_at=START + timedelta(minutes=50), end_at=START + timedelta(hours=1))
        remote = _snapshot(start_at=START, end_at=START + timedelta(minutes=30))
        resolution = resolve(ConflictPolicy.merge, BASE, local, remote)
        assert resolution.fields["start_at"] == remote["start_at"]
        assert resolution.fields["end_at"] == remote["end_at"]
        assert "start_at" not in resolution.push
        assert "start_at" in resolution.discarded


class TestOtherPolicies:
    def test_keep_remote_drops_local_edit(self):
        resolution = resolve(ConflictPolicy.keep_remote, BASE, LOCAL, REMOTE)
        assert resolution.fields == REMOTE
        assert resolution.fields["title"] == "Algebra review"
        assert resolution.push == {}

    def test_keep_local_pushes_every_differing_field(self):
        resolution = resolve(ConflictPolicy.keep_local, BASE, LOCAL, REMOTE)
        assert resolution.fields == LOCAL
        assert resolution.push == {"title": "Algebra exam prep", "description": "Chapters 1-3"}

    def test_manual_leaves_local_untouched(self):
        resolution = resolve(ConflictPolicy.manual, BASE, LOCAL, REMOTE)
        assert resolution.manual is True
        assert resolution.fields == LOCAL
        assert resolution.push == {}
