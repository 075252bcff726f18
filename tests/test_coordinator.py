"""Tests for sync trigger coalescing and the background poller."""

from __future__ import annotations

import asyncio

import pytest

from conftest import ACCOUNT_ID, CALENDAR_ID
from studycal.errors import TransientError
from studycal.models import CalendarAccount, ConnectionStatus, SyncState
from studycal.sync.coordinator import SyncCoordinator, SyncPoller, TriggerOutcome

pytestmark = pytest.mark.unit


class _RecordingOrchestrator:
    """Stands in for SyncOrchestrator; optionally blocks each pass on a gate."""

    def __init__(self, *, gate: asyncio.Event | None = None, errors=()) -> None:
        self.gate = gate
        self.errors = list(errors)
        self.calls: list[tuple[str, str, bool]] = []

    async def sync(self, account_id: str, calendar_id: str, *, force_full: bool = False):
        self.calls.append((account_id, calendar_id, force_full))
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)


async def _until(predicate, *, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition not reached")


# ---------------------------------------------------------------------------
# SyncCoordinator
# ---------------------------------------------------------------------------


class TestSyncCoordinator:
    async def test_triggers_coalesce_into_one_follow_up(self):
        gate = asyncio.Event()
        orchestrator = _RecordingOrchestrator(gate=gate)
        coordinator = SyncCoordinator(orchestrator)

        assert coordinator.trigger(ACCOUNT_ID, CALENDAR_ID) is TriggerOutcome.started
        assert coordinator.trigger(ACCOUNT_ID, CALENDAR_ID) is TriggerOutcome.queued
        assert (
            coordinator.trigger(ACCOUNT_ID, CALENDAR_ID, force_full=True)
            is TriggerOutcome.coalesced
        )
        assert coordinator.is_active(ACCOUNT_ID, CALENDAR_ID)
        assert coordinator.is_pending(ACCOUNT_ID, CALENDAR_ID)

        gate.set()
        await coordinator.wait_idle()
        assert orchestrator.calls == [
            (ACCOUNT_ID, CALENDAR_ID, False),
            (ACCOUNT_ID, CALENDAR_ID, True),
        ]
        assert not coordinator.is_active(ACCOUNT_ID, CALENDAR_ID)
        assert not coordinator.is_pending(ACCOUNT_ID, CALENDAR_ID)

    async def test_calendars_run_independently(self):
        gate = asyncio.Event()
        coordinator = SyncCoordinator(_RecordingOrchestrator(gate=gate))
        assert coordinator.trigger(ACCOUNT_ID, CALENDAR_ID) is TriggerOutcome.started
        assert coordinator.trigger(ACCOUNT_ID, "study") is TriggerOutcome.started
        gate.set()
        await coordinator.wait_idle()

    async def test_failed_pass_still_runs_pending_follow_up(self):
        gate = asyncio.Event()
        orchestrator = _RecordingOrchestrator(gate=gate, errors=[TransientError("503")])
        coordinator = SyncCoordinator(orchestrator)
        coordinator.trigger(ACCOUNT_ID, CALENDAR_ID)
        coordinator.trigger(ACCOUNT_ID, CALENDAR_ID)
        gate.set()
        await coordinator.wait_idle()
        assert len(orchestrator.calls) == 2

    async def test_trigger_after_completion_starts_again(self):
        coordinator = SyncCoordinator(_RecordingOrchestrator())
        coordinator.trigger(ACCOUNT_ID, CALENDAR_ID)
        await coordinator.wait_idle()
        assert coordinator.trigger(ACCOUNT_ID, CALENDAR_ID) is TriggerOutcome.started
        await coordinator.wait_idle()

    async def test_shutdown_cancels_running_passes(self):
        coordinator = SyncCoordinator(_RecordingOrchestrator(gate=asyncio.Event()))
        coordinator.trigger(ACCOUNT_ID, CALENDAR_ID)
        await asyncio.sleep(0)
        await coordinator.shutdown()
        assert not coordinator.is_active(ACCOUNT_ID, CALENDAR_ID)


# ---------------------------------------------------------------------------
# SyncPoller
# ---------------------------------------------------------------------------


class TestSyncPoller:
    async def _seed_accounts(self, store) -> None:
        await store.save_account(
            CalendarAccount(account_id=ACCOUNT_ID, user_id="u1", default_calendar_id=CALENDAR_ID)
        )
        await store.save_sync_state(SyncState(account_id=ACCOUNT_ID, calendar_id="study"))
        await store.save_account(
            CalendarAccount(
                account_id="acct-revoked",
                user_id="u2",
                default_calendar_id=CALENDAR_ID,
                status=ConnectionStatus.revoked,
            )
        )

    async def test_tick_triggers_connected_calendars(self, store):
        await self._seed_accounts(store)
        orchestrator = _RecordingOrchestrator()
        coordinator = SyncCoordinator(orchestrator)
        poller = SyncPoller(store, coordinator, interval_seconds=60)

        assert await poller.tick() == 2
        await coordinator.wait_idle()
        assert sorted(orchestrator.calls) == [
            (ACCOUNT_ID, CALENDAR_ID, False),
            (ACCOUNT_ID, "study", False),
        ]

    async def test_tick_renews_channels_and_survives_failure(self, store):
        await self._seed_accounts(store)
        calls = []

        async def renew():
            calls.append("renew")
            raise TransientError("watch endpoint down")

        coordinator = SyncCoordinator(_RecordingOrchestrator())
        poller = SyncPoller(store, coordinator, interval_seconds=60, renew_channels=renew)
        assert await poller.tick() == 2
        assert calls == ["renew"]
        await coordinator.wait_idle()

    async def test_force_sync_wakes_the_loop(self, store):
        await self._seed_accounts(store)
        orchestrator = _RecordingOrchestrator()
        coordinator = SyncCoordinator(orchestrator)
        poller = SyncPoller(store, coordinator, interval_seconds=3600)

        poller.start()
        assert poller.running
        await _until(lambda: len(orchestrator.calls) == 2)

        poller.force_sync()
        await _until(lambda: len(orchestrator.calls) == 4)

        await poller.stop()
        assert not poller.running
        await coordinator.wait_idle()
