"""Sync triggering: coalescing per-calendar triggers and the periodic poller.

Webhook notifications, the poller, and callers all go through
``SyncCoordinator.trigger`` so a calendar never has two passes in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum

from studycal.errors import AuthError, CalendarError
from studycal.models import ConnectionStatus
from studycal.storage.base import CalendarStore
from studycal.sync.engine import SyncOrchestrator

logger = logging.getLogger(__name__)

CalendarKey = tuple[str, str]


class TriggerOutcome(StrEnum):
    started = "started"
    queued = "queued"
    coalesced = "coalesced"


class SyncCoordinator:
    """Runs each calendar's sync on its own task, one pass at a time.

    A trigger that arrives while a pass is running marks one follow-up pass
    as pending; further triggers before it starts are no-ops.
    """

    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        self._orchestrator = orchestrator
        self._tasks: dict[CalendarKey, asyncio.Task[None]] = {}
        self._pending: dict[CalendarKey, bool] = {}

    def trigger(
        self,
        account_id: str,
        calendar_id: str,
        *,
        force_full: bool = False,
        reason: str = "manual",
    ) -> TriggerOutcome:
        key = (account_id, calendar_id)
        if key in self._tasks:
            if key in self._pending:
                self._pending[key] = self._pending[key] or force_full
                logger.debug("Sync trigger (%s) coalesced for %s/%s", reason, *key)
                return TriggerOutcome.coalesced
            self._pending[key] = force_full
            logger.debug("Sync trigger (%s) queued for %s/%s", reason, *key)
            return TriggerOutcome.queued

        self._tasks[key] = asyncio.create_task(
            self._drain(key, force_full), name=f"studycal-sync-{account_id}-{calendar_id}"
        )
        logger.debug("Sync trigger (%s) started for %s/%s", reason, *key)
        return TriggerOutcome.started

    def is_active(self, account_id: str, calendar_id: str) -> bool:
        return (account_id, calendar_id) in self._tasks

    def is_pending(self, account_id: str, calendar_id: str) -> bool:
        return (account_id, calendar_id) in self._pending

    async def _drain(self, key: CalendarKey, force_full: bool) -> None:
        account_id, calendar_id = key
        try:
            while True:
                try:
                    await self._orchestrator.sync(account_id, calendar_id, force_full=force_full)
                except AuthError as exc:
                    logger.warning(
                        "Sync halted for account %s (reconnect required): %s", account_id, exc
                    )
                except CalendarError as exc:
                    logger.warning("Sync of %s/%s failed: %s", account_id, calendar_id, exc)
                except Exception:
                    logger.exception("Unexpected error syncing %s/%s", account_id, calendar_id)
                if key not in self._pending:
                    break
                force_full = self._pending.pop(key)
        finally:
            self._tasks.pop(key, None)
            self._pending.pop(key, None)

    async def wait_idle(self) -> None:
        """Wait until no sync task is running or pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._pending.clear()


class SyncPoller:
    """Background loop that triggers sync for every connected account's calendars.

    ``force_sync`` wakes the loop immediately instead of waiting for the
    interval to elapse.
    """

    def __init__(
        self,
        store: CalendarStore,
        coordinator: SyncCoordinator,
        *,
        interval_seconds: float,
        renew_channels: Callable[[], Awaitable[object]] | None = None,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._renew_channels = renew_channels
        self._force_sync_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="studycal-sync-poller")
        logger.info("Sync poller started (interval=%ds)", self._interval)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def force_sync(self) -> None:
        self._force_sync_event.set()

    async def _calendars(self) -> list[CalendarKey]:
        keys: list[CalendarKey] = []
        for account in await self._store.list_accounts(status=ConnectionStatus.connected):
            states = await self._store.list_sync_states(account.account_id)
            calendars = {s.calendar_id for s in states}
            if account.default_calendar_id:
                calendars.add(account.default_calendar_id)
            keys.extend((account.account_id, calendar_id) for calendar_id in sorted(calendars))
        return keys

    async def tick(self) -> int:
        """Trigger one round of syncs; returns how many calendars were triggered.

        Channels close to expiry are renewed first.
        """
        if self._renew_channels is not None:
            try:
                await self._renew_channels()
            except CalendarError as exc:
                logger.warning("Watch channel renewal failed: %s", exc)
        count = 0
        for account_id, calendar_id in await self._calendars():
            self._coordinator.trigger(account_id, calendar_id, reason="poll")
            count += 1
        return count

    async def _run(self) -> None:
        logger.debug("Sync poller loop started (interval=%ds)", self._interval)
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=self._interval)
                self._force_sync_event.clear()
                logger.debug("Sync poller: immediate sync triggered via force_sync")
            except TimeoutError:
                pass
