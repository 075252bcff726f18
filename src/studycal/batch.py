"""Best-effort batched create/update/delete against the remote event client.

Items run on a bounded worker pool; one item's failure never aborts the
batch.  Results come back in input order with each failure classified so
callers can retry only the transient ones.  A batch interrupted by its
timeout or a caller's cancel event returns what finished.  Items cut off
mid-call are listed as interrupted (the provider may have applied them);
items that never reached the provider are listed as not attempted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from studycal.client import RemoteEventClient
from studycal.core.metrics import EngineMetrics
from studycal.errors import InvalidArgumentError, classify_failure, sanitize_error_message
from studycal.models import (
    BatchItemFailure,
    BatchItemSuccess,
    BatchOperationResult,
    EventDraft,
    EventPatch,
    RemoteEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_CONCURRENCY = 5

ItemCall = Callable[[], Awaitable[RemoteEvent | None]]


@dataclass(frozen=True)
class BatchUpdateItem:
    event_id: str
    patch: EventPatch
    etag: str | None = None


class BatchOperationExecutor:
    """Runs batches of event mutations with bounded concurrency."""

    def __init__(
        self,
        client: RemoteEventClient,
        *,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        metrics: EngineMetrics | None = None,
    ) -> None:
        if concurrency < 1:
            raise InvalidArgumentError("batch concurrency must be at least 1")
        self._client = client
        self._concurrency = concurrency
        self._metrics = metrics or EngineMetrics(client.provider_name)

    @property
    def concurrency(self) -> int:
        return self._concurrency

    async def batch_create(
        self,
        account_id: str,
        calendar_id: str,
        drafts: Sequence[EventDraft],
        *,
        item_ids: Sequence[str] | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchOperationResult:
        """Create each draft; *item_ids* label the results (default: ``item-<index>``)."""
        if item_ids is not None and len(item_ids) != len(drafts):
            raise InvalidArgumentError("item_ids must match the number of drafts")
        ids = list(item_ids) if item_ids is not None else [f"item-{i}" for i in range(len(drafts))]
        calls: list[tuple[str, ItemCall]] = [
            (
                item_id,
                lambda draft=draft: self._client.create_event(account_id, calendar_id, draft),
            )
            for item_id, draft in zip(ids, drafts, strict=True)
        ]
        return await self._run("create", calls, timeout=timeout, cancel_event=cancel_event)

    async def batch_update(
        self,
        account_id: str,
        calendar_id: str,
        items: Sequence[BatchUpdateItem],
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchOperationResult:
        calls: list[tuple[str, ItemCall]] = [
            (
                item.event_id,
                lambda item=item: self._client.update_event(
                    account_id, calendar_id, item.event_id, item.patch, etag=item.etag
                ),
            )
            for item in items
        ]
        return await self._run("update", calls, timeout=timeout, cancel_event=cancel_event)

    async def batch_delete(
        self,
        account_id: str,
        calendar_id: str,
        event_ids: Sequence[str],
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchOperationResult:
        async def _delete(event_id: str) -> None:
            await self._client.delete_event(account_id, calendar_id, event_id)

        calls: list[tuple[str, ItemCall]] = [
            (event_id, lambda event_id=event_id: _delete(event_id)) for event_id in event_ids
        ]
        return await self._run("delete", calls, timeout=timeout, cancel_event=cancel_event)

    async def _run(
        self,
        operation: str,
        calls: list[tuple[str, ItemCall]],
        *,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> BatchOperationResult:
        outcomes: list[BatchItemSuccess | BatchItemFailure | None] = [None] * len(calls)
        started: set[int] = set()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _worker(index: int, item_id: str, call: ItemCall) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return
                started.add(index)
                try:
                    event = await call()
                except Exception as exc:
                    reason = classify_failure(exc)
                    self._metrics.batch_item(operation, reason.value)
                    logger.warning(
                        "Batch %s item %s failed (%s): %s",
                        operation,
                        item_id,
                        reason.value,
                        sanitize_error_message(exc),
                    )
                    outcomes[index] = BatchItemFailure(
                        index=index,
                        item_id=item_id,
                        reason=reason,
                        error=sanitize_error_message(exc),
                    )
                    return
                self._metrics.batch_item(operation, "success")
                outcomes[index] = BatchItemSuccess(index=index, item_id=item_id, event=event)

        tasks = [
            asyncio.create_task(_worker(index, item_id, call))
            for index, (item_id, call) in enumerate(calls)
        ]
        stopped_early = await self._wait(tasks, timeout=timeout, cancel_event=cancel_event)

        result = BatchOperationResult(total=len(calls), cancelled=stopped_early)
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BatchItemSuccess):
                result.successes.append(outcome)
            elif isinstance(outcome, BatchItemFailure):
                result.failures.append(outcome)
            elif index in started:
                result.interrupted.append(calls[index][0])
            else:
                result.not_attempted.append(calls[index][0])
        logger.info(
            "Batch %s finished: %d ok, %d failed, %d interrupted, %d not attempted%s",
            operation,
            result.succeeded,
            result.failed,
            len(result.interrupted),
            len(result.not_attempted),
            " (stopped early)" if stopped_early else "",
        )
        return result

    @staticmethod
    async def _wait(
        tasks: list[asyncio.Task[None]],
        *,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> bool:
        """Wait for *tasks*; returns True when stopped early by timeout or cancel event.

        Unfinished tasks are cancelled before returning.  Cancellation of the
        caller cancels every item and propagates.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        cancel_waiter = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )
        pending: set[asyncio.Task[None]] = set(tasks)
        stopped = False
        try:
            while pending:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    stopped = True
                    break
                watched: set[asyncio.Task] = set(pending)
                if cancel_waiter is not None:
                    watched.add(cancel_waiter)
                done, _ = await asyncio.wait(
                    watched, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
                if cancel_waiter is not None and cancel_waiter in done:
                    stopped = True
                    break
                if not done:
                    stopped = True
                    break
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return stopped
