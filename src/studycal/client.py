"""Rate-limited, token-refreshing wrapper over a calendar provider.

Every call acquires a rate-limit token, fetches a valid access token, and
issues the provider call under a timeout.  A rejected access token forces one
refresh and a single retry.  Provider throttling empties the account's bucket
and retries once it refills; transient failures retry with jittered
exponential backoff.  Every other error propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TypeVar

from studycal.config import RetryConfig
from studycal.core.logging import account_context
from studycal.core.metrics import EngineMetrics
from studycal.errors import (
    AuthError,
    CalendarError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from studycal.models import (
    CalendarInfo,
    ChannelRegistration,
    EventDraft,
    EventPage,
    EventPatch,
    RemoteEvent,
)
from studycal.providers.base import CalendarProvider
from studycal.ratelimit import RateLimiter
from studycal.scheduling import Interval
from studycal.tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on pages fetched in one listing.
MAX_LIST_PAGES = 200


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient failures."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: bool = True

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_s,
            max_delay=config.max_delay_s,
            jitter=config.jitter,
        )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retrying after the *attempt*-th failure (1-based)."""
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        if self.jitter:
            delay = delay * (0.5 + (rng or random).random() / 2)
        return delay


class RemoteEventClient:
    """Provider-agnostic event API used by the batch executor, sync, and webhooks."""

    def __init__(
        self,
        provider: CalendarProvider,
        tokens: TokenLifecycleManager,
        rate_limiter: RateLimiter,
        *,
        retry: RetryPolicy | None = None,
        call_timeout: float = 20.0,
        acquire_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._tokens = tokens
        self._rate_limiter = rate_limiter
        self._retry = retry or RetryPolicy()
        self._call_timeout = call_timeout
        self._acquire_timeout = acquire_timeout
        self._sleep = sleep
        self._metrics = metrics or EngineMetrics(provider.name)

    @property
    def provider_name(self) -> str:
        return self._provider.name

    async def _invoke(self, operation: str, call: Callable[[str], Awaitable[T]], token: str) -> T:
        try:
            async with asyncio.timeout(self._call_timeout):
                return await call(token)
        except TimeoutError as exc:
            raise TransientError(
                f"{operation} timed out after {self._call_timeout}s"
            ) from exc

    async def _call(
        self,
        operation: str,
        account_id: str,
        call: Callable[[str], Awaitable[T]],
    ) -> T:
        attempt = 0
        force_refresh = False
        refreshed = False
        with account_context(account_id):
            while True:
                await self._rate_limiter.acquire(account_id, timeout=self._acquire_timeout)
                token = await self._tokens.get_valid_token(account_id, force_refresh=force_refresh)
                force_refresh = False
                try:
                    result = await self._invoke(operation, call, token)
                except UnauthorizedError as exc:
                    if refreshed:
                        self._metrics.remote_call(operation, "auth")
                        raise AuthError(
                            f"{operation} rejected after token refresh; reconnect required",
                            reauth_required=True,
                        ) from exc
                    logger.info(
                        "%s got 401 for account %s; forcing token refresh", operation, account_id
                    )
                    refreshed = True
                    force_refresh = True
                    continue
                except RateLimitedError as exc:
                    attempt += 1
                    self._rate_limiter.penalize(account_id, exc.retry_after)
                    if attempt >= self._retry.max_attempts:
                        self._metrics.remote_call(operation, "rate_limited")
                        raise
                    continue
                except TransientError as exc:
                    attempt += 1
                    if attempt >= self._retry.max_attempts:
                        self._metrics.remote_call(operation, "transient")
                        raise
                    delay = self._retry.delay_for(attempt)
                    logger.warning(
                        "%s failed transiently (attempt %d/%d), retrying in %.2fs: %s",
                        operation,
                        attempt,
                        self._retry.max_attempts,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue
                except CalendarError:
                    self._metrics.remote_call(operation, "error")
                    raise
                self._rate_limiter.record_success(account_id)
                self._metrics.remote_call(operation, "ok")
                return result

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(
        self,
        account_id: str,
        calendar_id: str,
        *,
        time_range: Interval | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
        page_size: int = 250,
    ) -> EventPage:
        return await self._call(
            "list_events",
            account_id,
            lambda token: self._provider.list_events(
                access_token=token,
                calendar_id=calendar_id,
                time_range=time_range,
                sync_token=sync_token,
                page_token=page_token,
                page_size=page_size,
            ),
        )

    async def list_all_events(
        self,
        account_id: str,
        calendar_id: str,
        *,
        time_range: Interval | None = None,
        sync_token: str | None = None,
        page_size: int = 250,
    ) -> tuple[list[RemoteEvent], str | None]:
        """Follow pagination to the end; returns events and the next sync token."""
        events: list[RemoteEvent] = []
        page_token: str | None = None
        for _ in range(MAX_LIST_PAGES):
            page = await self.list_events(
                account_id,
                calendar_id,
                time_range=time_range,
                sync_token=sync_token,
                page_token=page_token,
                page_size=page_size,
            )
            events.extend(page.events)
            if page.next_page_token is None:
                return events, page.next_sync_token
            page_token = page.next_page_token
        raise TransientError(
            f"Event listing for calendar {calendar_id} exceeded {MAX_LIST_PAGES} pages"
        )

    async def get_event(self, account_id: str, calendar_id: str, event_id: str) -> RemoteEvent:
        return await self._call(
            "get_event",
            account_id,
            lambda token: self._provider.get_event(
                access_token=token, calendar_id=calendar_id, event_id=event_id
            ),
        )

    async def create_event(
        self, account_id: str, calendar_id: str, draft: EventDraft
    ) -> RemoteEvent:
        return await self._call(
            "create_event",
            account_id,
            lambda token: self._provider.create_event(
                access_token=token, calendar_id=calendar_id, draft=draft
            ),
        )

    async def update_event(
        self,
        account_id: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
        *,
        etag: str | None = None,
    ) -> RemoteEvent:
        return await self._call(
            "update_event",
            account_id,
            lambda token: self._provider.update_event(
                access_token=token,
                calendar_id=calendar_id,
                event_id=event_id,
                patch=patch,
                etag=etag,
            ),
        )

    async def delete_event(
        self,
        account_id: str,
        calendar_id: str,
        event_id: str,
        *,
        etag: str | None = None,
    ) -> None:
        await self._call(
            "delete_event",
            account_id,
            lambda token: self._provider.delete_event(
                access_token=token, calendar_id=calendar_id, event_id=event_id, etag=etag
            ),
        )

    async def free_busy(
        self, account_id: str, calendar_ids: list[str], time_range: Interval
    ) -> dict[str, list[Interval]]:
        return await self._call(
            "free_busy",
            account_id,
            lambda token: self._provider.free_busy(
                access_token=token, calendar_ids=calendar_ids, time_range=time_range
            ),
        )

    async def list_calendars(self, account_id: str) -> list[CalendarInfo]:
        return await self._call(
            "list_calendars",
            account_id,
            lambda token: self._provider.list_calendars(access_token=token),
        )

    # ------------------------------------------------------------------
    # Push channels
    # ------------------------------------------------------------------

    async def watch(
        self,
        account_id: str,
        calendar_id: str,
        *,
        channel_id: str,
        callback_url: str,
        token: str | None,
        ttl: timedelta,
    ) -> ChannelRegistration:
        return await self._call(
            "watch",
            account_id,
            lambda access_token: self._provider.watch(
                access_token=access_token,
                calendar_id=calendar_id,
                channel_id=channel_id,
                callback_url=callback_url,
                token=token,
                ttl=ttl,
            ),
        )

    async def stop_channel(self, account_id: str, channel_id: str, resource_id: str) -> None:
        await self._call(
            "stop_channel",
            account_id,
            lambda token: self._provider.stop_channel(
                access_token=token, channel_id=channel_id, resource_id=resource_id
            ),
        )
