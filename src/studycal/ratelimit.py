"""Per-account token-bucket rate limiting for outbound provider calls.

Every remote call acquires a token first.  When the provider reports a rate
limit anyway, the caller penalizes the bucket: it drops to zero and stays
closed until the provider's ``Retry-After`` hint (or an exponential backoff
from a fixed base) elapses.

Buckets are in-memory only and are rebuilt from configuration on start.
Each bucket has its own lock; waiters for one account queue in arrival
order and never block another account.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from studycal.core.metrics import EngineMetrics
from studycal.errors import InvalidArgumentError, RateLimitedError
from studycal.models import RateLimitStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RateLimitBucket:
    """Token bucket for one account."""

    capacity: int
    """Maximum tokens in bucket."""

    tokens: float
    """Current available tokens."""

    refill_rate: float
    """Tokens added per second."""

    last_refill: float
    """Clock reading of the last refill; in the future while blocked."""

    blocked_until: float = 0.0
    """Clock reading before which no token is handed out."""

    penalties: int = 0
    """Consecutive provider-reported throttles, for exponential backoff."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def refill(self, now: float) -> None:
        """Refill tokens based on elapsed time."""
        if now <= self.last_refill:
            return
        elapsed = now - self.last_refill
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def time_until_available(self, count: float, now: float) -> float:
        """Seconds until *count* tokens will be available."""
        self.refill(now)
        blocked = max(0.0, self.blocked_until - now)
        if self.tokens >= count:
            return blocked
        return blocked + (count - self.tokens) / self.refill_rate


class RateLimiter:
    """Per-account token buckets with provider-throttle backoff.

    Parameters
    ----------
    capacity:
        Burst size; a fresh bucket starts full.
    refill_per_second:
        Steady-state tokens per second.
    backoff_base / backoff_max:
        Exponential backoff used when the provider throttles without a
        ``Retry-After`` hint.
    clock / sleep:
        Injectable monotonic clock and sleeper (tests pass fakes).
    """

    def __init__(
        self,
        *,
        capacity: int = 10,
        refill_per_second: float = 5.0,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        metrics: EngineMetrics | None = None,
    ) -> None:
        if capacity < 1:
            raise InvalidArgumentError("rate-limit capacity must be at least 1")
        if refill_per_second <= 0:
            raise InvalidArgumentError("rate-limit refill rate must be positive")
        self._capacity = capacity
        self._refill_rate = refill_per_second
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics or EngineMetrics()
        self._buckets: dict[str, RateLimitBucket] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def _bucket(self, account_id: str) -> RateLimitBucket:
        bucket = self._buckets.get(account_id)
        if bucket is None:
            bucket = RateLimitBucket(
                capacity=self._capacity,
                tokens=float(self._capacity),
                refill_rate=self._refill_rate,
                last_refill=self._clock(),
            )
            self._buckets[account_id] = bucket
        return bucket

    async def acquire(
        self,
        account_id: str,
        cost: int = 1,
        *,
        timeout: float | None = None,
    ) -> None:
        """Block until *cost* tokens are available for *account_id*.

        Raises ``RateLimitedError`` if *timeout* seconds pass first.  Task
        cancellation propagates unchanged.
        """
        if cost < 1 or cost > self._capacity:
            raise InvalidArgumentError(
                f"rate-limit cost must be between 1 and capacity ({self._capacity}), got {cost}"
            )
        bucket = self._bucket(account_id)
        deadline = None if timeout is None else self._clock() + timeout
        try:
            async with asyncio.timeout(timeout):
                async with bucket.lock:
                    await self._take(account_id, bucket, cost, deadline)
        except TimeoutError as exc:
            raise RateLimitedError(
                f"Timed out waiting for a rate-limit token for account {account_id}",
                retry_after=bucket.time_until_available(cost, self._clock()),
            ) from exc

    async def _take(
        self,
        account_id: str,
        bucket: RateLimitBucket,
        cost: int,
        deadline: float | None,
    ) -> None:
        while True:
            now = self._clock()
            wait = bucket.time_until_available(cost, now)
            if wait <= 0:
                bucket.tokens -= cost
                return
            if deadline is not None and now + wait > deadline:
                raise RateLimitedError(
                    f"Rate-limit token for account {account_id} not available before deadline",
                    retry_after=wait,
                )
            reason = "penalized" if now < bucket.blocked_until else "empty"
            self._metrics.ratelimit_wait(reason)
            logger.debug(
                "Rate limiter waiting %.3fs for account %s (%s)", wait, account_id, reason
            )
            await self._sleep(wait)

    def penalize(self, account_id: str, retry_after: float | None = None) -> float:
        """Empty the bucket after a provider-reported rate limit.

        Returns the delay (seconds) before the bucket refills.
        """
        bucket = self._bucket(account_id)
        bucket.penalties += 1
        if retry_after is not None and retry_after >= 0:
            delay = float(retry_after)
        else:
            delay = min(self._backoff_max, self._backoff_base * 2 ** (bucket.penalties - 1))
        now = self._clock()
        bucket.tokens = 0.0
        bucket.blocked_until = max(bucket.blocked_until, now + delay)
        bucket.last_refill = bucket.blocked_until
        logger.warning(
            "Provider throttled account %s; pausing calls for %.2fs (penalty #%d)",
            account_id,
            delay,
            bucket.penalties,
        )
        return delay

    def record_success(self, account_id: str) -> None:
        """Reset the backoff exponent after a call the provider accepted."""
        bucket = self._buckets.get(account_id)
        if bucket is not None:
            bucket.penalties = 0

    def status(self, account_id: str) -> RateLimitStatus:
        """Read-only snapshot: capacity, remaining tokens, and reset time."""
        bucket = self._buckets.get(account_id)
        if bucket is None:
            return RateLimitStatus(
                account_id=account_id,
                capacity=self._capacity,
                remaining=float(self._capacity),
            )
        now = self._clock()
        bucket.refill(now)
        wall_now = datetime.now(UTC)
        blocked_for = max(0.0, bucket.blocked_until - now)
        until_full = blocked_for + (bucket.capacity - bucket.tokens) / bucket.refill_rate
        return RateLimitStatus(
            account_id=account_id,
            capacity=bucket.capacity,
            remaining=round(bucket.tokens, 3),
            reset_at=wall_now + timedelta(seconds=until_full) if until_full > 0 else None,
            blocked_until=wall_now + timedelta(seconds=blocked_for) if blocked_for > 0 else None,
        )

    def forget(self, account_id: str) -> None:
        """Drop the bucket for a disconnected account."""
        self._buckets.pop(account_id, None)
