"""Fixed-window rate limiting over an atomic counter store.

Each client gets one counter per window, keyed by the window's start time.
The counter store is the only source of truth for counts; nothing is cached
in-process, so several gateway instances sharing one Redis enforce one limit.

Known limitation of fixed windows: a client can send up to ``2 * limit``
requests across a window boundary (the tail of one window plus the head of
the next).
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from redis.exceptions import RedisError

from apigate.errors.exceptions import CounterStoreError
from apigate.metrics import RATE_LIMITER_STORE_ERRORS_TOTAL
from apigate.models.enums import RateLimiterFailureMode
from apigate.models.rate_limit import RateDecision

logger = logging.getLogger(__name__)

_KEY_PREFIX = "apigate:rl"


class RateCounterStore(Protocol):
    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment ``key`` and return the new count.

        Raises CounterStoreError when the backend is unreachable.
        """
        ...


class RedisRateCounterStore:
    """Counter store using INCR + EXPIRE inside one MULTI/EXEC transaction."""

    def __init__(self, redis) -> None:
        self._redis = redis

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            count, _ = await pipe.execute()
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        return int(count)


class InMemoryRateCounterStore:
    """Single-process counter store for local mode and tests.

    Only correct when exactly one gateway process serves traffic.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._counters: dict[str, tuple[int, float]] = {}

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(key, (0, now + ttl_seconds))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            self._evict_expired(now)
            return count

    def _evict_expired(self, now: float) -> None:
        stale = [k for k, (_, exp) in self._counters.items() if exp <= now]
        for k in stale:
            del self._counters[k]

    def __len__(self) -> int:
        return len(self._counters)


def window_start(now: float, window_seconds: int) -> int:
    """Start of the fixed window containing ``now``, in epoch seconds."""
    return int(math.floor(now / window_seconds) * window_seconds)


class RateLimiter:
    """Admit or reject requests against a per-client fixed window."""

    def __init__(
        self,
        store: RateCounterStore,
        window_seconds: int = 60,
        failure_mode: RateLimiterFailureMode = RateLimiterFailureMode.OPEN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.window_seconds = window_seconds
        self.failure_mode = RateLimiterFailureMode(failure_mode)
        self._clock = clock

    async def allow(
        self, client_id: str, limit: int, window_seconds: int | None = None
    ) -> RateDecision:
        """Count one request for ``client_id`` and decide whether to admit it.

        ``limit`` is read on every call, so a changed quota applies to the
        current window immediately; the stored count is left untouched.
        """
        window = window_seconds or self.window_seconds
        now = self._clock()
        start = window_start(now, window)
        reset_epoch = start + window
        reset_at = datetime.fromtimestamp(reset_epoch, tz=timezone.utc)
        retry_after = max(1, math.ceil(reset_epoch - now))

        try:
            count = await self.store.increment_and_get(f"{_KEY_PREFIX}:{client_id}:{start}", window)
        except CounterStoreError as exc:
            return self._on_store_failure(client_id, limit, window, reset_at, exc)

        if count > limit:
            return RateDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )
        return RateDecision(
            allowed=True,
            limit=limit,
            remaining=limit - count,
            reset_at=reset_at,
        )

    def _on_store_failure(
        self,
        client_id: str,
        limit: int,
        window: int,
        reset_at: datetime,
        exc: Exception,
    ) -> RateDecision:
        RATE_LIMITER_STORE_ERRORS_TOTAL.labels(failure_mode=self.failure_mode.value).inc()
        if self.failure_mode is RateLimiterFailureMode.CLOSED:
            logger.error(
                "Rate counter store unavailable, failing closed for %s: %s", client_id, exc
            )
            return RateDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=window,
                degraded=True,
            )
        logger.warning(
            "Rate counter store unavailable, failing open for %s: %s", client_id, exc
        )
        return RateDecision(
            allowed=True,
            limit=limit,
            remaining=limit,
            reset_at=reset_at,
            degraded=True,
        )
