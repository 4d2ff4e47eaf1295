"""Fixed-window generation rate limiting backed by Redis."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "ledger:rate"


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    degraded: bool = False


def limit_for(is_paid: bool) -> int:
    """Per-tier ceiling for one window."""
    return max(int(settings.RATE_LIMIT_PAID if is_paid else settings.RATE_LIMIT_FREE), 0)


class RateLimiter:
    """Counts attempts per (scope, key) inside aligned fixed windows.

    ``backend="memory"`` keeps counters in-process (single worker / tests).
    When the Redis store is unreachable the limiter fails closed unless
    ``fail_open`` is configured.
    """

    def __init__(
        self,
        *,
        backend: Optional[str] = None,
        redis_client: Optional[redis.Redis] = None,
        window_seconds: Optional[int] = None,
        fail_open: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = (backend or settings.RATE_LIMIT_BACKEND or "redis").strip().lower()
        self.window_seconds = max(int(window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS), 1)
        self.fail_open = settings.RATE_LIMIT_FAIL_OPEN if fail_open is None else bool(fail_open)
        self._clock = clock
        self._redis = redis_client
        self._local_counters: Dict[str, Tuple[int, int]] = {}
        self._local_lock = asyncio.Lock()

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
        return self._redis

    def _window_start(self, now: float) -> int:
        return int(now) // self.window_seconds * self.window_seconds

    def _key(self, scope: str, key: str, window_start: int) -> str:
        return f"{KEY_PREFIX}:{scope}:{key}:{window_start}"

    async def _incr_local(self, counter_key: str, window_start: int) -> int:
        async with self._local_lock:
            started, count = self._local_counters.get(counter_key, (window_start, 0))
            if started != window_start:
                count = 0
            count += 1
            self._local_counters[counter_key] = (window_start, count)
            return count

    async def _incr_redis(self, counter_key: str) -> int:
        pipe = self._client().pipeline(transaction=True)
        pipe.incr(counter_key)
        pipe.expire(counter_key, self.window_seconds)
        results = await pipe.execute()
        return int(results[0])

    def _store_unreachable(
        self, scope: str, key: str, *, limit: int, reset_at: float, exc: Exception
    ) -> RateLimitDecision:
        logger.error(
            "Rate limit store unreachable",
            extra={"scope": scope, "key": key, "fail_open": self.fail_open, "error": str(exc)},
        )
        return RateLimitDecision(
            allowed=self.fail_open,
            remaining=limit if self.fail_open else 0,
            reset_at=reset_at,
            limit=limit,
            degraded=True,
        )

    async def check(self, key: str, *, limit: int, scope: str = "generate") -> RateLimitDecision:
        """Consume one attempt and report whether it fits in the current window."""
        now = self._clock()
        window_start = self._window_start(now)
        reset_at = float(window_start + self.window_seconds)
        counter_key = self._key(scope, key, window_start)

        if self.backend == "memory":
            count = await self._incr_local(counter_key, window_start)
        else:
            try:
                count = await self._incr_redis(counter_key)
            except Exception as exc:
                return self._store_unreachable(scope, key, limit=limit, reset_at=reset_at, exc=exc)

        return RateLimitDecision(
            allowed=count <= limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
            limit=limit,
        )

    async def status(self, key: str, *, limit: int, scope: str = "generate") -> RateLimitDecision:
        """Current window usage without consuming an attempt."""
        now = self._clock()
        window_start = self._window_start(now)
        reset_at = float(window_start + self.window_seconds)
        counter_key = self._key(scope, key, window_start)

        if self.backend == "memory":
            async with self._local_lock:
                started, count = self._local_counters.get(counter_key, (window_start, 0))
            if started != window_start:
                count = 0
        else:
            try:
                value = await self._client().get(counter_key)
            except Exception as exc:
                return self._store_unreachable(scope, key, limit=limit, reset_at=reset_at, exc=exc)
            count = int(value) if value else 0

        return RateLimitDecision(
            allowed=count < limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
            limit=limit,
        )

    async def reset(self, key: str, *, scope: str = "generate") -> None:
        window_start = self._window_start(self._clock())
        counter_key = self._key(scope, key, window_start)
        if self.backend == "memory":
            async with self._local_lock:
                self._local_counters.pop(counter_key, None)
            return
        await self._client().delete(counter_key)

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
