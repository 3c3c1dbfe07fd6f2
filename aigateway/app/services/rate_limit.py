from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from aigateway.app.core.errors import RateLimited

logger = logging.getLogger("aigateway")


@dataclass
class RateLimitBucket:
    window_start: float
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


class RateLimiter:
    """In-memory rate limiter using fixed-window counters per client key.

    Each key has its own lock, so concurrent checks for one client are
    serialized while unrelated clients never wait on each other.
    Single-instance, not suitable for multi-process deployments.
    """

    def __init__(
        self,
        limit: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._last_prune = clock()

    def configure(self, limit: int, window_seconds: float) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._buckets.clear()

    def _bucket(self, client_key: str) -> RateLimitBucket:
        bucket = self._buckets.get(client_key)
        if bucket is None:
            bucket = self._buckets.setdefault(client_key, RateLimitBucket(window_start=self._clock()))
        return bucket

    async def admit(self, client_key: str) -> Admission:
        # Sweep stale buckets at most once per window
        if self._clock() - self._last_prune >= self.window_seconds:
            self.prune()
        bucket = self._bucket(client_key)
        async with bucket.lock:
            now = self._clock()
            if now - bucket.window_start >= self.window_seconds:
                bucket.window_start = now
                bucket.count = 0
            if bucket.count >= self.limit:
                retry_after = bucket.window_start + self.window_seconds - now
                return Admission(allowed=False, remaining=0, retry_after=retry_after)
            bucket.count += 1
            return Admission(allowed=True, remaining=self.limit - bucket.count)

    async def check(self, client_key: str) -> Admission:
        """Admit or raise RateLimited with the time left in the current window."""
        admission = await self.admit(client_key)
        if not admission.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"client_key": client_key, "retry_after": round(admission.retry_after, 2)},
            )
            raise RateLimited(admission.retry_after)
        return admission

    def prune(self) -> int:
        """Remove buckets whose window ended more than one window ago."""
        now = self._clock()
        self._last_prune = now
        stale = [
            key for key, bucket in self._buckets.items()
            if not bucket.lock.locked() and now - bucket.window_start >= self.window_seconds * 2
        ]
        for key in stale:
            del self._buckets[key]
        return len(stale)


# Global instance
rate_limiter = RateLimiter()
