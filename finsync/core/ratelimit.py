"""Fixed-window rate limiting per user and limit kind."""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, HTTPException, status

from finsync.core.middleware import get_current_user, TokenData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int


RATE_LIMITS = {
    "consent": RateLimitConfig(max_requests=10, window_seconds=60),
    "api": RateLimitConfig(max_requests=60, window_seconds=60),
    "dataExport": RateLimitConfig(max_requests=3, window_seconds=60 * 60),
    "familyInvite": RateLimitConfig(max_requests=10, window_seconds=60 * 60),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class CounterStore(ABC):
    """Keyed counters living for a fixed window."""

    @abstractmethod
    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        """Increment the counter for key; returns (count, window_start)."""


class InMemoryCounterStore(CounterStore):
    """Process-local store, suitable for a single instance and for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        async with self._lock:
            now = self._clock()
            count, started = self._windows.get(key, (0, now))
            if now - started >= window_seconds:
                count, started = 0, now
            count += 1
            self._windows[key] = (count, started)
            return count, started

    def now(self) -> float:
        return self._clock()


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limits: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.limits = limits or RATE_LIMITS
        self._clock = clock

    async def check(self, kind: str, user_id: str) -> RateLimitResult:
        """
        Count one request against the user's window for kind.

        Store failures let the request through.
        """
        config = self.limits[kind]
        try:
            count, started = await self.store.hit(f"{kind}:{user_id}", config.window_seconds)
        except Exception as e:
            logger.error(f"Rate limit store error for {kind}: {e}")
            return RateLimitResult(allowed=True, limit=config.max_requests, remaining=config.max_requests)

        if count > config.max_requests:
            retry_after = math.ceil(started + config.window_seconds - self._clock())
            return RateLimitResult(
                allowed=False,
                limit=config.max_requests,
                remaining=0,
                retry_after=max(retry_after, 1),
            )
        return RateLimitResult(allowed=True, limit=config.max_requests, remaining=config.max_requests - count)


_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        store = InMemoryCounterStore()
        _limiter = RateLimiter(store, clock=store.now)
    return _limiter


def rate_limit(kind: str):
    """Dependency factory rejecting requests over the named limit with 429."""
    if kind not in RATE_LIMITS:
        raise ValueError(f"Unknown rate limit '{kind}'")

    async def dependency(
        user: TokenData = Depends(get_current_user),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        result = await limiter.check(kind, user.sub)
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={
                    "Retry-After": str(result.retry_after),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )
        return result

    return dependency
