"""Per-client-IP sliding-window rate limiting for checkout initialization.

Two backends share one contract (``hit(key) -> RateLimitResult``):
- SlidingWindowRateLimiter: in-process map of deques behind a single lock
- RedisRateLimiter: one sorted set per key, for multi-process deployments
"""

import math
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as redis
import structlog
from fastapi import Request

from donation_engine.core.config import get_settings
from donation_engine.core.exceptions import RateLimitExceeded

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: int | None = None


class SlidingWindowRateLimiter:
    """In-memory sliding window. A restart resets every counter."""

    def __init__(
        self,
        limit: int = 5,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
        max_tracked_keys: int = 10_000,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_tracked_keys = max_tracked_keys
        self._clock = clock
        self._lock = threading.Lock()
        self._events: dict[str, deque[float]] = {}

    def _prune(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def allow(self, client_key: str) -> bool:
        """Record and allow the request if the key is under its limit."""
        now = self._clock()
        with self._lock:
            if len(self._events) >= self.max_tracked_keys:
                self._drop_idle(now)
            bucket = self._events.setdefault(client_key, deque())
            self._prune(bucket, now)
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True

    def retry_after(self, client_key: str) -> int:
        """Seconds until the oldest request in the window expires (0 if not limited)."""
        now = self._clock()
        with self._lock:
            bucket = self._events.get(client_key)
            if not bucket:
                return 0
            self._prune(bucket, now)
            if len(bucket) < self.limit:
                return 0
            return max(1, math.ceil(self.window_seconds - (now - bucket[0])))

    def _drop_idle(self, now: float) -> int:
        idle = [
            key for key, bucket in self._events.items()
            if not bucket or bucket[-1] <= now - self.window_seconds
        ]
        for key in idle:
            del self._events[key]
        return len(idle)

    def prune_idle(self) -> int:
        """Drop keys with no requests inside the window. Returns how many were removed."""
        with self._lock:
            return self._drop_idle(self._clock())

    async def hit(self, client_key: str) -> RateLimitResult:
        if self.allow(client_key):
            return RateLimitResult(allowed=True)
        return RateLimitResult(allowed=False, retry_after=self.retry_after(client_key))


class RedisRateLimiter:
    """Sliding window over a Redis sorted set (score = request time)."""

    KEY_PREFIX = "ratelimit:initialize:"

    def __init__(
        self,
        client: redis.Redis,
        limit: int = 5,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    async def hit(self, client_key: str) -> RateLimitResult:
        now = self._clock()
        key = f"{self.KEY_PREFIX}{client_key}"
        member = f"{now}:{uuid.uuid4().hex}"

        # Add first, then count: concurrent callers can over-count but never under-count
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - self.window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, math.ceil(self.window_seconds))
            _, _, count, _ = await pipe.execute()

        if count <= self.limit:
            return RateLimitResult(allowed=True)

        await self.client.zrem(key, member)
        oldest = await self.client.zrange(key, 0, 0, withscores=True)
        retry_after = self.window_seconds
        if oldest:
            retry_after = self.window_seconds - (now - oldest[0][1])
        return RateLimitResult(allowed=False, retry_after=max(1, math.ceil(retry_after)))


def client_ip(request: Request) -> str:
    """Resolve the donor's IP: X-Forwarded-For first entry, X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


_limiter: SlidingWindowRateLimiter | RedisRateLimiter | None = None


def get_rate_limiter() -> SlidingWindowRateLimiter | RedisRateLimiter:
    """Return the process-wide limiter, built from settings on first use."""
    global _limiter
    if _limiter is None:
        settings = get_settings()
        if settings.rate_limit_backend == "redis":
            from donation_engine.db.redis import get_redis

            _limiter = RedisRateLimiter(
                get_redis(),
                limit=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        else:
            _limiter = SlidingWindowRateLimiter(
                limit=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
    return _limiter


def reset_rate_limiter() -> None:
    global _limiter
    _limiter = None


async def enforce_initialize_rate_limit(request: Request) -> str:
    """FastAPI dependency guarding POST /donations/initialize. Returns the client IP."""
    ip = client_ip(request)
    result = await get_rate_limiter().hit(ip)
    if not result.allowed:
        logger.warning("rate_limit_exceeded", client_ip=ip, retry_after=result.retry_after)
        raise RateLimitExceeded(retry_after=result.retry_after or 1)
    return ip
