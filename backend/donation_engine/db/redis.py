"""Optional Redis client backing the distributed rate limiter.

Single-process deployments run without Redis. When REDIS_URL is set the
client is created on startup and shared by every request.
"""

import redis.asyncio as redis
import structlog

from donation_engine.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> bool:
    """Connect to Redis if configured. Returns whether a client is now available."""
    global _redis

    if _redis is not None:
        return True

    redis_url = url or get_settings().redis_url
    if not redis_url:
        return False

    # Rate-limit checks sit on the donor's request path; fail fast rather than hang
    client = redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        health_check_interval=30,
    )
    await client.ping()
    _redis = client
    logger.info("redis_connected")
    return True


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client. Raises RuntimeError before init_redis() succeeds."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
