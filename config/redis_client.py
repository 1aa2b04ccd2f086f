"""
config/redis_client.py
Async Redis client used for cross-process attribution locks.

The locks only cut down on redundant broadcast work between workers;
correctness never depends on them, so an unreachable Redis degrades to
running unlocked.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection; without Redis the engine still runs, just unlocked across workers
    try:
        await redis_client.ping()
        logger.info("Redis connected")
    except RedisError as e:
        logger.warning(f"Redis unreachable, distributed locks disabled: {e}")
        await redis_client.aclose()
        redis_client = None


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> Optional[aioredis.Redis]:
    """Current client, or None when Redis was never initialized (workers, tests)."""
    return redis_client


# ── Lock Helpers ──────────────────────────────────────────────
class RedisLocks:
    """Best-effort distributed locks keyed by booking / attribution."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        """
        Yields True if the lock was acquired, False if it timed out or Redis
        failed. Callers proceed either way.
        """
        lock = self.client.lock(
            f"lock:{name}",
            timeout=settings.REDIS_ATTRIBUTION_LOCK_TTL,
            blocking_timeout=settings.REDIS_ATTRIBUTION_LOCK_WAIT,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.warning(f"Redis lock {name} unavailable, continuing unlocked: {e}")
            acquired = False

        try:
            yield bool(acquired)
        finally:
            if acquired:
                try:
                    await lock.release()
                except LockError:
                    # TTL elapsed while we held it; another worker may own it now
                    logger.warning(f"Redis lock {name} expired before release")
