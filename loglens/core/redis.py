"""Shared redis client and the job lock scheduled work runs under."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.exceptions import RedisError

from loglens.core.config import settings

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def get_redis(url: str | None = None) -> redis.Redis:
    """Process-wide client. ``url`` only applies when the client is first created."""
    global _client
    if _client is None:
        _client = redis.from_url(url or settings.REDIS_URL, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


@asynccontextmanager
async def job_lock(client: redis.Redis, name: str, timeout: int) -> AsyncIterator[bool]:
    """Try to take ``name`` without blocking and hold it for the block.

    Yields False when another worker owns the lock. When redis cannot be
    reached the block runs unlocked and True is yielded.
    """
    lock = client.lock(name, timeout=timeout, blocking=False)
    try:
        owned = await lock.acquire(blocking=False)
    except RedisError as e:
        logger.warning("Redis unavailable, running %s without lock: %s", name, e)
        lock, owned = None, True

    if not owned:
        yield False
        return

    try:
        yield True
    finally:
        if lock is not None:
            try:
                await lock.release()
            except RedisError as e:
                # Expired before the job finished
                logger.debug("Could not release lock %s: %s", name, e)
