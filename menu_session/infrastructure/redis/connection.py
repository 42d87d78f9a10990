"""
Redis Connection Management
Backs the fingerprint store, stored credentials, carts and rate limit windows.
"""
import logging
import time
from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from menu_session.core.config import get_settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[Redis] = None
# Monotonic time of the last failed connect
_last_failure: Optional[float] = None


async def get_redis() -> Optional[Redis]:
    """
    Get Redis client instance.

    Returns None while Redis is unreachable. After a failed connect no new
    attempt is made for REDIS_RECONNECT_SECONDS, so callers on the memory
    fallback do not each wait for a connect timeout.
    """
    global _redis_client, _last_failure

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    now = time.monotonic()
    if _last_failure is not None and now - _last_failure < settings.REDIS_RECONNECT_SECONDS:
        return None

    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        retry_on_timeout=False,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Redis unreachable, using in-memory storage for now: {e}")
        await client.aclose()
        _last_failure = now
        return None

    logger.info("Redis connection established")
    _redis_client = client
    _last_failure = None
    return _redis_client


async def close_redis() -> None:
    """
    Close Redis connection (called on application shutdown).
    """
    global _redis_client, _last_failure
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
    _last_failure = None
