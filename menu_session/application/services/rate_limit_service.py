"""
Rate Limiting Service - Sliding Window
Redis sorted sets with an in-memory fallback.
CRITICAL: Fail-closed for authentication endpoints if Redis is unavailable in strict mode.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import HTTPException, status
from redis.asyncio import Redis

from menu_session.core.config import Settings, get_settings
from menu_session.infrastructure.redis.connection import get_redis
from menu_session.infrastructure.storage.kv_store import RedisFactory

logger = logging.getLogger(__name__)


class RateLimitService:
    """Rolling-window counters keyed by arbitrary identifiers (IP, phone, fingerprint)."""

    # Critical endpoints that MUST fail-closed if Redis is unavailable
    CRITICAL_ENDPOINTS = [
        "/api/auth/magic-link",
        "/api/auth/code/request",
        "/api/auth/code/verify",
    ]

    def __init__(
        self,
        redis_factory: Optional[RedisFactory] = get_redis,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = settings or get_settings()
        self._redis_factory = redis_factory
        self._clock = clock
        self.default_limit = settings.RATE_LIMIT_REQUESTS_PER_MINUTE
        # Stricter per-IP limits for authentication endpoints
        self.endpoint_limits = {
            "/api/auth/magic-link": 5,
            "/api/auth/code/request": 5,
            "/api/auth/code/verify": 10,
        }
        # In-memory fallback when Redis is down: {key: [(timestamp, member)]}
        self._in_memory_hits: dict[str, list[tuple[float, str]]] = {}

    async def _redis(self) -> Optional[Redis]:
        if self._redis_factory is None:
            return None
        return await self._redis_factory()

    # ==========================================
    # WINDOW PRIMITIVES
    # ==========================================

    async def count(self, key: str, window_seconds: int) -> int:
        """Number of hits recorded for key within the trailing window."""
        now = self._clock()
        redis_client = await self._redis()
        if redis_client:
            try:
                return await self._redis_count(redis_client, key, window_seconds, now)
            except Exception as e:
                logger.error(f"Redis rate limit count failed: {e}")
        return self._in_memory_count(key, window_seconds, now)

    async def record(self, key: str, window_seconds: int) -> str:
        """Record one hit for key. Returns the hit's member id."""
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"
        redis_client = await self._redis()
        if redis_client:
            try:
                redis_key = f"rate_limit:{key}"
                pipe = redis_client.pipeline()
                pipe.zadd(redis_key, {member: now})
                pipe.expire(redis_key, window_seconds)
                await pipe.execute()
                return member
            except Exception as e:
                logger.error(f"Redis rate limit record failed: {e}")
        self._in_memory_hits.setdefault(key, []).append((now, member))
        return member

    async def reserve(
        self, key: str, limit: int, window_seconds: int
    ) -> tuple[bool, int, Optional[str]]:
        """
        Atomically take one slot of the window.

        The hit is recorded before it is counted, so concurrent callers can
        never all see the same free slot. A hit over the limit is withdrawn.

        Returns:
            Tuple of (allowed, remaining after this hit, member id to release)
        """
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"
        redis_client = await self._redis()
        if redis_client:
            try:
                redis_key = f"rate_limit:{key}"
                pipe = redis_client.pipeline(transaction=True)
                pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
                pipe.zadd(redis_key, {member: now})
                pipe.zcard(redis_key)
                pipe.expire(redis_key, window_seconds)
                results = await pipe.execute()
                used = int(results[2])
                if used > limit:
                    await redis_client.zrem(redis_key, member)
                    return False, 0, None
                return True, limit - used, member
            except Exception as e:
                logger.error(f"Redis rate limit reserve failed: {e}")

        # No await between counting and appending
        used = self._in_memory_count(key, window_seconds, now)
        if used >= limit:
            return False, 0, None
        self._in_memory_hits.setdefault(key, []).append((now, member))
        return True, limit - used - 1, member

    async def release(self, key: str, member: str) -> None:
        """Give back a slot taken by reserve()."""
        redis_client = await self._redis()
        if redis_client:
            try:
                await redis_client.zrem(f"rate_limit:{key}", member)
                return
            except Exception as e:
                logger.error(f"Redis rate limit release failed: {e}")
        hits = self._in_memory_hits.get(key, [])
        self._in_memory_hits[key] = [hit for hit in hits if hit[1] != member]

    async def remaining(self, key: str, limit: int, window_seconds: int) -> int:
        return max(0, limit - await self.count(key, window_seconds))

    async def _redis_count(
        self, redis: Redis, key: str, window_seconds: int, now: float
    ) -> int:
        redis_key = f"rate_limit:{key}"
        pipe = redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zcard(redis_key)
        results = await pipe.execute()
        return int(results[1])

    def _in_memory_count(self, key: str, window_seconds: int, now: float) -> int:
        hits = [hit for hit in self._in_memory_hits.get(key, []) if hit[0] > now - window_seconds]
        if hits:
            self._in_memory_hits[key] = hits
        else:
            self._in_memory_hits.pop(key, None)
        return len(hits)

    # ==========================================
    # PER-IP REQUEST LIMITING
    # ==========================================

    async def check_rate_limit(
        self, ip_address: str, endpoint: str, strict: bool = False
    ) -> tuple[bool, dict]:
        """
        Check and record a request against the per-IP limit of endpoint.

        Args:
            ip_address: Client IP address
            endpoint: API endpoint path
            strict: If True, fail-closed for critical endpoints if Redis is down

        Returns:
            Tuple of (allowed: bool, headers: dict)

        Raises:
            HTTPException: If Redis is unavailable for a critical endpoint in strict mode
        """
        limit = self.endpoint_limits.get(endpoint, self.default_limit)
        window_seconds = 60
        key = f"ip:{ip_address}:{endpoint}"

        redis_client = await self._redis()
        fallback = redis_client is None
        if fallback and strict and endpoint in self.CRITICAL_ENDPOINTS:
            logger.critical(
                f"Redis unavailable for critical endpoint {endpoint} - failing closed"
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Rate limiting service unavailable. Please try again later.",
            )

        used = await self.count(key, window_seconds)
        allowed = used < limit
        if allowed:
            await self.record(key, window_seconds)
            used += 1

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, limit - used)),
            "X-RateLimit-Reset": str(int(self._clock() + window_seconds)),
        }
        if fallback:
            headers["X-RateLimit-Fallback"] = "in-memory"
        return allowed, headers
