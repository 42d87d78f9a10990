"""
Key-Value Persistent Storage
Redis when reachable, process memory otherwise.
"""
import logging
import time
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from menu_session.core.exceptions import StorageQuotaError
from menu_session.infrastructure.redis.connection import get_redis

logger = logging.getLogger(__name__)

RedisFactory = Callable[[], Awaitable[Optional[Redis]]]


class KeyValueStorage:
    """String storage with optional TTL and graceful degradation to memory."""

    def __init__(
        self,
        redis_factory: Optional[RedisFactory] = get_redis,
        prefix: str = "menu_session",
        max_memory_bytes: Optional[int] = None,
    ):
        self._redis_factory = redis_factory
        self.prefix = prefix
        self.max_memory_bytes = max_memory_bytes
        self._memory: dict[str, tuple[str, Optional[float]]] = {}

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def _redis(self) -> Optional[Redis]:
        if self._redis_factory is None:
            return None
        return await self._redis_factory()

    async def get(self, key: str) -> Optional[str]:
        redis_client = await self._redis()
        if redis_client:
            try:
                return await redis_client.get(self._key(key))
            except RedisError as e:
                logger.warning(f"Redis read failed for {key}, using memory: {e}")
        return self._memory_get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """
        Store a value.

        Raises:
            StorageQuotaError: If the backend is out of memory
        """
        redis_client = await self._redis()
        if redis_client:
            try:
                await redis_client.set(self._key(key), value, ex=ttl_seconds)
                return
            except ResponseError as e:
                if str(e).startswith("OOM"):
                    raise StorageQuotaError(str(e)) from e
                logger.warning(f"Redis write failed for {key}, using memory: {e}")
            except RedisError as e:
                logger.warning(f"Redis write failed for {key}, using memory: {e}")
        self._memory_set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        redis_client = await self._redis()
        if redis_client:
            try:
                await redis_client.delete(self._key(key))
            except RedisError as e:
                logger.warning(f"Redis delete failed for {key}: {e}")
        self._memory.pop(key, None)

    async def ping(self) -> bool:
        """True when Redis answers; False means values live in process memory."""
        redis_client = await self._redis()
        if redis_client is None:
            return False
        try:
            return bool(await redis_client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() > expires_at:
            del self._memory[key]
            return None
        return value

    def _memory_set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        if self.max_memory_bytes is not None:
            used = sum(len(v) for k, (v, _) in self._memory.items() if k != key)
            if used + len(value) > self.max_memory_bytes:
                raise StorageQuotaError(
                    f"Memory storage quota exceeded ({used + len(value)} > {self.max_memory_bytes})"
                )
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._memory[key] = (value, expires_at)
