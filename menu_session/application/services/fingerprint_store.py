"""
Fingerprint Store
Persisted fingerprint records with 24h inactivity TTL, auto-blocking and storage-pressure eviction.
"""
import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional

from menu_session.core.config import Settings, get_settings
from menu_session.core.exceptions import StorageQuotaError
from menu_session.domain.schemas.fingerprint import (
    CountEntry,
    FingerprintAnalytics,
    FingerprintEnvelope,
    FingerprintResult,
    StoredFingerprint,
    StoreMetadata,
    utcnow,
)
from menu_session.infrastructure.storage.kv_store import KeyValueStorage

logger = logging.getLogger(__name__)

TOP_N = 10


class FingerprintStore:
    """
    Async store keyed by fingerprint hash.

    The in-memory cache is authoritative for the life of the process; every
    mutation is mirrored to persistent storage as a single envelope. Storage
    failures never surface to callers.
    """

    storage_key = "fingerprints"

    def __init__(
        self,
        storage: KeyValueStorage,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.version = settings.FINGERPRINT_STORE_VERSION
        self.ttl = timedelta(hours=settings.FINGERPRINT_TTL_HOURS)
        self.cleanup_interval = timedelta(hours=settings.FINGERPRINT_CLEANUP_INTERVAL_HOURS)
        self.max_suspicious_activity = settings.RISK.block_threshold
        self._clock = clock
        self._cache: dict[str, StoredFingerprint] = {}
        self._last_cleanup: datetime = clock()
        self._total_generated = 0
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # ==========================================
    # LIFECYCLE
    # ==========================================

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            try:
                raw = await self.storage.get(self.storage_key)
                if raw:
                    envelope = FingerprintEnvelope.model_validate_json(raw)
                    if envelope.metadata.version != self.version:
                        logger.info(
                            f"Fingerprint store version {envelope.metadata.version} != {self.version}, resetting"
                        )
                        self._reset()
                    else:
                        self._cache = dict(envelope.fingerprints)
                        self._last_cleanup = envelope.metadata.last_cleanup
                        self._total_generated = envelope.metadata.total_generated
            except Exception as e:
                logger.warning(f"Failed to load fingerprint store, starting empty: {e}")
                self._reset()
            self._initialized = True

    def _reset(self) -> None:
        self._cache = {}
        self._last_cleanup = self._clock()
        self._total_generated = 0

    async def _maybe_cleanup(self) -> None:
        now = self._clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            removed = self._evict_older_than(now - self.ttl)
            self._last_cleanup = now
            logger.info(f"Scheduled fingerprint cleanup removed {removed} records")
            await self._persist()

    async def _ready(self) -> None:
        await self._ensure_initialized()
        await self._maybe_cleanup()

    async def _persist(self) -> None:
        try:
            await self.storage.set(self.storage_key, self._serialize())
        except StorageQuotaError as e:
            logger.warning(f"Fingerprint storage full ({e}), running emergency cleanup")
            self._emergency_cleanup()
            try:
                await self.storage.set(self.storage_key, self._serialize())
            except Exception as retry_error:
                logger.error(f"Fingerprint store kept in memory only: {retry_error}")
        except Exception as e:
            logger.error(f"Failed to persist fingerprint store, kept in memory: {e}")

    def _serialize(self) -> str:
        envelope = FingerprintEnvelope(
            fingerprints=self._cache,
            metadata=StoreMetadata(
                last_cleanup=self._last_cleanup,
                total_generated=self._total_generated,
                version=self.version,
            ),
        )
        return envelope.model_dump_json(by_alias=True)

    def _emergency_cleanup(self) -> int:
        """Drop the oldest half of the records by last_seen."""
        records = sorted(self._cache.values(), key=lambda r: r.last_seen)
        to_remove = records[: len(records) // 2]
        for record in to_remove:
            del self._cache[record.hash]
        logger.warning(f"Emergency cleanup removed {len(to_remove)} fingerprints")
        return len(to_remove)

    def _evict_older_than(self, cutoff: datetime) -> int:
        stale = [h for h, r in self._cache.items() if r.last_seen < cutoff]
        for fingerprint_hash in stale:
            del self._cache[fingerprint_hash]
        return len(stale)

    def _is_stale(self, record: StoredFingerprint) -> bool:
        return self._clock() - record.last_seen > self.ttl

    # ==========================================
    # OPERATIONS
    # ==========================================

    async def get(self, fingerprint_hash: str) -> Optional[StoredFingerprint]:
        """Return the record, or None when absent or inactive for longer than the TTL."""
        await self._ready()
        record = self._cache.get(fingerprint_hash)
        if record is None:
            return None
        if self._is_stale(record):
            del self._cache[fingerprint_hash]
            await self._persist()
            return None
        return record.model_copy(deep=True)

    async def set(self, record: StoredFingerprint) -> None:
        await self._ready()
        self._cache[record.hash] = record.model_copy(deep=True)
        await self._persist()

    async def update(self, fingerprint_hash: str, **changes) -> Optional[StoredFingerprint]:
        """Merge changes into an existing record; last_seen is always refreshed."""
        await self._ready()
        existing = self._cache.get(fingerprint_hash)
        if existing is None:
            return None
        updated = existing.model_copy(update={**changes, "last_seen": self._clock()})
        self._cache[fingerprint_hash] = updated
        await self._persist()
        return updated.model_copy(deep=True)

    async def delete(self, fingerprint_hash: str) -> None:
        await self._ready()
        if self._cache.pop(fingerprint_hash, None) is not None:
            await self._persist()

    async def get_all(self) -> list[StoredFingerprint]:
        await self._ready()
        return [record.model_copy(deep=True) for record in self._cache.values()]

    async def record_seen(self, result: FingerprintResult) -> StoredFingerprint:
        """Create the record for a freshly generated fingerprint, or refresh it."""
        existing = await self.get(result.hash)
        if existing is None:
            now = self._clock()
            record = StoredFingerprint(
                hash=result.hash,
                device_info=result.device_info,
                confidence=result.confidence,
                created_at=now,
                last_seen=now,
            )
            self._total_generated += 1
            await self.set(record)
            return record
        return await self.update(
            result.hash, device_info=result.device_info, confidence=result.confidence
        )

    async def increment_usage(self, fingerprint_hash: str) -> Optional[StoredFingerprint]:
        record = await self.get(fingerprint_hash)
        if record is None:
            return None
        return await self.update(fingerprint_hash, usage_count=record.usage_count + 1)

    async def increment_suspicious_activity(
        self, fingerprint_hash: str
    ) -> Optional[StoredFingerprint]:
        """Bump the suspicion counter; reaching the maximum blocks the fingerprint."""
        record = await self.get(fingerprint_hash)
        if record is None:
            return None

        new_count = record.suspicious_activity + 1
        changes: dict = {"suspicious_activity": new_count}
        if new_count >= self.max_suspicious_activity and not record.is_blocked:
            changes["is_blocked"] = True
            changes["block_reason"] = "suspicious_activity_threshold"
            logger.warning(
                f"Fingerprint {fingerprint_hash[:12]} auto-blocked after {new_count} suspicious events"
            )
        return await self.update(fingerprint_hash, **changes)

    async def block(self, fingerprint_hash: str, reason: str) -> Optional[StoredFingerprint]:
        updated = await self.update(fingerprint_hash, is_blocked=True, block_reason=reason)
        if updated is not None:
            logger.warning(f"Fingerprint {fingerprint_hash[:12]} blocked: {reason}")
        return updated

    async def unblock(self, fingerprint_hash: str) -> Optional[StoredFingerprint]:
        """Explicit unblock also clears the suspicion counter."""
        updated = await self.update(
            fingerprint_hash, is_blocked=False, block_reason=None, suspicious_activity=0
        )
        if updated is not None:
            logger.info(f"Fingerprint {fingerprint_hash[:12]} unblocked")
        return updated

    async def cleanup(self, older_than: datetime) -> int:
        """Remove every record last seen before older_than."""
        await self._ensure_initialized()
        removed = self._evict_older_than(older_than)
        self._last_cleanup = self._clock()
        if removed:
            logger.info(f"Fingerprint cleanup: {removed} removed")
        await self._persist()
        return removed

    async def get_analytics(self) -> FingerprintAnalytics:
        await self._ready()
        records = list(self._cache.values())
        if not records:
            return FingerprintAnalytics()

        def top(values: list[str]) -> list[CountEntry]:
            return [CountEntry(value=v, count=c) for v, c in Counter(values).most_common(TOP_N)]

        return FingerprintAnalytics(
            total_fingerprints=len(records),
            blocked_count=sum(1 for r in records if r.is_blocked),
            suspicious_activity=sum(r.suspicious_activity for r in records),
            average_confidence=sum(r.confidence for r in records) / len(records),
            top_user_agents=top([r.device_info.user_agent for r in records]),
            top_resolutions=top([r.device_info.screen_resolution for r in records]),
            top_time_zones=top([r.device_info.time_zone for r in records]),
        )

    async def clear(self) -> None:
        self._reset()
        self._initialized = True
        try:
            await self.storage.delete(self.storage_key)
        except Exception as e:
            logger.error(f"Failed to clear persisted fingerprints: {e}")
