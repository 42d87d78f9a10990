"""
Fingerprint store unit tests
"""
from datetime import timedelta

import pytest

from menu_session.application.services.fingerprint_store import FingerprintStore
from menu_session.core.exceptions import StorageQuotaError
from menu_session.domain.schemas.fingerprint import DeviceInfo, FingerprintResult
from menu_session.infrastructure.storage.kv_store import KeyValueStorage


def make_result(fingerprint: str, confidence: float = 0.9, user_agent: str = "Safari") -> FingerprintResult:
    return FingerprintResult(
        hash=fingerprint,
        device_info=DeviceInfo(
            user_agent=user_agent,
            screen_resolution="390x844",
            time_zone="America/Sao_Paulo",
            language="pt-BR",
            canvas_hash="c" * 64,
            webgl_hash="d" * 64,
        ),
        confidence=confidence,
    )


class FullOnceStorage(KeyValueStorage):
    """Refuses the next write once armed, like Redis answering OOM."""

    def __init__(self):
        super().__init__(redis_factory=None, prefix="test")
        self.armed = False

    async def set(self, key, value, ttl_seconds=None):
        if self.armed:
            self.armed = False
            raise StorageQuotaError("OOM command not allowed")
        await super().set(key, value, ttl_seconds)


@pytest.fixture
def store(storage, settings, clock):
    return FingerprintStore(storage, settings, clock=clock)


class TestFingerprintStore:
    @pytest.mark.asyncio
    async def test_record_seen_creates_then_refreshes(self, store, clock, make_fingerprint):
        fingerprint = make_fingerprint("phone-1")

        created = await store.record_seen(make_result(fingerprint))
        clock.advance(minutes=10)
        refreshed = await store.record_seen(make_result(fingerprint, confidence=0.5))

        assert created.usage_count == 0
        assert refreshed.confidence == 0.5
        assert refreshed.created_at == created.created_at
        assert refreshed.last_seen > created.last_seen

    @pytest.mark.asyncio
    async def test_record_inactive_past_ttl_is_gone(self, store, clock, make_fingerprint):
        fingerprint = make_fingerprint("phone-1")
        await store.record_seen(make_result(fingerprint))

        clock.advance(hours=23)
        assert await store.get(fingerprint) is not None

        clock.advance(hours=24, minutes=1)
        assert await store.get(fingerprint) is None

    @pytest.mark.asyncio
    async def test_increment_usage(self, store, make_fingerprint):
        fingerprint = make_fingerprint("phone-1")
        await store.record_seen(make_result(fingerprint))

        await store.increment_usage(fingerprint)
        record = await store.increment_usage(fingerprint)

        assert record.usage_count == 2
        assert await store.increment_usage(make_fingerprint("unknown")) is None

    @pytest.mark.asyncio
    async def test_auto_block_at_threshold(self, store, make_fingerprint):
        fingerprint = make_fingerprint("phone-1")
        await store.record_seen(make_result(fingerprint))

        for _ in range(9):
            record = await store.increment_suspicious_activity(fingerprint)
        assert record.is_blocked is False

        record = await store.increment_suspicious_activity(fingerprint)
        assert record.suspicious_activity == 10
        assert record.is_blocked is True
        assert record.block_reason == "suspicious_activity_threshold"

    @pytest.mark.asyncio
    async def test_unblock_resets_suspicion(self, store, make_fingerprint):
        fingerprint = make_fingerprint("phone-1")
        await store.record_seen(make_result(fingerprint))
        for _ in range(10):
            await store.increment_suspicious_activity(fingerprint)

        record = await store.unblock(fingerprint)

        assert record.is_blocked is False
        assert record.block_reason is None
        assert record.suspicious_activity == 0

    @pytest.mark.asyncio
    async def test_records_survive_a_new_instance(self, storage, settings, clock, make_fingerprint):
        fingerprint = make_fingerprint("phone-1")
        await FingerprintStore(storage, settings, clock=clock).record_seen(make_result(fingerprint))

        reloaded = FingerprintStore(storage, settings, clock=clock)

        assert (await reloaded.get(fingerprint)).hash == fingerprint

    @pytest.mark.asyncio
    async def test_version_change_discards_persisted_records(
        self, storage, settings, clock, make_fingerprint
    ):
        fingerprint = make_fingerprint("phone-1")
        await FingerprintStore(storage, settings, clock=clock).record_seen(make_result(fingerprint))

        upgraded = FingerprintStore(
            storage, settings.model_copy(update={"FINGERPRINT_STORE_VERSION": "2.0.0"}), clock=clock
        )

        assert await upgraded.get(fingerprint) is None

    @pytest.mark.asyncio
    async def test_corrupted_storage_starts_empty(self, storage, settings, clock, make_fingerprint):
        await storage.set(FingerprintStore.storage_key, "{not json")

        store = FingerprintStore(storage, settings, clock=clock)

        assert await store.get_all() == []

    @pytest.mark.asyncio
    async def test_storage_full_evicts_oldest_half(self, settings, clock, make_fingerprint):
        full_storage = FullOnceStorage()
        store = FingerprintStore(full_storage, settings, clock=clock)
        for i in range(4):
            await store.record_seen(make_result(make_fingerprint(f"phone-{i}")))
            clock.advance(minutes=1)

        full_storage.armed = True
        await store.record_seen(make_result(make_fingerprint("phone-new")))

        remaining = {record.hash for record in await store.get_all()}
        assert len(remaining) == 3
        assert make_fingerprint("phone-new") in remaining
        assert make_fingerprint("phone-0") not in remaining
        assert make_fingerprint("phone-1") not in remaining

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_records(self, store, clock, make_fingerprint):
        await store.record_seen(make_result(make_fingerprint("old")))
        clock.advance(hours=2)
        await store.record_seen(make_result(make_fingerprint("new")))

        removed = await store.cleanup(clock.now - timedelta(hours=1))

        assert removed == 1
        assert [r.hash for r in await store.get_all()] == [make_fingerprint("new")]

    @pytest.mark.asyncio
    async def test_analytics(self, store, make_fingerprint):
        await store.record_seen(make_result(make_fingerprint("a"), confidence=1.0))
        await store.record_seen(make_result(make_fingerprint("b"), confidence=0.5, user_agent="Chrome"))
        await store.record_seen(make_result(make_fingerprint("c"), confidence=0.6, user_agent="Chrome"))
        await store.increment_suspicious_activity(make_fingerprint("a"))
        await store.increment_suspicious_activity(make_fingerprint("b"))
        await store.increment_suspicious_activity(make_fingerprint("b"))
        await store.block(make_fingerprint("c"), "manual")

        analytics = await store.get_analytics()

        assert analytics.total_fingerprints == 3
        assert analytics.blocked_count == 1
        assert analytics.suspicious_activity == 3
        assert analytics.average_confidence == pytest.approx(0.7)
        assert analytics.top_user_agents[0].value == "Chrome"
        assert analytics.top_user_agents[0].count == 2
