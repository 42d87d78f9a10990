"""
Contextual session manager against the fake ordering backend
"""
from datetime import timedelta

import pytest

from menu_session.application.services.heartbeat import TaskScheduler
from menu_session.application.services.session_manager import ContextualSessionManager
from menu_session.core.exceptions import (
    FingerprintBlockedError,
    InvalidFingerprintError,
    SecurityError,
    SessionStateError,
    StoreClosedError,
    TableUnavailableError,
    TransientBackendError,
)
from menu_session.domain.schemas.fingerprint import DeviceInfo, FingerprintResult
from menu_session.domain.schemas.session import SessionContext, SessionState


def table_context(fingerprint: str, table_id: str = "t1", store_id: str = "store-1") -> SessionContext:
    return SessionContext(store_id=store_id, table_id=table_id, fingerprint=fingerprint)


def delivery_context(fingerprint: str, store_id: str = "store-1") -> SessionContext:
    return SessionContext(store_id=store_id, is_delivery=True, fingerprint=fingerprint)


def seen(fingerprint: str) -> FingerprintResult:
    return FingerprintResult(
        hash=fingerprint,
        device_info=DeviceInfo(
            user_agent="Safari",
            screen_resolution="390x844",
            time_zone="America/Sao_Paulo",
            language="pt-BR",
            canvas_hash="c" * 64,
            webgl_hash="d" * 64,
        ),
        confidence=1.0,
    )


@pytest.fixture
def manager(container):
    return container.session_manager


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_table_session(self, manager, backend, device):
        session = await manager.create_session(table_context(device))

        assert session.id.startswith("session_")
        assert session.state == SessionState.ACTIVE_GUEST
        assert session.context.type == "table"
        assert session.context.table_id == "t1"
        assert session.expires_at - session.created_at == timedelta(minutes=240)
        assert backend.sessions[session.id]["storeId"] == "store-1"
        assert "state" not in backend.sessions[session.id]

    @pytest.mark.asyncio
    async def test_delivery_session_is_shorter(self, manager, device):
        session = await manager.create_session(delivery_context(device))

        assert session.context.type == "delivery"
        assert session.context.table_id is None
        assert session.expires_at - session.created_at == timedelta(minutes=120)

    @pytest.mark.asyncio
    async def test_creation_counts_device_usage(self, manager, container, device):
        await container.fingerprint_store.record_seen(seen(device))

        await manager.create_session(table_context(device))

        assert (await container.fingerprint_store.get(device)).usage_count == 1

    @pytest.mark.asyncio
    async def test_same_context_reuses_the_session(self, manager, backend, device):
        first = await manager.create_session(table_context(device))
        second = await manager.create_session(table_context(device))

        assert second.id == first.id
        assert len(backend.sessions) == 1

    @pytest.mark.asyncio
    async def test_device_session_cap(self, manager, make_fingerprint, device):
        await manager.create_session(table_context(device, "t1"))
        await manager.create_session(table_context(device, "t2"))
        await manager.create_session(delivery_context(device))

        with pytest.raises(SecurityError):
            await manager.create_session(delivery_context(device, store_id="store-2"))

        other = await manager.create_session(delivery_context(make_fingerprint("other")))
        assert other.fingerprint == make_fingerprint("other")

    @pytest.mark.asyncio
    async def test_closed_store(self, manager, backend, device):
        backend.store_status["store-1"] = {"isOpen": False, "status": "closed", "message": "Fechado"}

        with pytest.raises(StoreClosedError) as exc_info:
            await manager.create_session(table_context(device))

        assert exc_info.value.detail == "Fechado"
        assert backend.sessions == {}

    @pytest.mark.asyncio
    async def test_inactive_table(self, manager, backend, device):
        backend.table_status["t1"] = {"isActive": False}

        with pytest.raises(TableUnavailableError):
            await manager.create_session(table_context(device))

    @pytest.mark.asyncio
    async def test_full_table(self, manager, backend, device):
        backend.table_status["t1"] = {"isActive": True, "currentSessions": 10}

        with pytest.raises(TableUnavailableError) as exc_info:
            await manager.create_session(table_context(device))

        assert exc_info.value.detail == "Limite de sessões por mesa excedido"

    @pytest.mark.asyncio
    async def test_delivery_skips_table_checks(self, manager, backend, device):
        backend.table_status["t1"] = {"isActive": False}

        session = await manager.create_session(delivery_context(device))

        assert session.context.type == "delivery"

    @pytest.mark.asyncio
    async def test_blocked_device(self, manager, container, device):
        await container.fingerprint_store.record_seen(seen(device))
        await container.fingerprint_store.block(device, "manual")

        with pytest.raises(FingerprintBlockedError):
            await manager.create_session(table_context(device))

    @pytest.mark.asyncio
    async def test_malformed_fingerprint(self, manager):
        with pytest.raises(InvalidFingerprintError):
            await manager.create_session(table_context("not-a-fingerprint"))

    @pytest.mark.asyncio
    async def test_backend_offline(self, manager, backend, device):
        backend.offline = True

        with pytest.raises(TransientBackendError):
            await manager.create_session(table_context(device))


class TestValidation:
    @pytest.mark.asyncio
    async def test_valid_session(self, manager, device):
        session = await manager.create_session(table_context(device))

        result = await manager.validate_session(session.id)

        assert result.is_valid is True
        assert result.session.state == SessionState.ACTIVE_GUEST

    @pytest.mark.asyncio
    async def test_session_removed_server_side_is_dropped(self, manager, backend, device):
        session = await manager.create_session(table_context(device))
        events = []
        manager.add_event_listener("session_expired", events.append)
        backend.sessions.pop(session.id)

        result = await manager.validate_session(session.id)

        assert result.is_valid is False
        assert result.retryable is False
        assert manager.get_session(session.id) is None
        assert [e.session_id for e in events] == [session.id]

    @pytest.mark.asyncio
    async def test_outage_keeps_the_session(self, manager, backend, device):
        session = await manager.create_session(table_context(device))
        backend.offline = True

        result = await manager.validate_session(session.id)

        assert result.is_valid is False
        assert result.retryable is True
        assert result.session.id == session.id
        assert manager.get_session(session.id) is not None

    @pytest.mark.asyncio
    async def test_heartbeat_start_and_stop(self, manager, device):
        session = await manager.create_session(table_context(device))

        await manager.start_monitoring(session.id)
        assert manager.is_monitoring(session.id) is True

        await manager.stop_monitoring(session.id)
        assert manager.is_monitoring(session.id) is False

    @pytest.mark.asyncio
    async def test_expire_clears_local_state_even_when_offline(self, manager, backend, device):
        session = await manager.create_session(table_context(device))
        await manager.start_monitoring(session.id)
        backend.offline = True

        with pytest.raises(TransientBackendError):
            await manager.expire_session(session.id)

        assert manager.get_session(session.id) is None
        assert manager.is_monitoring(session.id) is False

    @pytest.mark.asyncio
    async def test_expire_removes_backend_session(self, manager, backend, device):
        session = await manager.create_session(table_context(device))
        events = []
        manager.add_event_listener("session_terminated", events.append)

        await manager.expire_session(session.id)

        assert session.id not in backend.sessions
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_removed_listener_is_not_called(self, manager, device):
        session = await manager.create_session(table_context(device))
        events = []
        manager.add_event_listener("session_terminated", events.append)
        manager.remove_event_listener("session_terminated", events.append)

        await manager.expire_session(session.id)

        assert events == []


class TestMutations:
    @pytest.mark.asyncio
    async def test_associate_customer(self, manager, backend, device):
        session = await manager.create_session(table_context(device))

        updated = await manager.associate_customer(session.id, "cust-42")

        assert updated.state == SessionState.ACTIVE_AUTHENTICATED
        assert updated.is_authenticated is True
        assert backend.sessions[session.id]["customerId"] == "cust-42"

    @pytest.mark.asyncio
    async def test_associate_same_customer_twice_is_a_no_op(self, manager, backend, device):
        session = await manager.create_session(table_context(device))
        await manager.associate_customer(session.id, "cust-42")
        calls_before = len(backend.calls)

        again = await manager.associate_customer(session.id, "cust-42")

        assert again.customer_id == "cust-42"
        assert len(backend.calls) == calls_before

    @pytest.mark.asyncio
    async def test_associate_another_customer_conflicts(self, manager, device):
        session = await manager.create_session(table_context(device))
        await manager.associate_customer(session.id, "cust-42")

        with pytest.raises(SessionStateError):
            await manager.associate_customer(session.id, "cust-99")

    @pytest.mark.asyncio
    async def test_activity_update_queues_while_offline(self, manager, container, backend, device):
        session = await manager.create_session(table_context(device))
        backend.offline = True

        await manager.update_activity(session.id)
        assert len(container.offline_queue) == 1

        backend.offline = False
        assert await container.offline_queue.flush() == 1
        assert backend.calls[-1] == ("POST", f"/sessions/{session.id}/activity")

    @pytest.mark.asyncio
    async def test_extension_is_capped(self, manager, backend, device):
        session = await manager.create_session(table_context(device))

        extended = await manager.extend_session(session.id, 300)

        assert extended.expires_at - extended.created_at == timedelta(minutes=480)
        assert backend.sessions[session.id]["expiresAt"] == extended.expires_at.isoformat()

    @pytest.mark.asyncio
    async def test_order_count(self, manager, backend, device):
        session = await manager.create_session(table_context(device))

        await manager.increment_order_count(session.id, 30.0)
        updated = await manager.increment_order_count(session.id, 12.5)

        assert updated.order_count == 2
        assert updated.total_spent == pytest.approx(42.5)
        assert backend.sessions[session.id]["orderCount"] == 2

    @pytest.mark.asyncio
    async def test_suspicious_activity_blocks_and_drops_sessions(self, manager, container, device):
        await container.fingerprint_store.record_seen(seen(device))
        session = await manager.create_session(table_context(device))

        results = [
            await manager.record_suspicious_activity(device, "tampering") for _ in range(10)
        ]

        assert results[0] is False
        assert results[-1] is True
        assert (await container.fingerprint_store.get(device)).is_blocked is True
        assert manager.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_suspicious_activity_for_unknown_device(self, manager, device):
        assert await manager.record_suspicious_activity(device, "tampering") is False


class TestRecoveryAndHousekeeping:
    @pytest.mark.asyncio
    async def test_recover_from_backend_in_a_fresh_manager(self, container, settings, device):
        session = await container.session_manager.create_session(table_context(device))
        fresh = ContextualSessionManager(
            backend=container.session_api,
            store_access=container.store_api,
            fingerprint_store=container.fingerprint_store,
            detection=container.detection,
            scheduler=TaskScheduler(),
            settings=settings,
        )

        recovered = await fresh.recover_session("store-1", device)

        assert recovered.id == session.id
        assert recovered.state == SessionState.ACTIVE_GUEST
        assert fresh.get_session(session.id) is not None

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, manager, device):
        assert await manager.recover_session("store-1", device) is None

    @pytest.mark.asyncio
    async def test_recovery_gives_up_while_offline(self, manager, backend, device):
        backend.offline = True

        assert await manager.recover_session("store-1", device) is None

    @pytest.mark.asyncio
    async def test_cleanup_and_stats(self, container, settings, clock, device, make_fingerprint):
        manager = ContextualSessionManager(
            backend=container.session_api,
            store_access=container.store_api,
            fingerprint_store=container.fingerprint_store,
            detection=container.detection,
            scheduler=TaskScheduler(),
            settings=settings,
            clock=clock,
        )
        await manager.create_session(delivery_context(device))
        table_session = await manager.create_session(table_context(make_fingerprint("other")))
        await manager.associate_customer(table_session.id, "cust-42")

        clock.advance(minutes=150)
        stats = manager.get_session_stats("store-1")

        assert stats.total == 2
        assert stats.expired == 1
        assert stats.authenticated == 1
        assert stats.average_duration_minutes == 150
        assert await manager.cleanup_expired_sessions() == 1
        assert manager.get_session_stats("store-1").total == 1

    @pytest.mark.asyncio
    async def test_active_sessions_come_from_backend(self, manager, device, make_fingerprint):
        await manager.create_session(table_context(device))
        await manager.create_session(delivery_context(make_fingerprint("other"), store_id="store-2"))

        sessions = await manager.get_active_sessions("store-1")

        assert [s.fingerprint for s in sessions] == [device]
