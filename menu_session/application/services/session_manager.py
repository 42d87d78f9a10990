"""
Contextual Session Manager
Sessions bound to a store and a table/delivery context, with lifecycle state, heartbeat and recovery.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from uuid6 import uuid7

from menu_session.application.services.fingerprint_detection import FingerprintDetectionService
from menu_session.application.services.fingerprint_store import FingerprintStore
from menu_session.application.services.heartbeat import TaskScheduler
from menu_session.application.services.offline_queue import OfflineRequestQueue
from menu_session.core.config import Settings, get_settings
from menu_session.core.exceptions import (
    FingerprintBlockedError,
    InvalidFingerprintError,
    SecurityError,
    SessionExpiredError,
    SessionStateError,
    StoreClosedError,
    TableUnavailableError,
    TransientBackendError,
)
from menu_session.domain.schemas.fingerprint import utcnow
from menu_session.domain.schemas.session import (
    ACTIVE_STATES,
    ALLOWED_TRANSITIONS,
    ContextualSession,
    SessionContext,
    SessionState,
    SessionStats,
    SessionValidationResult,
    StoreSettings,
    StoreStatus,
    TableStatus,
)

logger = logging.getLogger(__name__)


class SessionBackend(Protocol):
    """Server-side session registry."""

    async def create_session(self, session: ContextualSession) -> ContextualSession: ...

    async def validate_session(self, session_id: str) -> SessionValidationResult: ...

    async def associate_customer(self, session_id: str, customer_id: str) -> None: ...

    async def update_activity(self, session_id: str) -> None: ...

    async def update_session(self, session_id: str, fields: dict) -> None: ...

    async def expire_session(self, session_id: str) -> None: ...

    async def get_active_sessions(self, store_id: str) -> list[ContextualSession]: ...


class StoreAccessBackend(Protocol):
    """Store and table availability."""

    async def get_store_status(self, store_id: str) -> StoreStatus: ...

    async def get_table_status(self, store_id: str, table_id: str) -> TableStatus: ...

    async def get_store_settings(self, store_id: str) -> StoreSettings: ...


@dataclass
class SessionEvent:
    type: str
    session_id: str
    store_id: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict = field(default_factory=dict)


SessionListener = Callable[[SessionEvent], None]


class ContextualSessionManager:
    """
    Process-wide registry of contextual sessions.

    Local state mirrors the backend: the backend decides validity, this
    manager tracks lifecycle state, heartbeats and per-device limits.
    """

    def __init__(
        self,
        backend: SessionBackend,
        store_access: StoreAccessBackend,
        fingerprint_store: FingerprintStore,
        detection: FingerprintDetectionService,
        scheduler: TaskScheduler,
        settings: Optional[Settings] = None,
        offline_queue: Optional[OfflineRequestQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.backend = backend
        self.store_access = store_access
        self.fingerprint_store = fingerprint_store
        self.detection = detection
        self.scheduler = scheduler
        self.offline_queue = offline_queue
        self._clock = clock

        self.table_duration = timedelta(minutes=settings.SESSION_TABLE_DURATION_MINUTES)
        self.delivery_duration = timedelta(minutes=settings.SESSION_DELIVERY_DURATION_MINUTES)
        self.max_duration = timedelta(minutes=settings.SESSION_MAX_DURATION_MINUTES)
        self.activity_timeout = timedelta(minutes=settings.SESSION_ACTIVITY_TIMEOUT_MINUTES)
        self.max_per_fingerprint = settings.SESSION_MAX_PER_FINGERPRINT
        self.max_per_table = settings.SESSION_MAX_PER_TABLE
        self.heartbeat_seconds = settings.SESSION_HEARTBEAT_SECONDS

        self._sessions: dict[str, ContextualSession] = {}
        self._listeners: dict[str, list[SessionListener]] = {}

    # ==========================================
    # STATE
    # ==========================================

    @staticmethod
    def _transition(session: ContextualSession, new_state: SessionState) -> ContextualSession:
        if session.state == new_state:
            return session
        if new_state not in ALLOWED_TRANSITIONS[session.state]:
            raise SessionStateError(
                f"Transição inválida: {session.state.value} -> {new_state.value}"
            )
        return session.model_copy(update={"state": new_state})

    @staticmethod
    def _ending_state(session: ContextualSession, preferred: SessionState) -> SessionState:
        if preferred in ALLOWED_TRANSITIONS[session.state]:
            return preferred
        return SessionState.TERMINATED

    def get_session(self, session_id: str) -> Optional[ContextualSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    def _require_active(self, session_id: str) -> ContextualSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionExpiredError("Sessão não encontrada")
        if session.is_expired(self._clock()):
            raise SessionExpiredError("Sessão inválida ou expirada")
        if session.state not in ACTIVE_STATES:
            raise SessionStateError()
        return session

    def _live_sessions(self) -> list[ContextualSession]:
        now = self._clock()
        return [s for s in self._sessions.values() if not s.is_expired(now)]

    def _heartbeat_name(self, session_id: str) -> str:
        return f"session-heartbeat:{session_id}"

    async def _drop_local(
        self, session_id: str, end_state: SessionState, event: str, reason: Optional[str] = None
    ) -> Optional[ContextualSession]:
        await self.stop_monitoring(session_id)
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        ended = session.model_copy(update={"state": self._ending_state(session, end_state)})
        self._emit(
            event,
            SessionEvent(
                type=event,
                session_id=session_id,
                store_id=session.store_id,
                metadata={"reason": reason} if reason else {},
            ),
        )
        return ended

    # ==========================================
    # CREATION
    # ==========================================

    async def _check_fingerprint(self, fingerprint: str) -> None:
        validation = await self.detection.validate_fingerprint(fingerprint)
        if validation.is_blocked:
            raise FingerprintBlockedError()
        if not validation.is_valid:
            raise InvalidFingerprintError(validation.reason or "Fingerprint inválido")

    async def _check_store_access(self, context: SessionContext) -> None:
        store = await self.store_access.get_store_status(context.store_id)
        if not store.is_open or store.status == "closed":
            raise StoreClosedError(store.message or "Loja fechada no momento")

        ordering = context.ordering_context
        if ordering.type != "table":
            return

        table = await self.store_access.get_table_status(context.store_id, ordering.table_id)
        if not table.is_active:
            raise TableUnavailableError("Mesa inativa ou inexistente")

        local_count = sum(
            1
            for s in self._live_sessions()
            if s.store_id == context.store_id and s.context.table_id == ordering.table_id
        )
        capacity = table.max_sessions or self.max_per_table
        if max(local_count, table.current_sessions) >= capacity:
            raise TableUnavailableError("Limite de sessões por mesa excedido")

    async def create_session(self, context: SessionContext) -> ContextualSession:
        """
        Open a session for a device in a store.

        An unexpired session for the same store, device and ordering context
        is reused instead of creating a new one.

        Raises:
            InvalidFingerprintError: Fingerprint failed validation
            FingerprintBlockedError: Fingerprint is blocked
            SecurityError: Device already holds the maximum number of sessions
            StoreClosedError: Store is not taking orders
            TableUnavailableError: Table inactive or full
            TransientBackendError: Backend unreachable
        """
        await self._check_fingerprint(context.fingerprint)

        ordering = context.ordering_context
        device_sessions = [s for s in self._live_sessions() if s.fingerprint == context.fingerprint]
        for existing in device_sessions:
            if existing.store_id == context.store_id and existing.context == ordering:
                logger.info(f"Reusing session {existing.id} for store {context.store_id}")
                return await self.update_activity(existing.id)

        if len(device_sessions) >= self.max_per_fingerprint:
            raise SecurityError("Limite de sessões por dispositivo excedido")

        await self._check_store_access(context)

        now = self._clock()
        duration = self.delivery_duration if ordering.type == "delivery" else self.table_duration
        session = ContextualSession(
            id=f"session_{uuid7().hex}",
            store_id=context.store_id,
            context=ordering,
            fingerprint=context.fingerprint,
            customer_id=context.customer_id,
            is_authenticated=bool(context.customer_id),
            last_activity=now,
            created_at=now,
            expires_at=now + duration,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        session = self._transition(session, SessionState.PENDING_VALIDATION)

        created = await self.backend.create_session(session)
        created = self._transition(
            created.model_copy(update={"state": SessionState.PENDING_VALIDATION}),
            SessionState.ACTIVE_AUTHENTICATED if created.customer_id else SessionState.ACTIVE_GUEST,
        )
        self._sessions[created.id] = created
        await self.fingerprint_store.increment_usage(context.fingerprint)

        self._emit(
            "session_created",
            SessionEvent(
                type="session_created",
                session_id=created.id,
                store_id=created.store_id,
                metadata={
                    "isDelivery": ordering.type == "delivery",
                    "tableId": ordering.table_id,
                    "isAuthenticated": created.is_authenticated,
                },
            ),
        )
        logger.info(f"Session {created.id} created for store {created.store_id} ({ordering.type})")
        return created.model_copy(deep=True)

    # ==========================================
    # VALIDATION / HEARTBEAT
    # ==========================================

    async def validate_session(self, session_id: str) -> SessionValidationResult:
        """
        Re-check a session against the backend.

        A definitive invalid answer drops the local session and stops its
        heartbeat. A transient failure keeps it and returns retryable=True.
        """
        local = self._sessions.get(session_id)
        if local is not None and local.is_expired(self._clock()):
            await self._drop_local(session_id, SessionState.EXPIRED, "session_expired", "expired")
            return SessionValidationResult(is_valid=False, reason="Sessão expirada")

        try:
            result = await self.backend.validate_session(session_id)
        except TransientBackendError as e:
            logger.warning(f"Session {session_id} validation deferred: {e.detail}")
            return SessionValidationResult(
                is_valid=False,
                session=local.model_copy(deep=True) if local else None,
                reason=e.detail,
                retryable=True,
            )

        if not result.is_valid:
            await self._drop_local(session_id, SessionState.EXPIRED, "session_expired", result.reason)
            logger.info(f"Session {session_id} invalidated: {result.reason}")
            return SessionValidationResult(is_valid=False, reason=result.reason)

        refreshed = self._adopt(session_id, local, result.session)
        return SessionValidationResult(is_valid=True, session=refreshed.model_copy(deep=True))

    def _adopt(
        self,
        session_id: str,
        local: Optional[ContextualSession],
        remote: Optional[ContextualSession],
    ) -> ContextualSession:
        """Merge the backend's view into local state, keeping the local lifecycle."""
        if remote is None and local is not None:
            return local

        base = remote or local
        state = local.state if local else SessionState.PENDING_VALIDATION
        merged = base.model_copy(update={"id": session_id, "state": state})
        if local is not None and local.customer_id and not merged.customer_id:
            merged = merged.model_copy(
                update={"customer_id": local.customer_id, "is_authenticated": True}
            )
        if merged.state == SessionState.PENDING_VALIDATION:
            merged = self._transition(merged, SessionState.ACTIVE_GUEST)
        if merged.is_authenticated and merged.state == SessionState.ACTIVE_GUEST:
            merged = self._transition(merged, SessionState.ACTIVE_AUTHENTICATED)
        self._sessions[session_id] = merged
        return merged

    async def start_monitoring(self, session_id: str) -> None:
        """Validate the session every heartbeat period until it fails or is stopped."""
        name = self._heartbeat_name(session_id)
        if self.scheduler.is_scheduled(name):
            return

        async def heartbeat() -> bool:
            result = await self.validate_session(session_id)
            return result.is_valid or result.retryable

        await self.scheduler.schedule(name, self.heartbeat_seconds, heartbeat)
        logger.debug(f"Heartbeat started for session {session_id}")

    async def stop_monitoring(self, session_id: str) -> None:
        await self.scheduler.cancel(self._heartbeat_name(session_id))

    def is_monitoring(self, session_id: str) -> bool:
        return self.scheduler.is_scheduled(self._heartbeat_name(session_id))

    def is_active(self, session_id: str) -> bool:
        """Unexpired and used within the activity timeout."""
        session = self._sessions.get(session_id)
        if session is None or session.state not in ACTIVE_STATES:
            return False
        now = self._clock()
        if session.is_expired(now):
            return False
        return now - session.last_activity < self.activity_timeout

    # ==========================================
    # MUTATIONS
    # ==========================================

    async def associate_customer(self, session_id: str, customer_id: str) -> ContextualSession:
        """
        Attach a customer to a session, moving it to active_authenticated.

        Raises:
            SessionExpiredError: Session unknown or expired
            SessionStateError: Session already belongs to another customer
        """
        session = self._require_active(session_id)
        if session.customer_id == customer_id and session.is_authenticated:
            return session.model_copy(deep=True)
        if session.customer_id and session.customer_id != customer_id:
            raise SessionStateError("Sessão já associada a outro cliente")

        await self.backend.associate_customer(session_id, customer_id)

        updated = self._transition(session, SessionState.ACTIVE_AUTHENTICATED).model_copy(
            update={
                "customer_id": customer_id,
                "is_authenticated": True,
                "last_activity": self._clock(),
            }
        )
        self._sessions[session_id] = updated
        self._emit(
            "customer_associated",
            SessionEvent(
                type="customer_associated",
                session_id=session_id,
                store_id=updated.store_id,
                metadata={"customerId": customer_id},
            ),
        )
        logger.info(f"Customer {customer_id} associated with session {session_id}")
        return updated.model_copy(deep=True)

    async def update_activity(self, session_id: str) -> ContextualSession:
        session = self._require_active(session_id)
        updated = session.model_copy(update={"last_activity": self._clock()})
        self._sessions[session_id] = updated

        try:
            await self.backend.update_activity(session_id)
        except TransientBackendError as e:
            if self.offline_queue is None:
                logger.warning(f"Activity update for {session_id} lost: {e.detail}")
            else:
                self.offline_queue.enqueue(
                    f"activity:{session_id}",
                    lambda: self.backend.update_activity(session_id),
                )
        return updated.model_copy(deep=True)

    async def expire_session(self, session_id: str) -> None:
        """
        Terminate a session. Local state is always cleared, even when the
        backend call fails; the backend error is re-raised afterwards.
        """
        try:
            await self.backend.expire_session(session_id)
        finally:
            await self._drop_local(session_id, SessionState.TERMINATED, "session_terminated")
            logger.info(f"Session {session_id} terminated")

    async def extend_session(self, session_id: str, additional_minutes: int) -> ContextualSession:
        """Push expires_at forward; total duration never exceeds the maximum."""
        session = self._require_active(session_id)
        expires_at = session.expires_at or session.created_at + self.table_duration
        current = expires_at - session.created_at
        new_duration = min(current + timedelta(minutes=additional_minutes), self.max_duration)
        new_expires_at = session.created_at + new_duration

        updated = session.model_copy(update={"expires_at": new_expires_at})
        self._sessions[session_id] = updated
        try:
            await self.backend.update_session(session_id, {"expiresAt": new_expires_at.isoformat()})
        except TransientBackendError as e:
            logger.warning(f"Backend not told about extension of {session_id}: {e.detail}")

        self._emit(
            "session_extended",
            SessionEvent(
                type="session_extended",
                session_id=session_id,
                store_id=updated.store_id,
                metadata={
                    "additionalMinutes": additional_minutes,
                    "newExpiresAt": new_expires_at.isoformat(),
                },
            ),
        )
        logger.info(f"Session {session_id} extended by {additional_minutes} minutes")
        return updated.model_copy(deep=True)

    async def increment_order_count(
        self, session_id: str, order_value: float = 0.0
    ) -> Optional[ContextualSession]:
        session = self._sessions.get(session_id)
        if session is None or session.is_expired(self._clock()):
            return None

        updated = session.model_copy(
            update={
                "order_count": session.order_count + 1,
                "total_spent": session.total_spent + order_value,
                "last_activity": self._clock(),
            }
        )
        self._sessions[session_id] = updated
        try:
            await self.backend.update_session(
                session_id,
                {"orderCount": updated.order_count, "totalSpent": updated.total_spent},
            )
        except TransientBackendError as e:
            logger.warning(f"Order count of {session_id} not synced: {e.detail}")
        return updated.model_copy(deep=True)

    async def record_suspicious_activity(self, fingerprint: str, reason: str) -> bool:
        """
        Count a suspicious event for a device and block it when the risk
        engine says so. Returns True when the device ends up blocked.
        """
        record = await self.fingerprint_store.increment_suspicious_activity(fingerprint)
        if record is None:
            return False
        if not record.is_blocked and await self.detection.should_block_fingerprint(fingerprint):
            record = await self.fingerprint_store.block(fingerprint, reason)
        blocked = bool(record and record.is_blocked)

        if blocked:
            for session in [s for s in self._sessions.values() if s.fingerprint == fingerprint]:
                await self._drop_local(
                    session.id, SessionState.TERMINATED, "session_terminated", "fingerprint_blocked"
                )
        return blocked

    # ==========================================
    # QUERIES / RECOVERY
    # ==========================================

    async def get_active_sessions(self, store_id: str) -> list[ContextualSession]:
        now = self._clock()
        sessions = await self.backend.get_active_sessions(store_id)
        return [s for s in sessions if not s.is_expired(now)]

    async def recover_session(
        self, store_id: str, fingerprint: str, session_id: Optional[str] = None
    ) -> Optional[ContextualSession]:
        """
        Resume an unexpired session this device already holds in the store.

        With a session_id only that session is considered, whatever fingerprint
        it was opened with. Local sessions are tried first, then the backend's
        active sessions. Backend outages make recovery give up quietly.
        """
        now = self._clock()

        def belongs(s: ContextualSession) -> bool:
            return s.id == session_id if session_id else s.fingerprint == fingerprint

        candidates = [s for s in self._live_sessions() if s.store_id == store_id and belongs(s)]
        if not candidates:
            try:
                remote = await self.backend.get_active_sessions(store_id)
            except TransientBackendError as e:
                logger.warning(f"Session recovery for store {store_id} skipped: {e.detail}")
                return None
            candidates = [s for s in remote if belongs(s) and not s.is_expired(now)]

        for candidate in sorted(candidates, key=lambda s: s.last_activity, reverse=True):
            result = await self.validate_session(candidate.id)
            if result.is_valid and result.session is not None:
                self._emit(
                    "session_recovered",
                    SessionEvent(type="session_recovered", session_id=candidate.id, store_id=store_id),
                )
                logger.info(f"Session {candidate.id} recovered for store {store_id}")
                return result.session
            if result.retryable and candidate.id in self._sessions:
                return candidate.model_copy(deep=True)
        return None

    def get_session_stats(self, store_id: Optional[str] = None) -> SessionStats:
        now = self._clock()
        sessions = [s for s in self._sessions.values() if store_id is None or s.store_id == store_id]
        if not sessions:
            return SessionStats()

        expired = sum(1 for s in sessions if s.is_expired(now))
        authenticated = sum(1 for s in sessions if s.is_authenticated)
        total_minutes = sum((now - s.created_at).total_seconds() / 60 for s in sessions)
        return SessionStats(
            total=len(sessions),
            active=len(sessions) - expired,
            expired=expired,
            authenticated=authenticated,
            guest=len(sessions) - authenticated,
            average_duration_minutes=round(total_minutes / len(sessions), 2),
        )

    async def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        expired_ids = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for session_id in expired_ids:
            await self._drop_local(session_id, SessionState.EXPIRED, "session_expired", "expired")
        if expired_ids:
            logger.info(f"Session cleanup: {len(expired_ids)} sessions removed")
        return len(expired_ids)

    # ==========================================
    # EVENTS
    # ==========================================

    def add_event_listener(self, event: str, listener: SessionListener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_event_listener(self, event: str, listener: SessionListener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: str, data: SessionEvent) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(data)
            except Exception as e:
                logger.error(f"Session listener for {event} failed: {e}", exc_info=True)

    async def dispose(self) -> None:
        for session_id in list(self._sessions):
            await self.stop_monitoring(session_id)
        self._listeners.clear()
