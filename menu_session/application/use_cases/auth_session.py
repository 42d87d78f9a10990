"""
Auth/Session Facade Use Case
Per-device orchestration of fingerprint, contextual session and customer credential.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException

from menu_session.application.services.audit_service import audit_service
from menu_session.application.services.auth_code import AuthCodeService
from menu_session.application.services.cart_store import CartStore
from menu_session.application.services.credential_store import (
    CookieParams,
    CredentialStore,
    CustomerBackend,
)
from menu_session.application.services.device_identity import DeviceClaims, DeviceIdentity
from menu_session.application.services.device_fingerprint import (
    FingerprintGenerator,
    SubmittedSignalProvider,
)
from menu_session.application.services.fingerprint_detection import FingerprintDetectionService
from menu_session.application.services.fingerprint_store import FingerprintStore
from menu_session.application.services.session_manager import (
    ContextualSessionManager,
    SessionEvent,
    StoreAccessBackend,
)
from menu_session.application.services.whatsapp_auth import WhatsAppAuthService
from menu_session.core.exceptions import (
    BackendRequestError,
    FingerprintBlockedError,
    SessionStateError,
    TransientBackendError,
)
from menu_session.domain.schemas.auth import (
    AuthCodeResult,
    AuthSessionState,
    CustomerUser,
    MagicLinkSessionResult,
    StoredAuth,
)
from menu_session.domain.schemas.fingerprint import DeviceSignals, FingerprintResult
from menu_session.domain.schemas.session import ContextualSession, SessionContext
from menu_session.infrastructure.database.connection import SessionContextFactory
from menu_session.infrastructure.database.models import EventTypeEnum
from menu_session.infrastructure.storage.kv_store import KeyValueStorage

logger = logging.getLogger(__name__)

SESSION_END_EVENTS = ("session_expired", "session_terminated")


@dataclass
class AuthDependencies:
    """Process-wide services every facade shares."""

    generator: FingerprintGenerator
    fingerprint_store: FingerprintStore
    detection: FingerprintDetectionService
    session_manager: ContextualSessionManager
    credential_store: CredentialStore
    customer_api: CustomerBackend
    store_access: StoreAccessBackend
    cart_store: CartStore
    whatsapp_auth: WhatsAppAuthService
    auth_code: AuthCodeService
    session_factory: SessionContextFactory
    storage: KeyValueStorage
    session_bookmark_ttl_seconds: int = 8 * 3600


def customer_key(user: CustomerUser) -> str:
    return user.uuid or str(user.id)


class AuthSessionFacade:
    """
    Everything one device knows about itself: its fingerprint, its current
    contextual session and its customer credential.

    device_key is the server-issued device id; fingerprint is the last hash
    the device presented and only feeds the risk checks.
    """

    def __init__(self, device_key: str, fingerprint: str, deps: AuthDependencies):
        self.device_key = device_key
        self.fingerprint = fingerprint
        self.deps = deps
        self.session: Optional[ContextualSession] = None
        self.stored_auth: Optional[StoredAuth] = None
        self.customer: Optional[CustomerUser] = None
        self.can_order_as_guest = False
        self.error: Optional[str] = None
        self.is_loading = False
        self.last_seen = 0.0
        # Credential cookies to set on the device's next response
        self._pending_cookies: list[CookieParams] = []

    @property
    def token(self) -> Optional[str]:
        return self.stored_auth.token if self.stored_auth else None

    @property
    def state(self) -> AuthSessionState:
        session_authenticated = bool(self.session and self.session.is_authenticated)
        is_authenticated = session_authenticated or self.customer is not None
        return AuthSessionState(
            session=self.session,
            is_authenticated=is_authenticated,
            is_guest=self.session is not None and not is_authenticated,
            can_order_as_guest=self.can_order_as_guest,
            fingerprint=self.fingerprint,
            customer=self.customer,
            error=self.error,
            is_loading=self.is_loading,
        )

    def take_pending_cookies(self) -> list[CookieParams]:
        cookies, self._pending_cookies = self._pending_cookies, []
        return cookies

    def _apply_session(self, session: ContextualSession) -> None:
        self.session = session
        self.error = None
        if session.is_authenticated:
            self.can_order_as_guest = False

    def _clear_session(self, reason: Optional[str] = None) -> None:
        self.session = None
        self.can_order_as_guest = False
        if reason:
            self.error = reason

    def on_session_ended(self, event: SessionEvent) -> None:
        if self.session is not None and self.session.id == event.session_id:
            self._clear_session(event.metadata.get("reason"))

    def _bookmark_key(self, store_id: str) -> str:
        return f"device-session:{self.device_key}:{store_id}"

    async def _bookmark(self, session: ContextualSession) -> None:
        """Remember the session so this device, and only it, can resume it."""
        try:
            await self.deps.storage.set(
                self._bookmark_key(session.store_id),
                session.id,
                ttl_seconds=self.deps.session_bookmark_ttl_seconds,
            )
        except Exception as e:
            logger.error(f"Session {session.id} not bookmarked for {self.device_key}: {e}")

    # ==========================================
    # BOOTSTRAP
    # ==========================================

    async def bootstrap(
        self,
        fingerprint: FingerprintResult,
        store_id: Optional[str] = None,
        cookie_value: Optional[str] = None,
        previous_fingerprint: Optional[str] = None,
    ) -> AuthSessionState:
        """
        Register the fingerprint, resume the device's session for the URL's
        store and restore the persisted credential. Each step degrades on its own.

        Args:
            fingerprint: Freshly generated fingerprint
            store_id: Store from the URL, if any
            cookie_value: Raw credential cookie, if any
            previous_fingerprint: Hash recorded in the device token of a returning device
        """
        self.is_loading = True
        try:
            await self.deps.fingerprint_store.record_seen(fingerprint)
            if previous_fingerprint and previous_fingerprint != fingerprint.hash:
                await self._check_fingerprint_change(previous_fingerprint, fingerprint.hash)
            self.fingerprint = fingerprint.hash

            if store_id and self.session is None:
                session_id = await self.deps.storage.get(self._bookmark_key(store_id))
                recovered = None
                if session_id:
                    recovered = await self.deps.session_manager.recover_session(
                        store_id, self.fingerprint, session_id=session_id
                    )
                if recovered is not None:
                    self._apply_session(recovered)
                    await self.deps.session_manager.start_monitoring(recovered.id)

            if self.stored_auth is None:
                await self._restore_credential(cookie_value)
        except HTTPException as e:
            logger.error(f"Bootstrap of device {self.device_key} degraded: {e.detail}")
            self.error = "Erro ao inicializar autenticação"
        finally:
            self.is_loading = False
        return self.state

    async def _check_fingerprint_change(self, previous: str, current: str) -> None:
        """A significant fingerprint change on a known device counts as suspicious activity."""
        analysis = await self.deps.detection.detect_suspicious_changes(previous, current)
        if analysis.risk_level not in ("medium", "high"):
            return
        reason = "; ".join(analysis.suspicious_changes) or "Mudança de fingerprint"
        blocked = await self.deps.session_manager.record_suspicious_activity(current, reason)
        logger.warning(
            f"Device {self.device_key} changed fingerprint "
            f"(similarity {analysis.similarity:.2f}, blocked={blocked})"
        )

    async def _restore_credential(self, cookie_value: Optional[str]) -> None:
        stored = await self.deps.credential_store.load(self.device_key, cookie_value)
        if stored is None:
            return
        try:
            customer = await self.deps.customer_api.get_me(stored.token)
        except BackendRequestError as e:
            logger.info(f"Stored credential rejected for device {self.device_key}: {e.detail}")
            await self.deps.credential_store.clear(self.device_key)
            return
        except TransientBackendError:
            customer = stored.user

        self.stored_auth = stored
        self.customer = customer
        from_cookie = self.deps.credential_store.decode(cookie_value)
        if from_cookie is None or from_cookie.token != stored.token:
            self._pending_cookies.append(self.deps.credential_store.cookie_for(stored))
        await self.deps.credential_store.schedule_refresh(self.device_key, self._on_refresh)
        if self.session is not None and not self.session.is_authenticated:
            await self.associate_customer(customer_key(customer))

    def _on_refresh(self, refreshed: Optional[StoredAuth]) -> None:
        if refreshed is None:
            self.stored_auth = None
            self.customer = None
            self._pending_cookies = []
            return
        if self.stored_auth is None or refreshed.token != self.stored_auth.token:
            self._pending_cookies = [self.deps.credential_store.cookie_for(refreshed)]
        self.stored_auth = refreshed
        self.customer = refreshed.user

    # ==========================================
    # SESSION
    # ==========================================

    async def initialize_session(
        self,
        store_id: str,
        table_id: Optional[str] = None,
        is_delivery: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ContextualSession:
        """
        Open (or reuse) a session for this device.

        Raises:
            FingerprintBlockedError: Device is blocked
            HTTPException: Any refusal from the session manager
        """
        self.is_loading = True
        self.error = None
        try:
            validation = await self.deps.detection.validate_fingerprint(self.fingerprint)
            if validation.is_blocked:
                raise FingerprintBlockedError()

            session = await self.deps.session_manager.create_session(
                SessionContext(
                    store_id=store_id,
                    table_id=table_id,
                    is_delivery=is_delivery,
                    fingerprint=self.fingerprint,
                    customer_id=customer_key(self.customer) if self.customer else None,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            self._apply_session(session)
            await self._bookmark(session)
            await self.deps.session_manager.start_monitoring(session.id)
            logger.info(f"Session {session.id} initialized for device {self.device_key}")
            return session
        except HTTPException as e:
            self.error = str(e.detail)
            raise
        finally:
            self.is_loading = False

    async def validate_current_session(self) -> bool:
        """False when there is no session or it failed; transient failures keep it."""
        if self.session is None:
            return False
        session_id = self.session.id
        result = await self.deps.session_manager.validate_session(session_id)
        if result.is_valid and result.session is not None:
            self._apply_session(result.session)
            return True
        if result.retryable:
            return False
        # The session_expired listener may already have cleared it
        await self.deps.session_manager.stop_monitoring(session_id)
        self._clear_session(result.reason or "Sessão inválida")
        return False

    async def refresh_session(self) -> Optional[ContextualSession]:
        if self.session is None:
            return None
        result = await self.deps.session_manager.validate_session(self.session.id)
        if result.is_valid and result.session is not None:
            self._apply_session(result.session)
        return self.session

    async def update_activity(self) -> None:
        if self.session is None:
            return
        try:
            self._apply_session(await self.deps.session_manager.update_activity(self.session.id))
        except HTTPException as e:
            logger.warning(f"Activity update for {self.session.id} failed: {e.detail}")

    async def associate_customer(self, customer_id: str) -> ContextualSession:
        if self.session is None:
            raise SessionStateError("Nenhuma sessão ativa")
        session = await self.deps.session_manager.associate_customer(self.session.id, customer_id)
        self._apply_session(session)
        return session

    async def check_guest_order_permission(self) -> bool:
        """
        Guest ordering needs a live session, a store allowing quick
        registration and a valid, unblocked fingerprint.
        """
        allowed = False
        if self.session is not None and self.deps.session_manager.is_active(self.session.id):
            try:
                settings = await self.deps.store_access.get_store_settings(self.session.store_id)
                if settings.allow_quick_registration:
                    validation = await self.deps.detection.validate_fingerprint(self.fingerprint)
                    allowed = validation.is_valid and not validation.is_blocked
            except HTTPException as e:
                logger.error(f"Guest permission check failed: {e.detail}")
        self.can_order_as_guest = allowed
        return allowed

    async def redeem_magic_link(
        self, token: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> MagicLinkSessionResult:
        result = await self.deps.whatsapp_auth.create_session_from_token(
            token, fingerprint=self.fingerprint, ip_address=ip_address, user_agent=user_agent
        )
        if result.success and result.session is not None:
            self._apply_session(result.session)
            await self._bookmark(result.session)
            await self.deps.session_manager.start_monitoring(result.session.id)
        return result

    # ==========================================
    # CUSTOMER CREDENTIAL
    # ==========================================

    async def login(self, stored: StoredAuth) -> CookieParams:
        """Persist a credential, start its refresh and attach the customer to the session."""
        cookie = await self.deps.credential_store.save(self.device_key, stored)
        self.stored_auth = stored
        self.customer = stored.user
        self.error = None
        await self.deps.credential_store.schedule_refresh(self.device_key, self._on_refresh)

        if self.session is not None:
            try:
                await self.associate_customer(customer_key(stored.user))
            except HTTPException as e:
                logger.warning(f"Customer not attached to session {self.session.id}: {e.detail}")
        return cookie

    async def login_with_code(
        self,
        phone: str,
        code: str,
        store_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[AuthCodeResult, Optional[CookieParams]]:
        result = await self.deps.auth_code.validate_authentication_code(phone, code, store_id)

        if not result.success:
            if not result.retryable:
                event = EventTypeEnum.ACCOUNT_LOCKED if result.locked else EventTypeEnum.AUTH_CODE_FAILED
                async with self.deps.session_factory() as db:
                    await audit_service.log_event(
                        session=db,
                        event_type=event,
                        ip_address=ip_address,
                        fingerprint=self.fingerprint,
                        store_id=store_id,
                        user_agent=user_agent,
                        metadata={"attempts_remaining": result.attempts_remaining},
                    )
            return result, None

        stored = self.deps.credential_store.issue(result.token, result.user, result.expires_at)
        cookie = await self.login(stored)
        async with self.deps.session_factory() as db:
            await audit_service.log_event(
                session=db,
                event_type=EventTypeEnum.LOGIN_SUCCESS,
                ip_address=ip_address,
                fingerprint=self.fingerprint,
                store_id=store_id,
                customer_id=customer_key(result.user),
                user_agent=user_agent,
                metadata={"method": "whatsapp_code", "credential": stored.credential.kind},
            )
        return result, cookie

    # ==========================================
    # LOGOUT / TEARDOWN
    # ==========================================

    async def logout(self) -> None:
        """End the contextual session. Local cleanup always happens."""
        session = self.session
        try:
            if session is not None:
                await self.deps.session_manager.expire_session(session.id)
        except HTTPException as e:
            logger.error(f"Remote session logout failed for {session.id}: {e.detail}")
        finally:
            if session is not None:
                await self.deps.session_manager.stop_monitoring(session.id)
                await self.deps.storage.delete(self._bookmark_key(session.store_id))
            self._clear_session()
            self.error = None
            await self._clear_cart()
            logger.info(f"Device {self.device_key} logged out of its session")

    async def logout_user(self, ip_address: Optional[str] = None) -> None:
        """Drop the customer credential; the device stays a guest if it has a session."""
        token = self.token
        customer = self.customer
        try:
            if token:
                await self.deps.customer_api.logout(token)
        except HTTPException as e:
            logger.error(f"Remote logout failed for device {self.device_key}: {e.detail}")
        finally:
            await self.deps.credential_store.clear(self.device_key)
            self.stored_auth = None
            self.customer = None
            self._pending_cookies = []
            await self._clear_cart()

        if customer is not None:
            async with self.deps.session_factory() as db:
                await audit_service.log_event(
                    session=db,
                    event_type=EventTypeEnum.LOGOUT,
                    ip_address=ip_address,
                    fingerprint=self.fingerprint,
                    customer_id=customer_key(customer),
                )

    async def _clear_cart(self) -> None:
        try:
            await self.deps.cart_store.clear(self.device_key)
        except Exception as e:
            logger.error(f"Cart of device {self.device_key} not cleared: {e}")

    async def dispose(self) -> None:
        if self.session is not None:
            await self.deps.session_manager.stop_monitoring(self.session.id)
        await self.deps.credential_store.cancel_refresh(self.device_key)


class AuthSessionRegistry:
    """
    One facade per server-issued device id.

    Facades only come into being at bootstrap and are disposed after
    idle_seconds without a request.
    """

    def __init__(
        self,
        deps: AuthDependencies,
        idle_seconds: float = 3600,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.deps = deps
        self.idle_seconds = idle_seconds
        self._monotonic = monotonic
        self._facades: dict[str, AuthSessionFacade] = {}
        for event in SESSION_END_EVENTS:
            deps.session_manager.add_event_listener(event, self._on_session_ended)

    def __len__(self) -> int:
        return len(self._facades)

    def _on_session_ended(self, event: SessionEvent) -> None:
        for facade in self._facades.values():
            facade.on_session_ended(event)

    def get(self, device_key: str) -> Optional[AuthSessionFacade]:
        """The device's facade, touched as recently used; None if it never bootstrapped."""
        facade = self._facades.get(device_key)
        if facade is not None:
            facade.last_seen = self._monotonic()
        return facade

    def get_or_create(self, device_key: str, fingerprint: str) -> AuthSessionFacade:
        facade = self.get(device_key)
        if facade is None:
            facade = AuthSessionFacade(device_key, fingerprint, self.deps)
            facade.last_seen = self._monotonic()
            self._facades[device_key] = facade
        return facade

    async def bootstrap(
        self,
        signals: DeviceSignals,
        store_id: Optional[str] = None,
        cookie_value: Optional[str] = None,
        device: Optional[DeviceClaims] = None,
    ) -> tuple[AuthSessionFacade, FingerprintResult]:
        """
        Fingerprint the submitted signals and bootstrap the device's facade.

        Args:
            signals: Browser signals submitted by the client
            store_id: Store from the URL, if any
            cookie_value: Raw credential cookie, if any
            device: Claims of a valid device token; None registers a new device
        """
        result = await self.deps.generator.generate_fingerprint(SubmittedSignalProvider(signals))
        if device is None:
            facade = self.get_or_create(DeviceIdentity.new_device_id(), result.hash)
            previous = None
        else:
            facade = self.get_or_create(device.device_id, device.fingerprint or result.hash)
            previous = facade.fingerprint
        await facade.bootstrap(
            result, store_id=store_id, cookie_value=cookie_value, previous_fingerprint=previous
        )
        return facade, result

    async def remove(self, device_key: str) -> None:
        facade = self._facades.pop(device_key, None)
        if facade is not None:
            await facade.dispose()

    async def evict_idle(self) -> int:
        """Dispose facades idle for longer than idle_seconds."""
        cutoff = self._monotonic() - self.idle_seconds
        idle = [key for key, facade in self._facades.items() if facade.last_seen < cutoff]
        for device_key in idle:
            await self.remove(device_key)
        if idle:
            logger.info(f"Evicted {len(idle)} idle device facades")
        return len(idle)

    async def dispose_all(self) -> None:
        for device_key in list(self._facades):
            await self.remove(device_key)
        for event in SESSION_END_EVENTS:
            self.deps.session_manager.remove_event_listener(event, self._on_session_ended)
