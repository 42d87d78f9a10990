"""
Service Container
Builds the process-wide service graph once and tears it down on shutdown.
"""
import logging
from typing import Optional

import httpx

from menu_session.application.services.auth_code import AuthCodeService
from menu_session.application.services.cart_store import CartStore
from menu_session.application.services.credential_store import CredentialStore
from menu_session.application.services.device_fingerprint import FingerprintGenerator
from menu_session.application.services.device_identity import DeviceIdentity
from menu_session.application.services.fingerprint_detection import FingerprintDetectionService
from menu_session.application.services.fingerprint_store import FingerprintStore
from menu_session.application.services.heartbeat import TaskScheduler
from menu_session.application.services.offline_queue import OfflineRequestQueue
from menu_session.application.services.rate_limit_service import RateLimitService
from menu_session.application.services.retry import RetryPolicy
from menu_session.application.services.session_manager import ContextualSessionManager
from menu_session.application.services.whatsapp_auth import WhatsAppAuthService
from menu_session.application.use_cases.auth_session import AuthDependencies, AuthSessionRegistry
from menu_session.core.config import Settings, get_settings
from menu_session.core.security import EncryptionManager, JWTManager
from menu_session.infrastructure.database.connection import (
    SessionContextFactory,
    get_db_session_context,
)
from menu_session.infrastructure.http.backend_client import BackendClient
from menu_session.infrastructure.http.customer_api import CustomerApi
from menu_session.infrastructure.http.session_api import HttpSessionBackend
from menu_session.infrastructure.http.store_api import StoreApi
from menu_session.infrastructure.http.whatsapp_api import WhatsAppApi
from menu_session.infrastructure.redis.connection import get_redis
from menu_session.infrastructure.storage.kv_store import KeyValueStorage, RedisFactory

logger = logging.getLogger(__name__)

MAGIC_LINK_CLEANUP_SECONDS = 3600


class ServiceContainer:
    """
    One instance per process, kept on app.state.

    Tests build their own with an in-memory storage, a SQLite session
    factory and an httpx.MockTransport for the ordering backend.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_factory: Optional[RedisFactory] = get_redis,
        session_factory: SessionContextFactory = get_db_session_context,
        backend_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings = settings or get_settings()
        self.session_factory = session_factory
        self.scheduler = TaskScheduler()

        self.storage = KeyValueStorage(redis_factory, prefix=settings.STORAGE_KEY_PREFIX)
        self.rate_limiter = RateLimitService(redis_factory, settings)
        self.jwt_manager = JWTManager(settings)
        self.encryption = EncryptionManager(settings)
        self.identity = DeviceIdentity(self.jwt_manager, settings)

        self.backend_client = BackendClient(
            settings.BACKEND_API_URL,
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
            transport=backend_transport,
        )
        self.session_api = HttpSessionBackend(self.backend_client)
        self.store_api = StoreApi(self.backend_client)
        self.customer_api = CustomerApi(self.backend_client)
        self.whatsapp_api = WhatsAppApi(self.backend_client)
        self.retry_policy = RetryPolicy(
            max_attempts=settings.BACKEND_RETRY_ATTEMPTS,
            base_delay=settings.BACKEND_RETRY_BASE_DELAY_SECONDS,
        )
        self.offline_queue = OfflineRequestQueue(
            self.scheduler,
            poll_seconds=settings.OFFLINE_QUEUE_POLL_SECONDS,
            max_age_seconds=settings.OFFLINE_QUEUE_MAX_AGE_SECONDS,
        )

        self.generator = FingerprintGenerator(settings)
        self.fingerprint_store = FingerprintStore(self.storage, settings)
        self.detection = FingerprintDetectionService(self.fingerprint_store, settings)
        self.session_manager = ContextualSessionManager(
            backend=self.session_api,
            store_access=self.store_api,
            fingerprint_store=self.fingerprint_store,
            detection=self.detection,
            scheduler=self.scheduler,
            settings=settings,
            offline_queue=self.offline_queue,
        )
        self.credential_store = CredentialStore(
            self.storage, self.encryption, self.customer_api, self.scheduler, settings
        )
        self.cart_store = CartStore(
            self.storage, ttl_seconds=settings.CREDENTIAL_COOKIE_MAX_AGE_DAYS * 24 * 3600
        )
        self.whatsapp_auth = WhatsAppAuthService(
            session_factory=session_factory,
            jwt_manager=self.jwt_manager,
            rate_limiter=self.rate_limiter,
            whatsapp_api=self.whatsapp_api,
            customer_api=self.customer_api,
            session_manager=self.session_manager,
            detection=self.detection,
            settings=settings,
        )
        self.auth_code = AuthCodeService(self.whatsapp_api, self.retry_policy, settings)
        self.registry = AuthSessionRegistry(
            AuthDependencies(
                generator=self.generator,
                fingerprint_store=self.fingerprint_store,
                detection=self.detection,
                session_manager=self.session_manager,
                credential_store=self.credential_store,
                customer_api=self.customer_api,
                store_access=self.store_api,
                cart_store=self.cart_store,
                whatsapp_auth=self.whatsapp_auth,
                auth_code=self.auth_code,
                session_factory=session_factory,
                storage=self.storage,
                session_bookmark_ttl_seconds=settings.SESSION_MAX_DURATION_MINUTES * 60,
            ),
            idle_seconds=settings.FACADE_IDLE_MINUTES * 60,
        )

    async def start(self) -> None:
        """Start background housekeeping."""
        await self.offline_queue.start()

        async def sweep_sessions() -> bool:
            await self.session_manager.cleanup_expired_sessions()
            await self.registry.evict_idle()
            return True

        async def sweep_magic_links() -> bool:
            await self.whatsapp_auth.cleanup_expired_tokens()
            return True

        await self.scheduler.schedule(
            "session-cleanup", self.settings.SESSION_HEARTBEAT_SECONDS, sweep_sessions
        )
        await self.scheduler.schedule(
            "magic-link-cleanup", MAGIC_LINK_CLEANUP_SECONDS, sweep_magic_links
        )
        logger.info("Service container started")

    async def shutdown(self) -> None:
        await self.registry.dispose_all()
        await self.session_manager.dispose()
        await self.scheduler.cancel_all()
        await self.backend_client.close()
        logger.info("Service container stopped")
