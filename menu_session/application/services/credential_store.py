"""
Credential Store
Encrypted bearer credentials per device: cookie first, key-value storage as fallback, auto-refresh.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

import jwt
from cryptography.fernet import InvalidToken
from pydantic import ValidationError as PydanticValidationError

from menu_session.application.services.heartbeat import TaskScheduler
from menu_session.core.config import Settings, get_settings
from menu_session.core.exceptions import BackendRequestError, TransientBackendError
from menu_session.core.security import EncryptionManager, JWTManager
from menu_session.domain.schemas.auth import (
    CustomerUser,
    JwtCredential,
    OpaqueCredential,
    StoredAuth,
)
from menu_session.domain.schemas.fingerprint import utcnow
from menu_session.infrastructure.storage.kv_store import KeyValueStorage

logger = logging.getLogger(__name__)


class CustomerBackend(Protocol):
    async def get_me(self, token: str) -> CustomerUser: ...

    async def logout(self, token: str) -> None: ...

    async def refresh(self, token: str) -> dict: ...

    async def find_by_phone(self, phone: str, store_id: str) -> Optional[CustomerUser]: ...


@dataclass(frozen=True)
class CookieParams:
    """Arguments for Response.set_cookie."""

    key: str
    value: str
    max_age: int
    httponly: bool = True
    secure: bool = False
    samesite: str = "strict"
    path: str = "/"


class CredentialStore:
    """
    Persists StoredAuth encrypted with Fernet.

    The cookie copy is authoritative while it is the newest unexpired copy;
    the key-value copy covers requests without a cookie and background refreshes.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        encryption: EncryptionManager,
        customer_api: CustomerBackend,
        scheduler: TaskScheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.encryption = encryption
        self.customer_api = customer_api
        self.scheduler = scheduler
        self._clock = clock

        self.cookie_name = settings.CREDENTIAL_COOKIE_NAME
        self.cookie_max_age = settings.CREDENTIAL_COOKIE_MAX_AGE_DAYS * 24 * 3600
        self.cookie_secure = settings.is_production
        self.refresh_window = timedelta(minutes=settings.CREDENTIAL_REFRESH_WINDOW_MINUTES)
        self.check_interval = settings.CREDENTIAL_CHECK_INTERVAL_SECONDS
        self.opaque_lifetime = timedelta(hours=settings.OPAQUE_TOKEN_LIFETIME_HOURS)

    @staticmethod
    def _storage_key(device_key: str) -> str:
        return f"credential:{device_key}"

    @staticmethod
    def _refresh_task_name(device_key: str) -> str:
        return f"credential-refresh:{device_key}"

    # ==========================================
    # ISSUANCE
    # ==========================================

    def issue(
        self, token: str, user: CustomerUser, expires_at: Optional[datetime] = None
    ) -> StoredAuth:
        """
        Wrap a backend bearer token, deciding its kind once.

        A decodable JWT takes its expiry from the exp claim; anything else is
        opaque and lives for the configured opaque lifetime unless the backend
        told us otherwise.
        """
        if JWTManager.looks_like_jwt(token):
            try:
                claims = JWTManager.read_bearer_claims(token)
            except jwt.InvalidTokenError:
                claims = None
            if claims is not None and isinstance(claims.get("exp"), (int, float)):
                return StoredAuth(
                    credential=JwtCredential(
                        token=token,
                        claims=claims,
                        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
                    ),
                    user=user,
                )

        return StoredAuth(
            credential=OpaqueCredential(
                token=token, expires_at=expires_at or self._clock() + self.opaque_lifetime
            ),
            user=user,
        )

    def is_expired(self, stored: StoredAuth) -> bool:
        return stored.expires_at <= self._clock()

    def needs_refresh(self, stored: StoredAuth) -> bool:
        return stored.expires_at - self._clock() <= self.refresh_window

    # ==========================================
    # ENCODING
    # ==========================================

    def encode(self, stored: StoredAuth) -> str:
        return self.encryption.encrypt(stored.model_dump_json(by_alias=True))

    def decode(self, value: Optional[str]) -> Optional[StoredAuth]:
        if not value:
            return None
        try:
            return StoredAuth.model_validate_json(self.encryption.decrypt(value))
        except (InvalidToken, PydanticValidationError, ValueError) as e:
            logger.warning(f"Discarding unreadable credential: {e}")
            return None

    def cookie_for(self, stored: StoredAuth) -> CookieParams:
        return CookieParams(
            key=self.cookie_name,
            value=self.encode(stored),
            max_age=self.cookie_max_age,
            secure=self.cookie_secure,
        )

    # ==========================================
    # PERSISTENCE
    # ==========================================

    async def save(self, device_key: str, stored: StoredAuth) -> CookieParams:
        """Write the storage copy and return the cookie to set on the response."""
        cookie = self.cookie_for(stored)
        try:
            await self.storage.set(
                self._storage_key(device_key), cookie.value, ttl_seconds=self.cookie_max_age
            )
        except Exception as e:
            logger.error(f"Credential fallback copy not stored for {device_key[:12]}: {e}")
        return cookie

    async def load(
        self, device_key: str, cookie_value: Optional[str] = None
    ) -> Optional[StoredAuth]:
        """
        Read the device's credential.

        The cookie copy wins unless it is expired or older than the storage
        copy; a background refresh only reaches storage, so the storage copy
        supersedes a cookie that has not been re-issued yet.

        Args:
            device_key: Device identifier
            cookie_value: Raw credential cookie from the request, if any

        Returns:
            The unexpired credential, or None
        """
        from_cookie = self.decode(cookie_value)
        if from_cookie is not None and self.is_expired(from_cookie):
            logger.info(f"Expired credential cookie ignored for device {device_key[:12]}")
            from_cookie = None

        from_storage = self.decode(await self.storage.get(self._storage_key(device_key)))
        if from_storage is not None and self.is_expired(from_storage):
            logger.info(f"Expired credential dropped for device {device_key[:12]}")
            await self.storage.delete(self._storage_key(device_key))
            from_storage = None

        if from_cookie is None:
            return from_storage
        if from_storage is not None and from_storage.expires_at > from_cookie.expires_at:
            return from_storage
        return from_cookie

    async def clear(self, device_key: str) -> None:
        await self.cancel_refresh(device_key)
        await self.storage.delete(self._storage_key(device_key))

    # ==========================================
    # REFRESH
    # ==========================================

    async def refresh(self, device_key: str, stored: StoredAuth) -> Optional[StoredAuth]:
        """
        Exchange the token for a new one.

        Returns:
            The new credential, or None if the backend refused the old token
        """
        try:
            data = await self.customer_api.refresh(stored.token)
        except BackendRequestError as e:
            logger.warning(f"Credential refresh refused for {device_key[:12]}: {e.detail}")
            return None

        token = data.get("token") or data.get("access_token")
        if not token:
            logger.warning(f"Credential refresh for {device_key[:12]} returned no token")
            return None
        user = CustomerUser.model_validate(data["user"]) if data.get("user") else stored.user
        expires_at = None
        if data.get("expires_at"):
            expires_at = datetime.fromisoformat(str(data["expires_at"]).replace("Z", "+00:00"))
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)

        refreshed = self.issue(token, user, expires_at)
        await self.save(device_key, refreshed)
        logger.info(f"Credential refreshed for device {device_key[:12]}")
        return refreshed

    async def schedule_refresh(
        self,
        device_key: str,
        on_refresh: Optional[Callable[[Optional[StoredAuth]], None]] = None,
    ) -> None:
        """
        Check the stored credential periodically and refresh it inside the window.
        The task stops once the credential is gone, expired or refused.
        """

        async def check() -> bool:
            stored = await self.load(device_key)
            if stored is None:
                if on_refresh:
                    on_refresh(None)
                return False
            if not self.needs_refresh(stored):
                return True
            try:
                refreshed = await self.refresh(device_key, stored)
            except TransientBackendError as e:
                logger.warning(f"Credential refresh postponed: {e.detail}")
                return True
            if on_refresh:
                on_refresh(refreshed)
            return refreshed is not None

        await self.scheduler.schedule(self._refresh_task_name(device_key), self.check_interval, check)

    async def cancel_refresh(self, device_key: str) -> None:
        await self.scheduler.cancel(self._refresh_task_name(device_key))

    def is_refresh_scheduled(self, device_key: str) -> bool:
        return self.scheduler.is_scheduled(self._refresh_task_name(device_key))
