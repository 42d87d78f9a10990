"""
Device Identity
Server-issued device ids carried in a signed HttpOnly cookie.
The fingerprint travels inside the token as the last one seen for the device.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import jwt
from uuid6 import uuid7

from menu_session.application.services.credential_store import CookieParams
from menu_session.core.config import Settings, get_settings
from menu_session.core.security import JWTManager
from menu_session.domain.schemas.fingerprint import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceClaims:
    device_id: str
    fingerprint: str


class DeviceIdentity:
    """Issues and verifies device tokens."""

    def __init__(
        self,
        jwt_manager: JWTManager,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.jwt_manager = jwt_manager
        self.cookie_name = settings.DEVICE_COOKIE_NAME
        self.lifetime = timedelta(days=settings.DEVICE_TOKEN_EXPIRE_DAYS)
        self.cookie_secure = settings.is_production
        self._clock = clock

    @staticmethod
    def new_device_id() -> str:
        return f"device_{uuid7().hex}"

    def cookie_for(self, device_id: str, fingerprint: str) -> CookieParams:
        token = self.jwt_manager.create_device_token(
            device_id, fingerprint, self._clock() + self.lifetime
        )
        return CookieParams(
            key=self.cookie_name,
            value=token,
            max_age=int(self.lifetime.total_seconds()),
            secure=self.cookie_secure,
        )

    def resolve(self, token: Optional[str]) -> Optional[DeviceClaims]:
        """Claims of a valid device token, or None."""
        if not token:
            return None
        try:
            payload = self.jwt_manager.decode_device_token(token)
        except jwt.InvalidTokenError as e:
            logger.info(f"Device token rejected: {e}")
            return None
        return DeviceClaims(device_id=payload["sub"], fingerprint=payload.get("fingerprint") or "")
