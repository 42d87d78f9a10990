"""
Security Utilities: JWT HS256 magic links, Fernet Encryption, SHA-256 digests
Signing and encryption primitives shared by the authentication services.
"""
import hashlib
from datetime import datetime, timezone
from typing import Optional

import jwt
from cryptography.fernet import Fernet

from menu_session.core.config import Settings, get_settings


def sha256_hex(value: str) -> str:
    """SHA-256 hex digest of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class JWTManager:
    """Magic link token signing (HS256) and bearer credential inspection."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.algorithm = settings.JWT_ALGORITHM
        self.secret = settings.jwt_secret_bytes

    def create_magic_link_token(
        self,
        token_id: str,
        phone: str,
        store_id: str,
        fingerprint: str,
        session_context: dict,
        expires_at: datetime,
    ) -> str:
        """
        Create a signed magic link token.

        Args:
            token_id: Identifier of the persisted token row (jti)
            phone: Normalized phone number
            store_id: Store the link grants access to
            fingerprint: Device fingerprint that requested the link
            session_context: Ordering context captured at request time
            expires_at: Absolute expiry

        Returns:
            Encoded JWT token
        """
        payload = {
            "jti": token_id,
            "phone": phone,
            "store_id": store_id,
            "fingerprint": fingerprint,
            "session_context": session_context,
            "type": "magic_link",
            "exp": expires_at,
            "iat": datetime.now(timezone.utc),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_magic_link_token(self, token: str) -> dict:
        """
        Decode and verify the signature of a magic link token.
        Expiry is checked against the stored row so expired tokens can be burned.

        Raises:
            jwt.InvalidTokenError: If token is malformed or tampered
        """
        payload = jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            options={"verify_exp": False},
        )
        if payload.get("type") != "magic_link" or "jti" not in payload:
            raise jwt.InvalidTokenError("Not a magic link token")
        return payload

    def create_device_token(self, device_id: str, fingerprint: str, expires_at: datetime) -> str:
        """Create the signed token that identifies a bootstrapped device."""
        payload = {
            "sub": device_id,
            "fingerprint": fingerprint,
            "type": "device",
            "exp": expires_at,
            "iat": datetime.now(timezone.utc),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_device_token(self, token: str) -> dict:
        """
        Decode and verify a device token, expiry included.

        Raises:
            jwt.InvalidTokenError: If token is malformed, tampered or expired
        """
        payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        if payload.get("type") != "device" or not payload.get("sub"):
            raise jwt.InvalidTokenError("Not a device token")
        return payload

    @staticmethod
    def read_bearer_claims(token: str) -> dict:
        """
        Read the claims of a backend-issued bearer JWT.
        The backend owns the signing key, so only the structure is checked here.

        Raises:
            jwt.InvalidTokenError: If token is not a decodable JWT
        """
        return jwt.decode(token, options={"verify_signature": False})

    @staticmethod
    def looks_like_jwt(token: str) -> bool:
        return token.count(".") == 2 and all(token.split("."))


class EncryptionManager:
    """Fernet encryption for credentials at rest."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        key = settings.fernet_key_bytes

        try:
            self.fernet = Fernet(key)
        except Exception as e:
            raise ValueError(f"Invalid Fernet key format: {e}")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string using Fernet.

        Args:
            plaintext: Plain text to encrypt

        Returns:
            Encrypted string (base64-encoded)
        """
        return self.fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a Fernet-encrypted string.

        Raises:
            cryptography.fernet.InvalidToken: If decryption fails
        """
        return self.fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
