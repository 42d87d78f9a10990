from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from menu_session.domain.schemas.fingerprint import CamelModel, DeviceSignals, FingerprintResult
from menu_session.domain.schemas.session import ContextualSession


class PhoneValidationResult(BaseModel):
    is_valid: bool
    normalized: Optional[str] = None
    reason: Optional[str] = None


# ==========================================
# MAGIC LINK
# ==========================================


class MagicLinkSessionContext(CamelModel):
    """Ordering context frozen into the token at request time."""

    table_id: Optional[str] = None
    is_delivery: Optional[bool] = None

    @model_validator(mode="after")
    def default_delivery_from_table(self) -> "MagicLinkSessionContext":
        """A context that names a table and omits isDelivery is a table context."""
        if self.is_delivery is None:
            self.is_delivery = self.table_id is None
        return self


class MagicLinkRequest(CamelModel):
    phone: str = Field(..., max_length=32, description="Brazilian phone, any formatting")
    store_id: str = Field(..., min_length=1, max_length=128)
    fingerprint: Optional[str] = Field(
        None, max_length=128, description="Set by the API from the device cookie"
    )
    session_context: Optional[MagicLinkSessionContext] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "phone": "(11) 98765-4321",
                "storeId": "store-1",
                "sessionContext": {"tableId": "t1", "isDelivery": False},
            }
        }
    )


class MagicLinkResponse(CamelModel):
    success: bool
    message: str
    expires_at: Optional[datetime] = None
    rate_limit_remaining: Optional[int] = None


class MagicLinkVerifyRequest(CamelModel):
    token: str = Field(..., max_length=4096)


class TokenValidationResult(CamelModel):
    is_valid: bool
    can_create_session: bool = False
    reason: Optional[str] = None
    fingerprint_mismatch: bool = False
    token_id: Optional[str] = None
    phone: Optional[str] = None
    store_id: Optional[str] = None
    fingerprint: Optional[str] = None
    session_context: Optional[MagicLinkSessionContext] = None


class MagicLinkSessionResult(CamelModel):
    success: bool
    message: str
    session: Optional[ContextualSession] = None
    customer_id: Optional[str] = None


# ==========================================
# AUTHENTICATION CODE (OTP)
# ==========================================


class AuthCodeRequest(CamelModel):
    phone: str = Field(..., max_length=32)
    store_id: str = Field(..., min_length=1, max_length=128)
    name: Optional[str] = Field(None, max_length=120)


class AuthCodeVerifyRequest(CamelModel):
    phone: str = Field(..., max_length=32)
    code: str = Field(..., description="6-digit code received via WhatsApp")
    store_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.strip()
        if len(v) != 6 or not v.isdigit():
            raise ValueError("Code must have exactly 6 digits")
        return v


class CustomerUser(CamelModel):
    id: Union[int, str]
    uuid: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    tenant_id: Optional[Union[int, str]] = None


class AuthCodeResult(CamelModel):
    success: bool
    message: str
    retryable: bool = False
    locked: bool = False
    attempts_remaining: Optional[int] = None
    token: Optional[str] = None
    user: Optional[CustomerUser] = None
    expires_at: Optional[datetime] = None


# ==========================================
# STORED CREDENTIAL
# ==========================================


class JwtCredential(CamelModel):
    kind: Literal["jwt"] = "jwt"
    token: str
    claims: dict = Field(default_factory=dict)
    expires_at: datetime


class OpaqueCredential(CamelModel):
    kind: Literal["opaque"] = "opaque"
    token: str
    expires_at: datetime


Credential = Annotated[Union[JwtCredential, OpaqueCredential], Field(discriminator="kind")]


class StoredAuth(CamelModel):
    credential: Credential
    user: CustomerUser

    @property
    def token(self) -> str:
        return self.credential.token

    @property
    def expires_at(self) -> datetime:
        return self.credential.expires_at


class MessageResponse(BaseModel):
    message: str


class AuthSessionState(CamelModel):
    """Merged view of a device's contextual session and customer login."""

    session: Optional[ContextualSession] = None
    is_authenticated: bool = False
    is_guest: bool = False
    can_order_as_guest: bool = False
    fingerprint: Optional[str] = None
    customer: Optional[CustomerUser] = None
    error: Optional[str] = None
    is_loading: bool = False


class BootstrapRequest(CamelModel):
    signals: DeviceSignals
    store_id: Optional[str] = Field(None, max_length=128)


class BootstrapResponse(CamelModel):
    fingerprint: FingerprintResult
    state: AuthSessionState
