"""
Session Schemas
Contextual sessions scoped to a store and an ordering context (table or delivery).
"""
import enum
from datetime import datetime
from typing import Literal, Optional

from pydantic import Field, model_validator

from menu_session.domain.schemas.fingerprint import CamelModel, utcnow


class SessionState(str, enum.Enum):
    """Client-side lifecycle of a contextual session."""

    UNINITIALIZED = "uninitialized"
    PENDING_VALIDATION = "pending_validation"
    ACTIVE_GUEST = "active_guest"
    ACTIVE_AUTHENTICATED = "active_authenticated"
    EXPIRED = "expired"
    TERMINATED = "terminated"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.PENDING_VALIDATION}),
    SessionState.PENDING_VALIDATION: frozenset(
        {
            SessionState.ACTIVE_GUEST,
            SessionState.ACTIVE_AUTHENTICATED,
            SessionState.TERMINATED,
        }
    ),
    SessionState.ACTIVE_GUEST: frozenset(
        {
            SessionState.ACTIVE_AUTHENTICATED,
            SessionState.EXPIRED,
            SessionState.TERMINATED,
        }
    ),
    SessionState.ACTIVE_AUTHENTICATED: frozenset(
        {SessionState.EXPIRED, SessionState.TERMINATED}
    ),
    SessionState.EXPIRED: frozenset(),
    SessionState.TERMINATED: frozenset(),
}

ACTIVE_STATES = frozenset({SessionState.ACTIVE_GUEST, SessionState.ACTIVE_AUTHENTICATED})


class OrderingContext(CamelModel):
    type: Literal["table", "delivery"]
    table_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_table(self):
        if self.type == "table" and not self.table_id:
            raise ValueError("table_id is required for table sessions")
        if self.type == "delivery":
            self.table_id = None
        return self


class SessionContext(CamelModel):
    """Everything needed to open a session."""

    store_id: str = Field(..., min_length=1, max_length=128)
    table_id: Optional[str] = Field(None, max_length=128)
    is_delivery: bool = False
    fingerprint: str
    customer_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def ordering_context(self) -> OrderingContext:
        if self.table_id and not self.is_delivery:
            return OrderingContext(type="table", table_id=self.table_id)
        return OrderingContext(type="delivery")


class ContextualSession(CamelModel):
    id: str
    store_id: str
    context: OrderingContext
    fingerprint: str
    customer_id: Optional[str] = None
    is_authenticated: bool = False
    last_activity: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    order_count: int = 0
    total_spent: float = 0.0
    state: SessionState = SessionState.UNINITIALIZED

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.state in (SessionState.EXPIRED, SessionState.TERMINATED):
            return True
        return self.expires_at is not None and (now or utcnow()) > self.expires_at


class SessionValidationResult(CamelModel):
    is_valid: bool
    session: Optional[ContextualSession] = None
    reason: Optional[str] = None
    retryable: bool = False


class SessionStats(CamelModel):
    total: int = 0
    active: int = 0
    expired: int = 0
    authenticated: int = 0
    guest: int = 0
    average_duration_minutes: float = 0.0


class StoreStatus(CamelModel):
    store_id: str
    is_open: bool = True
    status: Literal["open", "closed", "busy"] = "open"
    message: Optional[str] = None


class TableStatus(CamelModel):
    table_id: str
    is_active: bool = True
    is_occupied: bool = False
    current_sessions: int = 0
    max_sessions: Optional[int] = None


class StoreSettings(CamelModel):
    store_id: str
    allow_quick_registration: bool = False
    allow_guest_orders: bool = True
    name: Optional[str] = None


class QRAccessRequest(CamelModel):
    """A storefront URL opened from a QR code or a shared link."""

    url: str = Field(..., max_length=2048)


class QRAccessResult(CamelModel):
    session: ContextualSession
    cleaned_url: str
    resumed: bool = False
