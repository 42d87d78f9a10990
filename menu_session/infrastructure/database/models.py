"""
SQLAlchemy 2.0 Async Models
Magic link tokens and the security audit trail.
"""
import enum
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# ==========================================
# ENUMS
# ==========================================


class EventTypeEnum(str, enum.Enum):
    """Security audit log event type enumeration."""

    FINGERPRINT_REGISTERED = "FINGERPRINT_REGISTERED"
    FINGERPRINT_BLOCKED = "FINGERPRINT_BLOCKED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    MAGIC_LINK_REQUESTED = "MAGIC_LINK_REQUESTED"
    MAGIC_LINK_RATE_LIMITED = "MAGIC_LINK_RATE_LIMITED"
    MAGIC_LINK_USED = "MAGIC_LINK_USED"
    MAGIC_LINK_REJECTED = "MAGIC_LINK_REJECTED"
    AUTH_CODE_FAILED = "AUTH_CODE_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGOUT = "LOGOUT"


# ==========================================
# 1. MAGIC LINK TOKENS TABLE
# ==========================================


class MagicLinkToken(Base):
    """
    Magic link tokens - single-use proof of phone ownership.
    The signed token itself is never stored, only its SHA-256 hash.
    """

    __tablename__ = "magic_link_tokens"

    # Primary Key (UUID v7, also the token's jti)
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)

    phone: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    store_id: Mapped[str] = mapped_column(String(128), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Ordering context frozen at request time
    table_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    is_delivery: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Forensic Data
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.current_timestamp(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_magic_link_phone_created", "phone", "created_at"),
    )


# ==========================================
# 2. SECURITY AUDIT LOGS TABLE
# ==========================================


class SecurityAuditLog(Base):
    """
    Security Audit Logs table - Append-only audit trail.
    """

    __tablename__ = "security_audit_logs"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)

    event_type: Mapped[EventTypeEnum] = mapped_column(
        Enum(EventTypeEnum, name="event_type_enum"), nullable=False
    )

    # Risk Assessment
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Subject
    fingerprint: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    store_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Forensic Data
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Attribute renamed to avoid clashing with DeclarativeBase.metadata
    event_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSON, nullable=True
    )  # { "reason": "rate_limited", "remaining": 0 }

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.current_timestamp(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_audit_created_at", "created_at"),
        Index("idx_audit_ip_address", "ip_address"),
    )
