"""
Repository Layer - Data Access
All database operations using async SQLAlchemy 2.0.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import uuid6
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from menu_session.infrastructure.database.models import (
    EventTypeEnum,
    MagicLinkToken,
    SecurityAuditLog,
)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive timestamps; PostgreSQL hands back aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MagicLinkTokenRepository:
    """Repository for magic link tokens."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        token_id: UUID,
        phone: str,
        store_id: str,
        fingerprint: str,
        token_hash: str,
        expires_at: datetime,
        table_id: Optional[str] = None,
        is_delivery: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MagicLinkToken:
        """Persist a freshly issued token."""
        token = MagicLinkToken(
            id=token_id,
            phone=phone,
            store_id=store_id,
            fingerprint=fingerprint,
            token_hash=token_hash,
            expires_at=expires_at,
            table_id=table_id,
            is_delivery=is_delivery,
            ip_address=ip_address,
            user_agent=user_agent,
            is_used=False,
        )
        self.session.add(token)
        await self.session.flush()
        return token

    async def get_by_id(self, token_id: UUID) -> Optional[MagicLinkToken]:
        """Get token by ID."""
        result = await self.session.execute(
            select(MagicLinkToken).where(MagicLinkToken.id == token_id)
        )
        return result.scalar_one_or_none()

    async def mark_used(self, token_id: UUID) -> bool:
        """
        Flip is_used from False to True.

        Returns:
            True only for the caller that performed the transition
        """
        result = await self.session.execute(
            update(MagicLinkToken)
            .where(MagicLinkToken.id == token_id, MagicLinkToken.is_used == False)  # noqa: E712
            .values(is_used=True, used_at=datetime.now(timezone.utc))
        )
        return result.rowcount == 1

    async def delete_expired(self, before: datetime) -> int:
        """Delete tokens that expired before the given instant (cleanup job)."""
        result = await self.session.execute(
            delete(MagicLinkToken).where(MagicLinkToken.expires_at < before)
        )
        return result.rowcount or 0


class AuditLogRepository:
    """Repository for audit log operations (append-only)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        event_type: EventTypeEnum,
        ip_address: str,
        risk_score: int = 0,
        fingerprint: Optional[str] = None,
        store_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> SecurityAuditLog:
        """Create a new audit log entry with UUID v7."""
        audit_log = SecurityAuditLog(
            id=uuid6.uuid7(),
            event_type=event_type,
            risk_score=risk_score,
            fingerprint=fingerprint,
            store_id=store_id,
            customer_id=customer_id,
            ip_address=ip_address,
            user_agent=user_agent,
            event_metadata=metadata,
        )
        self.session.add(audit_log)
        await self.session.flush()
        return audit_log

    async def list_by_fingerprint(self, fingerprint: str, limit: int = 50) -> list[SecurityAuditLog]:
        result = await self.session.execute(
            select(SecurityAuditLog)
            .where(SecurityAuditLog.fingerprint == fingerprint)
            .order_by(SecurityAuditLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
