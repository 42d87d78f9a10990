"""
Audit Logging Service
Logs security events to the security_audit_logs table.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from menu_session.infrastructure.database.models import EventTypeEnum
from menu_session.infrastructure.database.repositories import AuditLogRepository

logger = logging.getLogger(__name__)


class AuditService:
    """Service for audit logging with risk score calculation."""

    # Risk scores by event type
    RISK_SCORES = {
        EventTypeEnum.FINGERPRINT_REGISTERED: 5,
        EventTypeEnum.FINGERPRINT_BLOCKED: 100,
        EventTypeEnum.SUSPICIOUS_ACTIVITY: 80,
        EventTypeEnum.SESSION_CREATED: 10,
        EventTypeEnum.SESSION_EXPIRED: 5,
        EventTypeEnum.MAGIC_LINK_REQUESTED: 15,
        EventTypeEnum.MAGIC_LINK_RATE_LIMITED: 60,
        EventTypeEnum.MAGIC_LINK_USED: 10,
        EventTypeEnum.MAGIC_LINK_REJECTED: 70,
        EventTypeEnum.AUTH_CODE_FAILED: 50,
        EventTypeEnum.ACCOUNT_LOCKED: 100,
        EventTypeEnum.LOGIN_SUCCESS: 10,
        EventTypeEnum.LOGOUT: 5,
    }

    @staticmethod
    def calculate_risk_score(event_type: EventTypeEnum, metadata: Optional[dict] = None) -> int:
        """
        Calculate risk score for an event.

        Args:
            event_type: Type of security event
            metadata: Additional metadata that might affect risk

        Returns:
            Risk score (0-100)
        """
        base_score = AuditService.RISK_SCORES.get(event_type, 0)

        if metadata:
            if metadata.get("fingerprint_mismatch"):
                base_score += 20
            fingerprint_risk = metadata.get("fingerprint_risk")
            if isinstance(fingerprint_risk, (int, float)):
                base_score += int(fingerprint_risk * 20)

        return min(100, base_score)

    @staticmethod
    async def log_event(
        session: AsyncSession,
        event_type: EventTypeEnum,
        ip_address: Optional[str],
        fingerprint: Optional[str] = None,
        store_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """
        Log a security event.

        Args:
            session: Database session
            event_type: Type of security event
            ip_address: Client IP address
            fingerprint: Device fingerprint involved
            store_id: Store the event happened in
            customer_id: Customer involved (nullable)
            user_agent: User agent string
            metadata: Additional metadata
        """
        try:
            risk_score = AuditService.calculate_risk_score(event_type, metadata)

            audit_repo = AuditLogRepository(session)
            await audit_repo.create(
                event_type=event_type,
                ip_address=ip_address or "unknown",
                risk_score=risk_score,
                fingerprint=fingerprint,
                store_id=store_id,
                customer_id=customer_id,
                user_agent=user_agent,
                metadata=metadata,
            )

            logger.info(
                f"Audit log created: {event_type.value} for device {(fingerprint or '-')[:12]} "
                f"from {ip_address}"
            )
        except Exception as e:
            # Never fail the main operation due to audit logging failure
            logger.error(f"Failed to create audit log: {e}", exc_info=True)


# Singleton instance
audit_service = AuditService()
