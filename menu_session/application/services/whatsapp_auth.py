"""
WhatsApp Magic Link Authentication
Single-use links delivered over WhatsApp that open a session in the original ordering context.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode
from uuid import UUID

import jwt
import uuid6
from fastapi import HTTPException

from menu_session.application.services.audit_service import audit_service
from menu_session.application.services.credential_store import CustomerBackend
from menu_session.application.services.fingerprint_detection import FingerprintDetectionService
from menu_session.application.services.phone_validation import mask_phone, validate_br_phone
from menu_session.application.services.rate_limit_service import RateLimitService
from menu_session.application.services.session_manager import ContextualSessionManager
from menu_session.core.config import Settings, get_settings
from menu_session.core.exceptions import BackendRequestError, TransientBackendError
from menu_session.core.security import JWTManager, sha256_hex
from menu_session.domain.schemas.auth import (
    MagicLinkRequest,
    MagicLinkResponse,
    MagicLinkSessionContext,
    MagicLinkSessionResult,
    TokenValidationResult,
)
from menu_session.domain.schemas.fingerprint import utcnow
from menu_session.domain.schemas.session import SessionContext
from menu_session.infrastructure.database.connection import SessionContextFactory
from menu_session.infrastructure.database.models import EventTypeEnum
from menu_session.infrastructure.database.repositories import (
    MagicLinkTokenRepository,
    as_utc,
)
from menu_session.infrastructure.http.whatsapp_api import WhatsAppApi

logger = logging.getLogger(__name__)


class WhatsAppAuthService:
    """
    Magic link issuing and redemption.

    The magic_link_tokens row is the source of truth for expiry and use; the
    JWT only carries its id and the request context.
    """

    def __init__(
        self,
        session_factory: SessionContextFactory,
        jwt_manager: JWTManager,
        rate_limiter: RateLimitService,
        whatsapp_api: WhatsAppApi,
        customer_api: CustomerBackend,
        session_manager: ContextualSessionManager,
        detection: FingerprintDetectionService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.jwt_manager = jwt_manager
        self.rate_limiter = rate_limiter
        self.whatsapp_api = whatsapp_api
        self.customer_api = customer_api
        self.session_manager = session_manager
        self.detection = detection
        self._clock = clock

        self.public_url = settings.PUBLIC_APP_URL.rstrip("/")
        self.expire_minutes = settings.MAGIC_LINK_EXPIRE_MINUTES
        self.max_per_phone = settings.MAGIC_LINK_MAX_PER_PHONE
        self.phone_window = settings.MAGIC_LINK_PHONE_WINDOW_HOURS * 3600
        self.max_per_fingerprint = settings.MAGIC_LINK_MAX_PER_FINGERPRINT
        self.fingerprint_window = settings.MAGIC_LINK_FINGERPRINT_WINDOW_MINUTES * 60
        self.fingerprint_policy = settings.MAGIC_LINK_FINGERPRINT_POLICY

    # ==========================================
    # RATE LIMITING
    # ==========================================

    @staticmethod
    def _phone_key(phone: str) -> str:
        return f"magic_link:phone:{phone}"

    @staticmethod
    def _fingerprint_key(fingerprint: str) -> str:
        return f"magic_link:fingerprint:{fingerprint}"

    async def check_rate_limit(self, phone: str, fingerprint: str) -> tuple[bool, int, Optional[str]]:
        """
        Check both magic link quotas.

        Args:
            phone: Normalized phone
            fingerprint: Requesting device

        Returns:
            Tuple of (allowed, remaining, reason); remaining is the stricter quota
        """
        phone_remaining = await self.rate_limiter.remaining(
            self._phone_key(phone), self.max_per_phone, self.phone_window
        )
        if phone_remaining <= 0:
            return False, 0, "Limite diário de tentativas excedido para este telefone"

        fingerprint_remaining = await self.rate_limiter.remaining(
            self._fingerprint_key(fingerprint), self.max_per_fingerprint, self.fingerprint_window
        )
        if fingerprint_remaining <= 0:
            return False, 0, "Limite de tentativas por hora excedido"

        return True, min(phone_remaining, fingerprint_remaining), None

    async def _reserve_attempt(
        self, phone: str, fingerprint: str
    ) -> tuple[Optional[list[tuple[str, str]]], int, Optional[str]]:
        """
        Take one slot of both quotas, or neither.

        Returns:
            Tuple of (reservations to release on failure or None when refused, remaining, reason)
        """
        phone_key = self._phone_key(phone)
        allowed, phone_remaining, phone_member = await self.rate_limiter.reserve(
            phone_key, self.max_per_phone, self.phone_window
        )
        if not allowed:
            return None, 0, "Limite diário de tentativas excedido para este telefone"

        fingerprint_key = self._fingerprint_key(fingerprint)
        allowed, fingerprint_remaining, fingerprint_member = await self.rate_limiter.reserve(
            fingerprint_key, self.max_per_fingerprint, self.fingerprint_window
        )
        if not allowed:
            await self.rate_limiter.release(phone_key, phone_member)
            return None, 0, "Limite de tentativas por hora excedido"

        reservations = [(phone_key, phone_member), (fingerprint_key, fingerprint_member)]
        return reservations, min(phone_remaining, fingerprint_remaining), None

    async def _release(self, reservations: list[tuple[str, str]]) -> None:
        for key, member in reservations:
            await self.rate_limiter.release(key, member)

    # ==========================================
    # REQUEST
    # ==========================================

    def build_link(self, token: str) -> str:
        return f"{self.public_url}/auth/whatsapp/verify?{urlencode({'token': token})}"

    async def request_magic_link(
        self,
        request: MagicLinkRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MagicLinkResponse:
        """
        Issue a magic link and send it over WhatsApp.

        Both quotas are reserved before anything else is awaited. The attempt
        keeps counting once the token row exists, whether or not delivery
        succeeds.
        """
        phone_check = validate_br_phone(request.phone)
        if not phone_check.is_valid:
            return MagicLinkResponse(
                success=False, message=phone_check.reason or "Número de telefone inválido"
            )
        phone = phone_check.normalized

        validation = await self.detection.validate_fingerprint(request.fingerprint)
        if validation.is_blocked:
            return MagicLinkResponse(
                success=False, message="Dispositivo bloqueado por atividade suspeita"
            )
        if not validation.is_valid:
            return MagicLinkResponse(success=False, message="Fingerprint do dispositivo inválido")

        reservations, remaining, reason = await self._reserve_attempt(phone, request.fingerprint)
        if reservations is None:
            async with self.session_factory() as db:
                await audit_service.log_event(
                    session=db,
                    event_type=EventTypeEnum.MAGIC_LINK_RATE_LIMITED,
                    ip_address=ip_address,
                    fingerprint=request.fingerprint,
                    store_id=request.store_id,
                    user_agent=user_agent,
                    metadata={"phone": mask_phone(phone), "reason": reason},
                )
            logger.warning(f"Magic link rate limited for {mask_phone(phone)}: {reason}")
            return MagicLinkResponse(
                success=False,
                message=reason or "Limite de tentativas excedido",
                rate_limit_remaining=0,
            )

        session_context = request.session_context or MagicLinkSessionContext()
        token_id = uuid6.uuid7()
        expires_at = self._clock() + timedelta(minutes=self.expire_minutes)
        token = self.jwt_manager.create_magic_link_token(
            token_id=str(token_id),
            phone=phone,
            store_id=request.store_id,
            fingerprint=request.fingerprint,
            session_context=session_context.model_dump(by_alias=True),
            expires_at=expires_at,
        )

        try:
            async with self.session_factory() as db:
                await MagicLinkTokenRepository(db).create(
                    token_id=token_id,
                    phone=phone,
                    store_id=request.store_id,
                    fingerprint=request.fingerprint,
                    token_hash=sha256_hex(token),
                    expires_at=expires_at,
                    table_id=session_context.table_id,
                    is_delivery=session_context.is_delivery,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
        except Exception:
            await self._release(reservations)
            raise

        try:
            await self.whatsapp_api.send_magic_link(
                phone, request.store_id, self.build_link(token), self.expire_minutes
            )
        except (TransientBackendError, BackendRequestError) as e:
            logger.error(f"Magic link delivery failed for {mask_phone(phone)}: {e.detail}")
            return MagicLinkResponse(
                success=False,
                message="Erro ao enviar mensagem via WhatsApp",
                rate_limit_remaining=remaining,
            )

        async with self.session_factory() as db:
            await audit_service.log_event(
                session=db,
                event_type=EventTypeEnum.MAGIC_LINK_REQUESTED,
                ip_address=ip_address,
                fingerprint=request.fingerprint,
                store_id=request.store_id,
                user_agent=user_agent,
                metadata={"phone": mask_phone(phone), "token_id": str(token_id)},
            )

        logger.info(f"Magic link {token_id} sent to {mask_phone(phone)} for store {request.store_id}")
        return MagicLinkResponse(
            success=True,
            message="Link de acesso enviado via WhatsApp",
            expires_at=expires_at,
            rate_limit_remaining=remaining,
        )

    # ==========================================
    # VALIDATION / REDEMPTION
    # ==========================================

    async def validate_magic_link_token(
        self,
        token: str,
        fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenValidationResult:
        """
        Validate a magic link token without consuming it.

        Expired tokens are burned so they can never be replayed. A device
        other than the requester is flagged, and rejected only under the
        reject policy.
        """
        try:
            payload = self.jwt_manager.decode_magic_link_token(token)
            token_id = UUID(str(payload["jti"]))
        except (jwt.InvalidTokenError, ValueError):
            return TokenValidationResult(is_valid=False, reason="Token inválido ou malformado")

        async with self.session_factory() as db:
            repo = MagicLinkTokenRepository(db)
            row = await repo.get_by_id(token_id)
            if row is None or row.token_hash != sha256_hex(token):
                return TokenValidationResult(is_valid=False, reason="Token não encontrado")

            if row.is_used:
                return TokenValidationResult(is_valid=False, reason="Token já foi utilizado")

            if as_utc(row.expires_at) <= self._clock():
                await repo.mark_used(token_id)
                logger.info(f"Expired magic link {token_id} burned")
                return TokenValidationResult(is_valid=False, reason="Token expirado")

            mismatch = bool(fingerprint) and fingerprint != row.fingerprint
            if mismatch:
                logger.warning(
                    f"Magic link {token_id} opened from another device "
                    f"({row.fingerprint[:12]} -> {fingerprint[:12]})"
                )
                if self.fingerprint_policy == "reject":
                    await audit_service.log_event(
                        session=db,
                        event_type=EventTypeEnum.MAGIC_LINK_REJECTED,
                        ip_address=ip_address,
                        fingerprint=fingerprint,
                        store_id=row.store_id,
                        metadata={"token_id": str(token_id), "fingerprint_mismatch": True},
                    )
                    return TokenValidationResult(
                        is_valid=False,
                        reason="Link aberto em um dispositivo diferente do solicitante",
                        fingerprint_mismatch=True,
                    )

            return TokenValidationResult(
                is_valid=True,
                can_create_session=True,
                fingerprint_mismatch=mismatch,
                token_id=str(token_id),
                phone=row.phone,
                store_id=row.store_id,
                fingerprint=row.fingerprint,
                session_context=MagicLinkSessionContext(
                    table_id=row.table_id, is_delivery=row.is_delivery
                ),
            )

    async def create_session_from_token(
        self,
        token: str,
        fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MagicLinkSessionResult:
        """
        Redeem a magic link: consume it and open a session in the context
        captured when the link was requested, never the current page's.
        """
        validation = await self.validate_magic_link_token(token, fingerprint, ip_address)
        if not validation.is_valid:
            return MagicLinkSessionResult(
                success=False, message=validation.reason or "Token inválido"
            )

        async with self.session_factory() as db:
            claimed = await MagicLinkTokenRepository(db).mark_used(UUID(validation.token_id))
        if not claimed:
            return MagicLinkSessionResult(success=False, message="Token já foi utilizado")

        customer = None
        try:
            customer = await self.customer_api.find_by_phone(validation.phone, validation.store_id)
        except (TransientBackendError, BackendRequestError) as e:
            logger.warning(f"Customer lookup for {mask_phone(validation.phone)} failed: {e.detail}")
        customer_id = (customer.uuid or str(customer.id)) if customer else None

        ordering = validation.session_context or MagicLinkSessionContext()
        context = SessionContext(
            store_id=validation.store_id,
            table_id=None if ordering.is_delivery else ordering.table_id,
            is_delivery=ordering.is_delivery,
            fingerprint=validation.fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            session = await self.session_manager.create_session(context)
            if customer_id:
                session = await self.session_manager.associate_customer(session.id, customer_id)
        except HTTPException as e:
            logger.error(f"Session from magic link {validation.token_id} refused: {e.detail}")
            return MagicLinkSessionResult(success=False, message=str(e.detail))

        async with self.session_factory() as db:
            await audit_service.log_event(
                session=db,
                event_type=EventTypeEnum.MAGIC_LINK_USED,
                ip_address=ip_address,
                fingerprint=fingerprint or validation.fingerprint,
                store_id=validation.store_id,
                customer_id=customer_id,
                user_agent=user_agent,
                metadata={
                    "token_id": validation.token_id,
                    "session_id": session.id,
                    "fingerprint_mismatch": validation.fingerprint_mismatch,
                },
            )

        logger.info(
            f"Session {session.id} created from magic link for {mask_phone(validation.phone)}"
        )
        return MagicLinkSessionResult(
            success=True,
            message="Sessão criada com sucesso",
            session=session,
            customer_id=customer_id,
        )

    async def cleanup_expired_tokens(self, before: Optional[datetime] = None) -> int:
        async with self.session_factory() as db:
            removed = await MagicLinkTokenRepository(db).delete_expired(before or self._clock())
        if removed:
            logger.info(f"Removed {removed} expired magic link tokens")
        return removed
