"""
WhatsApp Code Authentication
Six-digit codes issued and checked by the ordering backend.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from menu_session.application.services.phone_validation import mask_phone, validate_br_phone
from menu_session.application.services.retry import RetryPolicy
from menu_session.core.config import Settings, get_settings
from menu_session.core.exceptions import BackendRequestError, TransientBackendError
from menu_session.domain.schemas.auth import AuthCodeResult, CustomerUser
from menu_session.infrastructure.http.whatsapp_api import WhatsAppApi

logger = logging.getLogger(__name__)

LOCKED_STATUSES = {423, 429}


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class AuthCodeService:
    """
    Request/verify flow against the backend WhatsApp endpoints.

    Transient failures are retried by the shared policy; 4xx answers are
    returned as-is so wrong codes are never replayed.
    """

    def __init__(
        self,
        whatsapp_api: WhatsAppApi,
        retry_policy: RetryPolicy,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.whatsapp_api = whatsapp_api
        self.retry_policy = retry_policy
        self.device_name = settings.AUTH_DEVICE_NAME

    async def request_authentication_code(
        self, phone: str, store_id: str, name: Optional[str] = None
    ) -> AuthCodeResult:
        phone_check = validate_br_phone(phone)
        if not phone_check.is_valid:
            return AuthCodeResult(
                success=False, message=phone_check.reason or "Número de telefone inválido"
            )
        normalized = phone_check.normalized

        try:
            data = await self.retry_policy.run(
                lambda: self.whatsapp_api.request_code(normalized, store_id, name),
                name="request_code",
            )
        except BackendRequestError as e:
            logger.info(f"Code request refused for {mask_phone(normalized)}: {e.detail}")
            return AuthCodeResult(
                success=False,
                message=str(e.detail),
                locked=e.status_code in LOCKED_STATUSES or bool(e.data.get("locked")),
            )
        except TransientBackendError:
            return AuthCodeResult(
                success=False,
                message="Não foi possível enviar o código agora. Tente novamente.",
                retryable=True,
            )

        logger.info(f"Authentication code sent to {mask_phone(normalized)}")
        return AuthCodeResult(
            success=True,
            message=data.get("message") or "Código enviado via WhatsApp",
            expires_at=_parse_datetime(data.get("expires_at")),
        )

    async def validate_authentication_code(
        self, phone: str, code: str, store_id: str
    ) -> AuthCodeResult:
        """
        Verify a code.

        Returns:
            Success with bearer token and user, or failure carrying locked and
            attempts_remaining when the backend reports them
        """
        phone_check = validate_br_phone(phone)
        if not phone_check.is_valid:
            return AuthCodeResult(
                success=False, message=phone_check.reason or "Número de telefone inválido"
            )
        normalized = phone_check.normalized

        try:
            data = await self.retry_policy.run(
                lambda: self.whatsapp_api.verify_code(
                    normalized, code, store_id, self.device_name
                ),
                name="verify_code",
            )
        except BackendRequestError as e:
            return self._rejected(normalized, e)
        except TransientBackendError:
            return AuthCodeResult(
                success=False,
                message="Não foi possível validar o código agora. Tente novamente.",
                retryable=True,
            )

        token = data.get("token") or data.get("access_token")
        user_data = data.get("user")
        if not token or not user_data:
            logger.error(f"Code verification for {mask_phone(normalized)} returned no credential")
            return AuthCodeResult(
                success=False,
                message="Resposta inválida do servidor. Tente novamente.",
                retryable=True,
            )

        logger.info(f"Code verified for {mask_phone(normalized)}")
        return AuthCodeResult(
            success=True,
            message="Autenticação realizada com sucesso",
            token=token,
            user=CustomerUser.model_validate(user_data),
            expires_at=_parse_datetime(data.get("expires_at")),
        )

    @staticmethod
    def _rejected(phone: str, error: BackendRequestError) -> AuthCodeResult:
        data = error.data or {}
        locked = error.status_code in LOCKED_STATUSES or bool(data.get("locked"))
        attempts = data.get("attempts_remaining", data.get("remaining_attempts"))
        try:
            attempts_remaining = int(attempts) if attempts is not None else None
        except (TypeError, ValueError):
            attempts_remaining = None

        if locked:
            message = "Conta bloqueada temporariamente por excesso de tentativas. Solicite um novo código mais tarde."
        elif attempts_remaining is not None:
            message = f"Código inválido. {attempts_remaining} tentativa(s) restante(s)."
        else:
            message = str(error.detail) or "Código inválido"

        logger.info(f"Code rejected for {mask_phone(phone)} (locked={locked})")
        return AuthCodeResult(
            success=False,
            message=message,
            locked=locked,
            attempts_remaining=0 if locked else attempts_remaining,
        )
