"""
Custom Exceptions
Domain and application-level exceptions.
"""
from typing import Optional

from fastapi import HTTPException, status


class AuthenticationError(HTTPException):
    """Authentication failed."""

    def __init__(self, detail: str = "Credenciais inválidas"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class NotFoundError(HTTPException):
    """Resource not found."""

    def __init__(self, detail: str = "Recurso não encontrado"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )


class ValidationError(HTTPException):
    """Input rejected before any remote call (phone, fingerprint, token format)."""

    def __init__(self, detail: str = "Dados inválidos"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )


class RateLimitError(HTTPException):
    """Quota exhausted. Callers must not retry automatically."""

    def __init__(self, detail: str = "Muitas tentativas", remaining: int = 0):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
        )
        self.remaining = remaining


class SecurityError(HTTPException):
    """Abuse or integrity condition. Never retried."""

    def __init__(self, detail: str = "Acesso negado por motivos de segurança"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
        )


class FingerprintBlockedError(SecurityError):
    """Device fingerprint is blocked."""

    def __init__(self, detail: str = "Dispositivo bloqueado por atividade suspeita"):
        super().__init__(detail=detail)


class InvalidFingerprintError(SecurityError):
    """Device fingerprint is malformed or failed validation."""

    def __init__(self, detail: str = "Fingerprint do dispositivo inválido"):
        super().__init__(detail=detail)


class TokenReplayError(SecurityError):
    """Magic-link token already used or expired."""

    def __init__(self, detail: str = "Link já utilizado ou expirado"):
        super().__init__(detail=detail)


class SessionExpiredError(HTTPException):
    """Session no longer exists or expired server-side."""

    def __init__(self, detail: str = "Sessão expirada"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
        )


class DeviceNotRegisteredError(SessionExpiredError):
    """Request without a valid device cookie, or for a device this process no longer holds."""

    def __init__(self, detail: str = "Dispositivo não inicializado"):
        super().__init__(detail=detail)


class SessionStateError(HTTPException):
    """Operation not allowed in the session's current lifecycle state."""

    def __init__(self, detail: str = "Operação inválida para o estado da sessão"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class StoreUnavailableError(HTTPException):
    """Store closed or table cannot take more sessions."""

    def __init__(self, detail: str = "Loja indisponível no momento"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class StoreClosedError(StoreUnavailableError):
    """Store is closed for orders."""

    def __init__(self, detail: str = "Loja fechada no momento"):
        super().__init__(detail=detail)


class TableUnavailableError(StoreUnavailableError):
    """Table is inactive or already holds the maximum number of sessions."""

    def __init__(self, detail: str = "Mesa indisponível"):
        super().__init__(detail=detail)


class AccountLockedError(HTTPException):
    """Too many wrong codes; the backend locked the phone."""

    def __init__(self, detail: str = "Conta bloqueada temporariamente"):
        super().__init__(
            status_code=status.HTTP_423_LOCKED,
            detail=detail,
        )


class TransientBackendError(HTTPException):
    """Timeout, connection drop or 5xx from the ordering backend."""

    retryable = True

    def __init__(
        self,
        detail: str = "Serviço temporariamente indisponível. Tente novamente.",
        status_code: Optional[int] = None,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
        )
        self.upstream_status = status_code


class BackendRequestError(HTTPException):
    """4xx from the ordering backend. Business-rule failure, never retried."""

    retryable = False

    def __init__(
        self,
        detail: str = "Requisição recusada",
        status_code: int = status.HTTP_400_BAD_REQUEST,
        data: Optional[dict] = None,
    ):
        super().__init__(status_code=status_code, detail=detail)
        self.data = data or {}


class StorageQuotaError(Exception):
    """Persistent storage refused a write for capacity reasons."""
