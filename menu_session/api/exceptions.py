"""
Exception Handlers
Render domain errors as {"detail": ...} with retry hints where the caller needs them.
"""
import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from menu_session.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    BackendRequestError,
    RateLimitError,
    SecurityError,
    SessionExpiredError,
    SessionStateError,
    StoreUnavailableError,
    TransientBackendError,
    ValidationError,
)

logger = logging.getLogger(__name__)


async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": False},
    )


async def rate_limit_error_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    """Rate limits report the remaining quota; clients must not auto-retry."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "remaining": exc.remaining, "retryable": False},
    )


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    logger.warning(
        f"Security refusal on {request.url.path} from "
        f"{getattr(request.state, 'client_ip', 'unknown')}: {exc.detail}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": False},
    )


async def session_error_handler(request: Request, exc: SessionExpiredError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": False},
    )


async def conflict_error_handler(request: Request, exc: SessionStateError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": False},
    )


async def account_locked_error_handler(request: Request, exc: AccountLockedError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "locked": True, "retryable": False},
    )


async def backend_error_handler(request: Request, exc: BackendRequestError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": False},
    )


async def transient_error_handler(request: Request, exc: TransientBackendError) -> JSONResponse:
    """Upstream trouble: the client may offer a manual retry."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": True},
    )


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Dados inválidos",
            "errors": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may hold exception instances
    return [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Erro interno do servidor"},
    )


EXCEPTION_HANDLERS = (
    (AuthenticationError, authentication_error_handler),
    (ValidationError, validation_error_handler),
    (RateLimitError, rate_limit_error_handler),
    (SecurityError, security_error_handler),
    (SessionExpiredError, session_error_handler),
    (SessionStateError, conflict_error_handler),
    (StoreUnavailableError, conflict_error_handler),
    (AccountLockedError, account_locked_error_handler),
    (BackendRequestError, backend_error_handler),
    (TransientBackendError, transient_error_handler),
    (RequestValidationError, request_validation_error_handler),
    (Exception, generic_exception_handler),
)
