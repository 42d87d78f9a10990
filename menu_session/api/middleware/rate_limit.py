"""
Rate Limiting Middleware
Per-IP sliding window limits, fail-closed for authentication endpoints.
"""
import logging
from typing import Callable

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from menu_session.api.middleware.security import extract_client_ip
from menu_session.application.services.rate_limit_service import RateLimitService

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware over the container's RateLimitService."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith("/health"):
            return await call_next(request)

        rate_limiter: RateLimitService = request.app.state.container.rate_limiter
        client_ip = extract_client_ip(request)
        endpoint = request.url.path
        strict = endpoint in RateLimitService.CRITICAL_ENDPOINTS

        try:
            allowed, headers = await rate_limiter.check_rate_limit(
                client_ip, endpoint, strict=strict
            )
        except HTTPException as e:
            return JSONResponse(
                status_code=e.status_code,
                content={"detail": e.detail, "retryable": True},
            )
        except Exception as e:
            if strict:
                logger.critical(f"Rate limit service failure for critical endpoint {endpoint}: {e}")
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={
                        "detail": "Serviço de limitação indisponível. Tente novamente mais tarde.",
                        "retryable": True,
                    },
                )
            logger.error(f"Rate limit check failed (non-critical): {e}")
            return await call_next(request)

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP {client_ip} on {endpoint}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": "Muitas requisições. Aguarde um momento.",
                    "remaining": 0,
                    "retry_after": headers.get("X-RateLimit-Reset", 60),
                },
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = str(value)
        return response
