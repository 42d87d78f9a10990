"""
Health Check Routes
Health, readiness, and liveness endpoints.
"""
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from menu_session.api.dependencies import get_container
from menu_session.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)) -> JSONResponse:
    """Basic health check."""
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "healthy", "service": container.settings.APP_NAME},
    )


@router.get("/health/live")
async def liveness_check() -> JSONResponse:
    """Liveness check - service is running."""
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "alive"},
    )


@router.get("/health/ready")
async def readiness_check(container: ServiceContainer = Depends(get_container)) -> JSONResponse:
    """
    Readiness check - the audit database must answer.

    Redis is reported but not required: storage and rate limits fall back
    to process memory without it.
    """
    checks = {"database": False, "redis": False}

    try:
        async with container.session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database readiness check failed: {e}")

    checks["redis"] = await container.storage.ping()

    if checks["database"]:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "checks": checks},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "checks": checks},
    )
