import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from menu_session.api.exceptions import EXCEPTION_HANDLERS
from menu_session.api.middleware.rate_limit import RateLimitMiddleware
from menu_session.api.middleware.security import (
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
)
from menu_session.api.routes import auth, cart, fingerprint, health, session
from menu_session.container import ServiceContainer
from menu_session.core.config import Settings, get_settings
from menu_session.infrastructure.database.connection import close_db, init_db
from menu_session.infrastructure.redis.connection import close_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting session service...")
    try:
        await init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")

    container = ServiceContainer(settings)
    app.state.container = container
    await container.start()

    yield

    logger.info("Shutting down session service...")
    await container.shutdown()
    await close_db()
    await close_redis()
    logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application. The lifespan attaches a ServiceContainer;
    tests that skip the lifespan set app.state.container themselves.
    """
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Storefront session, device fingerprint and WhatsApp authentication service",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.DEBUG else [settings.PUBLIC_APP_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(RateLimitMiddleware)

    app.add_middleware(SecurityHeadersMiddleware)
    # Outermost, so the rate limiter and routes see the client context
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router)
    app.include_router(fingerprint.router)
    app.include_router(session.router)
    app.include_router(auth.router)
    app.include_router(cart.router)

    for exc_class, handler in EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_class, handler)

    @app.get("/")
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
        }

    return app


app = create_app()
