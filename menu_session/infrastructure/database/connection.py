"""
Database Connection Management
Async SQLAlchemy 2.0 engine for magic link tokens and the audit trail.
"""
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from menu_session.core.config import get_settings
from menu_session.infrastructure.database.models import Base

settings = get_settings()

SessionContextFactory = Callable[[], AsyncContextManager[AsyncSession]]


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # SQLite pools are not sized
        return {"echo": settings.DEBUG}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,  # Verify connections before using
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "echo": settings.DEBUG,  # Log SQL queries in debug mode
    }


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def session_context_factory(
    factory: async_sessionmaker[AsyncSession],
) -> SessionContextFactory:
    """
    Build a context manager factory that commits on success and rolls back on error.
    Long-lived services open one unit of work per operation through it.
    """

    @asynccontextmanager
    async def _session_context() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return _session_context


get_db_session_context = session_context_factory(AsyncSessionLocal)


async def init_db() -> None:
    """
    Initialize database (create tables if they don't exist).
    Note: In production, use Alembic migrations instead.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close database connections (called on application shutdown).
    """
    await engine.dispose()
