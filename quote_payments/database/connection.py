"""Database engine and session management."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quote_payments.config import Settings

from .models import Base


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create the database engine.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to ``engine``.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Yield a session that commits on success and rolls back on error.

    Yields:
        AsyncSession: Database session
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections and dispose of the engine."""
    await engine.dispose()
