"""
Database connection and session management.

The event store (activity_logs) and the user profile table live in Postgres,
reached through asyncpg with SQLAlchemy async. Analytics fan-out needs one
session per concurrent section, so the session factory is exposed as well.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from lifecycle.config import settings


def get_database_url() -> str:
    """Get database URL without sslmode (asyncpg rejects it as a query param)."""
    url = settings.database_url
    if not url:
        return ""
    if "?sslmode=" in url:
        url = url.split("?sslmode=")[0]
    elif "&sslmode=" in url:
        url = url.replace("&sslmode=require", "").replace("&sslmode=disable", "")
    return url


def create_engine_if_configured() -> Optional[AsyncEngine]:
    """Create async engine only if DATABASE_URL is configured."""
    db_url = get_database_url()
    if not db_url:
        print("WARNING: DATABASE_URL not configured. Lifecycle storage disabled.")
        return None

    return create_async_engine(
        db_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.analytics_max_concurrency + 5,
        max_overflow=10,
    )


engine = create_engine_if_configured()

async_session_maker = (
    async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    if engine
    else None
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def get_session_factory() -> async_sessionmaker:
    """Session factory for services that open their own sessions."""
    if not async_session_maker:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return async_session_maker


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database session (workers, scripts)."""
    factory = get_session_factory()

    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency to get database session."""
    async with get_db_context() as session:
        yield session


async def close_db() -> None:
    """Close database connections."""
    if engine:
        await engine.dispose()
