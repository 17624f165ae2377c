"""
Core314 Automation Engine - Database Connection
================================================

Async SQLAlchemy setup. The execution queue relies on the store for all
cross-request exclusion, so the engine also reports whether the backend
can take row locks with SKIP LOCKED.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from core314.core.config import settings
from core314.core.exceptions import PersistenceError


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async engine for the configured store."""
    url = str(database_url or settings.DATABASE_URL)

    # SQLite doesn't support pool_size/max_overflow
    if "sqlite" in url:
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


engine = create_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def supports_skip_locked(session: AsyncSession) -> bool:
    """True when the session's backend understands FOR UPDATE SKIP LOCKED."""
    bind = session.get_bind()
    return bind.dialect.name in ("postgresql", "mysql", "oracle")


# ==========================================================================
# Session Dependency
# ==========================================================================

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    Commits when the request handler returns. Store failures surface as
    PersistenceError so the API layer answers 500 without leaking driver
    details.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError("Database operation failed") from e
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db() -> None:
    """Create tables if they do not exist (development convenience)."""
    async with engine.begin() as conn:
        from core314.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
