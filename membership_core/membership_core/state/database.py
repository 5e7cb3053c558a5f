"""Async SQLAlchemy engine and session factory.

Supports both PostgreSQL (production) and SQLite (local dev and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → SQLite engine (see :mod:`.sqlite_adapter`)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine for *database_url*.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from membership_core.state.sqlite_adapter import get_local_engine

        # sqlite+aiosqlite:///path/to/db, or no path for in-memory.
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ""
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",
                "lock_timeout": "10000",
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by services that open their own short sessions."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create every ORM table.  Idempotent; production uses Alembic instead."""
    from membership_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/verified")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on clean exit and rolls back on error."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
