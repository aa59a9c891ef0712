"""Handoff database module.

- SQLAlchemy 2.x async engine and session factory
- Alembic migrations under ``handoff.db.migrations``
- ORM models under ``handoff.db.models``
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from handoff.core.config import DatabaseSettings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_async_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL so it selects the psycopg async driver."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix) :]
    return url


def configure_engine(database: DatabaseSettings | None = None) -> AsyncEngine:
    """Create the engine and session factory once per process.

    Args:
        database: Database settings; loaded from the environment when omitted.

    Returns:
        The process-wide async engine.
    """
    global _engine, _session_factory

    if _engine is not None:
        return _engine

    if database is None:
        from handoff.core.settings import get_settings

        database = get_settings().database

    _engine = create_async_engine(
        to_async_url(str(database.url)),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        pool_pre_ping=True,
        echo=database.echo,
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _engine


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session; rolls back on error, never commits on its own.

    Usage:
        async with get_async_session() as session:
            order = await session.get(Order, order_id)
            await session.commit()
    """
    configure_engine()
    if _session_factory is None:
        msg = "Database session factory not initialized"
        raise RuntimeError(msg)

    session = _session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def transaction() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session inside a transaction that commits on clean exit."""
    async with get_async_session() as session, session.begin():
        yield session


async def close_engine() -> None:
    """Dispose of the engine during application shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
