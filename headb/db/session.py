"""Async engine and sessions.

The engine is built on first use from ``settings.database``. Request handlers
get one session per request through ``get_session_dependency``; background
pollers open their own with ``get_async_session``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

# Registers every table on SQLModel.metadata
import headb.models  # noqa: F401
from headb.config import get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_async_session_factory: sessionmaker | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for `url`.

    SQLite only checks `api_keys.user_id` against `users` with the
    foreign_keys pragma, so it is switched on for every new connection.
    """
    engine = create_async_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        database = get_settings().database
        _engine = build_engine(database.url, echo=database.echo)
    return _engine


def _get_session_factory() -> sessionmaker:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


async def init_db() -> None:
    """Create missing tables.

    Deployments with an existing schema manage it with migrations; this only
    adds tables that are absent.
    """
    async with _get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("db.initialized", tables=sorted(SQLModel.metadata.tables))


async def close_db() -> None:
    """Dispose of the engine; the next use builds a new one."""
    global _engine, _async_session_factory
    if _engine is None:
        return

    await _engine.dispose()
    _engine = None
    _async_session_factory = None
    logger.info("db.closed")


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on clean exit, roll back and re-raise otherwise.

    Usage:
        async with get_async_session() as session:
            user = await UserService(session).get(user_id)
    """
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session_dependency() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: the request's session."""
    async with get_async_session() as session:
        yield session
