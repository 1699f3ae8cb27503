from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, TypeVar

import anyio
from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from edge_usage.core.config.settings import get_settings

_settings = get_settings()

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 5_000

_T = TypeVar("_T")


def _sqlite_database_path(url: str) -> str | None:
    """Return the database file for a SQLite URL, ":memory:" for in-memory, None otherwise."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return None
    return parsed.database or ":memory:"


def _install_sqlite_pragmas(engine: Engine, *, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()


def _build_engine(url: str) -> AsyncEngine:
    sqlite_path = _sqlite_database_path(url)
    in_memory = sqlite_path == ":memory:"
    options: dict[str, Any] = {"echo": False}
    if not in_memory:
        options.update(
            pool_size=_settings.database_pool_size,
            max_overflow=_settings.database_max_overflow,
            pool_timeout=_settings.database_pool_timeout_seconds,
        )
    if sqlite_path is not None:
        options["connect_args"] = {"timeout": _SQLITE_BUSY_TIMEOUT_MS / 1000}

    created = create_async_engine(url, **options)
    if sqlite_path is not None:
        _install_sqlite_pragmas(created.sync_engine, wal=not in_memory)
    return created


engine = _build_engine(_settings.database_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def _shielded(awaitable: Awaitable[_T]) -> _T:
    with anyio.CancelScope(shield=True):
        return await awaitable


async def _safe_rollback(session: AsyncSession) -> None:
    if not session.in_transaction():
        return
    try:
        await _shielded(session.rollback())
    except Exception:
        logger.debug("Rollback failed", exc_info=True)


async def _safe_close(session: AsyncSession) -> None:
    try:
        await _shielded(session.close())
    except Exception:
        logger.debug("Session close failed", exc_info=True)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession] = SessionLocal) -> AsyncIterator[AsyncSession]:
    """Yield a session that is rolled back unless committed and always closed, even on cancellation."""
    session = factory()
    try:
        yield session
    finally:
        await _safe_rollback(session)
        await _safe_close(session)


async def init_db() -> None:
    from edge_usage.db.models import Base

    sqlite_path = _sqlite_database_path(_settings.database_url)
    if sqlite_path and sqlite_path != ":memory:":
        Path(sqlite_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("KV database ready url=%s", engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    await engine.dispose()
