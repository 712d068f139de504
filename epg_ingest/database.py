"""
SQLite engine and session management for the program store.
"""
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from epg_ingest.config import settings
from epg_ingest.models import Base

logger = logging.getLogger(__name__)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA cache_size = -64000",
    "PRAGMA busy_timeout = 5000",
)

# Initialized by init_db() during startup
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _apply_pragmas(dbapi_conn, _) -> None:
    cursor = dbapi_conn.cursor()
    for pragma in _SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() during startup.")
    return _session_factory


async def init_db(database_path: str | None = None) -> None:
    """
    Open the program database and create missing tables.

    Calling it again (e.g. with a different path in tests) replaces the
    current engine.

    Args:
        database_path: SQLite file path (defaults to settings.database_path)
    """
    global _engine, _session_factory

    path = database_path or settings.database_path
    if _engine is not None:
        await _engine.dispose()

    _engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        echo=False,
        connect_args={"timeout": 30},
    )
    event.listen(_engine.sync_engine, "connect", _apply_pragmas)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)
    logger.info("Program database ready at %s", path)


async def close_db() -> None:
    """Dispose the engine on shutdown"""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connections closed")


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session wrapped in a transaction: commits on success, rolls back on error."""
    async with get_session_factory()() as session:
        async with session.begin():
            yield session
