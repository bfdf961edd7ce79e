"""
Database wiring for the Tool Definition Store.

One async engine per process, built from settings.database_url the first time
something asks for it, so importing this module never opens a connection.
PostgreSQL runs on asyncpg with a sized pool; SQLite (aiosqlite) is used by tests.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from toolengine.config.settings import settings
from toolengine.db.base import Base

logger = logging.getLogger(__name__)


class _Database:
    engine: Optional[AsyncEngine] = None
    sessions: Optional[async_sessionmaker] = None


_db = _Database()


def _engine_options(url: str) -> dict:
    options = {"echo": False, "pool_pre_ping": True}
    if url.startswith("postgresql"):
        options.update(pool_size=20, max_overflow=10)
    return options


def get_engine() -> AsyncEngine:
    if _db.engine is None:
        url = settings.database_url
        _db.engine = create_async_engine(url, **_engine_options(url))
        logger.info(f"[DB] Engine ready for {url.split('@')[-1]}")
    return _db.engine


def get_session_factory() -> async_sessionmaker:
    if _db.sessions is None:
        _db.sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _db.sessions


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create the tools table if it does not exist."""
    from toolengine.db import models  # noqa: F401  registers ToolModel on Base.metadata
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections; the next get_engine() builds a fresh engine."""
    engine, _db.engine, _db.sessions = _db.engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("[DB] Engine disposed")
