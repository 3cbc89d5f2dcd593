"""
Database session management for the document metadata store.

Flow:
  1. The Runtime builds one AsyncEngine + async_sessionmaker per process.
  2. Request handlers receive a session through the get_db() dependency
     (portal.api.dependencies); the transaction commits when the handler
     returns and rolls back if it raises.
  3. Background work (the coordinator's bookkeeping) opens its own short
     transaction with session_scope(). Work items get a fresh session from
     the Runtime's scope factory and commit it themselves.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from portal.core.config import settings
from portal.models.documents import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the given DSN.

    SQLite files get their parent directory created up front; the pool sizing
    knobs only apply to server databases.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(database_url, echo=echo)

    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=echo,
    )


# ---------------------------------------------------------------------------
# Schema bootstrap
# ---------------------------------------------------------------------------

async def init_models(bind: AsyncEngine) -> None:
    """Create all metadata tables that do not exist yet."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Metadata schema ready")


# ---------------------------------------------------------------------------
# Background session (coordinator bookkeeping)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Short-lived session outside the request cycle.

    Commits on normal exit, rolls back if the body raises; the connection is
    returned to the pool either way.
    """
    async with factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(bind: AsyncEngine) -> dict:
    """Ping the database; used by the /ready endpoint."""
    try:
        async with bind.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
