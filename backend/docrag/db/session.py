"""
Database engine and session management.

One async engine per process; sessions are short-lived and scoped to a
single unit of work. Every write path in the store opens its own
``session.begin()`` block so a failed statement never leaves half a batch
committed.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docrag.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,          # detect stale connections before use
    pool_recycle=3600,           # recycle connections every hour
    echo=settings.db_echo_sql,
)

# expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# ---------------------------------------------------------------------------
# Schema bootstrap (worker boot, throwaway databases)
# ---------------------------------------------------------------------------

async def init_schema() -> None:
    """Enable pgvector and create all tables that do not exist yet."""
    from docrag.models.conversations import Conversation, Message  # noqa: F401  (register tables)
    from docrag.models.documents import Base

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ready | tables=%s", sorted(Base.metadata.tables))
