"""
Database session management.

Flow:
  1. A FastAPI dependency (knowledge.api.dependencies.get_uow) opens a
     session from AsyncSessionLocal and wraps it in a SqlUnitOfWork.
  2. Services commit at the boundaries of each recoverable step; the
     post-commit hooks of the unit of work run after every commit.
  3. When the request ends the session is closed and the connection is
     returned to the pool; uncommitted work is rolled back.

Celery tasks and the beat-driven scanners use unit_of_work() directly.

Tenant isolation is enforced by the repositories: every statement filters
on tenant_id (see knowledge.repositories.sql).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from knowledge.core.config import settings

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
    echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
)

# Session factory; expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

@asynccontextmanager
async def unit_of_work() -> AsyncGenerator["SqlUnitOfWork", None]:
    """
    Yield a SqlUnitOfWork bound to a fresh session.

    Pending writes are committed on a clean exit and rolled back when the
    block raises.
    """
    from knowledge.repositories.sql import SqlUnitOfWork
    from knowledge.services.notifications import build_hooks

    async with AsyncSessionLocal() as session:
        uow = SqlUnitOfWork(session, hooks=build_hooks())
        try:
            yield uow
        except Exception:
            await uow.rollback()
            raise
        else:
            await uow.commit()


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /ready endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
