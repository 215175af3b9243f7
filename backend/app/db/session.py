"""
Catalog database: async engine, request-scoped sessions and bootstrap.

One request = one transaction:

  get_db() ──► AsyncSession ──► Catalog / TokenStore (same session)
                    │
                    └── commit on success, rollback on any exception

Owner scoping lives in the Catalog queries, not here.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

CATALOG_SCHEMA = "intake"

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.db_echo_sql,
)

# Rows returned by services are serialized after the commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Transactional session shared by everything one request builds."""
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Bootstrap and probes
# ---------------------------------------------------------------------------

async def create_catalog_schema() -> None:
    """Create the intake schema and its tables if absent (local development only)."""
    from app.models.documents import Base

    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {CATALOG_SCHEMA}"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Catalog schema ready | schema=%s tables=%d", CATALOG_SCHEMA, len(Base.metadata.tables))


async def check_db_health() -> dict:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("Catalog health check failed | error=%s", exc)
        return {"status": "error", "detail": str(exc)}
