"""
Database Engine

One relational database holds the salon catalog, staff schedules, bookings
and the inbound event ledger. The booking repository opens a short-lived
session per operation from async_session_factory.
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quickbook.config import settings
from quickbook.models.database import Base

logger = logging.getLogger(__name__)


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine for a database URL.

    Postgres gets a pre-pinged connection pool sized from settings; SQLite
    (local runs and tests) gets a thread-agnostic connection instead.
    """
    url = url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=settings.debug,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        url,
        echo=settings.debug,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


engine = build_engine()

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """
    Create missing tables.

    Development only; production schemas are managed by migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of pooled connections."""
    await engine.dispose()


async def check_db_health() -> bool:
    """Run SELECT 1 for the readiness probe."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database health check failed: {e}")
        return False
    return True
