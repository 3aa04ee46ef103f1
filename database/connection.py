"""
PropelAI Database Connection
Async PostgreSQL engine and session factory for the job store
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from sqlalchemy import text

from core.config import DatabaseConfig, get_config


def create_engine(config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    """Create the async engine for the configured DATABASE_URL"""
    config = config or get_config().database
    return create_async_engine(
        config.database_url,
        echo=config.echo,
        poolclass=NullPool,  # Workers are short-lived; no pool to leak
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the async session factory bound to ``engine``"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session scope.
    Usage:
        async with session_scope(factory) as db:
            result = await db.execute(...)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """
    Create the job store tables.
    Call this on application startup.
    """
    from database.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def health_check(engine: AsyncEngine) -> dict:
    """Check database connectivity."""
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.scalar()
            return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": str(e)}
