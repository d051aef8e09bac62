"""
Database Session Management
Infinibuy Trading Core

Provides async database connection with:
- Connection pooling
- Context manager support with commit/rollback
- Health check capabilities
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncGenerator, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy import text
from loguru import logger

from infinibuy.core.config import DatabaseSettings, settings


SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def create_engine_from_settings(config: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    config = config or settings.db
    kwargs: Dict[str, Any] = {"echo": config.echo, "future": True}
    if not config.is_sqlite:
        kwargs.update(
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,  # Verify connections before use
        )
    return create_async_engine(config.url, **kwargs)


engine = create_engine_from_settings()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def make_session_context(
    session_maker: async_sessionmaker,
) -> SessionFactory:
    """
    Build a get_db_context-style factory bound to another sessionmaker.

    Used by tests and by callers that manage their own engine.
    """

    @asynccontextmanager
    async def _context() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    return _context


get_db_context = make_session_context(AsyncSessionLocal)
"""
Context manager for database sessions.

Everything written inside one context commits together or not at all.

Usage:
    async with get_db_context() as db:
        result = await db.execute(query)
"""


async def init_db(target: Optional[AsyncEngine] = None) -> None:
    """
    Initialize database tables.

    Note: In production, use migrations instead.
    """
    from infinibuy.db.base import Base
    # Import models module to register all models with Base
    from infinibuy.db import models  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()


async def health_check() -> bool:
    """Return True if the database answers a trivial query."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False
