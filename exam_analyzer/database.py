"""
Database configuration for the SQL record store.
Uses SQLAlchemy async for database operations.

The engine is created lazily so the default in-memory record store never
needs a database driver.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from .config import settings

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine; pool options only apply to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.app_env == "development")
    return create_async_engine(
        database_url,
        echo=settings.app_env == "development",
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def get_engine() -> AsyncEngine:
    """Get or create the global async engine."""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(settings.database_url)
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Get or create the global async session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None):
    """
    Initialize the database by creating all tables.
    Called on application startup when the database store is configured.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        from .models import exam_paper  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/verified successfully")


async def close_db():
    """
    Close database connections.
    Called on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
