"""
Database connection and session management for AgentU.

The SQL store backend is used when AGENTU_DATABASE_URL is set. Engine and
session factory are created lazily and shared by the process.
"""

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import Settings, get_settings_instance
from .exceptions import DatabaseConnectionError, DatabaseSessionError
from .logging import get_logger

logger = get_logger(__name__)

# Create declarative base
Base = declarative_base()

# Global async engine and session factory - lazy initialization
_async_engine: AsyncEngine | None = None
_AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _redact(database_url: str) -> str:
    """Strip credentials from a URL before logging it."""
    if "@" in database_url:
        return database_url.split("@", 1)[1]
    return database_url.split("://", 1)[0]


def create_engine_for(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine with pool settings appropriate for the dialect."""
    settings = settings or get_settings_instance()
    try:
        if database_url.startswith("sqlite"):
            return create_async_engine(database_url, echo=False)
        return create_async_engine(
            database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=False,
        )
    except Exception as e:
        logger.error(f"Failed to create async database engine: {e}")
        raise DatabaseConnectionError(f"engine creation: {e}") from e


def get_async_engine() -> AsyncEngine:
    global _async_engine  # noqa: PLW0603
    if _async_engine is None:
        settings = get_settings_instance()
        if not settings.database_url:
            raise DatabaseConnectionError("AGENTU_DATABASE_URL is not set")
        logger.debug("Database configuration", extra={"database": _redact(settings.database_url)})
        _async_engine = create_engine_for(settings.database_url, settings)
    return _async_engine


def get_async_session_local() -> async_sessionmaker[AsyncSession]:
    global _AsyncSessionLocal  # noqa: PLW0603
    if _AsyncSessionLocal is None:
        try:
            _AsyncSessionLocal = async_sessionmaker(
                bind=get_async_engine(),
                expire_on_commit=False,
                autoflush=False,
                class_=AsyncSession,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to create async session factory: {e}")
            raise DatabaseSessionError(f"session factory creation: {e}") from e
    return _AsyncSessionLocal


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (and the pgvector extension on PostgreSQL)."""
    # Ensure all models are registered on Base.metadata
    from .. import models  # noqa: F401

    engine = engine or get_async_engine()
    try:
        async with engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {e}")
        raise DatabaseSessionError(f"database initialization: {e}") from e


async def close_db() -> None:
    global _async_engine, _AsyncSessionLocal  # noqa: PLW0603
    if _async_engine is None:
        return
    await _async_engine.dispose()
    _async_engine = None
    _AsyncSessionLocal = None
    logger.debug("Database connections closed")


async def check_db_connection() -> bool:
    """Check if database connection is working."""
    try:
        engine = get_async_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, DatabaseConnectionError) as e:
        logger.error(f"Database connection check failed: {e}")
        return False
