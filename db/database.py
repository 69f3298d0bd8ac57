"""
Database connection and session management
"""
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
import logging

from config.config import settings
from errors import Unavailable

logger = logging.getLogger(__name__)

# SQLAlchemy Base
Base = declarative_base()

# Async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.LOG_LEVEL == "DEBUG",
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10
)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


@asynccontextmanager
async def get_db():
    """
    Async context manager for database sessions

    Usage:
        async with get_db() as db:
            result = await db.execute(...)
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            await session.close()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session scoped to one request"""
    async with get_db() as session:
        yield session


@contextmanager
def store_errors(operation: str):
    """
    Translate connection-level store failures into Unavailable

    Integrity and programming errors pass through untouched so callers
    can map them to business outcomes.
    """
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
        logger.error(f"Store unavailable during {operation}: {e}")
        raise Unavailable(f"Queue store unavailable during {operation}") from e


async def init_db():
    """Initialize database - create all tables"""
    # Register table metadata before create_all
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized successfully")


async def close_db():
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")
