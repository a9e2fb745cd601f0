"""
Database session management for the AquaFlow monitoring service
Async SQLAlchemy engine shared by the API and the alert monitor
"""

from functools import lru_cache
from typing import AsyncGenerator, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from aquaflow.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """
    Create an async engine for the given URL (defaults to settings.DATABASE_URL)

    asyncpg connections carry a command timeout so a stalled database
    cannot stall the monitoring loop.
    """
    url = url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not set in settings. Check your .env file.")

    options = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            connect_args={"command_timeout": settings.DATABASE_COMMAND_TIMEOUT},
        )
    options.update(kwargs)

    return create_async_engine(url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # Objects stay readable after commit; the gateway hands them to evaluators
    return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@lru_cache()
def get_engine() -> AsyncEngine:
    """Application-wide engine (created on first use)."""
    masked_url = settings.DATABASE_URL.split("@")[-1]
    logger.info(f"Initializing database engine for: {masked_url}")
    return build_engine()


@lru_cache()
def get_session_factory() -> async_sessionmaker:
    return build_session_factory(get_engine())


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Asynchronous database session dependency for FastAPI
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Async database session error: {e}")
            await session.rollback()
            raise
