"""Async database connection using SQLAlchemy (supports SQLite and PostgreSQL)."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.exc import InterfaceError, InvalidRequestError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from kickoff.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def to_async_url(url: str) -> str:
    """Convert database URL to async driver format."""
    # SQLite
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    # PostgreSQL
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


DATABASE_URL = to_async_url(settings.DATABASE_URL)
is_sqlite = DATABASE_URL.startswith("sqlite")

engine_kwargs = {
    "echo": False,
}

if is_sqlite:
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    engine_kwargs["poolclass"] = StaticPool
else:
    engine_kwargs["pool_pre_ping"] = True  # Verify connection before checkout
    engine_kwargs["pool_size"] = 5
    engine_kwargs["max_overflow"] = 10
    engine_kwargs["pool_recycle"] = 300  # Managed Postgres drops idle connections
    engine_kwargs["pool_timeout"] = 30
    engine_kwargs["pool_reset_on_return"] = "rollback"
    engine_kwargs["connect_args"] = {
        "server_settings": {"statement_timeout": "60000"}  # 60s in milliseconds
    }

async_engine = create_async_engine(DATABASE_URL, **engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db() -> None:
    """Initialize database tables."""
    # Register table metadata before create_all
    import kickoff.models  # noqa: F401

    logger.info("Initializing database tables...")
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created successfully.")


async def close_db() -> None:
    """Close database connections."""
    logger.info("Closing database connections...")
    await async_engine.dispose()
    logger.info("Database connections closed.")


@asynccontextmanager
async def get_session_with_retry(max_retries: int = 3, retry_delay: float = 1.0):
    """
    Context manager that provides a session with automatic retry on connection errors.

    Scheduled jobs use this so a stale pooled connection after a database restart
    doesn't fail the whole run.

    Retries only happen on session CREATION. A connection dropping mid-run
    propagates to the caller; the next periodic run picks up from the ledger.
    """
    current_delay = retry_delay
    session = None

    for attempt in range(max_retries):
        try:
            session = AsyncSessionLocal()
            await session.connection()
            break
        except (InterfaceError, OperationalError, InvalidRequestError) as e:
            if session is not None:
                await session.close()
                session = None

            message = str(e).lower()
            retryable = any(token in message for token in ("closed", "connection", "terminated", "greenlet"))
            if retryable and attempt < max_retries - 1:
                logger.warning(
                    f"Database connection error (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {current_delay}s..."
                )
                await asyncio.sleep(current_delay)
                current_delay *= 2
                continue
            raise

    if session is None:
        raise RuntimeError("Failed to create database session after retries")

    try:
        yield session
    finally:
        await session.close()
