"""
Database connection management with SQLAlchemy async engine.

Provides the process-wide async engine and session factory, the FastAPI
session dependency, a connectivity check with exponential backoff and the
startup routine that creates the schema from model metadata.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from vehicle_registry.core.config import get_settings
from vehicle_registry.core.logging import get_logger
from vehicle_registry.database.models import Base

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _convert_database_url_to_async(url: str) -> str:
    """Route plain PostgreSQL URLs through the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create async SQLAlchemy engine.

    PostgreSQL engines get a sized connection pool; SQLite engines use the
    driver defaults since aiosqlite does not accept pool sizing.

    Args:
        database_url: Override for ``settings.database_url``
    """
    settings = get_settings()
    database_url = _convert_database_url_to_async(
        database_url or settings.database_url
    )

    if database_url.startswith("sqlite"):
        engine = create_async_engine(database_url, echo=settings.debug)
    elif settings.is_test:
        engine = create_async_engine(
            database_url,
            echo=settings.debug,
            poolclass=NullPool,
        )
    else:
        engine = create_async_engine(
            database_url,
            echo=settings.debug,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={
                "server_settings": {"application_name": settings.app_name},
                "command_timeout": 60,
                "timeout": 10,
            },
        )

    logger.info(
        "Database engine created",
        dialect=engine.dialect.name,
        environment=settings.environment,
    )
    return engine


def get_engine() -> AsyncEngine:
    """
    Get or create the global async database engine.

    Raises:
        RuntimeError: If engine initialization fails
    """
    global _engine

    if _engine is None:
        try:
            _engine = create_engine()
        except Exception as e:
            logger.error(
                "Failed to create database engine",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeError(f"Database engine initialization failed: {e}") from e

    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the application and by tests."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the global session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
        logger.info("Database session factory created")

    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session and roll back anything left uncommitted on error.

    Repositories commit their own writes, so the context manager only
    guarantees cleanup.
    """
    session = get_session_factory()()

    try:
        yield session
    except Exception as e:
        await session.rollback()
        logger.error(
            "Database session rolled back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database session injection.

    Example:
        @router.get("/orders/{order_id}")
        async def get_order(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session() as session:
        yield session


async def check_database_health(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Check database connectivity with retry logic.

    Args:
        max_retries: Maximum number of connection attempts
        retry_delay: Base delay between retries in seconds, doubled per attempt

    Returns:
        True if database is healthy, False otherwise
    """
    for attempt in range(max_retries):
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.debug("Database health check passed", attempt=attempt + 1)
            return True
        except (OperationalError, DBAPIError) as e:
            logger.warning(
                "Database health check failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(e),
            )
        except SQLAlchemyError as e:
            logger.error(
                "Database health check failed - SQLAlchemy error",
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            logger.error(
                "Database health check failed - unexpected error",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if attempt < max_retries - 1:
            await asyncio.sleep(retry_delay * (2**attempt))

    logger.error("Database health check failed after all retries", max_retries=max_retries)
    return False


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables and indexes declared on the model metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def initialize_database() -> None:
    """
    Verify connectivity and create the schema during application startup.

    Raises:
        RuntimeError: If database initialization fails
    """
    try:
        logger.info("Initializing database connection")
        engine = get_engine()
        get_session_factory()

        if not await check_database_health(max_retries=5, retry_delay=2.0):
            raise RuntimeError("Database health check failed during initialization")

        await create_schema(engine)
        logger.info("Database initialized successfully", dialect=engine.dialect.name)
    except Exception as e:
        logger.error(
            "Database initialization failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise RuntimeError(f"Failed to initialize database: {e}") from e


async def close_database_connections() -> None:
    """Dispose of the engine during application shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        try:
            await _engine.dispose()
            logger.info("Database connections closed and engine disposed")
        except Exception as e:
            logger.error(
                "Error closing database connections",
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            _engine = None
            _session_factory = None
