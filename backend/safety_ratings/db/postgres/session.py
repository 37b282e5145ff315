"""
Database engine and session handling.

- Engine factory with connection pooling for asyncpg
- Per-operation session scope with commit/rollback and error mapping
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import (
    TimeoutError as SQLAlchemyTimeoutError,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from safety_ratings.core.config import settings
from safety_ratings.core.exceptions import (
    PostgresConnectionException,
    PostgresException,
)
from safety_ratings.core.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Engine Configuration
# =============================================================================


def create_engine(database_url: str | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """
    Create the async engine.

    Pool settings come from configuration when the URL targets PostgreSQL;
    other drivers (SQLite in tests) get whatever ``engine_kwargs`` pass in.
    """
    url = database_url or settings.DATABASE_URL

    if url.startswith("postgresql"):
        engine_kwargs.setdefault("pool_size", settings.DB_POOL_SIZE)
        engine_kwargs.setdefault("max_overflow", settings.DB_MAX_OVERFLOW)
        engine_kwargs.setdefault("pool_recycle", settings.DB_POOL_RECYCLE)
        engine_kwargs.setdefault("pool_timeout", settings.DB_POOL_TIMEOUT)
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault(
            "connect_args",
            {
                "prepared_statement_cache_size": 100,
                "command_timeout": 60,
            },
        )

    engine = create_async_engine(url, echo=settings.DEBUG, **engine_kwargs)
    logger.info(
        "Database engine initialized",
        extra={"pool_size": engine_kwargs.get("pool_size"), "driver": engine.dialect.driver},
    )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every repository operation."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# =============================================================================
# Session Scope
# =============================================================================


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Provide one session for one unit of work.

    Commits on success, rolls back and raises a mapped exception on
    database failure, and always closes the session.

    Raises:
        PostgresConnectionException: When unable to connect to the database
        PostgresException: For other database errors
    """
    session = session_factory()
    try:
        yield session
        await session.commit()

    except OperationalError as e:
        logger.error(
            "Database connection error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
            exc_info=True,
        )
        await session.rollback()
        raise PostgresConnectionException(original_error=e) from e

    except IntegrityError as e:
        logger.warning(
            "Database integrity error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
        )
        await session.rollback()
        raise PostgresException(
            message="Data integrity error.",
            details={"constraint_violation": True},
            original_error=e,
        ) from e

    except SQLAlchemyTimeoutError as e:
        logger.error(
            "Database timeout error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
        )
        await session.rollback()
        raise PostgresException(
            message="Database operation timed out.",
            details={"timeout": True},
            original_error=e,
        ) from e

    except (DBAPIError, SQLAlchemyError) as e:
        logger.error(
            "Database error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
            exc_info=True,
        )
        await session.rollback()
        raise PostgresException(original_error=e) from e

    except BaseException:
        await session.rollback()
        raise

    finally:
        await session.close()


# =============================================================================
# Health helpers
# =============================================================================


async def check_database_connection(
    session_factory: async_sessionmaker[AsyncSession],
) -> bool:
    """
    Check if the database answers a trivial query.

    Returns:
        True if connection is available, False otherwise.
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
