"""Database connection, session management and the unit-of-work boundary."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from paycode.config import Settings
from paycode.database.models import Base
from paycode.errors import Conflict, PersistenceError

logger = structlog.get_logger(__name__)

# SQLSTATEs for serialization failure and deadlock
_CONTENTION_SQLSTATES = {"40001", "40P01"}
_CONTENTION_MESSAGES = ("database is locked", "deadlock", "could not serialize")


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build an async engine for the configured database.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    if settings.is_sqlite:
        return create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            connect_args={"timeout": settings.database_busy_timeout},
        )
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def is_contention_error(exc: DBAPIError) -> bool:
    """Whether a driver error means another writer holds the rows we need."""
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in _CONTENTION_MESSAGES)


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Run a block inside one database transaction.

    Commits when the block exits normally and rolls back on any exception.
    Storage failures are translated: lock contention becomes ``Conflict``,
    everything else ``PersistenceError``. Domain errors raised by the block
    propagate unchanged after the rollback.

    Example:
        async with unit_of_work(session_factory) as db:
            db.add(order)
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                yield session
        except DBAPIError as exc:
            if is_contention_error(exc):
                logger.warning("storage_contention", error=str(exc.orig))
                raise Conflict("Concurrent update on the same record, retry") from exc
            logger.error("storage_error", error=str(exc))
            raise PersistenceError("Storage unavailable") from exc
        except SQLAlchemyError as exc:
            logger.error("storage_error", error=str(exc))
            raise PersistenceError("Storage unavailable") from exc
