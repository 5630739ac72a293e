import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backoffice.config import settings
from backoffice.core.exceptions import LockTimeoutError


logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE for "lock_not_available" (raised when lock_timeout expires)
PG_LOCK_NOT_AVAILABLE = "55P03"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def normalize_database_url(database_url: str) -> str:
    """Point plain PostgreSQL URLs at the async psycopg driver."""
    if database_url.startswith("postgresql+asyncpg://"):
        return database_url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://")
    return database_url


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions take the write lock up front.

    pysqlite defers BEGIN until the first write, which lets two sessions read
    the same stock level before either decrements it. Emitting BEGIN IMMEDIATE
    ourselves serializes writers the way SELECT ... FOR UPDATE does on
    PostgreSQL, and the driver's busy timeout bounds the wait.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine for the configured database."""
    url = normalize_database_url(database_url or settings.DATABASE_URL)

    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=settings.DB_ECHO,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.LOCK_TIMEOUT_MS / 1000,
            },
        )
        _install_sqlite_locking(engine)
        return engine

    return create_async_engine(
        url,
        echo=settings.DB_ECHO,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={"connect_timeout": 30},
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the per-request session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a database session scoped to the request."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (local runs and tests; production uses Alembic)."""
    # Import all models to register them with Base.metadata
    from backoffice import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Registered {len(Base.metadata.tables)} tables")


async def apply_lock_timeout(session: AsyncSession) -> None:
    """Bound row-lock waits for the current transaction (PostgreSQL only)."""
    if session.bind is not None and session.bind.dialect.name == "postgresql":
        await session.execute(
            text(f"SET LOCAL lock_timeout = '{int(settings.LOCK_TIMEOUT_MS)}ms'")
        )


def is_lock_timeout(exc: DBAPIError) -> bool:
    """Whether a driver error means a lock could not be acquired in time."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "sqlstate", None) == PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig).lower()


@asynccontextmanager
async def lock_wait_guard(session: AsyncSession, operation: str):
    """
    Roll back and raise LockTimeoutError when the block times out on a lock.

    Any other database error is rolled back and re-raised unchanged.
    """
    try:
        yield
    except OperationalError as e:
        await session.rollback()
        if is_lock_timeout(e):
            logger.warning(f"Lock wait timed out during {operation}")
            raise LockTimeoutError(
                f"Timed out waiting for a lock during {operation}, please retry",
                details={"operation": operation},
            ) from e
        raise
