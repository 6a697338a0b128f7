"""
Database connection and session management.

Uses SQLAlchemy async with an explicitly constructed, disposable engine.

Connection Pool Strategy:
- PostgreSQL session mode (port 5432): local connection pool keeps connections open
- PostgreSQL behind a transaction-mode pooler (port 6543): NullPool
- SQLite (tests, local tooling): driver defaults, no pool sizing
- Sessions are lightweight wrappers that checkout connections from the pool
- When a session closes, the connection returns to the pool for reuse

There is no module-level engine: callers build a ``Database`` (usually via
``Database.from_settings()``), share it, and ``dispose()`` it on shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, TypeVar
from urllib.parse import urlparse

from sqlalchemy import JSON, text
from sqlalchemy.engine import make_url
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import DBAPIError, InterfaceError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from casebuilder.config import Settings, settings as default_settings
from casebuilder.errors import DatabaseConnectionError

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSON columns: JSONB on PostgreSQL, plain JSON elsewhere. None is stored as SQL NULL.
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

T = TypeVar("T")


def normalize_database_url(url: str) -> str:
    """Ensure PostgreSQL URLs use the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def sync_database_url(url: str) -> str:
    """Same database through the dialect's default sync driver (psycopg2, pysqlite), for alembic."""
    parsed = make_url(normalize_database_url(url))
    return parsed.set(drivername=parsed.get_backend_name()).render_as_string(hide_password=False)


def is_connection_error(exc: BaseException) -> bool:
    """True for failures that mean the store could not be reached or the connection died."""
    if isinstance(exc, DatabaseConnectionError):
        return True
    if isinstance(exc, (PoolTimeoutError, InterfaceError, ConnectionError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class Database:
    """
    Async engine + session factory with an explicit lifecycle.

    Usage:
        database = Database.from_settings()
        await database.init_schema()
        async with database.transaction() as session:
            ...
        await database.dispose()
    """

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 300,
        pool_timeout: int = 10,
        statement_timeout_ms: Optional[int] = None,
        echo: bool = False,
    ) -> None:
        self.url = normalize_database_url(url)
        self.statement_timeout_ms = statement_timeout_ms

        parsed = urlparse(self.url)
        self.dialect_name: str = parsed.scheme.split("+")[0]
        self._use_null_pool: bool = self.dialect_name == "postgresql" and parsed.port == 6543

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if self.dialect_name == "postgresql":
            if self._use_null_pool:
                # Transaction mode: external pooler manages connections, and
                # prepared statements do not survive between transactions
                engine_kwargs["poolclass"] = NullPool
                engine_kwargs["connect_args"] = {
                    "statement_cache_size": 0,
                    "prepared_statement_cache_size": 0,
                }
            else:
                engine_kwargs.update(
                    pool_size=pool_size,
                    max_overflow=max_overflow,
                    pool_recycle=pool_recycle,
                    pool_timeout=pool_timeout,
                    pool_pre_ping=True,
                )

        self._engine: Optional[AsyncEngine] = create_async_engine(self.url, **engine_kwargs)
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to flush
        )
        logger.info(
            "[Database] Engine created for %s (%s)",
            self.dialect_name,
            "NullPool" if self._use_null_pool else "pooled",
        )

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "Database":
        """Build a Database from application settings."""
        config = config or default_settings
        return cls(
            config.DATABASE_URL,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_recycle=config.DB_POOL_RECYCLE,
            pool_timeout=config.DB_POOL_TIMEOUT,
            statement_timeout_ms=config.ROLLBACK_STATEMENT_TIMEOUT_MS,
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseConnectionError("Database has been disposed")
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Yield an async database session.

        The session is closed when the context exits and any uncommitted
        changes are rolled back on error. Connection-level failures are
        re-raised as DatabaseConnectionError.

        Usage:
            async with database.session() as session:
                result = await session.execute(query)
                await session.commit()  # Explicit commit if needed
        """
        if self._engine is None:
            raise DatabaseConnectionError("Database has been disposed")
        session: AsyncSession = self._session_factory()
        try:
            yield session
        except Exception as exc:
            try:
                await session.rollback()
            except Exception as rollback_error:
                logger.error("[Database] Failed to roll back session: %s", rollback_error)
            if is_connection_error(exc) and not isinstance(exc, DatabaseConnectionError):
                raise DatabaseConnectionError(f"Database connection failed: {exc}") from exc
            raise
        finally:
            # This returns the connection to the pool, doesn't close it
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session inside one transaction: commit on success, roll back on error."""
        async with self.session() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def undo_transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Like transaction(), with the configured statement timeout on PostgreSQL."""
        async with self.transaction() as session:
            if self.dialect_name == "postgresql" and self.statement_timeout_ms:
                # SET does not take bind parameters; the value is an int
                await session.execute(
                    text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}")
                )
            yield session

    async def init_schema(self) -> None:
        """Create the checkpoint tables if they do not exist."""
        # Register the checkpoint models on Base.metadata
        from casebuilder.models import checkpoint, undo_log  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[Database] Checkpoint schema initialized")

    async def drop_schema(self) -> None:
        """Drop the checkpoint tables."""
        from casebuilder.models import checkpoint, undo_log  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("[Database] Checkpoint schema dropped")

    async def check_connection(self) -> dict[str, str]:
        """Run a trivial query and report whether the store is reachable."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return {"status": "ok", "message": "Database connection is healthy"}
        except Exception as exc:
            logger.error("[Database] Connection check failed: %s", exc)
            return {"status": "error", "message": str(exc)}

    def get_pool_status(self) -> dict[str, int | str]:
        """Get current connection pool status for monitoring."""
        if self._engine is None:
            return {"pool_type": "disposed", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

        pool = self._engine.pool
        if isinstance(pool, NullPool) or not hasattr(pool, "checkedout"):
            return {"pool_type": type(pool).__name__, "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

        return {
            "pool_type": type(pool).__name__,
            "pool_size": pool.size(),
            "checked_in": pool.checkedin(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }

    async def dispose(self) -> None:
        """
        Close the engine and release all pooled connections.
        Call this on application shutdown.
        """
        if self._engine is None:
            return
        pool_status = self.get_pool_status()
        logger.info(
            "[Database] Closing pool: %s checked_in, %s checked_out",
            pool_status["checked_in"],
            pool_status["checked_out"],
        )
        await self._engine.dispose()
        self._engine = None
        logger.info("[Database] Engine disposed, all connections closed")

    async def __aenter__(self) -> "Database":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 1.0,
) -> T:
    """
    Run operation, retrying on DatabaseConnectionError with exponential backoff.

    Only use this for idempotent work; anything else raises on first failure.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except DatabaseConnectionError as exc:
            if attempt >= attempts:
                raise
            wait = delay * (2 ** (attempt - 1))
            logger.warning(
                "[Database] Operation failed (attempt %d/%d): %s; retrying in %.2fs",
                attempt,
                attempts,
                exc,
                wait,
            )
            await asyncio.sleep(wait)
            attempt += 1
