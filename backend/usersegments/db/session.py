"""
Database Session Module

This module manages database connections and sessions with:
- Async SQLAlchemy engine configuration and pool sizing
- Session factory owned by an explicit Database context object
- Startup connection retry loop and health checks
- Transaction boundaries with rollback and error translation
"""

import contextlib
from typing import AsyncIterator, Callable, Iterator, Optional

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from usersegments.core.exceptions import (
    AppException,
    IntegrityViolationError,
    TransientStoreError,
)
from usersegments.core.logging import get_logger
from usersegments.core.settings import DatabaseConfig

# Initialize logger
logger = get_logger(__name__)

# Spacing between connection attempts at startup, in seconds
CONNECT_RETRY_INTERVAL = 1.0

# INSERT constructs supporting ON CONFLICT, by dialect name
_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def create_db_engine(config: DatabaseConfig, echo: bool = False) -> AsyncEngine:
    """
    Create SQLAlchemy engine with proper configuration.

    The pool is capped at MAX_CONNECTIONS with no overflow; request handlers and
    the TTL sweeper share it.
    """
    url = config.ASYNC_DATABASE_URL

    if config.is_sqlite:
        engine = create_async_engine(url, echo=echo)
    else:
        engine = create_async_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_size=config.MAX_CONNECTIONS,
            max_overflow=0,
            pool_timeout=config.CONN_TIMEOUT,
            pool_recycle=config.POOL_RECYCLE,
        )

    logger.info(
        "Database engine created",
        extra={
            "dialect": engine.dialect.name,
            "max_connections": config.MAX_CONNECTIONS,
            "pool_timeout": config.CONN_TIMEOUT,
        }
    )
    return engine


class Database:
    """Engine and session factory shared by the API and the TTL sweeper."""

    def __init__(self, config: DatabaseConfig, echo: bool = False):
        self.config = config
        self.engine = create_db_engine(config, echo=echo)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def check_connection(self) -> bool:
        """
        Check database connectivity.

        Returns:
            bool: True if connection successful, False otherwise
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "Database connection check failed",
                extra={"error": str(e)}
            )
            return False

    async def wait_until_ready(self, timeout: Optional[float] = None) -> None:
        """
        Retry connecting until the database answers or the timeout elapses.

        Raises:
            TransientStoreError: If no connection could be made in time
        """
        timeout = self.config.CONN_TIMEOUT if timeout is None else timeout
        retrying = AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(CONNECT_RETRY_INTERVAL),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
        )

        try:
            await retrying(self._connect)
        except TransientStoreError as e:
            logger.critical(
                "Database connection failed",
                extra={
                    "attempts": retrying.statistics.get("attempt_number"),
                    "timeout": timeout,
                }
            )
            raise TransientStoreError(
                f"Database connection failed after {timeout}s timeout"
            ) from e

        logger.info(
            "Database connection verified",
            extra={"attempts": retrying.statistics.get("attempt_number")}
        )

    async def _connect(self) -> None:
        if not await self.check_connection():
            raise TransientStoreError("Database is not reachable")

    async def dispose(self) -> None:
        logger.info("Closing database connections")
        await self.engine.dispose()


def dialect_insert(session: AsyncSession) -> Optional[Callable]:
    """
    The dialect's own `insert` (with ON CONFLICT support) for the session's
    bind, or None when the dialect has none.
    """
    return _DIALECT_INSERTS.get(session.get_bind().dialect.name)


@contextlib.contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate driver errors raised by read-only queries into TransientStoreError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(
            f"{operation} failed",
            exc_info=True,
            extra={"operation": operation, "error": str(e)}
        )
        raise TransientStoreError(
            f"{operation} failed",
            extra={"error": str(e)}
        ) from e


@contextlib.asynccontextmanager
async def transaction(session: AsyncSession, operation: str) -> AsyncIterator[AsyncSession]:
    """
    Run a multi-statement sequence as one transaction.

    Commits when the block exits normally. Any failure, cancellation included,
    rolls back the whole sequence. Driver errors are re-raised as
    TransientStoreError, domain errors unchanged; if the rollback fails too an
    IntegrityViolationError carrying both errors is raised instead.

    Example:
        ```python
        async with transaction(db, "assign segments"):
            db.add(relation)
        ```
    """
    try:
        yield session
        await session.commit()
    except BaseException as exc:
        try:
            await session.rollback()
        except Exception as rollback_exc:
            logger.critical(
                f"{operation}: rollback failed",
                exc_info=True,
                extra={
                    "operation": operation,
                    "error": str(exc),
                    "rollback_error": str(rollback_exc),
                }
            )
            raise IntegrityViolationError(operation, exc, rollback_exc) from exc

        if isinstance(exc, SQLAlchemyError):
            logger.error(
                f"{operation} failed, transaction rolled back",
                exc_info=True,
                extra={"operation": operation, "error": str(exc)}
            )
            raise TransientStoreError(
                f"{operation} failed",
                extra={"error": str(exc)}
            ) from exc

        if isinstance(exc, AppException):
            logger.warning(
                f"{operation} rejected, transaction rolled back",
                extra={"operation": operation, "error": exc.message}
            )
        else:
            logger.warning(
                f"{operation} aborted, transaction rolled back",
                extra={"operation": operation, "error": repr(exc)}
            )
        raise


__all__ = ["Database", "create_db_engine", "dialect_insert", "store_errors", "transaction"]
