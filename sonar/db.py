"""Database connection pooling, session management, and resilience utilities."""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy import event, text
import asyncio
from .config import settings
from .logger import logger

# ==================== Engine Construction ====================


def _configure_sqlite_connection(dbapi_connection, connection_record):
    """Enforce foreign keys and let SQLAlchemy, not the driver, emit BEGIN."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    dbapi_connection.isolation_level = None


def _begin_immediate(conn):
    # Take the write lock up front. A deferred transaction that reads and then
    # writes can fail with "database is locked" without waiting on the timeout.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine for a SQLite or PostgreSQL URL.

    SQLite connections get foreign keys enforced so that pings and tokens
    can never point at a missing user, and transactions start with
    BEGIN IMMEDIATE so concurrent writers queue on the busy timeout. Extra
    keyword arguments are passed straight to ``create_async_engine`` (tests
    use this for ``poolclass``).
    """
    if url.startswith("sqlite"):
        options = {
            "echo": settings.DB_ECHO,
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.DB_CONNECT_TIMEOUT,
            },
        }
    else:
        options = {
            "echo": settings.DB_ECHO,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_timeout": settings.DB_POOL_TIMEOUT,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,  # Verify connections before use
            "connect_args": {
                "timeout": settings.DB_CONNECT_TIMEOUT,
                "command_timeout": settings.DB_QUERY_TIMEOUT,
            },
        }
    options.update(kwargs)
    new_engine = create_async_engine(url, **options)

    if url.startswith("sqlite"):
        event.listen(new_engine.sync_engine, "connect", _configure_sqlite_connection)
        event.listen(new_engine.sync_engine, "begin", _begin_immediate)

    return new_engine


# ==================== Connection Pool Setup ====================

engine = create_engine_for(settings.DB_URL)

if settings.is_sqlite():
    logger.info("Database engine configured: sqlite (foreign keys enforced, immediate transactions)")
else:
    logger.info(
        f"Database engine configured: pool_size={settings.DB_POOL_SIZE}, "
        f"max_overflow={settings.DB_MAX_OVERFLOW}, timeout={settings.DB_POOL_TIMEOUT}s"
    )

# Session factory for creating database sessions
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

# Base class for ORM models
Base = declarative_base()

# ==================== Database Resilience ====================

# Substrings of driver messages that mean "try again", not "bad statement"
_RETRYABLE_MARKERS = (
    "connection",
    "timeout",
    "database is locked",
    "server closed the connection",
)


def _is_retryable(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


async def retry_on_db_error(func, max_retries: int | None = None, base_delay: float | None = None):
    """Await ``func()``, retrying transient failures with exponential backoff.

    Busy SQLite files ("database is locked") and dropped PostgreSQL
    connections are retried; anything else, including constraint
    violations, is raised on the first attempt. Defaults come from
    DB_RETRY_MAX_ATTEMPTS and DB_RETRY_BASE_DELAY.
    """
    attempts = max_retries or settings.DB_RETRY_MAX_ATTEMPTS
    delay = base_delay if base_delay is not None else settings.DB_RETRY_BASE_DELAY

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except (OperationalError, DBAPIError) as e:
            if not _is_retryable(e) or attempt == attempts:
                logger.error(f"Database operation failed (attempt {attempt}/{attempts}): {e}", exc_info=True)
                raise
            logger.warning(f"Transient database error (attempt {attempt}/{attempts}), retrying in {delay}s: {e}")
            await asyncio.sleep(delay)
            delay *= 2


async def check_db_connection() -> bool:
    """True if a session can be opened and answers SELECT 1."""
    async def _ping():
        async with async_session() as session:
            await session.execute(text("SELECT 1"))

    try:
        await retry_on_db_error(_ping, max_retries=2, base_delay=0.1)
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
    return True


async def dispose_engine():
    """Close pooled connections; called once when a command finishes."""
    logger.info("Disposing database engine")
    try:
        await engine.dispose()
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}", exc_info=True)
