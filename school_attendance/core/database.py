import logging
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, TypeVar, Any, AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import text
from sqlalchemy.exc import (
    SQLAlchemyError,
    OperationalError,
    DisconnectionError,
    TimeoutError,
)
from asyncpg.exceptions import (
    ConnectionFailureError,
    ConnectionDoesNotExistError,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import (
    DATABASE_URL,
    DB_RETRY_ATTEMPTS,
    DB_RETRY_BACKOFF_FACTOR,
    DB_RETRY_DELAY,
)
from .exceptions import DatabaseConnectionError, DatabaseTimeoutError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    OperationalError,
    DisconnectionError,
    TimeoutError,
    ConnectionFailureError,
    ConnectionDoesNotExistError,
)


def build_engine(url: str, **kwargs):
    """Create the async engine; pool sizing only applies to server databases"""
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_size", 20)
        kwargs.setdefault("max_overflow", 10)
        kwargs.setdefault("pool_timeout", 30)
        kwargs.setdefault("pool_recycle", 3600)
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, echo=False, **kwargs)


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(DATABASE_URL)
async_session = build_session_factory(engine)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


F = TypeVar("F", bound=Callable[..., Any])


def _retry_logger(operation: str):
    def log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"Database unavailable, retrying {operation}",
            extra={
                "attempt": state.attempt_number,
                "exception_type": type(exc).__name__ if exc else None,
            },
        )

    return log


def db_retry(
    max_attempts: int = None,
    delay: float = None,
    backoff_factor: float = None,
) -> Callable[[F], F]:
    """
    Retry a startup or maintenance coroutine while the database is unreachable.

    Not used on ledger writes: a retried insert could race its own first
    attempt for the slot.
    """
    max_attempts = max_attempts or DB_RETRY_ATTEMPTS
    delay = DB_RETRY_DELAY if delay is None else delay
    backoff_factor = backoff_factor or DB_RETRY_BACKOFF_FACTOR

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=delay, exp_base=backoff_factor),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                before_sleep=_retry_logger(func.__name__),
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        return await func(*args, **kwargs)
            except RetryError as e:
                last = e.last_attempt.exception()
                logger.error(
                    f"{func.__name__} failed after {max_attempts} attempts: {last}"
                )
                if isinstance(last, TimeoutError):
                    raise DatabaseTimeoutError(func.__name__, 30) from last
                raise DatabaseConnectionError(
                    f"Database unavailable after {max_attempts} attempts"
                ) from last

        return wrapper

    return decorator


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session"""
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


class DatabaseManager:
    """Schema and connection management"""

    def __init__(self, bind=None):
        self.bind = bind or engine

    @db_retry()
    async def create_tables(self):
        async with self.bind.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Attendance tables ready",
            extra={"tables": sorted(Base.metadata.tables)},
        )

    @db_retry()
    async def check_connection(self) -> bool:
        async with self.bind.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close_connections(self):
        await self.bind.dispose()
        logger.info("Database connections closed")


db_manager = DatabaseManager()


def db_operation(func: F) -> F:
    """
    Log ledger and summary operations with their duration.

    SQLAlchemy errors are logged and re-raised unchanged; callers map them.
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(
                f"Database error in {func.__name__}: {type(e).__name__}",
                extra={"operation": func.__name__, "exception_type": type(e).__name__},
            )
            raise

        logger.debug(
            f"{func.__name__} completed",
            extra={
                "operation": func.__name__,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result

    return wrapper
