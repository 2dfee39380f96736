"""Transaction management utilities."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar
import asyncio
import random

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from payment_resilience.utils.logging import get_context_logger

R = TypeVar('R')


@asynccontextmanager
async def transaction_scope(
    session: AsyncSession,
    trace_id: Optional[str] = None,
    transaction_id: Optional[str] = None
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits when the block exits cleanly and rolls back on any exception.
    Exceptions are re-raised unchanged so the caller's error boundary can
    classify them (retryable or not) from the original type.

    Args:
        session: Database session
        trace_id: Trace ID for logging (optional)
        transaction_id: Correlation ID of the unit of work (optional)

    Yields:
        Database session for use in operations
    """
    logger = get_context_logger("transaction", trace_id=trace_id, transaction_id=transaction_id)

    try:
        logger.debug("Transaction started")
        yield session
        await session.commit()
        logger.debug("Transaction committed successfully")
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Database error, transaction rolled back: {type(e).__name__}: {str(e)}")
        raise
    except BaseException as e:
        await session.rollback()
        logger.error(f"Transaction rolled back due to: {type(e).__name__}: {str(e)}")
        raise


async def retry_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[[AsyncSession], Awaitable[R]],
    trace_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    max_retries: int = 3,
    retry_delay_ms: int = 100,
    max_retry_delay_ms: int = 2000,
    retryable_errors: tuple = (OperationalError,)
) -> R:
    """
    Run operation inside a fresh transaction, retrying deadlocks and similar issues.

    Every attempt gets its own session so that a rolled back attempt leaves
    nothing behind for the next one.

    Args:
        session_factory: Factory producing database sessions
        operation: Coroutine function receiving the session
        trace_id: Trace ID for logging (optional)
        transaction_id: Correlation ID of the unit of work (optional)
        max_retries: Maximum number of attempts
        retry_delay_ms: Initial retry delay in milliseconds
        max_retry_delay_ms: Maximum retry delay in milliseconds
        retryable_errors: Tuple of exception types that trigger retry

    Returns:
        Whatever operation returns on the successful attempt

    Raises:
        The last retryable error after max_retries, or any non-retryable error immediately
    """
    logger = get_context_logger("transaction", trace_id=trace_id, transaction_id=transaction_id)

    delay_ms = retry_delay_ms
    for attempt in range(1, max_retries + 1):
        try:
            async with session_factory() as session:
                async with transaction_scope(session, trace_id=trace_id, transaction_id=transaction_id):
                    return await operation(session)
        except retryable_errors as e:
            if attempt >= max_retries:
                logger.error(f"Transaction failed after {max_retries} attempts: {str(e)}")
                raise
            logger.warning(
                f"Transaction error (attempt {attempt}/{max_retries}), "
                f"retrying in {delay_ms}ms: {str(e)}"
            )
            await asyncio.sleep(delay_ms / 1000)
            # Exponential backoff with jitter
            delay_ms = min(delay_ms * 2, max_retry_delay_ms) + random.randint(0, min(100, delay_ms))

    raise RuntimeError("retry_transaction requires max_retries >= 1")
