"""
Error handling utilities for the payment resilience layer.

Error boundaries make sure nothing leaves a service unclassified: every
exception that crosses one is either an already-typed PaymentError or is
wrapped into one carrying the source and correlation context.
"""
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import functools

from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from payment_resilience.exceptions import (
    PaymentError, ErrorCode, ErrorKind, unknown_error, transaction_error
)
from payment_resilience.utils.logging import get_context_logger

R = TypeVar('R')


def is_safe_to_retry(exception: BaseException) -> bool:
    """
    Determine if an exception is safe to retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if isinstance(exception, PaymentError):
        return exception.retryable

    # Deadlocks, lock timeouts, connection issues are typically retryable
    if isinstance(exception, OperationalError):
        error_str = str(exception).lower()
        return (
            "deadlock" in error_str or
            "lock" in error_str or
            "connection" in error_str or
            "timeout" in error_str or
            "timed out" in error_str
        )

    if isinstance(exception, IntegrityError):
        return False

    # Some transaction serialization errors can be retried
    if isinstance(exception, SQLAlchemyError):
        error_str = str(exception).lower()
        return (
            "serialization" in error_str or
            "could not serialize" in error_str or
            "retry transaction" in error_str
        )

    if isinstance(exception, (TimeoutError, ConnectionError)):
        return True

    return False


def classify_exception(
    exception: BaseException,
    source: str,
    context: Optional[Dict[str, Any]] = None
) -> PaymentError:
    """Wrap an unclassified exception into an UNKNOWN PaymentError with context."""
    if isinstance(exception, PaymentError):
        return exception

    error_code = ErrorCode.INTERNAL_ERROR
    if isinstance(exception, SQLAlchemyError):
        error_code = ErrorCode.DATABASE_ERROR
    elif isinstance(exception, TimeoutError):
        error_code = ErrorCode.TIMEOUT_ERROR

    return unknown_error(
        f"Unexpected error in {source}: {str(exception)}",
        source=source,
        error_code=error_code,
        retryable=is_safe_to_retry(exception),
        original_exception=exception,
        details=dict(context or {})
    )


def with_error_boundary(
    source: Optional[str] = None,
    passthrough: tuple = ()
) -> Callable[[Callable[..., Awaitable[R]]], Callable[..., Awaitable[R]]]:
    """
    Decorator converting anything uncaught into a uniformly shaped PaymentError.

    PaymentErrors and the exception types listed in passthrough are
    re-raised untouched.

    Args:
        source: Name of the operation (defaults to the function name)
        passthrough: Extra exception types to re-raise without wrapping
    """
    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        operation = source or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> R:
            try:
                return await func(*args, **kwargs)
            except (PaymentError,) + tuple(passthrough):
                raise
            except Exception as e:
                logger = get_context_logger(operation, trace_id=kwargs.get("trace_id"))
                logger.error(f"Error in {operation}: {type(e).__name__}: {str(e)}")
                raise classify_exception(e, operation) from e

        return wrapper
    return decorator


def with_transaction_boundary(
    source: Optional[str] = None,
    correlation_arg: str = "transaction_id"
) -> Callable[[Callable[..., Awaitable[R]]], Callable[..., Awaitable[R]]]:
    """
    Decorator converting failures inside a unit of work into TransactionErrors.

    Validation errors pass through: a malformed input will not get better on
    retry and must not be reported as a rollback. Everything else becomes a
    TRANSACTION error with rollback_required set and a retryable hint taken
    from the original failure.

    Args:
        source: Name of the operation (defaults to the function name)
        correlation_arg: Keyword argument carrying the transaction correlation id
    """
    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        operation = source or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> R:
            correlation_id = kwargs.get(correlation_arg)
            try:
                return await func(*args, **kwargs)
            except PaymentError as e:
                if e.kind in (ErrorKind.TRANSACTION, ErrorKind.VALIDATION):
                    raise
                raise transaction_error(
                    f"Transaction failed in {operation}: {e.message}",
                    correlation_id=correlation_id,
                    retryable=e.retryable,
                    original_exception=e,
                    source=operation
                ) from e
            except Exception as e:
                raise transaction_error(
                    f"Transaction failed in {operation}: {str(e)}",
                    correlation_id=correlation_id,
                    retryable=is_safe_to_retry(e),
                    original_exception=e,
                    source=operation
                ) from e

        return wrapper
    return decorator
