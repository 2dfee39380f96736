"""Centralized exception handlers for the API."""
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payment_resilience.exceptions import ErrorCode, ErrorKind, ErrorSeverity, PaymentError
from api.error_codes import get_http_status
from api.models.responses import APIResponse
from payment_resilience.utils.logging import get_context_logger

logger = get_context_logger("api_exceptions")


def handle_payment_exception(request: Request, exc: PaymentError) -> JSONResponse:
    """
    Handle all payment resilience errors.

    Maps the error kind and code to an HTTP status and returns a structured
    error response. Conflicts carry retry_after_ms so clients back off.
    """
    status_code, default_message = get_http_status(exc)
    trace_id = getattr(request.state, "trace_id", None)

    log_extra = {
        "trace_id": trace_id,
        "path": request.url.path,
        "kind": exc.kind.name,
        "error_code": exc.error_code.name,
        "status_code": status_code,
        "correlation_id": exc.correlation_id,
    }
    if exc.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
        logger.error(f"Request failed: {exc.message}", extra=log_extra)
    else:
        logger.warning(f"Request rejected: {exc.message}", extra=log_extra)

    response = APIResponse.error(
        message=exc.message or default_message,
        error_code=exc.error_code.value,
        status_code=status_code,
        error_type=exc.kind.name,
        details=exc.details or None,
        trace_id=trace_id
    )

    retry_after_ms = exc.details.get("retry_after_ms")
    if exc.kind == ErrorKind.CONFLICT and retry_after_ms is None:
        retry_after_ms = 1000
    if retry_after_ms is not None:
        response.headers["Retry-After"] = str(max(1, int(retry_after_ms) // 1000))

    return response


def handle_request_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body or header failed model validation."""
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg")}
        for error in exc.errors()
    ]
    return APIResponse.error(
        message="Validation failed",
        error_code=ErrorCode.VALIDATION_ERROR.value,
        status_code=422,
        error_type=ErrorKind.VALIDATION.name,
        details={"errors": errors},
        trace_id=getattr(request.state, "trace_id", None)
    )


def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions that weren't caught by custom handlers.

    Logs the full exception and returns a generic error to the client.
    """
    trace_id = getattr(request.state, "trace_id", "unknown")

    logger.exception(
        "Unexpected exception in API",
        extra={
            "trace_id": trace_id,
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
            "exception_message": str(exc)
        }
    )

    return APIResponse.error(
        message="An unexpected error occurred",
        error_code=ErrorCode.INTERNAL_ERROR.value,
        status_code=500,
        error_type=ErrorKind.UNKNOWN.name,
        trace_id=trace_id
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(PaymentError, handle_payment_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_exception)
    app.add_exception_handler(Exception, handle_unexpected_exception)
