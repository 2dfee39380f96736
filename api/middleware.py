"""Middleware for the API."""
import time
import uuid
from fastapi import Request
from payment_resilience.utils.logging import get_context_logger

logger = get_context_logger("api_middleware")


async def request_logging_middleware(request: Request, call_next):
    """
    Log all requests with structured logging.

    Creates ONE log entry per request with:
    - Request details (method, path)
    - Response status
    - Processing duration
    - Trace ID for correlation
    - Request ID (the Idempotency-Key header when present)
    """
    trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
    request.state.trace_id = trace_id

    request_id = (
        request.headers.get("X-Request-ID") or
        request.headers.get("Idempotency-Key")
    )
    request.state.request_id = request_id

    start_time = time.time()

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000

    # ONE STRUCTURED LOG ENTRY PER REQUEST
    log_data = {
        "trace_id": trace_id,
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round(duration_ms, 2),
        "success": 200 <= response.status_code < 400,
        "client_ip": request.client.host if request.client else None
    }

    if response.status_code >= 500:
        logger.error("request_completed", extra=log_data)
    elif response.status_code >= 400:
        logger.warning("request_completed", extra=log_data)
    else:
        logger.info("request_completed", extra=log_data)

    response.headers["X-Trace-ID"] = trace_id

    if request_id:
        response.headers["X-Request-ID"] = request_id

    return response
