"""Centralized error code to HTTP status mapping."""
from payment_resilience.exceptions import ErrorCode, ErrorKind, PaymentError

# Map internal error codes to HTTP status codes and user-friendly messages
ERROR_CODE_MAP = {
    ErrorCode.VALIDATION_ERROR: {
        "status": 422,
        "message": "Validation failed"
    },
    ErrorCode.INVALID_SIGNATURE: {
        "status": 400,
        "message": "Invalid notification signature"
    },
    ErrorCode.MALFORMED_NOTIFICATION: {
        "status": 400,
        "message": "Malformed notification"
    },
    ErrorCode.PAYMENT_DECLINED: {
        "status": 402,
        "message": "Payment declined"
    },
    ErrorCode.GATEWAY_REJECTED: {
        "status": 400,
        "message": "Payment gateway rejected the request"
    },
    ErrorCode.RESOURCE_CONFLICT: {
        "status": 409,
        "message": "Request already in progress"
    },
    ErrorCode.DATABASE_ERROR: {
        "status": 500,
        "message": "Database operation failed"
    },
    ErrorCode.SERVICE_UNAVAILABLE: {
        "status": 503,
        "message": "Service temporarily unavailable"
    },
    ErrorCode.DEPENDENCY_ERROR: {
        "status": 503,
        "message": "Payment gateway error"
    },
    ErrorCode.TIMEOUT_ERROR: {
        "status": 503,
        "message": "Payment gateway timed out"
    },
    ErrorCode.CIRCUIT_BREAKER_OPEN: {
        "status": 503,
        "message": "Payment gateway temporarily unavailable"
    },
    ErrorCode.TRANSACTION_ERROR: {
        "status": 500,
        "message": "Transaction failed"
    },
    ErrorCode.INTERNAL_ERROR: {
        "status": 500,
        "message": "Internal server error"
    },
}


def get_http_status(error: PaymentError) -> tuple[int, str]:
    """
    Get HTTP status code and message for an error.

    The kind decides the status. Validation errors are split by code: a bad
    request body is 422, a bad gateway notification or a request the gateway
    refused is 400, a declined card is 402.

    Args:
        error: Raised payment error

    Returns:
        Tuple of (status_code, message)
    """
    mapping = ERROR_CODE_MAP.get(error.error_code, {
        "status": error.http_status,
        "message": "Internal server error"
    })

    if error.kind == ErrorKind.VALIDATION:
        return mapping["status"], mapping["message"]

    return error.http_status, mapping["message"]
