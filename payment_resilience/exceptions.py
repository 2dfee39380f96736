"""
Exception definitions for the payment resilience layer.

Errors form a closed set of kinds. Every kind carries a profile (category,
severity, retryable default, HTTP status) and every raised error carries the
structured fields callers need to decide what to do with it.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any
import traceback


class ErrorCode(Enum):
    """Standardized error codes for application exceptions."""
    # Validation errors (1000-1999)
    VALIDATION_ERROR = 1000
    INVALID_SIGNATURE = 1001
    MALFORMED_NOTIFICATION = 1002
    PAYMENT_DECLINED = 1003
    GATEWAY_REJECTED = 1004

    # Resource errors (2000-2999)
    RESOURCE_CONFLICT = 2002

    # Database errors (4000-4999)
    DATABASE_ERROR = 4000

    # Service errors (5000-5999)
    SERVICE_UNAVAILABLE = 5000
    DEPENDENCY_ERROR = 5001
    TIMEOUT_ERROR = 5002
    CIRCUIT_BREAKER_OPEN = 5003

    # Transaction errors (6000-6999)
    TRANSACTION_ERROR = 6000

    # System errors (9000-9999)
    INTERNAL_ERROR = 9000


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorProfile:
    category: str
    severity: ErrorSeverity
    retryable: bool
    http_status: int
    default_code: ErrorCode


class ErrorKind(Enum):
    """The closed set of error kinds the core can raise."""
    CONFLICT = ErrorProfile("resource", ErrorSeverity.WARNING, False, 409, ErrorCode.RESOURCE_CONFLICT)
    SERVICE_UNAVAILABLE = ErrorProfile("service", ErrorSeverity.ERROR, True, 503, ErrorCode.SERVICE_UNAVAILABLE)
    VALIDATION = ErrorProfile("validation", ErrorSeverity.WARNING, False, 400, ErrorCode.VALIDATION_ERROR)
    TRANSACTION = ErrorProfile("transaction", ErrorSeverity.CRITICAL, True, 500, ErrorCode.TRANSACTION_ERROR)
    UNKNOWN = ErrorProfile("system", ErrorSeverity.CRITICAL, False, 500, ErrorCode.INTERNAL_ERROR)

    @property
    def profile(self) -> ErrorProfile:
        return self.value


class PaymentError(Exception):
    """Single exception type for the payment resilience layer, tagged by kind."""
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        error_code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
        rollback_required: bool = False,
        correlation_id: Optional[str] = None,
        original_exception: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        self.kind = kind
        self.message = message
        self.error_code = error_code or kind.profile.default_code
        self.retryable = kind.profile.retryable if retryable is None else retryable
        self.rollback_required = rollback_required
        self.correlation_id = correlation_id
        self.original_exception = original_exception
        self.details = details or {}
        self.stack_trace = traceback.format_exc() if original_exception else None

        for key, value in kwargs.items():
            self.details[key] = value

        if original_exception is not None:
            self.details["original_error"] = str(original_exception)

        super().__init__(self.message)

    @property
    def category(self) -> str:
        return self.kind.profile.category

    @property
    def severity(self) -> ErrorSeverity:
        return self.kind.profile.severity

    @property
    def http_status(self) -> int:
        return self.kind.profile.http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        result = {
            "kind": self.kind.name,
            "error_code": self.error_code.value,
            "error_type": self.error_code.name,
            "message": self.message,
            "category": self.category,
            "severity": self.severity.value,
            "retryable": self.retryable,
        }

        if self.rollback_required:
            result["rollback_required"] = True
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        if self.details:
            result["details"] = self.details

        return result

    def __repr__(self) -> str:
        return f"PaymentError(kind={self.kind.name}, code={self.error_code.name}, message={self.message!r})"


def conflict(message: str, key: Optional[str] = None, **kwargs) -> PaymentError:
    """A concurrent attempt under the same idempotency key is in flight."""
    details = kwargs.pop("details", {}) or {}
    if key:
        details["idempotency_key"] = key
    return PaymentError(ErrorKind.CONFLICT, message, details=details, **kwargs)


def service_unavailable(
    message: str,
    error_code: ErrorCode = ErrorCode.SERVICE_UNAVAILABLE,
    dependency: Optional[str] = None,
    **kwargs
) -> PaymentError:
    details = kwargs.pop("details", {}) or {}
    if dependency:
        details["dependency"] = dependency
    return PaymentError(ErrorKind.SERVICE_UNAVAILABLE, message, error_code=error_code, details=details, **kwargs)


def validation(
    message: str,
    error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    field: Optional[str] = None,
    **kwargs
) -> PaymentError:
    details = kwargs.pop("details", {}) or {}
    if field:
        details["field"] = field
    return PaymentError(ErrorKind.VALIDATION, message, error_code=error_code, details=details, **kwargs)


def transaction_error(
    message: str,
    correlation_id: Optional[str] = None,
    rollback_required: bool = True,
    **kwargs
) -> PaymentError:
    return PaymentError(
        ErrorKind.TRANSACTION,
        message,
        correlation_id=correlation_id,
        rollback_required=rollback_required,
        **kwargs
    )


def unknown_error(message: str, source: Optional[str] = None, **kwargs) -> PaymentError:
    details = kwargs.pop("details", {}) or {}
    if source:
        details["source"] = source
    return PaymentError(ErrorKind.UNKNOWN, message, details=details, **kwargs)
