"""
Payment resilience layer for the venue ordering backend.

Makes payment initiation and gateway notifications behave correctly under
duplicate client requests, redelivered notifications and a flaky payment
gateway.
"""
from .container import PaymentServices
from .config import Settings, BreakerSettings
from .exceptions import ErrorCode, ErrorKind, PaymentError
from .version import __version__

__all__ = [
    "PaymentServices",
    "Settings",
    "BreakerSettings",
    "ErrorCode",
    "ErrorKind",
    "PaymentError",
    "__version__",
]
