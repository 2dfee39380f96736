"""Core services of the payment resilience layer."""
from .circuit_breaker import (
    BreakerState,
    BreakerStateStore,
    CircuitBreaker,
    CircuitBreakerRegistry,
    InMemoryBreakerStore,
)
from .gateway import GatewayPayment, GatewayRefund, PaymentGateway, StripePaymentGateway
from .idempotency_service import AcquireResult, AcquireStatus, IdempotencyLockManager, LockSnapshot
from .payment_flow import InitiationResult, PaymentInitiationFlow, PaymentIntentRequest
from .shared_cache import InMemorySharedCache, RedisSharedCache, SharedCache
from .transaction_coordinator import TransactionCoordinator, TransactionOutcome
from .webhook_guard import WebhookOutcome, WebhookReplayGuard

__all__ = [
    "BreakerState",
    "BreakerStateStore",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "InMemoryBreakerStore",
    "GatewayPayment",
    "GatewayRefund",
    "PaymentGateway",
    "StripePaymentGateway",
    "AcquireResult",
    "AcquireStatus",
    "IdempotencyLockManager",
    "LockSnapshot",
    "InitiationResult",
    "PaymentInitiationFlow",
    "PaymentIntentRequest",
    "InMemorySharedCache",
    "RedisSharedCache",
    "SharedCache",
    "TransactionCoordinator",
    "TransactionOutcome",
    "WebhookOutcome",
    "WebhookReplayGuard",
]
