"""
Payment initiation flow.

Orchestrates one client request to start a payment:
acquire the idempotency lock, create the payment at the gateway through the
venue's circuit breaker, then record the outcome on the lock.

A duplicate request for a completed key returns the stored gateway reference
without calling the gateway. A request racing an in-flight attempt gets a
Conflict and is never retried here.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe

from payment_resilience.exceptions import (
    ErrorCode, ErrorKind, PaymentError, service_unavailable, validation
)
from payment_resilience.services.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from payment_resilience.services.gateway import (
    GatewayPayment, GatewayRefund, PaymentGateway, classify_gateway_error
)
from payment_resilience.services.idempotency_service import IdempotencyLockManager
from payment_resilience.utils.logging import get_context_logger

# Refund reasons the gateway accepts
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


@dataclass
class PaymentIntentRequest:
    venue_id: str
    user_id: str
    amount: int
    currency: str = "usd"
    items: List[Dict[str, Any]] = field(default_factory=list)

    def lock_metadata(self) -> Dict[str, Any]:
        return {
            "venue_id": self.venue_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "items": list(self.items),
        }


@dataclass
class InitiationResult:
    idempotency_key: str
    reference: Optional[str]
    client_secret: Optional[str] = None
    duplicate: bool = False
    # False when the gateway succeeded but the lock could not be marked completed
    bookkeeping_ok: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "reference": self.reference,
            "client_secret": self.client_secret,
            "duplicate": self.duplicate,
            "bookkeeping_ok": self.bookkeeping_ok,
        }


class PaymentInitiationFlow:

    def __init__(
        self,
        lock_manager: IdempotencyLockManager,
        breakers: CircuitBreakerRegistry,
        gateway: PaymentGateway,
        dependency_name: str = "payment_gateway"
    ):
        self._locks = lock_manager
        self._breakers = breakers
        self._gateway = gateway
        self._dependency = dependency_name

    def breaker_for(self, venue_id: Optional[str]) -> CircuitBreaker:
        return self._breakers.get(self._dependency, venue_id)

    async def initiate(
        self,
        request: PaymentIntentRequest,
        idempotency_key: Optional[str] = None
    ) -> InitiationResult:
        """
        Start a payment exactly once per idempotency key.

        Args:
            request: What to charge and for whom
            idempotency_key: Client-supplied key; a fresh one is generated when absent

        Returns:
            InitiationResult; duplicate is True when the key already completed

        Raises:
            PaymentError(VALIDATION): bad request or key, or the gateway refused the payment
            PaymentError(CONFLICT): an attempt with the same key is in flight
            PaymentError(SERVICE_UNAVAILABLE): breaker open or gateway failure
        """
        if not request.venue_id:
            raise validation("venue_id is required", field="venue_id")
        if not isinstance(request.amount, int) or request.amount <= 0:
            raise validation("amount must be a positive integer in minor units", field="amount")

        if idempotency_key is not None:
            key = self._locks.scoped_key(idempotency_key, request.venue_id)
        else:
            key = self._locks.new_key()

        logger = get_context_logger("payment_flow", venue_id=request.venue_id, idempotency_key=key)

        lock = await self._locks.acquire(key, request.lock_metadata())
        if lock.duplicate:
            logger.info("Duplicate payment request, returning stored reference",
                        extra={"gateway_reference": lock.reference})
            return InitiationResult(key, lock.reference, duplicate=True)

        try:
            payment: GatewayPayment = await self.breaker_for(request.venue_id).execute(
                self._call_gateway,
                "create_payment",
                self._gateway.create_payment,
                request.amount,
                request.currency,
                key,
                {"venue_id": request.venue_id, "user_id": request.user_id},
            )
        except PaymentError as e:
            await self._locks.fail(key, e)
            if e.kind == ErrorKind.VALIDATION:
                logger.info(f"Payment rejected by the gateway: {e.message}")
                raise
            if e.kind == ErrorKind.SERVICE_UNAVAILABLE:
                logger.warning(f"Payment gateway unavailable: {e.message}")
                raise
            raise self._dependency_error(e)
        except Exception as e:
            await self._locks.fail(key, e)
            raise self._dependency_error(e)

        bookkeeping_ok = await self._locks.complete(key, payment.reference)
        logger.info("Payment initiated", extra={"gateway_reference": payment.reference})
        return InitiationResult(
            key,
            payment.reference,
            client_secret=payment.client_secret,
            duplicate=False,
            bookkeeping_ok=bookkeeping_ok,
        )

    async def refund(
        self,
        reference: str,
        venue_id: Optional[str],
        amount: Optional[int] = None,
        reason: Optional[str] = None
    ) -> GatewayRefund:
        """Refund a payment (fully when amount is None) through the venue's breaker."""
        if amount is not None and amount <= 0:
            raise validation("refund amount must be positive", field="amount")
        if reason is not None and reason not in REFUND_REASONS:
            raise validation(f"refund reason must be one of {', '.join(REFUND_REASONS)}", field="reason")
        return await self._through_breaker(venue_id, "refund", self._gateway.refund, reference, amount, reason)

    async def retrieve(self, reference: str, venue_id: Optional[str]) -> GatewayPayment:
        return await self._through_breaker(venue_id, "retrieve", self._gateway.retrieve, reference)

    async def _through_breaker(self, venue_id, operation: str, fn, *args):
        try:
            return await self.breaker_for(venue_id).execute(self._call_gateway, operation, fn, *args)
        except PaymentError as e:
            if e.kind in (ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.VALIDATION):
                raise
            raise self._dependency_error(e, operation)
        except Exception as e:
            raise self._dependency_error(e, operation)

    @staticmethod
    async def _call_gateway(operation: str, fn, *args):
        # SDK errors are classified before the breaker sees them
        try:
            return await fn(*args)
        except stripe.StripeError as e:
            raise classify_gateway_error(operation, e) from e

    def _dependency_error(self, error: BaseException, operation: str = "create_payment") -> PaymentError:
        get_context_logger("payment_flow").error(
            f"Payment gateway {operation} failed: {type(error).__name__}: {str(error)}"
        )
        return service_unavailable(
            f"Payment gateway {operation} failed",
            error_code=ErrorCode.DEPENDENCY_ERROR,
            dependency=self._dependency,
            retryable=True,
            original_exception=error
        )
