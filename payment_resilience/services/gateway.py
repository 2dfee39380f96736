"""
Payment gateway collaborator.

PaymentGateway is what the rest of the layer talks to; StripePaymentGateway
implements it on top of the stripe SDK. The SDK is synchronous, so every call
runs in a worker thread and is bounded by the gateway's own request timeout.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from payment_resilience.exceptions import ErrorCode, PaymentError, service_unavailable, validation
from payment_resilience.utils.logging import get_context_logger

logger = get_context_logger("gateway")


@dataclass
class GatewayPayment:
    reference: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    client_secret: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "metadata": self.metadata,
        }


@dataclass
class GatewayRefund:
    refund_id: str
    reference: str
    status: str
    amount: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refund_id": self.refund_id,
            "reference": self.reference,
            "status": self.status,
            "amount": self.amount,
        }


class PaymentGateway(ABC):

    @abstractmethod
    def verify_notification(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the notification signature and return the parsed event.

        Raises:
            PaymentError(VALIDATION, INVALID_SIGNATURE): signature missing or wrong
            PaymentError(VALIDATION, MALFORMED_NOTIFICATION): body is not a JSON object
        """

    @abstractmethod
    async def create_payment(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayPayment:
        ...

    @abstractmethod
    async def refund(
        self, reference: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> GatewayRefund:
        ...

    @abstractmethod
    async def retrieve(self, reference: str) -> GatewayPayment:
        ...


def parse_notification(payload: bytes) -> Dict[str, Any]:
    """Decode a verified notification body."""
    try:
        event = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise validation(
            "Notification body is not valid JSON",
            error_code=ErrorCode.MALFORMED_NOTIFICATION,
            original_exception=e
        )
    if not isinstance(event, dict):
        raise validation("Notification body must be a JSON object", error_code=ErrorCode.MALFORMED_NOTIFICATION)
    return event


class StripePaymentGateway(PaymentGateway):

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        timeout_seconds: float = 10.0,
        signature_tolerance_seconds: int = 300
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout_seconds
        self._tolerance = signature_tolerance_seconds

    def verify_notification(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise validation("Missing notification signature", error_code=ErrorCode.INVALID_SIGNATURE)

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self._webhook_secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", extra={"error": str(e)})
            raise validation(
                "Invalid notification signature",
                error_code=ErrorCode.INVALID_SIGNATURE,
                original_exception=e
            )

        return parse_notification(payload)

    async def _call(self, operation: str, fn, **params):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self._secret_key, **params),
                timeout=self._timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Gateway {operation} timed out after {self._timeout}s")
            raise service_unavailable(
                f"Payment gateway {operation} timed out",
                error_code=ErrorCode.TIMEOUT_ERROR,
                dependency="stripe",
                original_exception=e
            )
        except stripe.StripeError as e:
            raise classify_gateway_error(operation, e) from e

    async def create_payment(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayPayment:
        metadata = {k: str(v) for k, v in (metadata or {}).items() if v is not None}
        metadata["idempotency_key"] = idempotency_key

        intent = await self._call(
            "create_payment",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        logger.info("payment_intent_created", extra={"gateway_reference": intent.id, "idempotency_key": idempotency_key})
        return _to_payment(intent)

    async def refund(
        self, reference: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> GatewayRefund:
        params: Dict[str, Any] = {"payment_intent": reference}
        if amount is not None:
            params["amount"] = amount
        if reason is not None:
            params["reason"] = reason

        refund = await self._call("refund", stripe.Refund.create, **params)
        logger.info("refund_created", extra={"gateway_reference": reference, "refund_id": refund.id})
        return GatewayRefund(
            refund_id=refund.id,
            reference=reference,
            status=refund.status,
            amount=refund.amount,
        )

    async def retrieve(self, reference: str) -> GatewayPayment:
        intent = await self._call("retrieve", stripe.PaymentIntent.retrieve, id=reference)
        return _to_payment(intent)


def classify_gateway_error(operation: str, error: stripe.StripeError) -> PaymentError:
    """
    Map an SDK error to the kind of failure it reports.

    Declined cards and requests the gateway refuses are client errors: they
    are not retryable and say nothing about the gateway's health. Connection
    problems, rate limiting and 5xx answers are outages.
    """
    details = {
        "operation": operation,
        "gateway_code": getattr(error, "code", None),
        "http_status": getattr(error, "http_status", None),
    }
    message = getattr(error, "user_message", None) or str(error)

    if isinstance(error, stripe.CardError):
        logger.info("payment_declined", extra=details)
        return validation(
            message,
            error_code=ErrorCode.PAYMENT_DECLINED,
            field=getattr(error, "param", None),
            details=details,
            original_exception=error
        )

    status = details["http_status"]
    client_error = isinstance(error, (stripe.InvalidRequestError, stripe.IdempotencyError)) or (
        isinstance(status, int) and 400 <= status < 500 and status != 429
        and not isinstance(error, (stripe.AuthenticationError, stripe.PermissionError))
    )
    if client_error:
        logger.warning("gateway_request_rejected", extra=details)
        return validation(
            message,
            error_code=ErrorCode.GATEWAY_REJECTED,
            field=getattr(error, "param", None),
            details=details,
            original_exception=error
        )

    logger.error(f"Gateway {operation} failed: {type(error).__name__}: {str(error)}", extra=details)
    return service_unavailable(
        f"Payment gateway {operation} failed",
        error_code=ErrorCode.DEPENDENCY_ERROR,
        dependency="stripe",
        details=details,
        # Bad credentials do not fix themselves
        retryable=not isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)),
        original_exception=error
    )


def _to_payment(intent) -> GatewayPayment:
    metadata = intent.metadata.to_dict() if intent.metadata is not None else {}
    return GatewayPayment(
        reference=intent.id,
        status=intent.status,
        amount=intent.amount,
        currency=intent.currency,
        client_secret=intent.client_secret,
        metadata=metadata,
    )
