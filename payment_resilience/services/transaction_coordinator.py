"""
Transaction coordinator for payment notifications.

A verified gateway notification changes two things: the payment-backed entity
(`payments` row) and the idempotency lock of the attempt that created it.
Both writes happen in a single database transaction: either every side effect
of the notification is committed or none is.
"""
import secrets
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.payments import PaymentModel, PaymentStatus
from payment_resilience.exceptions import ErrorCode, validation
from payment_resilience.services.idempotency_service import IdempotencyLockManager
from payment_resilience.utils.datetime_utils import get_current_datetime
from payment_resilience.utils.error_handling import with_transaction_boundary
from payment_resilience.utils.logging import get_context_logger
from payment_resilience.utils.transaction import transaction_scope

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

# handler(session, payment_object, transaction_id) -> None
EventHandler = Callable[[AsyncSession, Dict[str, Any], str], Awaitable[None]]


@dataclass
class TransactionOutcome:
    transaction_id: str
    event_id: Optional[str]
    event_type: str
    handled: bool


def generate_transaction_id() -> str:
    return f"tx_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def extract_payment_object(event: Dict[str, Any]) -> Dict[str, Any]:
    """Return the payment object of a notification, which must carry its gateway reference."""
    data = event.get("data")
    payment = data.get("object") if isinstance(data, dict) else None
    if not isinstance(payment, dict) or not payment.get("id"):
        raise validation(
            "Notification does not carry a payment reference",
            error_code=ErrorCode.MALFORMED_NOTIFICATION,
            field="data.object.id",
            event_id=event.get("id")
        )
    return payment


class TransactionCoordinator:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: IdempotencyLockManager,
        clock=get_current_datetime
    ):
        self._session_factory = session_factory
        self._lock_manager = lock_manager
        self._clock = clock
        self._handlers: Dict[str, EventHandler] = {
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
        }

    def register(self, event_type: str, handler: EventHandler) -> None:
        """Attach (or replace) the side effect run for an event type."""
        self._handlers[event_type] = handler

    async def apply(self, event: Dict[str, Any]) -> TransactionOutcome:
        """
        Apply the side effects of a verified notification atomically.

        Args:
            event: Parsed notification with id, type and data.object

        Returns:
            TransactionOutcome; handled is False for event types without a handler

        Raises:
            PaymentError(VALIDATION): the notification has no payment reference
            PaymentError(TRANSACTION): anything failed; nothing was committed
        """
        transaction_id = generate_transaction_id()
        return await self._apply(event, transaction_id=transaction_id)

    @with_transaction_boundary("transaction_coordinator.apply")
    async def _apply(self, event: Dict[str, Any], transaction_id: str) -> TransactionOutcome:
        event_id = event.get("id")
        event_type = event.get("type", "unknown")
        logger = get_context_logger(
            "transaction_coordinator",
            transaction_id=transaction_id,
            event_id=event_id,
            event_type=event_type
        )

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring notification type without side effects")
            return TransactionOutcome(transaction_id, event_id, event_type, handled=False)

        payment = extract_payment_object(event)

        async with self._session_factory() as session:
            async with transaction_scope(session, transaction_id=transaction_id):
                await handler(session, payment, transaction_id)

        logger.info("Notification side effects committed", extra={"gateway_reference": payment["id"]})
        return TransactionOutcome(transaction_id, event_id, event_type, handled=True)

    async def _load_payment(self, session: AsyncSession, payment: Dict[str, Any]) -> PaymentModel:
        result = await session.execute(
            select(PaymentModel)
            .where(PaymentModel.gateway_reference == payment["id"])
            .with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is not None:
            return record

        metadata = payment.get("metadata") or {}
        now = self._clock()
        record = PaymentModel(
            gateway_reference=payment["id"],
            idempotency_key=metadata.get("idempotency_key"),
            venue_id=metadata.get("venue_id"),
            user_id=metadata.get("user_id"),
            amount=payment.get("amount"),
            currency=payment.get("currency"),
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        return record

    async def _handle_payment_succeeded(
        self, session: AsyncSession, payment: Dict[str, Any], transaction_id: str
    ) -> None:
        logger = get_context_logger(
            "transaction_coordinator", transaction_id=transaction_id, gateway_reference=payment["id"]
        )
        record = await self._load_payment(session, payment)

        if record.status == PaymentStatus.PAID:
            logger.info("Payment already marked paid")
        else:
            now = self._clock()
            record.status = PaymentStatus.PAID
            record.paid_at = now
            record.failure_reason = None
            record.updated_at = now
            await session.flush()
            logger.info("Payment marked paid")

        key = (payment.get("metadata") or {}).get("idempotency_key")
        if key:
            await self._lock_manager.apply_completion(session, key, payment["id"])
        else:
            logger.warning("Notification carries no idempotency key, lock left untouched")

    async def _handle_payment_failed(
        self, session: AsyncSession, payment: Dict[str, Any], transaction_id: str
    ) -> None:
        logger = get_context_logger(
            "transaction_coordinator", transaction_id=transaction_id, gateway_reference=payment["id"]
        )
        reason = (payment.get("last_payment_error") or {}).get("message") or "Payment failed"
        record = await self._load_payment(session, payment)

        if record.status == PaymentStatus.PAID:
            logger.warning("Ignoring failure notification for a paid payment")
            return

        record.status = PaymentStatus.PAYMENT_FAILED
        record.failure_reason = reason
        record.updated_at = self._clock()
        await session.flush()
        logger.info("Payment marked failed", extra={"failure_reason": reason})

        key = (payment.get("metadata") or {}).get("idempotency_key")
        if key:
            await self._lock_manager.apply_failure(session, key, reason)
