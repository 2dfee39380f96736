"""
Replay and retry guard for gateway notifications.

The gateway redelivers notifications at least once and retries after any
non-2xx answer. The guard makes each event id take effect at most once and
bounds how often a failing event is reprocessed:

- an event already processed is acknowledged without doing anything
- an event that failed max_retries times is acknowledged and left alone,
  with an error log for manual follow-up
- otherwise the event is applied through the transaction coordinator; a
  failure increments the event's failure counter and propagates so the
  gateway retries later

Markers and counters live in the shared cache so every instance sees them.
"""
from enum import Enum
from typing import Any, Dict, Optional

from payment_resilience.exceptions import ErrorCode, ErrorKind, PaymentError, validation
from payment_resilience.services.gateway import PaymentGateway
from payment_resilience.services.shared_cache import SharedCache
from payment_resilience.services.transaction_coordinator import TransactionCoordinator
from payment_resilience.utils.error_handling import classify_exception
from payment_resilience.utils.logging import get_context_logger, with_context

PROCESSED_KEY_PREFIX = "webhook:processed:"
FAILURES_KEY_PREFIX = "webhook:failures:"

# Error kinds that leave the guard as they are
_PASSTHROUGH_KINDS = (ErrorKind.VALIDATION, ErrorKind.TRANSACTION, ErrorKind.SERVICE_UNAVAILABLE)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    REPLAYED = "replayed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    IGNORED = "ignored"


class WebhookReplayGuard:

    def __init__(
        self,
        cache: SharedCache,
        coordinator: TransactionCoordinator,
        gateway: Optional[PaymentGateway] = None,
        max_retries: int = 3,
        processed_ttl_seconds: int = 72 * 3600,
        failure_ttl_seconds: int = 24 * 3600
    ):
        self._cache = cache
        self._coordinator = coordinator
        self._gateway = gateway
        self.max_retries = max_retries
        self._processed_ttl = processed_ttl_seconds
        self._failure_ttl = failure_ttl_seconds

    @staticmethod
    def processed_key(event_id: str) -> str:
        return f"{PROCESSED_KEY_PREFIX}{event_id}"

    @staticmethod
    def failures_key(event_id: str) -> str:
        return f"{FAILURES_KEY_PREFIX}{event_id}"

    async def failure_count(self, event_id: str) -> int:
        value = await self._cache.get(self.failures_key(event_id))
        return int(value) if value else 0

    async def is_processed(self, event_id: str) -> bool:
        return await self._cache.get(self.processed_key(event_id)) is not None

    async def handle_raw(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify the signature, then handle the parsed event."""
        if self._gateway is None:
            raise RuntimeError("WebhookReplayGuard.handle_raw needs a gateway to verify signatures")
        event = self._gateway.verify_notification(payload, signature)
        return await self.handle(event)

    async def handle(self, event: Dict[str, Any]) -> WebhookOutcome:
        """
        Process a verified notification at most once.

        Returns:
            The outcome; every outcome means the notification can be acknowledged

        Raises:
            PaymentError: processing failed and the gateway should retry
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise validation(
                "Notification is missing its id or type",
                error_code=ErrorCode.MALFORMED_NOTIFICATION
            )

        logger = get_context_logger("webhook_guard", event_id=event_id, event_type=event_type)

        if await self.is_processed(event_id):
            logger.warning("Webhook replay detected")
            return WebhookOutcome.REPLAYED

        failures = await self.failure_count(event_id)
        if failures >= self.max_retries:
            logger.error(
                "Max retries exceeded for webhook",
                extra={"failure_count": failures, "alert": True}
            )
            return WebhookOutcome.RETRIES_EXHAUSTED

        try:
            outcome = await self._coordinator.apply(event)
        except Exception as e:
            failures = await self._cache.increment(self.failures_key(event_id), ttl_seconds=self._failure_ttl)
            logger.error(
                f"Webhook processing failed: {type(e).__name__}: {str(e)}",
                extra={"failure_count": failures, "max_retries": self.max_retries}
            )
            if isinstance(e, PaymentError) and e.kind in _PASSTHROUGH_KINDS:
                raise
            raise classify_exception(e, "webhook_guard.handle", {"event_id": event_id}) from e

        await self._cache.set(self.processed_key(event_id), "1", ttl_seconds=self._processed_ttl)
        await self._cache.delete(self.failures_key(event_id))

        if not outcome.handled:
            return WebhookOutcome.IGNORED

        with_context(logger, transaction_id=outcome.transaction_id).info("Webhook processed")
        return WebhookOutcome.PROCESSED
