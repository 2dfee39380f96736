# ============================================================================
# FILE: test/services/test_payment_flow.py
# Payment initiation orchestration
# ============================================================================

import asyncio

import pytest
import stripe

from db.models import LockStatus
from payment_resilience.exceptions import ErrorCode, ErrorKind, PaymentError
from payment_resilience.services.circuit_breaker import BreakerState
from payment_resilience.services.payment_flow import PaymentInitiationFlow, PaymentIntentRequest


@pytest.fixture
def flow(lock_manager, breakers, gateway):
    return PaymentInitiationFlow(lock_manager, breakers, gateway)


def order(venue_id="venue_1", amount=1500):
    return PaymentIntentRequest(venue_id=venue_id, user_id="user_1", amount=amount, items=[{"item_id": "ipa"}])


class TestInitiate:
    """Test the happy path and duplicates"""

    async def test_new_payment(self, flow, gateway, lock_manager):
        """✓ New key → gateway called with the key, lock completed"""
        result = await flow.initiate(order(), idempotency_key="client-1")

        assert result.duplicate is False
        assert result.reference == "pi_1"
        assert result.client_secret == "pi_1_secret"
        assert result.bookkeeping_ok is True
        assert gateway.created[0]["idempotency_key"] == result.idempotency_key
        lock = await lock_manager.get(result.idempotency_key)
        assert lock.status == LockStatus.COMPLETED
        assert lock.reference == "pi_1"

    async def test_duplicate_never_calls_gateway(self, flow, gateway):
        """✓ Same key again → duplicate with stored reference, gateway called once"""
        first = await flow.initiate(order(), idempotency_key="client-1")
        second = await flow.initiate(order(), idempotency_key="client-1")

        assert second.duplicate is True
        assert second.reference == first.reference
        assert len(gateway.created) == 1

    async def test_key_scoped_by_venue(self, flow, gateway):
        """✓ Same client key at two venues → two payments"""
        a = await flow.initiate(order("venue_1"), idempotency_key="client-1")
        b = await flow.initiate(order("venue_2"), idempotency_key="client-1")

        assert a.idempotency_key != b.idempotency_key
        assert len(gateway.created) == 2

    async def test_generated_key_without_client_key(self, flow, gateway):
        a = await flow.initiate(order())
        b = await flow.initiate(order())

        assert a.idempotency_key != b.idempotency_key
        assert len(gateway.created) == 2

    async def test_concurrent_same_key_single_charge(self, flow, gateway):
        """✓ Concurrent identical requests → one gateway call, others Conflict or duplicate"""
        results = await asyncio.gather(
            *(flow.initiate(order(), idempotency_key="client-1") for _ in range(4)),
            return_exceptions=True
        )

        assert len(gateway.created) == 1
        for result in results:
            if isinstance(result, BaseException):
                assert isinstance(result, PaymentError) and result.kind == ErrorKind.CONFLICT

    async def test_invalid_amount_rejected(self, flow, gateway):
        with pytest.raises(PaymentError) as exc:
            await flow.initiate(order(amount=0), idempotency_key="client-1")

        assert exc.value.kind == ErrorKind.VALIDATION
        assert gateway.created == []


class TestGatewayFailures:
    """Test lock bookkeeping when the gateway fails"""

    async def test_gateway_error_fails_lock_and_allows_retry(self, flow, gateway, lock_manager):
        """✓ Gateway error → DEPENDENCY_ERROR, lock failed, retry under the same key succeeds"""
        gateway.fail_next(1)

        with pytest.raises(PaymentError) as exc:
            await flow.initiate(order(), idempotency_key="client-1")

        assert exc.value.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert exc.value.error_code == ErrorCode.DEPENDENCY_ERROR
        assert exc.value.retryable is True
        key = lock_manager.scoped_key("client-1", "venue_1")
        assert (await lock_manager.get(key)).status == LockStatus.FAILED

        retry = await flow.initiate(order(), idempotency_key="client-1")
        assert retry.duplicate is False
        assert retry.reference == "pi_1"

    async def test_open_breaker_fails_lock_and_reraises(self, flow, gateway, breakers, lock_manager):
        """✓ Breaker open → CIRCUIT_BREAKER_OPEN re-raised, lock failed, gateway not called"""
        gateway.fail_next(3)
        for attempt in range(3):
            with pytest.raises(PaymentError):
                await flow.initiate(order(), idempotency_key=f"warmup-{attempt}")
        assert breakers.get("payment_gateway", "venue_1").state == BreakerState.OPEN

        with pytest.raises(PaymentError) as exc:
            await flow.initiate(order(), idempotency_key="client-1")

        assert exc.value.error_code == ErrorCode.CIRCUIT_BREAKER_OPEN
        assert gateway.created == []
        key = lock_manager.scoped_key("client-1", "venue_1")
        assert (await lock_manager.get(key)).status == LockStatus.FAILED

    async def test_open_breaker_isolated_per_venue(self, flow, gateway):
        gateway.fail_next(3)
        for attempt in range(3):
            with pytest.raises(PaymentError):
                await flow.initiate(order("venue_1"), idempotency_key=f"warmup-{attempt}")

        result = await flow.initiate(order("venue_2"), idempotency_key="client-1")

        assert result.reference == "pi_1"

    async def test_bookkeeping_failure_reported(self, flow, lock_manager, monkeypatch):
        """✓ Completion write fails → payment still returned, bookkeeping_ok False"""
        async def broken(key, reference):
            return False

        monkeypatch.setattr(lock_manager, "complete", broken)

        result = await flow.initiate(order(), idempotency_key="client-1")

        assert result.reference == "pi_1"
        assert result.bookkeeping_ok is False


class TestRefundAndRetrieve:
    """Test other gateway calls routed through the breaker"""

    async def test_refund(self, flow, gateway):
        refund = await flow.refund("pi_1", "venue_1", amount=500, reason="requested_by_customer")

        assert refund.status == "succeeded"
        assert gateway.refunds == [{"reference": "pi_1", "amount": 500, "reason": "requested_by_customer"}]

    async def test_refund_unknown_reason_rejected(self, flow, gateway):
        with pytest.raises(PaymentError) as exc:
            await flow.refund("pi_1", "venue_1", reason="changed my mind")

        assert exc.value.kind == ErrorKind.VALIDATION
        assert gateway.refunds == []

    async def test_refund_rejected_by_gateway_passes_through(self, flow, gateway, breakers):
        gateway.fail_next(1, stripe.InvalidRequestError("Charge has already been refunded", "payment_intent"))

        with pytest.raises(PaymentError) as exc:
            await flow.refund("pi_1", "venue_1")

        assert exc.value.error_code == ErrorCode.GATEWAY_REJECTED
        assert breakers.get("payment_gateway", "venue_1").failure_count == 0

    async def test_refund_failure_is_dependency_error(self, flow, gateway, breakers):
        gateway.fail_next(1)

        with pytest.raises(PaymentError) as exc:
            await flow.refund("pi_1", "venue_1")

        assert exc.value.error_code == ErrorCode.DEPENDENCY_ERROR
        assert breakers.get("payment_gateway", "venue_1").failure_count == 1

    async def test_retrieve(self, flow):
        payment = await flow.retrieve("pi_7", "venue_1")

        assert payment.reference == "pi_7"


# ============================================================================
# TEST: requests the gateway refuses
# ============================================================================

class TestGatewayRejections:
    """Test that client errors stay client errors and leave the breaker alone"""

    async def test_invalid_request_is_validation_and_breaker_stays_closed(
        self, flow, gateway, breakers, lock_manager
    ):
        """✓ Repeated invalid requests → 4xx-kind errors, breaker closed, other users unaffected"""
        gateway.fail_next(4, stripe.InvalidRequestError("Invalid currency: xyz", "currency"))

        for attempt in range(4):
            with pytest.raises(PaymentError) as exc:
                await flow.initiate(order(), idempotency_key=f"bad-{attempt}")
            assert exc.value.kind == ErrorKind.VALIDATION
            assert exc.value.error_code == ErrorCode.GATEWAY_REJECTED
            assert exc.value.retryable is False
            assert exc.value.details["field"] == "currency"

        breaker = breakers.get("payment_gateway", "venue_1")
        assert breaker.state == BreakerState.CLOSED
        assert breaker.failure_count == 0
        key = lock_manager.scoped_key("bad-0", "venue_1")
        assert (await lock_manager.get(key)).status == LockStatus.FAILED

        result = await flow.initiate(order(), idempotency_key="good-1")
        assert result.reference == "pi_1"

    async def test_declined_card(self, flow, gateway, breakers):
        gateway.fail_next(1, stripe.CardError("Your card was declined.", None, "card_declined"))

        with pytest.raises(PaymentError) as exc:
            await flow.initiate(order(), idempotency_key="client-1")

        assert exc.value.error_code == ErrorCode.PAYMENT_DECLINED
        assert exc.value.details["gateway_code"] == "card_declined"
        assert breakers.get("payment_gateway", "venue_1").failure_count == 0

    async def test_connection_error_still_counts(self, flow, gateway, breakers):
        gateway.fail_next(3, stripe.APIConnectionError("Could not connect to the gateway"))

        for attempt in range(3):
            with pytest.raises(PaymentError) as exc:
                await flow.initiate(order(), idempotency_key=f"client-{attempt}")
            assert exc.value.kind == ErrorKind.SERVICE_UNAVAILABLE
            assert exc.value.retryable is True

        assert breakers.get("payment_gateway", "venue_1").state == BreakerState.OPEN
