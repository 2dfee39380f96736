# ============================================================================
# FILE: test/utils/test_error_boundaries.py
# Error classification and boundary decorators
# ============================================================================

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from payment_resilience.exceptions import (
    ErrorCode, ErrorKind, PaymentError, conflict, service_unavailable, validation
)
from payment_resilience.utils.error_handling import (
    classify_exception, is_safe_to_retry, with_error_boundary, with_transaction_boundary
)


# ============================================================================
# TEST: is_safe_to_retry
# ============================================================================

class TestIsSafeToRetry:
    """Test retryability decisions"""

    def test_payment_error_uses_flag(self):
        assert is_safe_to_retry(service_unavailable("down")) is True
        assert is_safe_to_retry(conflict("busy")) is False

    def test_deadlock_retryable(self):
        assert is_safe_to_retry(OperationalError("deadlock detected", None, None)) is True

    def test_integrity_error_not_retryable(self):
        assert is_safe_to_retry(IntegrityError("duplicate key", None, None)) is False

    def test_timeout_retryable(self):
        assert is_safe_to_retry(TimeoutError()) is True

    def test_plain_error_not_retryable(self):
        assert is_safe_to_retry(ValueError("bad")) is False


# ============================================================================
# TEST: classify_exception
# ============================================================================

class TestClassifyException:

    def test_database_error_code(self):
        error = classify_exception(OperationalError("connection refused", None, None), "op")

        assert error.kind == ErrorKind.UNKNOWN
        assert error.error_code == ErrorCode.DATABASE_ERROR
        assert error.retryable is True
        assert error.details["source"] == "op"

    def test_payment_error_returned_as_is(self):
        original = validation("bad")
        assert classify_exception(original, "op") is original

    def test_context_kept(self):
        error = classify_exception(RuntimeError("x"), "op", {"event_id": "evt_1"})

        assert error.error_code == ErrorCode.INTERNAL_ERROR
        assert error.details["event_id"] == "evt_1"
        assert error.details["original_error"] == "x"


# ============================================================================
# TEST: decorators
# ============================================================================

class TestErrorBoundary:

    async def test_unclassified_wrapped(self):
        @with_error_boundary("test.op")
        async def op():
            raise KeyError("missing")

        with pytest.raises(PaymentError) as exc:
            await op()

        assert exc.value.kind == ErrorKind.UNKNOWN
        assert isinstance(exc.value.__cause__, KeyError)

    async def test_payment_error_passes(self):
        @with_error_boundary()
        async def op():
            raise conflict("busy", key="k")

        with pytest.raises(PaymentError) as exc:
            await op()

        assert exc.value.kind == ErrorKind.CONFLICT

    async def test_passthrough_types(self):
        @with_error_boundary(passthrough=(LookupError,))
        async def op():
            raise KeyError("k")

        with pytest.raises(KeyError):
            await op()

    async def test_result_returned(self):
        @with_error_boundary()
        async def op(x):
            return x * 2

        assert await op(21) == 42


class TestTransactionBoundary:

    async def test_failure_becomes_transaction_error(self):
        @with_transaction_boundary("test.tx")
        async def op(transaction_id=None):
            raise OperationalError("database is locked", None, None)

        with pytest.raises(PaymentError) as exc:
            await op(transaction_id="tx_1_abc")

        assert exc.value.kind == ErrorKind.TRANSACTION
        assert exc.value.rollback_required is True
        assert exc.value.correlation_id == "tx_1_abc"
        assert exc.value.retryable is True

    async def test_validation_passes(self):
        @with_transaction_boundary()
        async def op(transaction_id=None):
            raise validation("bad")

        with pytest.raises(PaymentError) as exc:
            await op(transaction_id="tx")

        assert exc.value.kind == ErrorKind.VALIDATION

    async def test_other_payment_errors_converted(self):
        @with_transaction_boundary()
        async def op(transaction_id=None):
            raise service_unavailable("down")

        with pytest.raises(PaymentError) as exc:
            await op(transaction_id="tx")

        assert exc.value.kind == ErrorKind.TRANSACTION
        assert exc.value.retryable is True


class TestPaymentError:

    def test_to_dict(self):
        error = conflict("Request already in progress", key="k1", retry_after_ms=1000)
        data = error.to_dict()

        assert data["kind"] == "CONFLICT"
        assert data["error_code"] == ErrorCode.RESOURCE_CONFLICT.value
        assert data["retryable"] is False
        assert data["details"] == {"idempotency_key": "k1", "retry_after_ms": 1000}

    def test_kind_profiles(self):
        assert ErrorKind.CONFLICT.profile.http_status == 409
        assert ErrorKind.SERVICE_UNAVAILABLE.profile.http_status == 503
        assert ErrorKind.TRANSACTION.profile.retryable is True
