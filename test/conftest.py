# ============================================================================
# FILE: test/conftest.py
# Shared fixtures for ALL test suites
# ============================================================================

import pytest
import pytest_asyncio
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from httpx import AsyncClient, ASGITransport

from api.app import create_app
from db.db import create_engine_for_url, create_session_factory, init_db
from payment_resilience.config import BreakerSettings, Settings
from payment_resilience.container import PaymentServices
from payment_resilience.exceptions import ErrorCode, validation
from payment_resilience.services.circuit_breaker import CircuitBreakerRegistry
from payment_resilience.services.gateway import (
    GatewayPayment, GatewayRefund, PaymentGateway, parse_notification
)
from payment_resilience.services.idempotency_service import IdempotencyLockManager
from payment_resilience.services.shared_cache import InMemorySharedCache
from payment_resilience.services.transaction_coordinator import TransactionCoordinator

VALID_SIGNATURE = "t=1,v1=valid"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway(PaymentGateway):
    """In-process gateway recording every call."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.failures_remaining = 0
        self.error: Exception = ConnectionError("gateway unreachable")

    def fail_next(self, times: int = 1, error: Optional[Exception] = None) -> None:
        self.failures_remaining = times
        if error is not None:
            self.error = error

    def _maybe_fail(self) -> None:
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.error

    def verify_notification(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise validation("Invalid notification signature", error_code=ErrorCode.INVALID_SIGNATURE)
        return parse_notification(payload)

    async def create_payment(self, amount, currency, idempotency_key, metadata=None) -> GatewayPayment:
        self._maybe_fail()
        reference = f"pi_{len(self.created) + 1}"
        self.created.append({
            "reference": reference,
            "amount": amount,
            "currency": currency,
            "idempotency_key": idempotency_key,
            "metadata": dict(metadata or {}),
        })
        return GatewayPayment(
            reference=reference,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{reference}_secret",
            metadata=dict(metadata or {}),
        )

    async def refund(self, reference, amount=None, reason=None) -> GatewayRefund:
        self._maybe_fail()
        self.refunds.append({"reference": reference, "amount": amount, "reason": reason})
        return GatewayRefund(refund_id=f"re_{len(self.refunds)}", reference=reference, status="succeeded", amount=amount)

    async def retrieve(self, reference) -> GatewayPayment:
        self._maybe_fail()
        return GatewayPayment(reference=reference, status="succeeded", amount=1500, currency="usd")


def make_event(
    event_type: str = "payment_intent.succeeded",
    reference: str = "pi_1",
    idempotency_key: Optional[str] = None,
    event_id: Optional[str] = None,
    **payment_fields
) -> Dict[str, Any]:
    """Build a gateway notification the way the gateway delivers it."""
    metadata = {"venue_id": "venue_1", "user_id": "user_1"}
    if idempotency_key:
        metadata["idempotency_key"] = idempotency_key
    payment = {"id": reference, "amount": 1500, "currency": "usd", "metadata": metadata}
    payment.update(payment_fields)
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {"object": payment},
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def cache():
    return InMemorySharedCache()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite per test so concurrent sessions really race."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def lock_manager(session_factory):
    return IdempotencyLockManager(session_factory)


@pytest.fixture
def coordinator(session_factory, lock_manager):
    return TransactionCoordinator(session_factory, lock_manager)


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(
        BreakerSettings(failure_threshold=3, reset_timeout_seconds=30.0, half_open_success_threshold=2),
        clock=clock
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        sweep_interval_seconds=3600,
        breaker=BreakerSettings(failure_threshold=3, reset_timeout_seconds=30.0, half_open_success_threshold=2),
    )


@pytest.fixture
def services(settings, session_factory, cache, gateway, clock):
    return PaymentServices.build(
        settings,
        session_factory=session_factory,
        cache=cache,
        gateway=gateway,
        breaker_clock=clock
    )


@pytest.fixture
def app(services):
    return create_app(services)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client bound to the app without a network."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as async_client:
        yield async_client
