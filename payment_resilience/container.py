"""
Explicit wiring of the payment resilience services.

Everything is constructed once by PaymentServices.build and torn down by
stop(). The API lifespan owns the instance; tests build their own with
injected collaborators.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from db.db import create_engine_for_url, create_session_factory
from payment_resilience.config import Settings
from payment_resilience.jobs.lock_sweeper import LockSweeper
from payment_resilience.services.circuit_breaker import CircuitBreakerRegistry
from payment_resilience.services.gateway import PaymentGateway, StripePaymentGateway
from payment_resilience.services.idempotency_service import IdempotencyLockManager
from payment_resilience.services.payment_flow import PaymentInitiationFlow
from payment_resilience.services.shared_cache import InMemorySharedCache, RedisSharedCache, SharedCache
from payment_resilience.services.transaction_coordinator import TransactionCoordinator
from payment_resilience.services.webhook_guard import WebhookReplayGuard
from payment_resilience.utils.logging import get_context_logger

logger = get_context_logger("container")


@dataclass
class PaymentServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    cache: SharedCache
    gateway: PaymentGateway
    lock_manager: IdempotencyLockManager
    breakers: CircuitBreakerRegistry
    coordinator: TransactionCoordinator
    webhook_guard: WebhookReplayGuard
    payment_flow: PaymentInitiationFlow
    sweeper: LockSweeper
    engine: Optional[AsyncEngine] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[SharedCache] = None,
        gateway: Optional[PaymentGateway] = None,
        breaker_clock: Callable[[], float] = time.monotonic
    ) -> "PaymentServices":
        engine = None
        if session_factory is None:
            engine = create_engine_for_url(settings.database_url)
            session_factory = create_session_factory(engine)

        if cache is None:
            if settings.redis_url:
                cache = RedisSharedCache.from_url(settings.redis_url)
            else:
                logger.warning("REDIS_URL not set, using a process-local replay cache")
                cache = InMemorySharedCache()

        if gateway is None:
            gateway = StripePaymentGateway(
                settings.stripe_secret_key,
                settings.stripe_webhook_secret,
                timeout_seconds=settings.gateway_timeout_seconds,
            )

        lock_manager = IdempotencyLockManager(
            session_factory,
            active_lock_timeout=settings.active_lock_timeout,
            retention=settings.lock_retention,
        )
        breakers = CircuitBreakerRegistry(settings.breaker, clock=breaker_clock)
        coordinator = TransactionCoordinator(session_factory, lock_manager)

        return cls(
            settings=settings,
            session_factory=session_factory,
            cache=cache,
            gateway=gateway,
            lock_manager=lock_manager,
            breakers=breakers,
            coordinator=coordinator,
            webhook_guard=WebhookReplayGuard(
                cache,
                coordinator,
                gateway=gateway,
                max_retries=settings.webhook_max_retries,
                processed_ttl_seconds=settings.processed_event_ttl_seconds,
                failure_ttl_seconds=settings.failed_event_ttl_seconds,
            ),
            payment_flow=PaymentInitiationFlow(
                lock_manager,
                breakers,
                gateway,
                dependency_name=settings.gateway_dependency_name,
            ),
            sweeper=LockSweeper(lock_manager, interval_seconds=settings.sweep_interval_seconds),
            engine=engine,
        )

    async def start(self) -> None:
        self.sweeper.start()
        logger.info("Payment services started", extra={"environment": self.settings.environment})

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.cache.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Payment services stopped")
