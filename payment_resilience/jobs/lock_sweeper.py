"""
Background job releasing abandoned idempotency locks.

Runs on its own asyncio task, independent of request handling. Each run
releases `locked` attempts past the active-attempt timeout, then purges
records past the audit retention window.
"""
import asyncio
from typing import Dict, Optional

from payment_resilience.services.idempotency_service import IdempotencyLockManager
from payment_resilience.utils.logging import get_context_logger

logger = get_context_logger("lock_sweeper")


class LockSweeper:

    def __init__(self, lock_manager: IdempotencyLockManager, interval_seconds: float = 300):
        self._locks = lock_manager
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failed_runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, int]:
        released = await self._locks.sweep_expired()
        purged = await self._locks.purge_retained()
        self.runs += 1
        return {"released": released, "purged": purged}

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = await self.run_once()
                logger.debug("Lock sweep finished", extra=result)
            except Exception as e:
                self.failed_runs += 1
                logger.error(f"Lock sweep failed: {type(e).__name__}: {str(e)}",
                             extra={"failed_runs": self.failed_runs})

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="lock-sweeper")
        logger.info("Lock sweeper started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Lock sweeper stopped")
