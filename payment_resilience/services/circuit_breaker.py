"""
Circuit breaker for calls to the payment gateway.

One breaker exists per (dependency, partition), the partition usually being a
venue, so one tenant's failures never trip the breaker for the others.

STATE MACHINE:
- closed: calls pass; failures are counted, reaching failure_threshold trips
  the breaker to open
- open: calls are rejected with SERVICE_UNAVAILABLE without running, until
  reset_timeout has elapsed since the last failure
- half_open: entered right before the first call after reset_timeout; at
  most half_open_success_threshold trial calls run at once and the rest are
  rejected as if open. A single failure trips back to open,
  half_open_success_threshold consecutive successes close the breaker again

Errors whose kind is in excluded_kinds (client errors by default) propagate
without counting as failures: the dependency answered, the request was wrong.

Breaker state is process-local. Each instance protects its own outbound call
path; two instances may disagree about the same dependency. State lives
behind BreakerStateStore so a shared store can be substituted.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterator, Optional, Tuple, TypeVar

from payment_resilience.config import BreakerSettings
from payment_resilience.exceptions import ErrorCode, ErrorKind, PaymentError, service_unavailable
from payment_resilience.utils.logging import get_context_logger

T = TypeVar('T')

DEFAULT_EXCLUDED_KINDS = frozenset({ErrorKind.VALIDATION})


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    excluded_calls: int = 0
    open_circuits: int = 0
    last_open_time: Optional[float] = None
    average_response_time_ms: float = 0.0

    def record_latency(self, duration_ms: float) -> None:
        # Incremental mean over every executed call
        executed = self.successful_calls + self.failed_calls
        if executed <= 1:
            self.average_response_time_ms = duration_ms
        else:
            self.average_response_time_ms += (duration_ms - self.average_response_time_ms) / executed

    @property
    def failure_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.failed_calls / self.total_calls * 100


@dataclass
class CircuitBreakerState:
    dependency: str
    partition: str
    failure_threshold: int
    reset_timeout: float
    half_open_success_threshold: int
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    consecutive_successes: int = 0
    half_open_in_flight: int = 0
    last_failure_time: Optional[float] = None
    last_error: Optional[str] = None
    metrics: BreakerMetrics = field(default_factory=BreakerMetrics)


class BreakerStateStore(ABC):
    """Where breaker state lives. Process-local by default."""

    @abstractmethod
    def load(self, dependency: str, partition: str) -> Optional[CircuitBreakerState]:
        ...

    @abstractmethod
    def save(self, state: CircuitBreakerState) -> None:
        ...

    @abstractmethod
    def items(self) -> Iterator[CircuitBreakerState]:
        ...


class InMemoryBreakerStore(BreakerStateStore):
    def __init__(self):
        self._states: Dict[Tuple[str, str], CircuitBreakerState] = {}

    def load(self, dependency: str, partition: str) -> Optional[CircuitBreakerState]:
        return self._states.get((dependency, partition))

    def save(self, state: CircuitBreakerState) -> None:
        self._states[(state.dependency, state.partition)] = state

    def items(self) -> Iterator[CircuitBreakerState]:
        return iter(list(self._states.values()))


class CircuitBreaker:
    def __init__(
        self,
        dependency: str,
        partition: str = "default",
        store: Optional[BreakerStateStore] = None,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_success_threshold: int = 3,
        min_failure_threshold: int = 2,
        max_reset_timeout: float = 60.0,
        excluded_kinds: FrozenSet[ErrorKind] = DEFAULT_EXCLUDED_KINDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.dependency = dependency
        self.partition = partition
        self._store = store or InMemoryBreakerStore()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._min_failure_threshold = min_failure_threshold
        self._max_reset_timeout = max_reset_timeout
        self._excluded_kinds = frozenset(excluded_kinds)
        self._logger = get_context_logger(
            "circuit_breaker", dependency=dependency, partition=partition
        )

        if self._store.load(dependency, partition) is None:
            self._store.save(CircuitBreakerState(
                dependency=dependency,
                partition=partition,
                failure_threshold=failure_threshold,
                reset_timeout=reset_timeout,
                half_open_success_threshold=half_open_success_threshold,
            ))

    @property
    def _state(self) -> CircuitBreakerState:
        return self._store.load(self.dependency, self.partition)

    @property
    def state(self) -> BreakerState:
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    @property
    def consecutive_successes(self) -> int:
        return self._state.consecutive_successes

    @property
    def failure_threshold(self) -> int:
        return self._state.failure_threshold

    @property
    def reset_timeout(self) -> float:
        return self._state.reset_timeout

    @property
    def metrics(self) -> BreakerMetrics:
        return self._state.metrics

    @property
    def half_open_in_flight(self) -> int:
        return self._state.half_open_in_flight

    def is_failure(self, error: BaseException) -> bool:
        """Whether error says the dependency is unhealthy."""
        return not (isinstance(error, PaymentError) and error.kind in self._excluded_kinds)

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run fn through the breaker.

        Raises:
            PaymentError(SERVICE_UNAVAILABLE): the breaker is open, or half
                open with every trial slot taken
            Whatever fn raises, after recording it
        """
        await self._before_call()

        start = self._clock()
        try:
            result = await fn(*args, **kwargs)
        except Exception as e:
            duration_ms = (self._clock() - start) * 1000
            if self.is_failure(e):
                await self._on_failure(e, duration_ms)
            else:
                await self._on_excluded(e, duration_ms)
            raise

        await self._on_success((self._clock() - start) * 1000)
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            state = self._state
            if state.state == BreakerState.CLOSED:
                return

            if state.state == BreakerState.HALF_OPEN:
                if state.half_open_in_flight < state.half_open_success_threshold:
                    state.half_open_in_flight += 1
                    self._store.save(state)
                    return
                self._reject(state, 0.0)

            if self._reset_timeout_elapsed(state):
                state.state = BreakerState.HALF_OPEN
                state.consecutive_successes = 0
                state.half_open_in_flight = 1
                self._store.save(state)
                self._logger.info(
                    "circuit_half_open",
                    extra={"failures": state.failure_count, "last_error": state.last_error}
                )
                return

            retry_after = max(0.0, state.reset_timeout - (self._clock() - (state.last_failure_time or 0.0)))
            self._reject(state, retry_after)

    def _reject(self, state: CircuitBreakerState, retry_after: float) -> None:
        state.metrics.rejected_calls += 1
        self._store.save(state)
        self._logger.warning(
            "circuit_rejected",
            extra={"state": state.state.value, "retry_after_seconds": round(retry_after, 3)}
        )
        raise service_unavailable(
            f"Circuit breaker is {state.state.value} for {self.dependency}",
            error_code=ErrorCode.CIRCUIT_BREAKER_OPEN,
            dependency=self.dependency,
            partition=self.partition,
            retry_after_ms=int(retry_after * 1000)
        )

    @staticmethod
    def _release_trial(state: CircuitBreakerState) -> None:
        # Trials from an earlier half-open window may finish after a re-trip
        state.half_open_in_flight = max(0, state.half_open_in_flight - 1)

    def _reset_timeout_elapsed(self, state: CircuitBreakerState) -> bool:
        if state.last_failure_time is None:
            return False
        return self._clock() - state.last_failure_time >= state.reset_timeout

    async def _on_success(self, duration_ms: float) -> None:
        async with self._lock:
            state = self._state
            state.metrics.total_calls += 1
            state.metrics.successful_calls += 1
            state.metrics.record_latency(duration_ms)
            self._release_trial(state)

            if state.state == BreakerState.HALF_OPEN:
                state.consecutive_successes += 1
                if state.consecutive_successes >= state.half_open_success_threshold:
                    self._reset(state)
            elif state.state == BreakerState.CLOSED:
                state.failure_count = 0
                state.last_error = None

            self._store.save(state)

    async def _on_failure(self, error: BaseException, duration_ms: float) -> None:
        async with self._lock:
            state = self._state
            state.metrics.total_calls += 1
            state.metrics.failed_calls += 1
            state.metrics.record_latency(duration_ms)
            self._release_trial(state)

            state.last_failure_time = self._clock()
            state.last_error = str(error)
            state.failure_count += 1

            self._logger.error(
                "circuit_failure_recorded",
                extra={"state": state.state.value, "failures": state.failure_count, "error": str(error)}
            )

            if state.state == BreakerState.HALF_OPEN or (
                state.state == BreakerState.CLOSED and state.failure_count >= state.failure_threshold
            ):
                self._trip(state)

            self._store.save(state)

    async def _on_excluded(self, error: BaseException, duration_ms: float) -> None:
        async with self._lock:
            state = self._state
            state.metrics.total_calls += 1
            state.metrics.excluded_calls += 1
            self._release_trial(state)
            self._store.save(state)
            self._logger.info(
                "circuit_call_excluded",
                extra={"state": state.state.value, "error": str(error), "duration_ms": round(duration_ms, 2)}
            )

    def _trip(self, state: CircuitBreakerState) -> None:
        state.state = BreakerState.OPEN
        state.consecutive_successes = 0
        state.metrics.open_circuits += 1
        state.metrics.last_open_time = self._clock()
        self._logger.warning(
            "circuit_opened",
            extra={
                "failures": state.failure_count,
                "last_error": state.last_error,
                "reset_timeout_seconds": state.reset_timeout
            }
        )

    def _reset(self, state: CircuitBreakerState) -> None:
        state.state = BreakerState.CLOSED
        state.failure_count = 0
        state.consecutive_successes = 0
        state.half_open_in_flight = 0
        state.last_failure_time = None
        state.last_error = None
        self._logger.info("circuit_reset", extra={"total_calls": state.metrics.total_calls})

    async def reset(self) -> None:
        """Force the breaker closed."""
        async with self._lock:
            state = self._state
            self._reset(state)
            self._store.save(state)

    def handle_threshold_reached(self, level: str) -> bool:
        """
        React to an external load signal for this partition.

        A critical signal makes the breaker more conservative: it trips after
        fewer failures and stays open longer.
        """
        if level != "critical":
            return False

        state = self._state
        state.failure_threshold = max(self._min_failure_threshold, state.failure_threshold - 1)
        state.reset_timeout = min(self._max_reset_timeout, state.reset_timeout * 1.5)
        self._store.save(state)

        self._logger.warning(
            "circuit_tightened",
            extra={"failure_threshold": state.failure_threshold, "reset_timeout_seconds": state.reset_timeout}
        )
        return True

    def snapshot(self) -> Dict[str, Any]:
        state = self._state
        metrics = asdict(state.metrics)
        metrics["failure_rate"] = state.metrics.failure_rate
        return {
            "dependency": state.dependency,
            "partition": state.partition,
            "state": state.state.value,
            "failure_count": state.failure_count,
            "consecutive_successes": state.consecutive_successes,
            "half_open_in_flight": state.half_open_in_flight,
            "failure_threshold": state.failure_threshold,
            "reset_timeout_seconds": state.reset_timeout,
            "last_failure_time": state.last_failure_time,
            "last_error": state.last_error,
            "metrics": metrics,
        }


class CircuitBreakerRegistry:
    """Hands out one breaker per (dependency, partition), all sharing one store."""

    def __init__(
        self,
        settings: Optional[BreakerSettings] = None,
        store: Optional[BreakerStateStore] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._settings = settings or BreakerSettings()
        self._store = store or InMemoryBreakerStore()
        self._clock = clock
        self._breakers: Dict[Tuple[str, str], CircuitBreaker] = {}

    def get(self, dependency: str, partition: Optional[str] = None) -> CircuitBreaker:
        key = (dependency, partition or "default")
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                dependency,
                key[1],
                store=self._store,
                failure_threshold=self._settings.failure_threshold,
                reset_timeout=self._settings.reset_timeout_seconds,
                half_open_success_threshold=self._settings.half_open_success_threshold,
                min_failure_threshold=self._settings.min_failure_threshold,
                max_reset_timeout=self._settings.max_reset_timeout_seconds,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    def handle_threshold_reached(self, partition: str, level: str) -> int:
        """Apply a load signal to every breaker of partition; returns how many changed."""
        return sum(
            1 for (_, breaker_partition), breaker in list(self._breakers.items())
            if breaker_partition == partition and breaker.handle_threshold_reached(level)
        )

    def snapshots(self):
        return [breaker.snapshot() for breaker in self._breakers.values()]
