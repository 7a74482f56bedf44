"""
Retry with exponential backoff behind a circuit breaker.

Every attempt of a downstream call asks the circuit for admission first, so
a downstream that keeps failing is shed instead of hammered. A circuit
rejection is never retried; a call that finds every half-open trial permit
taken waits for one instead.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from jobcoord.config import Settings
from jobcoord.constants import CircuitState
from jobcoord.errors import (
    CircuitBusyError,
    CircuitOpenError,
    ConfigurationError,
    ExecutionCancelledError,
    LockContentionError,
    RetriesExhaustedError,
    TransientDownstreamError,
)
from jobcoord.observability.events import emit_event
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.types.events import CoordinationEvent

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientDownstreamError,
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
)

MonotonicClock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]


@dataclass(frozen=True)
class RetryConfig:
    """Retry and circuit breaker parameters. Durations are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    window_size: int = 10
    failure_threshold: float = 0.5
    open_wait_duration: float = 30.0
    half_open_max_calls: int = 1
    half_open_success_threshold: int = 3
    # Pause between admission attempts while the half-open permits are taken
    half_open_poll_interval: float = 0.05

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < self.initial_delay:
            raise ConfigurationError("require 0 <= initial_delay <= max_delay")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be >= 1")
        if self.window_size < 1:
            raise ConfigurationError("window_size must be >= 1")
        if not 0 < self.failure_threshold <= 1:
            raise ConfigurationError("failure_threshold must be in (0, 1]")
        if self.half_open_max_calls < 1 or self.half_open_success_threshold < 1:
            raise ConfigurationError("half-open limits must be >= 1")
        if self.half_open_poll_interval <= 0:
            raise ConfigurationError("half_open_poll_interval must be > 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay_seconds,
            window_size=settings.circuit_window_size,
            failure_threshold=settings.circuit_failure_threshold,
            open_wait_duration=settings.circuit_open_wait_seconds,
            half_open_max_calls=settings.circuit_half_open_max_calls,
            half_open_success_threshold=settings.circuit_half_open_success_threshold,
        )


def compute_delay(config: RetryConfig, attempt: int) -> float:
    """
    Backoff before the attempt following ``attempt`` (1-indexed).

    min(initial_delay * multiplier ** (attempt - 1), max_delay)
    """
    return min(config.initial_delay * config.multiplier ** (attempt - 1), config.max_delay)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, RETRYABLE_ERRORS)


@dataclass(frozen=True)
class CircuitSnapshot:
    name: str
    state: CircuitState
    failure_rate: float
    window: int


class CircuitBreaker:
    """
    Count-window circuit breaker.

    CLOSED records outcomes in a sliding window; once the window is full and
    the failure fraction reaches the threshold the circuit opens. OPEN
    rejects calls until the wait elapses, then admits a limited number of
    trial calls (HALF_OPEN). A trial failure reopens; enough consecutive
    trial successes close it with a fresh window.
    """

    def __init__(
        self,
        name: str,
        config: RetryConfig,
        clock: MonotonicClock = time.monotonic,
        on_state_change: StateChangeCallback | None = None,
    ):
        self.name = name
        self._config = config
        self._clock = clock
        self._on_state_change = on_state_change

        # Guards in-memory transitions only; never held across an await
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._window: deque[bool] = deque(maxlen=config.window_size)
        self._opened_at = 0.0
        self._half_open_in_flight = 0
        self._half_open_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def failure_rate(self) -> float:
        with self._lock:
            if not self._window:
                return 0.0
            return self._window.count(False) / len(self._window)

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self.state,
            failure_rate=self.failure_rate,
            window=len(self._window),
        )

    def acquire(self) -> None:
        """
        Ask for admission of one call.

        Raises:
            CircuitOpenError: If the circuit is open.
            CircuitBusyError: If the circuit is half-open and every trial
                permit is taken.
        """
        with self._lock:
            state = self._current_state()
            if state == CircuitState.OPEN:
                retry_after = self._opened_at + self._config.open_wait_duration - self._clock()
                raise CircuitOpenError(self.name, max(retry_after, 0.0))
            if state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self._config.half_open_max_calls:
                    raise CircuitBusyError(self.name)
                self._half_open_in_flight += 1

    def record_success(self) -> None:
        with self._lock:
            state = self._current_state()
            if state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)
                self._half_open_successes += 1
                if self._half_open_successes >= self._config.half_open_success_threshold:
                    self._transition(CircuitState.CLOSED)
            elif state == CircuitState.CLOSED:
                self._window.append(True)

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            if state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif state == CircuitState.CLOSED:
                self._window.append(False)
                if (
                    len(self._window) == self._config.window_size
                    and self._window.count(False) / len(self._window)
                    >= self._config.failure_threshold
                ):
                    self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Return a half-open permit for a call that recorded no outcome."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)

    def _current_state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self._config.open_wait_duration
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
            self._half_open_successes = 0
        elif new_state == CircuitState.CLOSED:
            self._window.clear()

        if self._on_state_change is not None:
            self._on_state_change(self.name, old_state, new_state)


class CallClassification(StrEnum):
    SUCCEEDED = "succeeded"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CIRCUIT_OPEN = "circuit_open"
    NON_RETRYABLE = "non_retryable"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallOutcome:
    """Classified result of a retried call."""

    classification: CallClassification
    attempts: int
    value: Any = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.classification == CallClassification.SUCCEEDED


class RetryExecutor:
    """
    Runs downstream calls with retries, one circuit breaker per call site.

    Clock and sleep are injectable so backoff timing can be tested without
    waiting.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        clock: MonotonicClock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        metrics: MetricsCollector | None = None,
    ):
        self.config = config or RetryConfig()
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics or get_metrics()
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, name: str) -> CircuitBreaker:
        """Circuit for ``name``, created on first use and kept for the process."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name, self.config, clock=self._clock, on_state_change=self._state_changed
            )
            self._breakers[name] = breaker
        return breaker

    def snapshots(self) -> list[CircuitSnapshot]:
        return [b.snapshot() for b in self._breakers.values()]

    async def execute(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        cancel_event: asyncio.Event | None = None,
        **kwargs: Any,
    ) -> CallOutcome:
        """
        Call ``fn`` with retries and classify the result.

        Cancellation is observed before each attempt, while waiting for a
        half-open trial permit, and during backoff; an attempt in flight runs
        to completion.
        """
        breaker = self.breaker(name)
        attempts = 0
        last_error: BaseException | None = None

        for attempt in range(1, self.config.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                return CallOutcome(CallClassification.CANCELLED, attempts, error=last_error)

            try:
                await self._admit(breaker, cancel_event)
            except CircuitOpenError as e:
                return CallOutcome(CallClassification.CIRCUIT_OPEN, attempts, error=e)
            except ExecutionCancelledError:
                return CallOutcome(CallClassification.CANCELLED, attempts, error=last_error)

            attempts = attempt
            try:
                value = await fn(*args, **kwargs)
            except asyncio.CancelledError:
                breaker.release()
                raise
            except Exception as e:
                breaker.record_failure()
                if not is_retryable(e):
                    return CallOutcome(CallClassification.NON_RETRYABLE, attempts, error=e)

                last_error = e
                if attempt < self.config.max_attempts:
                    delay = compute_delay(self.config, attempt)
                    logger.info(
                        f"Attempt {attempt} failed, retrying in {delay:.2f}s: {e}",
                        extra={"call_site": name, "attempt": attempt},
                    )
                    if await self._wait(delay, cancel_event):
                        return CallOutcome(
                            CallClassification.CANCELLED, attempts, error=last_error
                        )
                continue

            breaker.record_success()
            return CallOutcome(CallClassification.SUCCEEDED, attempts, value=value)

        return CallOutcome(
            CallClassification.RETRIES_EXHAUSTED,
            attempts,
            error=RetriesExhaustedError(attempts, last_error),
        )

    async def _admit(self, breaker: CircuitBreaker, cancel_event: asyncio.Event | None) -> None:
        """
        Acquire admission, waiting while the half-open trial permits are taken.

        A trial that finishes either frees a permit, closes the circuit or
        reopens it, so the wait ends in admission or CircuitOpenError.

        Raises:
            CircuitOpenError: The circuit is open.
            ExecutionCancelledError: Cancellation was observed while waiting.
        """
        while True:
            try:
                breaker.acquire()
                return
            except LockContentionError:
                if await self._wait(self.config.half_open_poll_interval, cancel_event):
                    raise ExecutionCancelledError(f"admission to '{breaker.name}' cancelled")

    async def _wait(self, delay: float, cancel_event: asyncio.Event | None) -> bool:
        """Sleep for ``delay``; returns True if cancellation cut the wait short."""
        if cancel_event is None:
            await self._sleep(delay)
            return False
        if cancel_event.is_set():
            return True

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return cancel_event.is_set()

    async def call(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        cancel_event: asyncio.Event | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Call ``fn`` with retries and return its value.

        Raises:
            RetriesExhaustedError: Every attempt failed with a retryable error.
            CircuitOpenError: The circuit rejected an attempt.
            ExecutionCancelledError: Cancellation was observed between attempts.
            Exception: The first non-retryable error, unchanged.
        """
        outcome = await self.execute(name, fn, *args, cancel_event=cancel_event, **kwargs)
        if outcome.classification == CallClassification.SUCCEEDED:
            return outcome.value
        if outcome.classification == CallClassification.CANCELLED:
            raise ExecutionCancelledError(f"call to '{name}' cancelled")
        raise outcome.error

    def _state_changed(self, name: str, old_state: CircuitState, new_state: CircuitState) -> None:
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit '{name}' {old_state.value} -> {new_state.value}",
            extra={"circuit": name},
        )
        self._metrics.record_circuit_transition(name, old_state, new_state)
        emit_event(CoordinationEvent.circuit_state_changed(name, old_state, new_state))
