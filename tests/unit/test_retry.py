"""
Unit tests for retry with backoff and the circuit breaker.
"""

import asyncio

import pytest

from jobcoord.constants import CircuitState
from jobcoord.coordination.retry import (
    CallClassification,
    CircuitBreaker,
    RetryConfig,
    RetryExecutor,
    compute_delay,
)
from jobcoord.errors import (
    CircuitBusyError,
    CircuitOpenError,
    ConfigurationError,
    ExecutionCancelledError,
    LockContentionError,
    PermanentDownstreamError,
    RetriesExhaustedError,
    TransientDownstreamError,
)
from tests.conftest import FakeMonotonic


class Downstream:
    """Scripted downstream call: raises the queued errors, then succeeds."""

    def __init__(self, *errors: BaseException, clock: FakeMonotonic | None = None):
        self._errors = list(errors)
        self._clock = clock
        self.calls: list[float] = []

    async def __call__(self) -> str:
        self.calls.append(self._clock() if self._clock else 0.0)
        if self._errors:
            raise self._errors.pop(0)
        return "ok"


def make_executor(fake: FakeMonotonic, metrics, **overrides) -> RetryExecutor:
    config = RetryConfig(**overrides)
    return RetryExecutor(config, clock=fake, sleep=fake.sleep, metrics=metrics)


class TestBackoff:
    """Tests for the backoff schedule."""

    def test_exponential_delays(self):
        """Test that delays grow by the multiplier from the initial delay."""
        config = RetryConfig(initial_delay=1, multiplier=2, max_delay=30)

        assert [compute_delay(config, n) for n in (1, 2, 3)] == [1, 2, 4]

    def test_delay_is_capped(self):
        """Test that delays never exceed max_delay."""
        config = RetryConfig(initial_delay=1, multiplier=2, max_delay=5)

        assert compute_delay(config, 10) == 5

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_attempts": 0},
            {"initial_delay": 5, "max_delay": 1},
            {"multiplier": 0.5},
            {"failure_threshold": 0},
            {"window_size": 0},
            {"half_open_poll_interval": 0},
        ],
    )
    def test_invalid_config_rejected(self, overrides):
        """Test that inconsistent retry parameters are rejected."""
        with pytest.raises(ConfigurationError):
            RetryConfig(**overrides)


class TestRetryExecutor:
    """Tests for retried downstream calls."""

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(self, metrics):
        """Test that attempts happen at t=0, 1 and 3 and the third succeeds."""
        fake = FakeMonotonic()
        executor = make_executor(fake, metrics, initial_delay=1, multiplier=2, max_delay=30)
        downstream = Downstream(
            TransientDownstreamError("timeout"),
            TransientDownstreamError("timeout"),
            clock=fake,
        )

        outcome = await executor.execute("sync", downstream)

        assert outcome.classification == CallClassification.SUCCEEDED
        assert outcome.value == "ok"
        assert outcome.attempts == 3
        assert downstream.calls == [0.0, 1.0, 3.0]
        assert fake.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, metrics):
        """Test that repeated retryable failures exhaust the attempts."""
        fake = FakeMonotonic()
        executor = make_executor(fake, metrics, max_attempts=3)
        downstream = Downstream(*(TransientDownstreamError("down") for _ in range(3)))

        outcome = await executor.execute("sync", downstream)

        assert outcome.classification == CallClassification.RETRIES_EXHAUSTED
        assert outcome.attempts == 3
        assert isinstance(outcome.error, RetriesExhaustedError)
        # No sleep after the final attempt
        assert len(fake.sleeps) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, metrics):
        """Test that a non-retryable error is not retried."""
        fake = FakeMonotonic()
        executor = make_executor(fake, metrics)
        downstream = Downstream(PermanentDownstreamError("bad request"))

        outcome = await executor.execute("sync", downstream)

        assert outcome.classification == CallClassification.NON_RETRYABLE
        assert outcome.attempts == 1
        assert len(downstream.calls) == 1

    @pytest.mark.asyncio
    async def test_call_raises_first_non_retryable(self, metrics):
        """Test that call() surfaces a non-retryable error unchanged."""
        executor = make_executor(FakeMonotonic(), metrics)

        with pytest.raises(PermanentDownstreamError):
            await executor.call("sync", Downstream(PermanentDownstreamError("nope")))

    @pytest.mark.asyncio
    async def test_call_raises_retries_exhausted(self, metrics):
        """Test that call() raises RetriesExhaustedError with the last error."""
        executor = make_executor(FakeMonotonic(), metrics, max_attempts=2)
        downstream = Downstream(ConnectionError("reset"), ConnectionError("reset again"))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.call("sync", downstream)
        assert exc_info.value.attempts == 2
        assert str(exc_info.value.last_error) == "reset again"

    @pytest.mark.asyncio
    async def test_cancelled_before_attempt(self, metrics):
        """Test that a set cancellation event stops before the next attempt."""
        executor = make_executor(FakeMonotonic(), metrics)
        cancel = asyncio.Event()
        cancel.set()
        downstream = Downstream()

        outcome = await executor.execute("sync", downstream, cancel_event=cancel)

        assert outcome.classification == CallClassification.CANCELLED
        assert downstream.calls == []
        with pytest.raises(ExecutionCancelledError):
            await executor.call("sync", downstream, cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_circuit_rejection_not_retried(self, metrics):
        """Test that an open circuit ends the call without further attempts."""
        executor = make_executor(FakeMonotonic(), metrics, window_size=2, max_attempts=5)
        downstream = Downstream(*(TransientDownstreamError("down") for _ in range(5)))

        outcome = await executor.execute("sync", downstream)

        assert outcome.classification == CallClassification.CIRCUIT_OPEN
        assert outcome.attempts == 2
        assert isinstance(outcome.error, CircuitOpenError)
        assert executor.breaker("sync").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_waits_for_half_open_permit(self, metrics):
        """Test that a call finding the trial permit taken waits instead of failing."""
        fake = FakeMonotonic()
        executor = RetryExecutor(
            RetryConfig(window_size=2, half_open_poll_interval=0.01),
            clock=fake,
            metrics=metrics,
        )
        breaker = executor.breaker("sync")
        for _ in range(2):
            breaker.record_failure()
        fake.now += 30
        breaker.acquire()
        downstream = Downstream()

        waiting = asyncio.create_task(executor.execute("sync", downstream))
        await asyncio.sleep(0.05)
        assert not waiting.done()
        assert downstream.calls == []

        breaker.record_success()
        outcome = await asyncio.wait_for(waiting, timeout=1)

        assert outcome.classification == CallClassification.SUCCEEDED
        assert outcome.attempts == 1
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting_for_permit(self, metrics):
        """Test that cancellation ends the wait for a half-open permit."""
        fake = FakeMonotonic()
        executor = RetryExecutor(
            RetryConfig(window_size=2, half_open_poll_interval=0.01),
            clock=fake,
            metrics=metrics,
        )
        breaker = executor.breaker("sync")
        for _ in range(2):
            breaker.record_failure()
        fake.now += 30
        breaker.acquire()
        cancel = asyncio.Event()
        downstream = Downstream()

        waiting = asyncio.create_task(
            executor.execute("sync", downstream, cancel_event=cancel)
        )
        await asyncio.sleep(0.02)
        cancel.set()
        outcome = await asyncio.wait_for(waiting, timeout=1)

        assert outcome.classification == CallClassification.CANCELLED
        assert outcome.attempts == 0
        assert downstream.calls == []

    @pytest.mark.asyncio
    async def test_cancel_cuts_backoff_short(self, metrics):
        """Test that cancellation during a long backoff returns without waiting it out."""
        executor = RetryExecutor(
            RetryConfig(initial_delay=60, max_delay=60), metrics=metrics
        )
        cancel = asyncio.Event()
        downstream = Downstream(TransientDownstreamError("timeout"))

        call = asyncio.create_task(
            executor.execute("sync", downstream, cancel_event=cancel)
        )
        await asyncio.sleep(0.01)
        cancel.set()
        outcome = await asyncio.wait_for(call, timeout=1)

        assert outcome.classification == CallClassification.CANCELLED
        assert outcome.attempts == 1
        assert len(downstream.calls) == 1
        assert isinstance(outcome.error, TransientDownstreamError)

    @pytest.mark.asyncio
    async def test_one_circuit_per_call_site(self, metrics):
        """Test that breakers are created once per name and kept."""
        executor = make_executor(FakeMonotonic(), metrics)

        assert executor.breaker("a") is executor.breaker("a")
        assert executor.breaker("a") is not executor.breaker("b")
        assert {s.name for s in executor.snapshots()} == {"a", "b"}


class TestCircuitBreaker:
    """Tests for circuit breaker transitions."""

    def make_breaker(self, fake: FakeMonotonic, **overrides) -> CircuitBreaker:
        params = {
            "window_size": 10,
            "failure_threshold": 0.5,
            "open_wait_duration": 30,
            "half_open_max_calls": 1,
            "half_open_success_threshold": 3,
        }
        params.update(overrides)
        return CircuitBreaker("downstream", RetryConfig(**params), clock=fake)

    def record(self, breaker: CircuitBreaker, successes: int, failures: int) -> None:
        for _ in range(successes):
            breaker.acquire()
            breaker.record_success()
        for _ in range(failures):
            breaker.acquire()
            breaker.record_failure()

    def test_opens_at_threshold_with_full_window(self):
        """Test that 5 failures out of 10 open the circuit."""
        breaker = self.make_breaker(FakeMonotonic())

        self.record(breaker, successes=5, failures=5)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.acquire()

    def test_stays_closed_below_threshold(self):
        """Test that 4 failures out of 10 keep the circuit closed."""
        breaker = self.make_breaker(FakeMonotonic())

        self.record(breaker, successes=6, failures=4)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_rate == 0.4

    def test_partial_window_never_opens(self):
        """Test that 9 failures do not open a circuit with a window of 10."""
        breaker = self.make_breaker(FakeMonotonic())

        self.record(breaker, successes=0, failures=9)

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_wait(self):
        """Test that the circuit admits trial calls after the open wait."""
        fake = FakeMonotonic()
        breaker = self.make_breaker(fake, window_size=2)
        self.record(breaker, successes=0, failures=2)

        fake.now += 29
        assert breaker.state == CircuitState.OPEN
        fake.now += 1
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_limits_concurrent_trials(self):
        """Test that only half_open_max_calls trials are in flight at once."""
        fake = FakeMonotonic()
        breaker = self.make_breaker(fake, window_size=2)
        self.record(breaker, successes=0, failures=2)
        fake.now += 30

        breaker.acquire()
        with pytest.raises(CircuitBusyError) as exc_info:
            breaker.acquire()
        assert isinstance(exc_info.value, LockContentionError)
        assert not isinstance(exc_info.value, CircuitOpenError)

        breaker.release()
        breaker.acquire()

    def test_half_open_failure_reopens(self):
        """Test that a failed trial call reopens the circuit."""
        fake = FakeMonotonic()
        breaker = self.make_breaker(fake, window_size=2)
        self.record(breaker, successes=0, failures=2)
        fake.now += 30

        breaker.acquire()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_half_open_successes_close(self):
        """Test that enough trial successes close the circuit with a fresh window."""
        fake = FakeMonotonic()
        breaker = self.make_breaker(fake, window_size=2)
        self.record(breaker, successes=0, failures=2)
        fake.now += 30

        for _ in range(2):
            breaker.acquire()
            breaker.record_success()
            assert breaker.state == CircuitState.HALF_OPEN
        breaker.acquire()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_rate == 0.0

    def test_state_changes_reported(self):
        """Test that transitions are passed to the state change callback."""
        fake = FakeMonotonic()
        changes = []
        breaker = CircuitBreaker(
            "downstream",
            RetryConfig(window_size=2),
            clock=fake,
            on_state_change=lambda name, old, new: changes.append((old, new)),
        )
        self.record(breaker, successes=0, failures=2)
        fake.now += 30
        assert breaker.state == CircuitState.HALF_OPEN

        assert changes == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
        ]
