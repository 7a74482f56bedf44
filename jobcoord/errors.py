"""
Error taxonomy for the coordination engine.

Item-local errors (transient downstream failures, exhausted retries) are
recorded on the work item and never abort a batch. Execution-global errors
(leadership lost, lease expired or fenced) abort the claim loop and are
recorded on the execution record.
"""


class CoordinationError(Exception):
    """Base class for all coordination errors."""


class ConfigurationError(CoordinationError):
    """Invalid component configuration."""


class DownstreamError(CoordinationError):
    """A failure reported by the downstream system processing an item."""


class TransientDownstreamError(DownstreamError):
    """Retryable downstream failure (timeouts, 5xx, dropped connections)."""


class PermanentDownstreamError(DownstreamError):
    """Downstream failure that retrying will not fix."""


class CircuitOpenError(CoordinationError):
    """The circuit for a call site is open; the call was not attempted."""

    def __init__(self, name: str, retry_after: float = 0.0):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{name}' is open (retry after {retry_after:.1f}s)"
        )


class RetriesExhaustedError(CoordinationError):
    """All attempts of a logical operation failed."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retries exhausted after {attempts} attempts: {last_error}")


class LockContentionError(CoordinationError):
    """A row, lease or permit is held by someone else. Expected under concurrency."""


class CircuitBusyError(LockContentionError):
    """A half-open circuit has no free trial permit; admission may succeed shortly."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit '{name}' is half-open with no trial permit free")


class LeadershipLostError(CoordinationError):
    """This replica is no longer leader; stop writing under the old token."""


class StaleClaimReclaimed(CoordinationError):
    """
    A work item claim was taken over by another worker.

    Informational: the previous owner logs it and discards its result rather
    than retrying the write.
    """

    def __init__(self, item_id: object, worker_id: str):
        self.item_id = item_id
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} no longer owns work item {item_id}")


class ExecutionTimeoutError(CoordinationError):
    """An execution exceeded its time budget or its single-flight lease."""


class ExecutionCancelledError(CoordinationError):
    """Cooperative cancellation was observed by an execution."""
