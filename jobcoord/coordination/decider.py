"""
Terminal status decision for an execution pass.
"""

from dataclasses import dataclass

from jobcoord.constants import ExecutionStatus
from jobcoord.errors import ConfigurationError
from jobcoord.types.records import ExecutionSummary


@dataclass(frozen=True)
class ExecutionDecision:
    status: ExecutionStatus
    reason: str | None = None


def describe_error(error: BaseException) -> str:
    """Reason string recorded on an execution: ``<ErrorType>: <message>``."""
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class ExecutionDecider:
    """
    Decide COMPLETED or FAILED once the claim loop stops.

    A pass that aborted on a global error fails with that error. Item
    failures only fail the execution when a failure ratio is configured and
    exceeded; otherwise they stay recorded on the items.
    """

    def __init__(self, max_failure_ratio: float | None = None):
        if max_failure_ratio is not None and not 0.0 <= max_failure_ratio <= 1.0:
            raise ConfigurationError("max_failure_ratio must be within [0, 1]")
        self.max_failure_ratio = max_failure_ratio

    def decide(
        self,
        summary: ExecutionSummary,
        error: BaseException | None = None,
    ) -> ExecutionDecision:
        if error is not None:
            return ExecutionDecision(ExecutionStatus.FAILED, describe_error(error))

        if self.max_failure_ratio is not None and summary.processed > 0:
            ratio = summary.failed / summary.processed
            if ratio > self.max_failure_ratio:
                return ExecutionDecision(
                    ExecutionStatus.FAILED,
                    f"item failure ratio {ratio:.2f} exceeds {self.max_failure_ratio:.2f}",
                )

        return ExecutionDecision(ExecutionStatus.COMPLETED)
