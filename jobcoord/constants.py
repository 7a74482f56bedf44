"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class WorkItemStatus(StrEnum):
    """
    Work item lifecycle states.

    State transitions:
    - PENDING -> CLAIMED (claimed by a worker)
    - CLAIMED -> PROCESSING (downstream call about to start)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> FAILED (retries exhausted or non-retryable error)
    - CLAIMED/PROCESSING -> PENDING (released: circuit open or cancellation)
    - CLAIMED/PROCESSING -> CLAIMED (stale claim reclaimed by another worker)
    - FAILED -> PENDING (external remediation)
    """

    PENDING = "pending"
    CLAIMED = "claimed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(StrEnum):
    """
    Execution lifecycle states.

    State transitions:
    - RUNNING -> COMPLETED | FAILED (coordinator, fenced)
    - RUNNING -> FAILED (stall monitor or reconciler)
    - RUNNING -> UNKNOWN (reconciler: no heartbeat, lease still held)
    - UNKNOWN -> RUNNING (heartbeat from a live coordinator)
    - UNKNOWN -> FAILED (reconciler: lease gone)
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RejectionReason(StrEnum):
    """Why a trigger call was not accepted."""

    NOT_LEADER = "NOT_LEADER"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    UNKNOWN_JOB = "UNKNOWN_JOB"


CLAIMED_STATUSES = (WorkItemStatus.CLAIMED, WorkItemStatus.PROCESSING)
TERMINAL_ITEM_STATUSES = (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)
ACTIVE_EXECUTION_STATUSES = (ExecutionStatus.RUNNING, ExecutionStatus.UNKNOWN)
TERMINAL_EXECUTION_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

# Lease keys
SINGLE_FLIGHT_KEY_PREFIX = "job:"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_LEADER = "leader_status"
METRIC_LEADERSHIP_TRANSITIONS = "leadership_transitions_total"
METRIC_TRIGGERS = "triggers_total"
METRIC_EXECUTIONS_FINISHED = "executions_finished_total"
METRIC_EXECUTION_DURATION = "execution_duration_seconds"
METRIC_ITEMS_PROCESSED = "work_items_processed_total"
METRIC_ITEM_DURATION = "work_item_duration_seconds"
METRIC_ITEMS_CLAIMED = "work_items_claimed_total"
METRIC_STALE_RECLAIMS = "stale_claims_reclaimed_total"
METRIC_CIRCUIT_STATE = "circuit_state"
METRIC_CIRCUIT_TRANSITIONS = "circuit_transitions_total"
METRIC_STALL_TERMINATIONS = "stall_terminations_total"
METRIC_RECONCILIATIONS = "reconciliation_corrections_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_TRIGGER = "trigger_job"
SPAN_EXECUTION = "run_execution"
SPAN_CLAIM_BATCH = "claim_batch"
SPAN_PROCESS_ITEM = "process_work_item"

# Event types
EVENT_LEADERSHIP_GAINED = "leadership.gained"
EVENT_LEADERSHIP_LOST = "leadership.lost"
EVENT_EXECUTION_ACCEPTED = "execution.accepted"
EVENT_EXECUTION_REJECTED = "execution.rejected"
EVENT_EXECUTION_COMPLETED = "execution.completed"
EVENT_EXECUTION_FAILED = "execution.failed"
EVENT_CIRCUIT_STATE_CHANGED = "circuit.state_changed"
EVENT_STALE_RECLAIMED = "claim.stale_reclaimed"
EVENT_STALL_TERMINATED = "execution.stall_terminated"
EVENT_RECONCILED = "reconciliation.corrected"

# Numeric encoding of circuit state for the gauge
CIRCUIT_STATE_VALUES: dict[CircuitState, int] = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


def single_flight_key(job_name: str) -> str:
    """Lease key guarding one concurrent execution of ``job_name``."""
    return f"{SINGLE_FLIGHT_KEY_PREFIX}{job_name}"
