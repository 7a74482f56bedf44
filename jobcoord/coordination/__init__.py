"""
Coordination components: leader election, claiming, retries, execution
lifecycle and self-healing.
"""

from jobcoord.coordination.claim_queue import RecordClaimQueue
from jobcoord.coordination.coordinator import CancellationToken, JobCoordinator
from jobcoord.coordination.decider import ExecutionDecider, ExecutionDecision
from jobcoord.coordination.leader import LeaderElector, LeadershipSnapshot
from jobcoord.coordination.reconciler import StatusReconciler
from jobcoord.coordination.retry import (
    CallClassification,
    CallOutcome,
    CircuitBreaker,
    RetryConfig,
    RetryExecutor,
    compute_delay,
)
from jobcoord.coordination.stall_monitor import StallMonitor

__all__ = [
    "CallClassification",
    "CallOutcome",
    "CancellationToken",
    "CircuitBreaker",
    "ExecutionDecider",
    "ExecutionDecision",
    "JobCoordinator",
    "LeaderElector",
    "LeadershipSnapshot",
    "RecordClaimQueue",
    "RetryConfig",
    "RetryExecutor",
    "StallMonitor",
    "StatusReconciler",
    "compute_delay",
]
