"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobcoord.constants import (
    CIRCUIT_STATE_VALUES,
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_CIRCUIT_STATE,
    METRIC_CIRCUIT_TRANSITIONS,
    METRIC_EXECUTION_DURATION,
    METRIC_EXECUTIONS_FINISHED,
    METRIC_ITEM_DURATION,
    METRIC_ITEMS_CLAIMED,
    METRIC_ITEMS_PROCESSED,
    METRIC_LEADER,
    METRIC_LEADERSHIP_TRANSITIONS,
    METRIC_RECONCILIATIONS,
    METRIC_STALE_RECLAIMS,
    METRIC_STALL_TERMINATIONS,
    METRIC_TRIGGERS,
    CircuitState,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the coordinator.

    Collects metrics for:
    - Leadership status and transitions
    - Trigger decisions and execution outcomes
    - Work item claims, outcomes and stale reclaims
    - Circuit breaker state
    - Stall terminations and reconciler corrections
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.leader = Gauge(
            METRIC_LEADER,
            "1 if this instance currently holds leadership",
            ["instance_id"],
            registry=self._registry,
        )

        self.leadership_transitions = Counter(
            METRIC_LEADERSHIP_TRANSITIONS,
            "Leadership gained/lost transitions",
            ["instance_id", "transition"],
            registry=self._registry,
        )

        self.triggers = Counter(
            METRIC_TRIGGERS,
            "Trigger requests by outcome",
            ["job_name", "outcome"],
            registry=self._registry,
        )

        self.executions_finished = Counter(
            METRIC_EXECUTIONS_FINISHED,
            "Executions that reached a terminal status",
            ["job_name", "status"],
            registry=self._registry,
        )

        self.execution_duration = Histogram(
            METRIC_EXECUTION_DURATION,
            "Execution wall time in seconds",
            ["job_name", "status"],
            buckets=(1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 1800.0, 3600.0),
            registry=self._registry,
        )

        self.items_processed = Counter(
            METRIC_ITEMS_PROCESSED,
            "Work items by processing outcome",
            ["job_name", "outcome"],
            registry=self._registry,
        )

        self.item_duration = Histogram(
            METRIC_ITEM_DURATION,
            "Work item processing duration in seconds, retries included",
            ["job_name", "outcome"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        self.items_claimed = Counter(
            METRIC_ITEMS_CLAIMED,
            "Work items claimed",
            ["job_name"],
            registry=self._registry,
        )

        self.stale_reclaims = Counter(
            METRIC_STALE_RECLAIMS,
            "Work items taken over from a stale claim",
            ["job_name"],
            registry=self._registry,
        )

        self.circuit_state = Gauge(
            METRIC_CIRCUIT_STATE,
            "Circuit state (0=closed, 1=half_open, 2=open)",
            ["name"],
            registry=self._registry,
        )

        self.circuit_transitions = Counter(
            METRIC_CIRCUIT_TRANSITIONS,
            "Circuit breaker state transitions",
            ["name", "from_state", "to_state"],
            registry=self._registry,
        )

        self.stall_terminations = Counter(
            METRIC_STALL_TERMINATIONS,
            "Executions terminated for exceeding their time budget",
            ["job_name"],
            registry=self._registry,
        )

        self.reconciliations = Counter(
            METRIC_RECONCILIATIONS,
            "Execution records corrected by the reconciler",
            ["job_name", "status"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def set_leader(self, instance_id: str, is_leader: bool) -> None:
        """Update the leader gauge and count the transition."""
        self.leader.labels(instance_id=instance_id).set(1 if is_leader else 0)
        self.leadership_transitions.labels(
            instance_id=instance_id,
            transition="gained" if is_leader else "lost",
        ).inc()

    def record_trigger(self, job_name: str, outcome: str) -> None:
        self.triggers.labels(job_name=job_name, outcome=outcome).inc()

    def record_execution_finished(
        self,
        job_name: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record an execution reaching a terminal status."""
        self.executions_finished.labels(job_name=job_name, status=status).inc()
        self.execution_duration.labels(job_name=job_name, status=status).observe(
            duration_seconds
        )

    def record_item_outcome(
        self,
        job_name: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a work item outcome (succeeded, failed, deferred, lost)."""
        self.items_processed.labels(job_name=job_name, outcome=outcome).inc()
        if duration_seconds is not None:
            self.item_duration.labels(job_name=job_name, outcome=outcome).observe(
                duration_seconds
            )

    def record_items_claimed(self, job_name: str, count: int) -> None:
        if count:
            self.items_claimed.labels(job_name=job_name).inc(count)

    def record_stale_reclaim(self, job_name: str) -> None:
        self.stale_reclaims.labels(job_name=job_name).inc()

    def record_circuit_transition(
        self,
        name: str,
        old_state: CircuitState,
        new_state: CircuitState,
    ) -> None:
        """Record a circuit state change and update the state gauge."""
        self.circuit_transitions.labels(
            name=name,
            from_state=old_state.value,
            to_state=new_state.value,
        ).inc()
        self.circuit_state.labels(name=name).set(CIRCUIT_STATE_VALUES[new_state])

    def record_stall_termination(self, job_name: str) -> None:
        self.stall_terminations.labels(job_name=job_name).inc()

    def record_reconciliation(self, job_name: str, status: str) -> None:
        self.reconciliations.labels(job_name=job_name, status=status).inc()

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the process-wide metrics collector, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
