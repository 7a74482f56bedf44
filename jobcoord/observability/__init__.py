"""
Observability module.
Contains logging, metrics, tracing and event emission.
"""

from jobcoord.observability.events import emit_event
from jobcoord.observability.logging import (
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
)
from jobcoord.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobcoord.observability.tracing import get_tracer, setup_tracing, start_span

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "emit_event",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "start_span",
]
