"""
Event emission.

Coordination events are rendered as structured log lines; the event type is
the log message and the correlation fields become keys.
"""

from jobcoord.constants import (
    EVENT_EXECUTION_FAILED,
    EVENT_LEADERSHIP_LOST,
    EVENT_STALL_TERMINATED,
)
from jobcoord.observability.logging import get_logger
from jobcoord.types.events import CoordinationEvent

logger = get_logger("jobcoord.events")

_WARNING_EVENTS = frozenset(
    {EVENT_EXECUTION_FAILED, EVENT_LEADERSHIP_LOST, EVENT_STALL_TERMINATED}
)


def emit_event(event: CoordinationEvent) -> None:
    """Log a coordination event."""
    fields = event.model_dump(mode="json", exclude_none=True)
    event_type = fields.pop("event_type")
    data = fields.pop("data", {})
    # structlog stamps its own "timestamp"
    fields["occurred_at"] = fields.pop("timestamp")

    if event_type in _WARNING_EVENTS:
        logger.warning(event_type, **fields, **data)
    else:
        logger.info(event_type, **fields, **data)
