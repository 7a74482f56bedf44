"""
Type definitions for the coordination engine.
Contains record, API and event type definitions, grouped by module.
"""

from jobcoord.types.api import (
    CircuitResponse,
    ErrorResponse,
    ExecutionListResponse,
    ExecutionResponse,
    HealthResponse,
    LeadershipResponse,
    RearmResponse,
    TriggerResponse,
    WorkItemListResponse,
    WorkItemResponse,
    WorkItemStatsResponse,
)
from jobcoord.types.events import CoordinationEvent
from jobcoord.types.job import ItemContext, TriggerResult
from jobcoord.types.records import (
    ExecutionRecord,
    ExecutionSummary,
    LeaseRecord,
    WorkItem,
)

__all__ = [
    # API types
    "TriggerResponse",
    "ExecutionResponse",
    "ExecutionListResponse",
    "WorkItemResponse",
    "WorkItemListResponse",
    "WorkItemStatsResponse",
    "RearmResponse",
    "CircuitResponse",
    "LeadershipResponse",
    "HealthResponse",
    "ErrorResponse",
    # Record types
    "LeaseRecord",
    "WorkItem",
    "ExecutionRecord",
    "ExecutionSummary",
    # Job types
    "ItemContext",
    "TriggerResult",
    # Event types
    "CoordinationEvent",
]
