"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobcoord.constants import (
    CircuitState,
    ExecutionStatus,
    RejectionReason,
    WorkItemStatus,
)


class TriggerResponse(BaseModel):
    """Response body for a trigger call."""

    job_name: str
    accepted: bool
    execution_id: UUID | None = None
    reason: RejectionReason | None = None
    leader_id: str | None = Field(
        default=None, description="Current leader, when known, for routing"
    )


class ExecutionResponse(BaseModel):
    """Full execution details response."""

    execution_id: UUID
    job_name: str
    status: ExecutionStatus
    started_at: datetime
    ended_at: datetime | None
    heartbeat_at: datetime | None
    fencing_token: int
    holder_id: str
    reason: str | None
    summary: dict[str, int]


class ExecutionListResponse(BaseModel):
    """Paginated list of executions."""

    executions: list[ExecutionResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class WorkItemResponse(BaseModel):
    """Work item details response."""

    id: UUID
    job_name: str
    payload_ref: str | None
    payload: dict[str, Any]
    status: WorkItemStatus
    claim_owner: str | None
    claimed_at: datetime | None
    retry_count: int
    last_error: str | None
    created_at: datetime
    last_updated_at: datetime


class WorkItemListResponse(BaseModel):
    """Paginated list of work items."""

    items: list[WorkItemResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class RearmResponse(BaseModel):
    """Response body after re-arming a failed work item."""

    id: UUID
    status: WorkItemStatus
    retry_count: int
    message: str = "Work item re-armed"


class CircuitResponse(BaseModel):
    """Circuit breaker snapshot for one call site."""

    name: str
    state: CircuitState
    failure_rate: float
    window: int


class LeadershipResponse(BaseModel):
    """This replica's view of leadership."""

    instance_id: str
    is_leader: bool
    fencing_token: int | None
    lease_key: str
    current_leader: str | None
    circuits: list[CircuitResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    is_leader: bool
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None


class WorkItemStatsResponse(BaseModel):
    """Work item counts by status."""

    job_name: str | None = None
    counts: dict[str, int]
    total: int
