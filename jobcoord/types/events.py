"""
Event type definitions for coordination observability.

Every event carries job_name / execution_id / fencing_token where they apply
so log lines from different replicas can be correlated.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobcoord.constants import (
    EVENT_CIRCUIT_STATE_CHANGED,
    EVENT_EXECUTION_ACCEPTED,
    EVENT_EXECUTION_COMPLETED,
    EVENT_EXECUTION_FAILED,
    EVENT_EXECUTION_REJECTED,
    EVENT_LEADERSHIP_GAINED,
    EVENT_LEADERSHIP_LOST,
    EVENT_RECONCILED,
    EVENT_STALE_RECLAIMED,
    EVENT_STALL_TERMINATED,
    CircuitState,
    ExecutionStatus,
    RejectionReason,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CoordinationEvent(BaseModel):
    """
    Event emitted at a component boundary.
    Used for structured logs and metrics.
    """

    event_type: str
    timestamp: datetime = Field(default_factory=_now)
    job_name: str | None = None
    execution_id: UUID | None = None
    fencing_token: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def leadership_gained(
        cls,
        lease_key: str,
        holder_id: str,
        fencing_token: int,
    ) -> "CoordinationEvent":
        """Create a leadership gained event."""
        return cls(
            event_type=EVENT_LEADERSHIP_GAINED,
            fencing_token=fencing_token,
            data={"lease_key": lease_key, "holder_id": holder_id},
        )

    @classmethod
    def leadership_lost(
        cls,
        lease_key: str,
        holder_id: str,
        fencing_token: int | None,
        cause: str,
    ) -> "CoordinationEvent":
        """Create a leadership lost event."""
        return cls(
            event_type=EVENT_LEADERSHIP_LOST,
            fencing_token=fencing_token,
            data={"lease_key": lease_key, "holder_id": holder_id, "cause": cause},
        )

    @classmethod
    def execution_accepted(
        cls,
        job_name: str,
        execution_id: UUID,
        fencing_token: int,
    ) -> "CoordinationEvent":
        """Create an execution accepted event."""
        return cls(
            event_type=EVENT_EXECUTION_ACCEPTED,
            job_name=job_name,
            execution_id=execution_id,
            fencing_token=fencing_token,
        )

    @classmethod
    def execution_rejected(
        cls,
        job_name: str,
        reason: RejectionReason,
    ) -> "CoordinationEvent":
        """Create an execution rejected event."""
        return cls(
            event_type=EVENT_EXECUTION_REJECTED,
            job_name=job_name,
            data={"reason": reason.value},
        )

    @classmethod
    def execution_finished(
        cls,
        job_name: str,
        execution_id: UUID,
        fencing_token: int,
        status: ExecutionStatus,
        summary: dict[str, int],
        reason: str | None = None,
        duration_seconds: float | None = None,
    ) -> "CoordinationEvent":
        """Create an execution completed or failed event."""
        return cls(
            event_type=(
                EVENT_EXECUTION_COMPLETED
                if status == ExecutionStatus.COMPLETED
                else EVENT_EXECUTION_FAILED
            ),
            job_name=job_name,
            execution_id=execution_id,
            fencing_token=fencing_token,
            data={
                "status": status.value,
                "summary": summary,
                "reason": reason,
                "duration_seconds": duration_seconds,
            },
        )

    @classmethod
    def circuit_state_changed(
        cls,
        name: str,
        old_state: CircuitState,
        new_state: CircuitState,
    ) -> "CoordinationEvent":
        """Create a circuit transition event."""
        return cls(
            event_type=EVENT_CIRCUIT_STATE_CHANGED,
            job_name=name,
            data={"old_state": old_state.value, "new_state": new_state.value},
        )

    @classmethod
    def stale_reclaimed(
        cls,
        job_name: str,
        execution_id: UUID | None,
        fencing_token: int | None,
        item_id: UUID,
        previous_owner: str | None,
        new_owner: str,
    ) -> "CoordinationEvent":
        """Create a stale claim reclaim event."""
        return cls(
            event_type=EVENT_STALE_RECLAIMED,
            job_name=job_name,
            execution_id=execution_id,
            fencing_token=fencing_token,
            data={
                "item_id": str(item_id),
                "previous_owner": previous_owner,
                "new_owner": new_owner,
            },
        )

    @classmethod
    def stall_terminated(
        cls,
        job_name: str,
        execution_id: UUID,
        fencing_token: int,
        running_seconds: float,
        lease_invalidated: bool,
    ) -> "CoordinationEvent":
        """Create a stall forced-termination event."""
        return cls(
            event_type=EVENT_STALL_TERMINATED,
            job_name=job_name,
            execution_id=execution_id,
            fencing_token=fencing_token,
            data={
                "running_seconds": running_seconds,
                "lease_invalidated": lease_invalidated,
            },
        )

    @classmethod
    def reconciled(
        cls,
        job_name: str,
        execution_id: UUID,
        fencing_token: int,
        old_status: ExecutionStatus,
        new_status: ExecutionStatus,
        reason: str,
    ) -> "CoordinationEvent":
        """Create a reconciliation correction event."""
        return cls(
            event_type=EVENT_RECONCILED,
            job_name=job_name,
            execution_id=execution_id,
            fencing_token=fencing_token,
            data={
                "old_status": old_status.value,
                "new_status": new_status.value,
                "reason": reason,
            },
        )
