"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from jobcoord.constants import RejectionReason


@dataclass
class ItemContext:
    """
    Context passed to processors for one work item.
    Contains the item, its execution, and the attempt being made.
    """

    item_id: UUID
    job_name: str
    execution_id: UUID
    fencing_token: int
    worker_id: str
    payload_ref: str | None
    payload: dict[str, Any]
    retry_count: int
    claimed_at: datetime | None


@dataclass(frozen=True)
class TriggerResult:
    """
    Outcome of a trigger call.

    Exactly one of ``execution_id`` (accepted) or ``reason`` (rejected) is set.
    """

    job_name: str
    execution_id: UUID | None = None
    reason: RejectionReason | None = None
    leader_id: str | None = None

    @property
    def accepted(self) -> bool:
        return self.execution_id is not None

    @classmethod
    def accept(cls, job_name: str, execution_id: UUID) -> "TriggerResult":
        return cls(job_name=job_name, execution_id=execution_id)

    @classmethod
    def reject(
        cls,
        job_name: str,
        reason: RejectionReason,
        leader_id: str | None = None,
    ) -> "TriggerResult":
        return cls(job_name=job_name, reason=reason, leader_id=leader_id)
