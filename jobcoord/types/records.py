"""
Store-neutral record types.

These are the values the store protocols exchange. The Postgres repositories
convert ORM rows into them; the memory store keeps them directly.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from jobcoord.constants import (
    ACTIVE_EXECUTION_STATUSES,
    CLAIMED_STATUSES,
    ExecutionStatus,
    WorkItemStatus,
)


@dataclass(frozen=True)
class LeaseRecord:
    """A named, time-bounded, fenced lease."""

    key: str
    holder_id: str
    fencing_token: int
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_held_by(self, holder_id: str, token: int, now: datetime) -> bool:
        return (
            self.holder_id == holder_id
            and self.fencing_token == token
            and not self.is_expired(now)
        )


@dataclass
class WorkItem:
    """A unit of shared work claimed and processed by the coordinator."""

    id: UUID
    job_name: str
    payload_ref: str | None
    payload: dict[str, Any]
    status: WorkItemStatus
    claim_owner: str | None
    claimed_at: datetime | None
    retry_count: int
    created_at: datetime
    last_updated_at: datetime
    last_error: str | None = None
    result: dict[str, Any] | None = None
    # Owner before this claim; set only on records returned by a claim
    previous_owner: str | None = None

    @property
    def is_claimed(self) -> bool:
        return self.status in CLAIMED_STATUSES

    def is_stale(self, now: datetime, stale_after: timedelta) -> bool:
        """Check if the claim is old enough to be taken over."""
        return (
            self.is_claimed
            and self.claimed_at is not None
            and self.claimed_at < now - stale_after
        )

    @property
    def was_reclaimed(self) -> bool:
        return self.previous_owner is not None and self.previous_owner != self.claim_owner

    def copy(self, **changes: Any) -> "WorkItem":
        return replace(self, **changes)


@dataclass
class ExecutionSummary:
    """Item counters for one execution pass."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    released: int = 0
    lost_claims: int = 0
    reclaimed: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deferred": self.deferred,
            "released": self.released,
            "lost_claims": self.lost_claims,
            "reclaimed": self.reclaimed,
        }


@dataclass
class ExecutionRecord:
    """One run of a named job."""

    execution_id: UUID
    job_name: str
    status: ExecutionStatus
    started_at: datetime
    fencing_token: int
    holder_id: str
    ended_at: datetime | None = None
    heartbeat_at: datetime | None = None
    reason: str | None = None
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_EXECUTION_STATUSES

    def copy(self, **changes: Any) -> "ExecutionRecord":
        return replace(self, **changes)
