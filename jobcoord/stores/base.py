"""
Store protocols.

The coordination components only talk to these interfaces. Every mutating
operation is a single conditional (compare-and-swap style) update; no
component reads a row and writes it back unconditionally.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol, Sequence
from uuid import UUID

from jobcoord.clock import Clock
from jobcoord.constants import ExecutionStatus, WorkItemStatus
from jobcoord.types.records import ExecutionRecord, LeaseRecord, WorkItem


class LeaseStore(Protocol):
    """Named leases with fencing tokens."""

    async def get(self, key: str) -> LeaseRecord | None: ...

    async def acquire_if_free(
        self, key: str, holder_id: str, ttl: timedelta
    ) -> LeaseRecord | None: ...

    async def steal_if_expired(
        self, key: str, holder_id: str, ttl: timedelta
    ) -> LeaseRecord | None: ...

    async def renew_if_owner(
        self, key: str, holder_id: str, token: int, ttl: timedelta
    ) -> LeaseRecord | None: ...

    async def release(self, key: str, holder_id: str, token: int) -> bool: ...

    async def invalidate(self, key: str, token: int) -> bool: ...


class WorkItemStore(Protocol):
    """Durable work items with skip-locked batch claiming."""

    async def create_items(
        self,
        job_name: str,
        payloads: Sequence[tuple[str | None, dict[str, Any]]],
    ) -> list[WorkItem]: ...

    async def get_item(self, item_id: UUID) -> WorkItem | None: ...

    async def claim_batch(
        self,
        job_name: str,
        worker_id: str,
        max_size: int,
        stale_after: timedelta,
    ) -> list[WorkItem]: ...

    async def mark_processing(self, item_id: UUID, worker_id: str) -> WorkItem | None: ...

    async def mark_completed(
        self, item_id: UUID, worker_id: str, result: dict[str, Any] | None
    ) -> WorkItem | None: ...

    async def mark_failed(
        self, item_id: UUID, worker_id: str, error: str, retry_increment: int
    ) -> WorkItem | None: ...

    async def release(
        self, item_id: UUID, worker_id: str, error: str | None
    ) -> WorkItem | None: ...

    async def rearm(self, item_id: UUID, reset_retries: bool = False) -> WorkItem | None: ...

    async def list_items(
        self,
        job_name: str | None = None,
        status: WorkItemStatus | None = None,
        owner: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WorkItem], int]: ...

    async def get_stats(self, job_name: str | None = None) -> dict[str, int]: ...


class ExecutionStore(Protocol):
    """Execution records, mutated only under their fencing token."""

    async def create(
        self,
        execution_id: UUID,
        job_name: str,
        fencing_token: int,
        holder_id: str,
    ) -> ExecutionRecord: ...

    async def get(self, execution_id: UUID) -> ExecutionRecord | None: ...

    async def heartbeat(
        self, execution_id: UUID, fencing_token: int, summary: dict[str, int]
    ) -> bool: ...

    async def finish(
        self,
        execution_id: UUID,
        fencing_token: int,
        status: ExecutionStatus,
        reason: str | None,
        summary: dict[str, int] | None = None,
    ) -> ExecutionRecord | None: ...

    async def mark_unknown(
        self, execution_id: UUID, fencing_token: int, reason: str
    ) -> ExecutionRecord | None: ...

    async def list_active(self) -> list[ExecutionRecord]: ...

    async def list_executions(
        self,
        job_name: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]: ...


@dataclass
class Stores:
    """The three stores plus the clock they share."""

    leases: LeaseStore
    work_items: WorkItemStore
    executions: ExecutionStore
    clock: Clock
