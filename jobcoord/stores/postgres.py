"""
Postgres-backed stores.

Each operation opens its own short session so an atomic primitive is one
transaction; no transaction spans a lease and a work item update.
"""

from datetime import timedelta
from typing import Any, Sequence
from uuid import UUID

from jobcoord.clock import Clock, utcnow
from jobcoord.constants import ExecutionStatus, WorkItemStatus
from jobcoord.db import get_session_context
from jobcoord.db.execution_repository import ExecutionRepository
from jobcoord.db.lease_repository import LeaseRepository
from jobcoord.db.work_item_repository import WorkItemRepository
from jobcoord.stores.base import Stores
from jobcoord.types.records import ExecutionRecord, LeaseRecord, WorkItem


class PostgresLeaseStore:
    """Lease store over the ``leases`` table."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    async def get(self, key: str) -> LeaseRecord | None:
        async with get_session_context() as session:
            return await LeaseRepository(session).get(key)

    async def acquire_if_free(
        self, key: str, holder_id: str, ttl: timedelta
    ) -> LeaseRecord | None:
        async with get_session_context() as session:
            return await LeaseRepository(session).acquire_if_free(
                key, holder_id, ttl, self._clock()
            )

    async def steal_if_expired(
        self, key: str, holder_id: str, ttl: timedelta
    ) -> LeaseRecord | None:
        async with get_session_context() as session:
            return await LeaseRepository(session).steal_if_expired(
                key, holder_id, ttl, self._clock()
            )

    async def renew_if_owner(
        self, key: str, holder_id: str, token: int, ttl: timedelta
    ) -> LeaseRecord | None:
        async with get_session_context() as session:
            return await LeaseRepository(session).renew_if_owner(
                key, holder_id, token, ttl, self._clock()
            )

    async def release(self, key: str, holder_id: str, token: int) -> bool:
        async with get_session_context() as session:
            return await LeaseRepository(session).release(
                key, holder_id, token, self._clock()
            )

    async def invalidate(self, key: str, token: int) -> bool:
        async with get_session_context() as session:
            return await LeaseRepository(session).invalidate(key, token, self._clock())


class PostgresWorkItemStore:
    """Work item store over the ``work_items`` table."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    async def create_items(
        self,
        job_name: str,
        payloads: Sequence[tuple[str | None, dict[str, Any]]],
    ) -> list[WorkItem]:
        async with get_session_context() as session:
            return await WorkItemRepository(session).create_items(
                job_name, payloads, self._clock()
            )

    async def get_item(self, item_id: UUID) -> WorkItem | None:
        async with get_session_context() as session:
            return await WorkItemRepository(session).get_item(item_id)

    async def claim_batch(
        self,
        job_name: str,
        worker_id: str,
        max_size: int,
        stale_after: timedelta,
    ) -> list[WorkItem]:
        async with get_session_context() as session:
            return await WorkItemRepository(session).claim_batch(
                job_name, worker_id, max_size, stale_after, self._clock()
            )

    async def mark_processing(self, item_id: UUID, worker_id: str) -> WorkItem | None:
        async with get_session_context() as session:
            return await WorkItemRepository(session).mark_processing(
                item_id, worker_id, self._clock()
            )

    async def mark_completed(
        self, item_id: UUID, worker_id: str, result: dict[str, Any] | None
    ) -> WorkItem | None:
        async with get_session_context() as session:
            return await WorkItemRepository(session).mark_completed(
                item_id, worker_id, result, self._clock()
            )

    async def mark_failed(
        self, item_id: UUID, worker_id: str, error: str, retry_increment: int
    ) -> WorkItem | None:
        async with get_session_context() as session:
            return await WorkItemRepository(session).mark_failed(
                item_id, worker_id, error, retry_increment, self._clock()
            )

    async def release(
        self, item_id: UUID, worker_id: str, error: str | None
    ) -> WorkItem | None:
        async with get_session_context() as session:
            return await WorkItemRepository(session).release(
                item_id, worker_id, error, self._clock()
            )

    async def rearm(self, item_id: UUID, reset_retries: bool = False) -> WorkItem | None:
        async with get_session_context() as session:
            return await WorkItemRepository(session).rearm(
                item_id, self._clock(), reset_retries=reset_retries
            )

    async def list_items(
        self,
        job_name: str | None = None,
        status: WorkItemStatus | None = None,
        owner: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WorkItem], int]:
        async with get_session_context() as session:
            return await WorkItemRepository(session).list_items(
                job_name=job_name, status=status, owner=owner, limit=limit, offset=offset
            )

    async def get_stats(self, job_name: str | None = None) -> dict[str, int]:
        async with get_session_context() as session:
            return await WorkItemRepository(session).get_stats(job_name)


class PostgresExecutionStore:
    """Execution store over the ``executions`` table."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    async def create(
        self,
        execution_id: UUID,
        job_name: str,
        fencing_token: int,
        holder_id: str,
    ) -> ExecutionRecord:
        async with get_session_context() as session:
            return await ExecutionRepository(session).create(
                execution_id, job_name, fencing_token, holder_id, self._clock()
            )

    async def get(self, execution_id: UUID) -> ExecutionRecord | None:
        async with get_session_context() as session:
            return await ExecutionRepository(session).get(execution_id)

    async def heartbeat(
        self, execution_id: UUID, fencing_token: int, summary: dict[str, int]
    ) -> bool:
        async with get_session_context() as session:
            return await ExecutionRepository(session).heartbeat(
                execution_id, fencing_token, summary, self._clock()
            )

    async def finish(
        self,
        execution_id: UUID,
        fencing_token: int,
        status: ExecutionStatus,
        reason: str | None,
        summary: dict[str, int] | None = None,
    ) -> ExecutionRecord | None:
        async with get_session_context() as session:
            return await ExecutionRepository(session).finish(
                execution_id, fencing_token, status, reason, summary, self._clock()
            )

    async def mark_unknown(
        self, execution_id: UUID, fencing_token: int, reason: str
    ) -> ExecutionRecord | None:
        async with get_session_context() as session:
            return await ExecutionRepository(session).mark_unknown(
                execution_id, fencing_token, reason
            )

    async def list_active(self) -> list[ExecutionRecord]:
        async with get_session_context() as session:
            return await ExecutionRepository(session).list_active()

    async def list_executions(
        self,
        job_name: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]:
        async with get_session_context() as session:
            return await ExecutionRepository(session).list_executions(
                job_name=job_name, status=status, limit=limit, offset=offset
            )


def create_postgres_stores(clock: Clock = utcnow) -> Stores:
    """Build Postgres stores. ``init_db()`` must have been awaited."""
    return Stores(
        leases=PostgresLeaseStore(clock),
        work_items=PostgresWorkItemStore(clock),
        executions=PostgresExecutionStore(clock),
        clock=clock,
    )
