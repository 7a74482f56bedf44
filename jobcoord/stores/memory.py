"""
In-process stores.

Same conditional semantics as the Postgres stores, for tests and for
single-replica runs. No method awaits while it inspects or mutates state,
so each operation is atomic with respect to the event loop.
"""

import itertools
import logging
from datetime import timedelta
from typing import Any, Sequence
from uuid import UUID, uuid4

from jobcoord.clock import Clock, utcnow
from jobcoord.constants import (
    ACTIVE_EXECUTION_STATUSES,
    CLAIMED_STATUSES,
    ExecutionStatus,
    WorkItemStatus,
)
from jobcoord.stores.base import Stores
from jobcoord.types.records import ExecutionRecord, LeaseRecord, WorkItem

logger = logging.getLogger(__name__)


class MemoryLeaseStore:
    """Lease store backed by a dict keyed by lease name."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._leases: dict[str, LeaseRecord] = {}

    async def get(self, key: str) -> LeaseRecord | None:
        return self._leases.get(key)

    async def acquire_if_free(
        self, key: str, holder_id: str, ttl: timedelta
    ) -> LeaseRecord | None:
        if key in self._leases:
            return None
        lease = LeaseRecord(key, holder_id, 1, self._clock() + ttl)
        self._leases[key] = lease
        return lease

    async def steal_if_expired(
        self, key: str, holder_id: str, ttl: timedelta
    ) -> LeaseRecord | None:
        now = self._clock()
        current = self._leases.get(key)
        if current is None or not current.is_expired(now):
            return None
        lease = LeaseRecord(key, holder_id, current.fencing_token + 1, now + ttl)
        self._leases[key] = lease
        return lease

    async def renew_if_owner(
        self, key: str, holder_id: str, token: int, ttl: timedelta
    ) -> LeaseRecord | None:
        now = self._clock()
        current = self._leases.get(key)
        if current is None or not current.is_held_by(holder_id, token, now):
            return None
        lease = LeaseRecord(key, holder_id, token, now + ttl)
        self._leases[key] = lease
        return lease

    async def release(self, key: str, holder_id: str, token: int) -> bool:
        now = self._clock()
        current = self._leases.get(key)
        if current is None or not current.is_held_by(holder_id, token, now):
            return False
        self._leases[key] = LeaseRecord(key, holder_id, token, now)
        return True

    async def invalidate(self, key: str, token: int) -> bool:
        current = self._leases.get(key)
        if current is None or current.fencing_token != token:
            return False
        self._leases[key] = LeaseRecord(
            key, current.holder_id, token + 1, self._clock()
        )
        logger.warning(
            "Invalidated lease", extra={"lease_key": key, "fencing_token": token}
        )
        return True


class MemoryWorkItemStore:
    """Work item store backed by a dict, ordered by (created_at, seq)."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._items: dict[UUID, WorkItem] = {}
        self._seq: dict[UUID, int] = {}
        self._counter = itertools.count(1)

    def _ordered(self) -> list[WorkItem]:
        return sorted(
            self._items.values(), key=lambda i: (i.created_at, self._seq[i.id])
        )

    async def create_items(
        self,
        job_name: str,
        payloads: Sequence[tuple[str | None, dict[str, Any]]],
    ) -> list[WorkItem]:
        now = self._clock()
        created = []
        for payload_ref, payload in payloads:
            item = WorkItem(
                id=uuid4(),
                job_name=job_name,
                payload_ref=payload_ref,
                payload=dict(payload),
                status=WorkItemStatus.PENDING,
                claim_owner=None,
                claimed_at=None,
                retry_count=0,
                created_at=now,
                last_updated_at=now,
            )
            self._items[item.id] = item
            self._seq[item.id] = next(self._counter)
            created.append(item.copy())
        return created

    async def get_item(self, item_id: UUID) -> WorkItem | None:
        item = self._items.get(item_id)
        return item.copy() if item else None

    async def claim_batch(
        self,
        job_name: str,
        worker_id: str,
        max_size: int,
        stale_after: timedelta,
    ) -> list[WorkItem]:
        now = self._clock()
        claimed = []
        for item in self._ordered():
            if len(claimed) >= max_size:
                break
            if item.job_name != job_name:
                continue
            if item.status != WorkItemStatus.PENDING and not item.is_stale(now, stale_after):
                continue

            previous_owner = item.claim_owner
            updated = item.copy(
                status=WorkItemStatus.CLAIMED,
                claim_owner=worker_id,
                claimed_at=now,
                last_updated_at=now,
                previous_owner=None,
            )
            self._items[item.id] = updated
            claimed.append(updated.copy(previous_owner=previous_owner))
        return claimed

    def _owned_update(
        self, item_id: UUID, worker_id: str, **changes: Any
    ) -> WorkItem | None:
        item = self._items.get(item_id)
        if item is None or item.claim_owner != worker_id or item.status not in CLAIMED_STATUSES:
            return None
        updated = item.copy(last_updated_at=self._clock(), **changes)
        self._items[item_id] = updated
        return updated.copy()

    async def mark_processing(self, item_id: UUID, worker_id: str) -> WorkItem | None:
        return self._owned_update(
            item_id,
            worker_id,
            status=WorkItemStatus.PROCESSING,
            claimed_at=self._clock(),
        )

    async def mark_completed(
        self, item_id: UUID, worker_id: str, result: dict[str, Any] | None
    ) -> WorkItem | None:
        return self._owned_update(
            item_id,
            worker_id,
            status=WorkItemStatus.COMPLETED,
            claim_owner=None,
            claimed_at=None,
            result=result,
            last_error=None,
        )

    async def mark_failed(
        self, item_id: UUID, worker_id: str, error: str, retry_increment: int
    ) -> WorkItem | None:
        item = self._items.get(item_id)
        retry_count = item.retry_count + retry_increment if item else 0
        return self._owned_update(
            item_id,
            worker_id,
            status=WorkItemStatus.FAILED,
            claim_owner=None,
            claimed_at=None,
            retry_count=retry_count,
            last_error=error,
        )

    async def release(
        self, item_id: UUID, worker_id: str, error: str | None
    ) -> WorkItem | None:
        return self._owned_update(
            item_id,
            worker_id,
            status=WorkItemStatus.PENDING,
            claim_owner=None,
            claimed_at=None,
            last_error=error,
        )

    async def rearm(self, item_id: UUID, reset_retries: bool = False) -> WorkItem | None:
        item = self._items.get(item_id)
        if item is None or item.status != WorkItemStatus.FAILED:
            return None
        updated = item.copy(
            status=WorkItemStatus.PENDING,
            last_error=None,
            last_updated_at=self._clock(),
            retry_count=0 if reset_retries else item.retry_count,
        )
        self._items[item_id] = updated
        return updated.copy()

    async def list_items(
        self,
        job_name: str | None = None,
        status: WorkItemStatus | None = None,
        owner: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WorkItem], int]:
        matches = [
            item.copy()
            for item in self._ordered()
            if (job_name is None or item.job_name == job_name)
            and (status is None or item.status == status)
            and (owner is None or item.claim_owner == owner)
        ]
        return matches[offset:offset + limit], len(matches)

    async def get_stats(self, job_name: str | None = None) -> dict[str, int]:
        stats: dict[str, int] = {}
        for item in self._items.values():
            if job_name is None or item.job_name == job_name:
                stats[item.status.value] = stats.get(item.status.value, 0) + 1
        return stats


class MemoryExecutionStore:
    """Execution store backed by a dict keyed by execution id."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._executions: dict[UUID, ExecutionRecord] = {}

    def _fenced(self, execution_id: UUID, fencing_token: int) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        if record is None or record.fencing_token != fencing_token or not record.is_active:
            return None
        return record

    async def create(
        self,
        execution_id: UUID,
        job_name: str,
        fencing_token: int,
        holder_id: str,
    ) -> ExecutionRecord:
        now = self._clock()
        record = ExecutionRecord(
            execution_id=execution_id,
            job_name=job_name,
            status=ExecutionStatus.RUNNING,
            started_at=now,
            fencing_token=fencing_token,
            holder_id=holder_id,
            heartbeat_at=now,
        )
        self._executions[execution_id] = record
        return record.copy()

    async def get(self, execution_id: UUID) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.copy(summary=dict(record.summary)) if record else None

    async def heartbeat(
        self, execution_id: UUID, fencing_token: int, summary: dict[str, int]
    ) -> bool:
        record = self._fenced(execution_id, fencing_token)
        if record is None:
            return False
        self._executions[execution_id] = record.copy(
            status=ExecutionStatus.RUNNING,
            heartbeat_at=self._clock(),
            summary=dict(summary),
        )
        return True

    async def finish(
        self,
        execution_id: UUID,
        fencing_token: int,
        status: ExecutionStatus,
        reason: str | None,
        summary: dict[str, int] | None = None,
    ) -> ExecutionRecord | None:
        record = self._fenced(execution_id, fencing_token)
        if record is None:
            return None
        updated = record.copy(
            status=status,
            reason=reason,
            ended_at=self._clock(),
            summary=dict(summary) if summary is not None else record.summary,
        )
        self._executions[execution_id] = updated
        return updated.copy()

    async def mark_unknown(
        self, execution_id: UUID, fencing_token: int, reason: str
    ) -> ExecutionRecord | None:
        record = self._fenced(execution_id, fencing_token)
        if record is None or record.status != ExecutionStatus.RUNNING:
            return None
        updated = record.copy(status=ExecutionStatus.UNKNOWN, reason=reason)
        self._executions[execution_id] = updated
        return updated.copy()

    async def list_active(self) -> list[ExecutionRecord]:
        active = [
            r.copy() for r in self._executions.values()
            if r.status in ACTIVE_EXECUTION_STATUSES
        ]
        return sorted(active, key=lambda r: r.started_at)

    async def list_executions(
        self,
        job_name: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]:
        matches = sorted(
            (
                r.copy() for r in self._executions.values()
                if (job_name is None or r.job_name == job_name)
                and (status is None or r.status == status)
            ),
            key=lambda r: r.started_at,
            reverse=True,
        )
        return matches[offset:offset + limit], len(matches)


def create_memory_stores(clock: Clock = utcnow) -> Stores:
    """Build a fresh, empty set of in-process stores."""
    return Stores(
        leases=MemoryLeaseStore(clock),
        work_items=MemoryWorkItemStore(clock),
        executions=MemoryExecutionStore(clock),
        clock=clock,
    )
