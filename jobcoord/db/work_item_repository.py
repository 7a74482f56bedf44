"""
Work item repository for database operations.
Implements skip-locked batch claiming and owner-conditioned status updates.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, func, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.constants import CLAIMED_STATUSES, WorkItemStatus
from jobcoord.db.models import WorkItemModel
from jobcoord.types.records import WorkItem

logger = logging.getLogger(__name__)

# Selection and claim happen in one statement. The inner SELECT locks
# candidates with SKIP LOCKED so concurrent claimers pass over each other's
# rows; the outer UPDATE re-checks the eligibility predicate.
CLAIM_BATCH_SQL = text("""
    UPDATE work_items AS w
    SET
        status = :claimed_status,
        claim_owner = :worker_id,
        claimed_at = :now,
        last_updated_at = :now
    FROM (
        SELECT id, claim_owner AS previous_owner
        FROM work_items
        WHERE job_name = :job_name
        AND (
            status = :pending_status
            OR (
                status IN (:claimed_status, :processing_status)
                AND claimed_at < :stale_before
            )
        )
        ORDER BY created_at ASC, seq ASC
        LIMIT :batch_size
        FOR UPDATE SKIP LOCKED
    ) AS candidates
    WHERE w.id = candidates.id
    AND (
        w.status = :pending_status
        OR (
            w.status IN (:claimed_status, :processing_status)
            AND w.claimed_at < :stale_before
        )
    )
    RETURNING
        w.id, w.job_name, w.payload_ref, w.payload, w.status, w.claim_owner,
        w.claimed_at, w.retry_count, w.created_at, w.last_updated_at,
        w.last_error, w.result, w.seq, candidates.previous_owner
""")


def _row_to_record(row: Any) -> WorkItem:
    return WorkItem(
        id=row.id,
        job_name=row.job_name,
        payload_ref=row.payload_ref,
        payload=row.payload or {},
        status=WorkItemStatus(row.status),
        claim_owner=row.claim_owner,
        claimed_at=row.claimed_at,
        retry_count=row.retry_count,
        created_at=row.created_at,
        last_updated_at=row.last_updated_at,
        last_error=row.last_error,
        result=row.result,
        previous_owner=row.previous_owner,
    )


class WorkItemRepository:
    """
    Repository for work item database operations.

    Implements atomic operations for:
    - Batch claiming with FOR UPDATE SKIP LOCKED, including stale reclaim
    - Owner-conditioned transitions (processing, completed, failed, released)
    - Read-only inspection queries (no row locks)
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_items(
        self,
        job_name: str,
        payloads: Sequence[tuple[str | None, dict[str, Any]]],
        now: datetime,
    ) -> list[WorkItem]:
        """
        Insert PENDING work items for a job.

        Used by producers and tests; production of items is otherwise
        outside this service.

        Args:
            job_name: The job the items belong to.
            payloads: (payload_ref, payload) pairs, in FIFO order.
            now: Creation time.

        Returns:
            The created items.
        """
        if not payloads:
            return []

        stmt = insert(WorkItemModel).returning(
            WorkItemModel, sort_by_parameter_order=True
        )
        result = await self._session.scalars(
            stmt,
            [
                {
                    "job_name": job_name,
                    "payload_ref": payload_ref,
                    "payload": payload,
                    "status": WorkItemStatus.PENDING,
                    "retry_count": 0,
                    "created_at": now,
                    "last_updated_at": now,
                }
                for payload_ref, payload in payloads
            ],
        )
        items = [row.to_record() for row in result.all()]

        logger.info(
            f"Created {len(items)} work items",
            extra={"job_name": job_name, "item_count": len(items)},
        )
        return items

    async def get_item(self, item_id: UUID) -> WorkItem | None:
        """
        Get a work item by ID.

        Args:
            item_id: The work item UUID.

        Returns:
            The WorkItem or None if not found.
        """
        stmt = select(WorkItemModel).where(WorkItemModel.id == item_id)
        result = await self._session.execute(stmt)
        item = result.scalar_one_or_none()
        return item.to_record() if item else None

    async def claim_batch(
        self,
        job_name: str,
        worker_id: str,
        max_size: int,
        stale_after: timedelta,
        now: datetime,
    ) -> list[WorkItem]:
        """
        Claim up to ``max_size`` eligible items using FOR UPDATE SKIP LOCKED.

        This is the critical path for work distribution. Selection and the
        transition to CLAIMED happen in one statement, so no other claimer
        can observe the rows between read and claim.

        Args:
            job_name: The job whose items are claimed.
            worker_id: The claiming worker.
            max_size: Maximum number of items.
            stale_after: Age after which a claim may be taken over.
            now: Current time.

        Returns:
            Claimed items in created_at order. ``previous_owner`` is set on
            items reclaimed from a stale claim.
        """
        result = await self._session.execute(
            CLAIM_BATCH_SQL,
            {
                "job_name": job_name,
                "worker_id": worker_id,
                "now": now,
                "stale_before": now - stale_after,
                "batch_size": max_size,
                "pending_status": WorkItemStatus.PENDING.value,
                "claimed_status": WorkItemStatus.CLAIMED.value,
                "processing_status": WorkItemStatus.PROCESSING.value,
            },
        )
        rows = sorted(result.fetchall(), key=lambda r: (r.created_at, r.seq))

        if rows:
            logger.info(
                f"Claimed {len(rows)} work items",
                extra={"worker_id": worker_id, "job_name": job_name, "item_count": len(rows)},
            )

        return [_row_to_record(row) for row in rows]

    async def _owned_update(
        self,
        item_id: UUID,
        worker_id: str,
        values: dict[str, Any],
    ) -> WorkItem | None:
        stmt = (
            update(WorkItemModel)
            .where(
                and_(
                    WorkItemModel.id == item_id,
                    WorkItemModel.claim_owner == worker_id,
                    WorkItemModel.status.in_(CLAIMED_STATUSES),
                )
            )
            .values(**values)
            .returning(WorkItemModel)
        )
        result = await self._session.execute(stmt)
        item = result.scalar_one_or_none()
        return item.to_record() if item else None

    async def mark_processing(
        self,
        item_id: UUID,
        worker_id: str,
        now: datetime,
    ) -> WorkItem | None:
        """
        Transition a claimed item to PROCESSING and refresh its claim time.

        Returns:
            Updated WorkItem or None if the worker no longer owns the item.
        """
        return await self._owned_update(
            item_id,
            worker_id,
            {
                "status": WorkItemStatus.PROCESSING,
                "claimed_at": now,
                "last_updated_at": now,
            },
        )

    async def mark_completed(
        self,
        item_id: UUID,
        worker_id: str,
        result: dict[str, Any] | None,
        now: datetime,
    ) -> WorkItem | None:
        """
        Mark an owned item COMPLETED and drop the claim.

        Returns:
            Updated WorkItem or None if the worker no longer owns the item.
        """
        return await self._owned_update(
            item_id,
            worker_id,
            {
                "status": WorkItemStatus.COMPLETED,
                "claim_owner": None,
                "claimed_at": None,
                "result": result,
                "last_error": None,
                "last_updated_at": now,
            },
        )

    async def mark_failed(
        self,
        item_id: UUID,
        worker_id: str,
        error: str,
        retry_increment: int,
        now: datetime,
    ) -> WorkItem | None:
        """
        Mark an owned item FAILED, recording the error and attempts used.

        Returns:
            Updated WorkItem or None if the worker no longer owns the item.
        """
        return await self._owned_update(
            item_id,
            worker_id,
            {
                "status": WorkItemStatus.FAILED,
                "claim_owner": None,
                "claimed_at": None,
                "retry_count": WorkItemModel.retry_count + retry_increment,
                "last_error": error,
                "last_updated_at": now,
            },
        )

    async def release(
        self,
        item_id: UUID,
        worker_id: str,
        error: str | None,
        now: datetime,
    ) -> WorkItem | None:
        """
        Return an owned item to PENDING without counting an attempt.

        Returns:
            Updated WorkItem or None if the worker no longer owns the item.
        """
        return await self._owned_update(
            item_id,
            worker_id,
            {
                "status": WorkItemStatus.PENDING,
                "claim_owner": None,
                "claimed_at": None,
                "last_error": error,
                "last_updated_at": now,
            },
        )

    async def rearm(
        self,
        item_id: UUID,
        now: datetime,
        reset_retries: bool = False,
    ) -> WorkItem | None:
        """
        Re-arm a FAILED item to PENDING (external remediation).

        Returns:
            Updated WorkItem or None if not found or not FAILED.
        """
        values: dict[str, Any] = {
            "status": WorkItemStatus.PENDING,
            "last_error": None,
            "last_updated_at": now,
        }
        if reset_retries:
            values["retry_count"] = 0

        stmt = (
            update(WorkItemModel)
            .where(
                and_(
                    WorkItemModel.id == item_id,
                    WorkItemModel.status == WorkItemStatus.FAILED,
                )
            )
            .values(**values)
            .returning(WorkItemModel)
        )
        result = await self._session.execute(stmt)
        item = result.scalar_one_or_none()

        if item:
            logger.info("Work item re-armed", extra={"item_id": str(item_id)})

        return item.to_record() if item else None

    async def list_items(
        self,
        job_name: str | None = None,
        status: WorkItemStatus | None = None,
        owner: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WorkItem], int]:
        """
        List work items with optional filtering.

        Args:
            job_name: Optional job filter.
            status: Optional status filter.
            owner: Optional claim owner filter.
            limit: Maximum number of items to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (items, total_count).
        """
        filters = []
        if job_name is not None:
            filters.append(WorkItemModel.job_name == job_name)
        if status is not None:
            filters.append(WorkItemModel.status == status)
        if owner is not None:
            filters.append(WorkItemModel.claim_owner == owner)

        count_stmt = select(func.count()).select_from(WorkItemModel)
        stmt = (
            select(WorkItemModel)
            .order_by(WorkItemModel.created_at.asc(), WorkItemModel.seq.asc())
            .limit(limit)
            .offset(offset)
        )
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
            stmt = stmt.where(and_(*filters))

        total = (await self._session.execute(count_stmt)).scalar() or 0
        result = await self._session.execute(stmt)
        return [row.to_record() for row in result.scalars().all()], total

    async def get_stats(self, job_name: str | None = None) -> dict[str, int]:
        """
        Get work item counts by status.

        Args:
            job_name: Optional job filter.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(WorkItemModel.status, func.count()).group_by(WorkItemModel.status)
        if job_name is not None:
            stmt = stmt.where(WorkItemModel.job_name == job_name)

        result = await self._session.execute(stmt)
        return {WorkItemStatus(status).value: count for status, count in result.all()}
