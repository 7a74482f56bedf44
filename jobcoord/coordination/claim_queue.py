"""
Record claim queue for one worker.

Wraps the work item store with the worker's identity. Every release-side
write is conditional on ownership; a rejected write means another worker
reclaimed the item and surfaces as StaleClaimReclaimed.
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from jobcoord.constants import SPAN_CLAIM_BATCH
from jobcoord.errors import StaleClaimReclaimed
from jobcoord.observability.events import emit_event
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.observability.tracing import start_span
from jobcoord.stores.base import WorkItemStore
from jobcoord.types.events import CoordinationEvent
from jobcoord.types.records import WorkItem

logger = logging.getLogger(__name__)


class RecordClaimQueue:
    """Claim and transition work items on behalf of ``worker_id``."""

    def __init__(
        self,
        store: WorkItemStore,
        job_name: str,
        worker_id: str,
        execution_id: UUID | None = None,
        fencing_token: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self.job_name = job_name
        self.worker_id = worker_id
        self.execution_id = execution_id
        self.fencing_token = fencing_token
        self._metrics = metrics or get_metrics()

    async def claim_batch(self, max_size: int, stale_after: timedelta) -> list[WorkItem]:
        """
        Claim up to ``max_size`` pending or stale items, oldest first.

        Items taken over from another owner are reported as stale reclaims;
        their ``previous_owner`` is set.
        """
        with start_span(
            SPAN_CLAIM_BATCH,
            job_name=self.job_name,
            worker_id=self.worker_id,
            max_size=max_size,
        ) as span:
            items = await self._store.claim_batch(
                self.job_name, self.worker_id, max_size, stale_after
            )
            span.set_attribute("claimed", len(items))

        self._metrics.record_items_claimed(self.job_name, len(items))
        for item in items:
            if item.was_reclaimed:
                self._metrics.record_stale_reclaim(self.job_name)
                emit_event(
                    CoordinationEvent.stale_reclaimed(
                        job_name=self.job_name,
                        execution_id=self.execution_id,
                        fencing_token=self.fencing_token,
                        item_id=item.id,
                        previous_owner=item.previous_owner,
                        new_owner=self.worker_id,
                    )
                )
        return items

    def _owned(self, item_id: UUID, item: WorkItem | None, action: str) -> WorkItem:
        if item is None:
            logger.warning(
                f"Ownership lost before {action}",
                extra={"item_id": str(item_id), "worker_id": self.worker_id},
            )
            raise StaleClaimReclaimed(item_id, self.worker_id)
        return item

    async def mark_processing(self, item_id: UUID) -> WorkItem:
        item = await self._store.mark_processing(item_id, self.worker_id)
        return self._owned(item_id, item, "processing")

    async def mark_completed(self, item_id: UUID, result: dict[str, Any] | None) -> WorkItem:
        item = await self._store.mark_completed(item_id, self.worker_id, result)
        return self._owned(item_id, item, "completion")

    async def mark_failed(self, item_id: UUID, error: str, retry_increment: int) -> WorkItem:
        item = await self._store.mark_failed(item_id, self.worker_id, error, retry_increment)
        return self._owned(item_id, item, "failure")

    async def release(self, item_id: UUID, error: str | None = None) -> WorkItem:
        """Hand an owned item back to PENDING without counting an attempt."""
        item = await self._store.release(item_id, self.worker_id, error)
        return self._owned(item_id, item, "release")
