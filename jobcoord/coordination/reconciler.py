"""
Status reconciler for execution records left behind by crashed replicas.
"""

import asyncio
import logging
from datetime import timedelta
from uuid import UUID

from jobcoord.config import get_settings
from jobcoord.constants import ExecutionStatus, single_flight_key
from jobcoord.observability.events import emit_event
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.stores.base import Stores
from jobcoord.types.events import CoordinationEvent
from jobcoord.types.records import ExecutionRecord

logger = logging.getLogger(__name__)

ORPHANED_REASON = "orphaned: single-flight lease missing, expired or superseded"
NO_HEARTBEAT_REASON = "no heartbeat within liveness timeout"


class StatusReconciler:
    """
    Resolves RUNNING/UNKNOWN executions against their single-flight lease.

    - Lease missing, expired, or held under another token -> FAILED (orphaned)
    - Lease held but no recent heartbeat -> UNKNOWN (a heartbeat restores it)

    Terminal records are never touched; every correction is a conditional
    update, so a record is corrected at most once.
    """

    def __init__(
        self,
        stores: Stores,
        interval_seconds: float | None = None,
        liveness_timeout_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = get_settings()
        self._stores = stores
        self.interval = interval_seconds or settings.reconciler_interval_seconds
        self.liveness_timeout = timedelta(
            seconds=liveness_timeout_seconds or settings.reconciler_liveness_timeout_seconds
        )
        self._metrics = metrics or get_metrics()
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Reconcile once, then every ``interval`` seconds until stopped."""
        logger.info(f"Reconciler starting with interval {self.interval}s")
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                corrected = await self.run_once()
                if corrected:
                    logger.info(f"Corrected {len(corrected)} execution records")
            except Exception as e:
                logger.exception(f"Error in reconciler loop: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), self.interval)
            except TimeoutError:
                pass

        logger.info("Reconciler stopped")

    async def stop(self) -> None:
        """Stop the reconciler loop."""
        self._stopped.set()

    async def run_once(self) -> list[UUID]:
        """
        Reconcile all active executions once.

        Returns:
            IDs of executions whose status this call changed.
        """
        corrected = []
        for record in await self._stores.executions.list_active():
            updated = await self._reconcile(record)
            if updated is None:
                continue

            corrected.append(record.execution_id)
            self._metrics.record_reconciliation(record.job_name, updated.status.value)
            emit_event(
                CoordinationEvent.reconciled(
                    job_name=record.job_name,
                    execution_id=record.execution_id,
                    fencing_token=record.fencing_token,
                    old_status=record.status,
                    new_status=updated.status,
                    reason=updated.reason or "",
                )
            )
        return corrected

    async def _reconcile(self, record: ExecutionRecord) -> ExecutionRecord | None:
        now = self._stores.clock()
        lease = await self._stores.leases.get(single_flight_key(record.job_name))

        if lease is None or not lease.is_held_by(
            str(record.execution_id), record.fencing_token, now
        ):
            return await self._stores.executions.finish(
                record.execution_id,
                record.fencing_token,
                ExecutionStatus.FAILED,
                ORPHANED_REASON,
            )

        last_seen = record.heartbeat_at or record.started_at
        if record.status == ExecutionStatus.RUNNING and now - last_seen > self.liveness_timeout:
            return await self._stores.executions.mark_unknown(
                record.execution_id, record.fencing_token, NO_HEARTBEAT_REASON
            )

        return None
