"""
Stall monitor for terminating executions that exceed their time budget.

The monitor runs periodically on every replica. Its writes are conditional
(lease token, execution token and non-terminal status), so several monitors
acting on the same execution terminate it once.
"""

import asyncio
import logging
from uuid import UUID

from jobcoord.config import get_settings
from jobcoord.constants import ExecutionStatus, single_flight_key
from jobcoord.coordination.coordinator import JobCoordinator
from jobcoord.coordination.decider import describe_error
from jobcoord.errors import ExecutionTimeoutError
from jobcoord.observability.events import emit_event
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.stores.base import Stores
from jobcoord.types.events import CoordinationEvent

logger = logging.getLogger(__name__)


class StallMonitor:
    """
    Terminates executions running longer than ``max_execution_seconds``.

    For each overdue RUNNING or UNKNOWN execution:
    1. Invalidate its single-flight lease (bumps the fencing token)
    2. Mark it FAILED with an ExecutionTimeoutError reason
    3. Cancel it cooperatively if it runs in this process

    Work items are left alone; their claims go stale and are reclaimed.
    """

    def __init__(
        self,
        stores: Stores,
        coordinator: JobCoordinator | None = None,
        max_execution_seconds: float | None = None,
        interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = get_settings()
        self._stores = stores
        self._coordinator = coordinator
        self.max_execution_seconds = max_execution_seconds or settings.max_execution_seconds
        self.interval = interval_seconds or settings.stall_monitor_interval_seconds
        self._metrics = metrics or get_metrics()
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Run the monitor loop until ``stop()`` is called."""
        logger.info(f"Stall monitor starting with interval {self.interval}s")
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                terminated = await self.run_once()
                if terminated:
                    logger.warning(f"Terminated {len(terminated)} stalled executions")
            except Exception as e:
                logger.exception(f"Error in stall monitor loop: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), self.interval)
            except TimeoutError:
                pass

        logger.info("Stall monitor stopped")

    async def stop(self) -> None:
        """Stop the monitor loop."""
        self._stopped.set()

    async def run_once(self) -> list[UUID]:
        """
        Check all active executions once.

        Returns:
            IDs of executions this call terminated.
        """
        now = self._stores.clock()
        terminated = []

        for record in await self._stores.executions.list_active():
            running_seconds = (now - record.started_at).total_seconds()
            if running_seconds <= self.max_execution_seconds:
                continue

            error = ExecutionTimeoutError(
                f"exceeded {self.max_execution_seconds:.0f}s budget "
                f"(running {running_seconds:.0f}s)"
            )

            invalidated = await self._stores.leases.invalidate(
                single_flight_key(record.job_name), record.fencing_token
            )
            finished = await self._stores.executions.finish(
                record.execution_id,
                record.fencing_token,
                ExecutionStatus.FAILED,
                describe_error(error),
            )
            if self._coordinator is not None:
                self._coordinator.cancel(record.execution_id, str(error), error)

            if finished is None:
                continue

            terminated.append(record.execution_id)
            self._metrics.record_stall_termination(record.job_name)
            emit_event(
                CoordinationEvent.stall_terminated(
                    job_name=record.job_name,
                    execution_id=record.execution_id,
                    fencing_token=record.fencing_token,
                    running_seconds=running_seconds,
                    lease_invalidated=invalidated,
                )
            )

        return terminated
