"""
Coordination runtime.

Wires the stores, leader elector, coordinator, stall monitor and reconciler
of one replica, and starts/stops them in order.
"""

import asyncio
import logging
from collections.abc import Mapping

from jobcoord.clock import Clock, utcnow
from jobcoord.config import Settings, get_settings
from jobcoord.coordination.coordinator import JobCoordinator
from jobcoord.coordination.leader import LeaderElector
from jobcoord.coordination.reconciler import StatusReconciler
from jobcoord.coordination.stall_monitor import StallMonitor
from jobcoord.db import close_db, init_db
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.processors import Processor
from jobcoord.stores import Stores, create_stores

logger = logging.getLogger(__name__)


class CoordinationRuntime:
    """All coordination components of one replica."""

    def __init__(
        self,
        settings: Settings | None = None,
        stores: Stores | None = None,
        processors: Mapping[str, Processor] | None = None,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
        self_healing: bool = True,
    ):
        self.settings = settings or get_settings()
        self._owns_db = stores is None and self.settings.store_backend == "postgres"
        self.stores = stores or create_stores(self.settings, clock)
        metrics = metrics or get_metrics()

        self.elector = LeaderElector(
            self.stores.leases,
            holder_id=self.settings.instance_id,
            lease_key=self.settings.leader_lease_key,
            ttl_seconds=self.settings.leader_lease_ttl_seconds,
            renew_interval_seconds=self.settings.leader_renew_interval_seconds,
            clock=self.stores.clock,
            metrics=metrics,
        )
        self.coordinator = JobCoordinator(
            self.stores,
            self.elector,
            settings=self.settings,
            processors=processors,
            metrics=metrics,
        )
        self.stall_monitor = StallMonitor(
            self.stores,
            coordinator=self.coordinator,
            max_execution_seconds=self.settings.max_execution_seconds,
            interval_seconds=self.settings.stall_monitor_interval_seconds,
            metrics=metrics,
        )
        self.reconciler = StatusReconciler(
            self.stores,
            interval_seconds=self.settings.reconciler_interval_seconds,
            liveness_timeout_seconds=self.settings.reconciler_liveness_timeout_seconds,
            metrics=metrics,
        )
        self.self_healing = self_healing

        self.elector.on_demoted(self.coordinator.on_leadership_lost)
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Connect the stores and start the background loops."""
        if self._owns_db:
            await init_db()

        await self.elector.start()
        if self.self_healing:
            self._tasks = [
                asyncio.create_task(self.stall_monitor.start(), name="stall-monitor"),
                asyncio.create_task(self.reconciler.start(), name="reconciler"),
            ]
        logger.info(
            "Coordination runtime started",
            extra={
                "instance_id": self.settings.instance_id,
                "store_backend": self.settings.store_backend,
            },
        )

    async def stop(self) -> None:
        """Stop executions first, then the loops, then give up leadership."""
        await self.coordinator.shutdown()

        await self.stall_monitor.stop()
        await self.reconciler.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        await self.elector.stop()
        if self._owns_db:
            await close_db()
        logger.info("Coordination runtime stopped")
