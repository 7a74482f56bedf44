"""
Standalone self-healing process.

Runs the stall monitor and status reconciler without serving the API, for
deployments that keep self-healing off the API replicas. Both loops only
issue conditional updates.
"""

import asyncio
import logging
import signal

from jobcoord.config import get_settings
from jobcoord.coordination.reconciler import StatusReconciler
from jobcoord.coordination.stall_monitor import StallMonitor
from jobcoord.db import close_db, init_db
from jobcoord.observability.logging import setup_logging
from jobcoord.observability.metrics import setup_metrics
from jobcoord.stores import create_stores

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the stall monitor and reconciler until SIGTERM/SIGINT."""
    setup_logging()
    setup_metrics()
    settings = get_settings()

    if settings.store_backend == "postgres":
        await init_db()

    stores = create_stores(settings)
    monitor = StallMonitor(stores)
    reconciler = StatusReconciler(stores)

    async def shutdown() -> None:
        logger.info("Monitor process stopping")
        await monitor.stop()
        await reconciler.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(shutdown()))

    try:
        await asyncio.gather(monitor.start(), reconciler.start())
    finally:
        if settings.store_backend == "postgres":
            await close_db()


def run() -> None:
    """Run the monitor process."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
