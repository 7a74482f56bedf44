"""Store protocols and backends."""

from jobcoord.clock import Clock, utcnow
from jobcoord.config import Settings
from jobcoord.errors import ConfigurationError
from jobcoord.stores.base import ExecutionStore, LeaseStore, Stores, WorkItemStore
from jobcoord.stores.memory import create_memory_stores
from jobcoord.stores.postgres import create_postgres_stores


def create_stores(settings: Settings, clock: Clock = utcnow) -> Stores:
    """Build the store backend selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return create_memory_stores(clock)
    if settings.store_backend == "postgres":
        return create_postgres_stores(clock)
    raise ConfigurationError(f"Unknown store backend: {settings.store_backend}")


__all__ = [
    "ExecutionStore",
    "LeaseStore",
    "Stores",
    "WorkItemStore",
    "create_memory_stores",
    "create_postgres_stores",
    "create_stores",
]
