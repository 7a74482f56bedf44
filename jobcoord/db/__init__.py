"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobcoord.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    init_db,
    ping,
)
from jobcoord.db.models import Base, ExecutionModel, LeaseModel, WorkItemModel

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "ping",
    "LeaseModel",
    "WorkItemModel",
    "ExecutionModel",
    "Base",
]
