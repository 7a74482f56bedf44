"""
API routes module.
"""

from jobcoord.api.routes.executions import router as executions_router
from jobcoord.api.routes.health import router as health_router
from jobcoord.api.routes.jobs import router as jobs_router
from jobcoord.api.routes.leadership import router as leadership_router
from jobcoord.api.routes.work_items import router as work_items_router

__all__ = [
    "executions_router",
    "health_router",
    "jobs_router",
    "leadership_router",
    "work_items_router",
]
