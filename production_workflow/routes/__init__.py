"""HTTP routers."""

from .automation import router as automation_router
from .batches import router as batches_router
from .tasks import router as tasks_router
from .workflows import router as workflows_router

__all__ = [
    "automation_router",
    "batches_router",
    "tasks_router",
    "workflows_router",
]
