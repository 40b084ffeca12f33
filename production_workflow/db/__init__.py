"""
Database package for the production workflow engine.
"""

from .base import Base, get_db, get_engine, init_database
from .execution_log_models import (
    AutomationExecutionModel,
    StageTransitionModel,
    WorkflowExecutionLogModel,
)
from .models import (
    AutomationRuleModel,
    BatchModel,
    RoundRobinCursorModel,
    TaskModel,
    WorkerModel,
    WorkflowTemplateModel,
)

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "init_database",
    "AutomationExecutionModel",
    "AutomationRuleModel",
    "BatchModel",
    "RoundRobinCursorModel",
    "StageTransitionModel",
    "TaskModel",
    "WorkerModel",
    "WorkflowExecutionLogModel",
    "WorkflowTemplateModel",
]
