"""Request models for the production workflow API."""

from .automation import (
    AutomationExecuteRequest,
    AutomationRuleCreate,
    AutomationRuleUpdate,
    validate_rule_definition,
)
from .batch import (
    AssignWorkflowRequest,
    BatchCreate,
    BatchTransitionRequest,
    GenerateTasksRequest,
    normalize_batch_type,
)
from .task import AssignTaskRequest, BulkAssignRequest, WorkerCreate
from .workflow import (
    StageDefinition,
    StageTransitionDefinition,
    TaskSpec,
    WorkflowDuplicateRequest,
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
)

__all__ = [
    "AssignTaskRequest",
    "AssignWorkflowRequest",
    "AutomationExecuteRequest",
    "AutomationRuleCreate",
    "AutomationRuleUpdate",
    "BatchCreate",
    "BatchTransitionRequest",
    "BulkAssignRequest",
    "GenerateTasksRequest",
    "StageDefinition",
    "StageTransitionDefinition",
    "TaskSpec",
    "WorkerCreate",
    "WorkflowDuplicateRequest",
    "WorkflowTemplateCreate",
    "WorkflowTemplateUpdate",
    "normalize_batch_type",
    "validate_rule_definition",
]
