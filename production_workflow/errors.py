"""
Error taxonomy for the production workflow engine.

Every error carries a stable ``code`` for programmatic handling, a human-readable
``message`` and optional ``details`` (for example the set of valid stages), and
serializes with ``to_dict()`` for JSON responses.
"""

from typing import Any, Dict, Iterable, Optional


class WorkflowError(Exception):
    """Base class for all engine errors.

    Attributes:
        kind: Error family (not_found, validation, conflict, dependency, permission)
        code: Stable error code for programmatic handling
        message: Human-readable error description
        details: Extra machine-readable context
    """

    kind = "internal"
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "error": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(WorkflowError):
    kind = "not_found"
    default_code = "NOT_FOUND"


class ValidationError(WorkflowError):
    kind = "validation"
    default_code = "VALIDATION_FAILED"


class ConflictError(WorkflowError):
    kind = "conflict"
    default_code = "CONFLICT"


class DependencyError(WorkflowError):
    """A collaborator (persistence, notification) failed."""

    kind = "dependency"
    default_code = "DEPENDENCY_FAILED"


class PermissionDeniedError(WorkflowError):
    """Caller lacks the required role or is inactive."""

    kind = "permission"
    default_code = "FORBIDDEN"


# Not found


class BatchNotFoundError(NotFoundError):
    default_code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch '{batch_id}' not found", details={"batch_id": batch_id})


class WorkflowNotFoundError(NotFoundError):
    default_code = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"Workflow template '{workflow_id}' not found",
            details={"workflow_template_id": workflow_id},
        )


class RuleNotFoundError(NotFoundError):
    default_code = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str, inactive: bool = False):
        self.rule_id = rule_id
        message = f"Automation rule '{rule_id}' not found"
        if inactive:
            message += " or inactive"
        super().__init__(message, details={"automation_rule_id": rule_id})


class TaskNotFoundError(NotFoundError):
    default_code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found", details={"task_id": task_id})


class WorkerNotFoundError(NotFoundError):
    default_code = "WORKER_NOT_FOUND"

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker '{worker_id}' not found", details={"worker_id": worker_id})


# Validation


class InvalidStageError(ValidationError):
    default_code = "INVALID_STAGE"

    def __init__(self, stage: str, valid_stages: Iterable[str]):
        self.stage = stage
        self.valid_stages = sorted(set(valid_stages))
        super().__init__(
            f"Stage '{stage}' is not defined in the workflow. "
            f"Valid stages: {', '.join(self.valid_stages)}",
            details={"stage": stage, "valid_stages": self.valid_stages},
        )


class InvalidWorkflowConfigError(ValidationError):
    default_code = "INVALID_WORKFLOW_CONFIG"


class NoStageError(ValidationError):
    default_code = "NO_STAGE"

    def __init__(self, batch_id: str):
        super().__init__(
            "No stage specified and batch has no current stage",
            details={"batch_id": batch_id},
        )


class StageNotFoundError(ValidationError):
    default_code = "STAGE_NOT_FOUND"

    def __init__(self, stage: str, valid_stages: Iterable[str]):
        self.stage = stage
        self.valid_stages = sorted(set(valid_stages))
        super().__init__(
            f"Stage '{stage}' not found in workflow",
            details={"stage": stage, "valid_stages": self.valid_stages},
        )


# Conflict


class DuplicateTasksError(ConflictError):
    default_code = "DUPLICATE_TASKS"

    def __init__(self, batch_id: str, stage: str, existing_count: int):
        self.existing_count = existing_count
        super().__init__(
            f"Batch '{batch_id}' already has {existing_count} task(s) for stage "
            f"'{stage}'. Pass override_existing to regenerate them.",
            details={
                "batch_id": batch_id,
                "stage": stage,
                "existing_count": existing_count,
            },
        )


class ConcurrentTransitionError(ConflictError):
    default_code = "CONCURRENT_TRANSITION"

    def __init__(self, batch_id: str):
        super().__init__(
            f"Batch '{batch_id}' was modified by a concurrent transition; retry the request",
            details={"batch_id": batch_id},
        )


# Dependency


class TaskCreationError(DependencyError):
    """Stage-configured tasks could not be created during a transition."""

    default_code = "TASK_CREATION_FAILED"
