"""
Task generation for a batch at a stage.

One task is synthesized per order item in the batch. With ``override_existing``
the stage's existing tasks are replaced in a single transaction: either all old
tasks are gone and all new ones exist, or nothing changed.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.execution_log_service import ExecutionLogService
from ..db.models import BatchModel, TaskModel, WorkerModel
from ..enums import AssignmentRule, TaskPriority, TaskStatus, values
from ..errors import (
    BatchNotFoundError,
    DependencyError,
    DuplicateTasksError,
    InvalidWorkflowConfigError,
    NoStageError,
    StageNotFoundError,
    ValidationError,
)
from .assignment import AssignmentResolver

logger = logging.getLogger(__name__)


def _describe(stage_def: Dict[str, Any]) -> str:
    return f"{stage_def.get('display_name')}: {stage_def.get('description') or ''}"


def validate_priority(priority: str) -> str:
    priority = priority.value if isinstance(priority, TaskPriority) else priority
    if priority not in values(TaskPriority):
        raise ValidationError(
            f"Invalid priority '{priority}'",
            code="INVALID_PRIORITY",
            details={"priority": priority, "valid_priorities": values(TaskPriority)},
        )
    return priority


def stage_spec_tasks(
    batch: BatchModel, stage_def: Dict[str, Any], actor: Optional[str] = None
) -> List[TaskModel]:
    """Batch-level tasks for a stage's configured TaskSpec list.

    These carry no order item; they are the stage's checklist for the whole
    batch (for example a single final inspection).
    """
    tasks = []
    for spec in stage_def.get("tasks") or []:
        minutes = spec.get("estimated_minutes")
        tasks.append(
            TaskModel(
                batch_id=batch.id,
                order_item_id=None,
                workflow_template_id=batch.workflow_template_id,
                stage=stage_def["stage_code"],
                task_type=spec.get("type") or stage_def["stage_code"],
                title=spec.get("title"),
                task_description=_describe(stage_def),
                assigned_by=actor,
                status=TaskStatus.PENDING.value,
                priority=spec.get("priority") or TaskPriority.NORMAL.value,
                estimated_hours=round(minutes / 60.0, 2) if minutes else None,
                auto_generated=True,
                manual_assignment=not stage_def.get("is_automated", False),
            )
        )
    return tasks


class TaskGenerator:
    """Create the per-order-item tasks for a batch's stage."""

    def __init__(
        self,
        db: Session,
        resolver: Optional[AssignmentResolver] = None,
        log_service: Optional[ExecutionLogService] = None,
    ):
        self.db = db
        self.resolver = resolver or AssignmentResolver(db)
        self.log_service = log_service or ExecutionLogService(db)

    def _item_tasks(self, batch_id: str, stage: str):
        # Stage checklist tasks (no order item) belong to the stage, not the generator
        return self.db.query(TaskModel).filter(
            TaskModel.batch_id == batch_id,
            TaskModel.stage == stage,
            TaskModel.order_item_id.isnot(None),
        )

    def count_stage_tasks(self, batch_id: str, stage: str) -> int:
        """Count the per-order-item tasks already generated for a stage."""
        return (
            self._item_tasks(batch_id, stage)
            .with_entities(func.count(TaskModel.id))
            .scalar()
            or 0
        )

    def _resolve_worker(
        self,
        auto_assign: bool,
        assignment_rule: str,
        stage_def: Dict[str, Any],
        workflow_template_id: Optional[str],
        specific_worker_id: Optional[str],
    ) -> Optional[WorkerModel]:
        if not auto_assign or assignment_rule == AssignmentRule.NONE.value:
            return None
        return self.resolver.resolve(
            assignment_rule,
            stage=stage_def["stage_code"],
            required_skills=stage_def.get("required_skills") or [],
            workflow_template_id=workflow_template_id,
            specific_worker_id=specific_worker_id,
        )

    def generate_tasks(
        self,
        batch_id: str,
        auto_assign: bool = False,
        assignment_rule: str = AssignmentRule.LEAST_BUSY.value,
        specific_worker_id: Optional[str] = None,
        override_existing: bool = False,
        stage_override: Optional[str] = None,
        priority: str = TaskPriority.NORMAL.value,
        actor: Optional[str] = None,
        execution_type: str = "manual",
    ) -> Dict[str, Any]:
        """Generate one task per order item for the batch's stage.

        Args:
            batch_id: Batch to generate tasks for
            auto_assign: Resolve one worker and assign every generated task to it
            assignment_rule: round_robin, least_busy or specific_worker
            specific_worker_id: Worker for the specific_worker rule
            override_existing: Replace tasks already present for the stage
            stage_override: Stage to generate for instead of the current stage
            priority: low, normal, high or urgent
            actor: Worker id recorded as assigned_by and in the execution log
            execution_type: "manual" or "automatic", for the execution log

        Returns:
            {"tasks_created": int, "stage": str, "task_ids": [...],
             "assignment_info": {"auto_assigned", "assignment_rule",
             "assigned_worker_id"}}

        Raises:
            BatchNotFoundError, NoStageError, InvalidWorkflowConfigError,
            StageNotFoundError, DuplicateTasksError, ValidationError,
            WorkerNotFoundError, DependencyError
        """
        assignment_rule = (
            assignment_rule.value
            if isinstance(assignment_rule, AssignmentRule)
            else assignment_rule
        )
        priority = validate_priority(priority)

        batch = self.db.query(BatchModel).filter(BatchModel.id == batch_id).first()
        if not batch:
            raise BatchNotFoundError(batch_id)

        stage = stage_override or batch.current_stage
        if not stage:
            raise NoStageError(batch_id)

        template = batch.workflow_template
        if template is None:
            raise InvalidWorkflowConfigError(
                f"Batch '{batch_id}' has no workflow assigned",
                code="NO_WORKFLOW",
                details={"batch_id": batch_id},
            )
        stage_def = template.get_stage(stage)
        if stage_def is None:
            raise StageNotFoundError(stage, template.stage_codes())

        existing = self.count_stage_tasks(batch_id, stage)
        if existing and not override_existing:
            raise DuplicateTasksError(batch_id, stage, existing)

        # Resolved against load at call time, before any regeneration delete
        worker = self._resolve_worker(
            auto_assign, assignment_rule, stage_def, template.id, specific_worker_id
        )

        tasks = [
            TaskModel(
                batch_id=batch.id,
                order_item_id=order_item_id,
                workflow_template_id=template.id,
                stage=stage,
                task_type=stage,
                title=f"{stage_def.get('display_name')} - {order_item_id}",
                task_description=_describe(stage_def),
                assigned_to=worker.id if worker else None,
                assigned_by=actor,
                status=TaskStatus.ASSIGNED.value if worker else TaskStatus.PENDING.value,
                priority=priority,
                estimated_hours=stage_def.get("estimated_hours"),
                auto_generated=True,
                manual_assignment=not stage_def.get("is_automated", False),
            )
            for order_item_id in batch.order_item_ids or []
        ]

        try:
            if existing:
                # Bulk delete runs immediately, ahead of the inserts below
                self._item_tasks(batch_id, stage).delete(synchronize_session=False)
            self.db.add_all(tasks)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Task generation failed for batch %s stage %s: %s", batch_id, stage, e)
            raise DependencyError(
                f"Failed to generate tasks for stage '{stage}'",
                code="TASK_GENERATION_FAILED",
                details={"batch_id": batch_id, "stage": stage},
            ) from e

        assignment_info = {
            "auto_assigned": worker is not None,
            "assignment_rule": assignment_rule if auto_assign else None,
            "assigned_worker_id": worker.id if worker else None,
        }
        logger.info(
            "Generated %d tasks for batch %s stage %s (replaced %d)",
            len(tasks),
            batch_id,
            stage,
            existing if override_existing else 0,
        )

        try:
            self.log_service.log_execution(
                action="tasks_generated",
                workflow_template_id=template.id,
                batch_id=batch_id,
                stage=stage,
                action_details={
                    "tasks_created": len(tasks),
                    "tasks_replaced": existing,
                    "priority": priority,
                    **assignment_info,
                },
                executed_by=actor,
                execution_type=execution_type,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to log task generation for batch %s: %s", batch_id, e)

        return {
            "tasks_created": len(tasks),
            "stage": stage,
            "task_ids": [task.id for task in tasks],
            "assignment_info": assignment_info,
        }
