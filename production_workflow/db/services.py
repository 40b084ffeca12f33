"""
Database services for the production workflow engine.

Batch stage and status changes are not made here; they go through
``core.transitions.StageTransitionEngine``. Stage task generation goes through
``core.task_generator.TaskGenerator``.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.stage_graph import validate_workflow_definition
from ..enums import CLOSED_BATCH_STATUSES, TaskStatus
from ..errors import (
    ConflictError,
    PermissionDeniedError,
    RuleNotFoundError,
    TaskNotFoundError,
    ValidationError,
    WorkerNotFoundError,
    WorkflowNotFoundError,
)
from ..schemas import (
    AutomationRuleCreate,
    AutomationRuleUpdate,
    BatchCreate,
    WorkerCreate,
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
    normalize_batch_type,
    validate_rule_definition,
)
from .base import utc_now
from .execution_log_models import AutomationExecutionModel
from .execution_log_service import ExecutionLogService
from .models import (
    AutomationRuleModel,
    BatchModel,
    TaskModel,
    WorkerModel,
    WorkflowTemplateModel,
)

logger = logging.getLogger(__name__)


def _safe_log(db: Session, **kwargs: Any) -> None:
    """Append an execution-log entry; failures are logged and ignored."""
    try:
        ExecutionLogService(db).log_execution(**kwargs)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to log %s: %s", kwargs.get("action"), e)


class WorkerService:
    """Service for managing workers in the database."""

    def __init__(self, db: Session):
        self.db = db

    def create_worker(self, worker: WorkerCreate) -> WorkerModel:
        """Create a new worker."""
        db_worker = WorkerModel(
            name=worker.name,
            email=worker.email,
            role=worker.role,
            skills=list(dict.fromkeys(worker.skills)),
            is_active=worker.is_active,
        )

        self.db.add(db_worker)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"A worker with email '{worker.email}' already exists",
                code="WORKER_EXISTS",
            ) from e
        self.db.refresh(db_worker)
        return db_worker

    def get_worker(self, worker_id: str) -> Optional[WorkerModel]:
        """Get a worker by ID."""
        return self.db.query(WorkerModel).filter(WorkerModel.id == worker_id).first()

    def get_workers(self, active_only: bool = True) -> List[WorkerModel]:
        """Get workers, optionally only active ones."""
        query = self.db.query(WorkerModel)
        if active_only:
            query = query.filter(WorkerModel.is_active.is_(True))
        return query.order_by(WorkerModel.name).all()


class WorkflowTemplateService:
    """Service for managing workflow templates in the database.

    Templates are never deleted, only deactivated.
    """

    def __init__(self, db: Session):
        self.db = db

    def _ensure_unique_name(self, name: str, exclude_id: Optional[str] = None) -> None:
        query = self.db.query(WorkflowTemplateModel).filter(WorkflowTemplateModel.name == name)
        if exclude_id:
            query = query.filter(WorkflowTemplateModel.id != exclude_id)
        if query.first():
            raise ConflictError(
                f"A workflow named '{name}' already exists",
                code="WORKFLOW_NAME_EXISTS",
                details={"name": name},
            )

    def _ensure_stages_unused(self, template: WorkflowTemplateModel, kept_codes) -> None:
        removed = [code for code in template.stage_codes() if code not in kept_codes]
        if not removed:
            return
        batches = (
            self.db.query(BatchModel)
            .filter(
                BatchModel.workflow_template_id == template.id,
                BatchModel.current_stage.in_(removed),
                BatchModel.status.notin_(CLOSED_BATCH_STATUSES),
            )
            .order_by(BatchModel.id)
            .all()
        )
        if batches:
            in_use = sorted({batch.current_stage for batch in batches})
            raise ConflictError(
                f"Stages still hold open batches: {', '.join(in_use)}",
                code="STAGE_IN_USE",
                details={"stages": in_use, "batch_ids": [batch.id for batch in batches]},
            )

    def _commit(self, template: WorkflowTemplateModel) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"A workflow named '{template.name}' already exists",
                code="WORKFLOW_NAME_EXISTS",
                details={"name": template.name},
            ) from e
        self.db.refresh(template)

    def create_template(
        self, template: WorkflowTemplateCreate, created_by: Optional[str] = None
    ) -> WorkflowTemplateModel:
        """Validate and store a new workflow template.

        Raises:
            InvalidWorkflowConfigError: bad stage graph
            ConflictError: name already taken
        """
        stages = [stage.to_storage() for stage in template.stages]
        transitions = [t.to_storage() for t in template.stage_transitions]
        validate_workflow_definition(stages, transitions)
        self._ensure_unique_name(template.name)

        db_template = WorkflowTemplateModel(
            name=template.name,
            description=template.description,
            trigger_rules=template.trigger_rules,
            stages=stages,
            stage_transitions=transitions,
            is_active=template.is_active,
            is_default=template.is_default,
            created_by=created_by,
        )
        self.db.add(db_template)
        self._commit(db_template)

        _safe_log(
            self.db,
            action="workflow_created",
            workflow_template_id=db_template.id,
            action_details={"name": db_template.name, "stage_count": len(stages)},
            executed_by=created_by,
        )
        return db_template

    def get_template(self, template_id: str) -> Optional[WorkflowTemplateModel]:
        """Get a workflow template by ID."""
        return (
            self.db.query(WorkflowTemplateModel)
            .filter(WorkflowTemplateModel.id == template_id)
            .first()
        )

    def require_template(self, template_id: str) -> WorkflowTemplateModel:
        template = self.get_template(template_id)
        if not template:
            raise WorkflowNotFoundError(template_id)
        return template

    def get_templates(
        self, active_only: bool = False, limit: int = 100, offset: int = 0
    ) -> List[WorkflowTemplateModel]:
        """Get workflow templates ordered by name."""
        query = self.db.query(WorkflowTemplateModel)
        if active_only:
            query = query.filter(WorkflowTemplateModel.is_active.is_(True))
        return query.order_by(WorkflowTemplateModel.name).offset(offset).limit(limit).all()

    def update_template(
        self,
        template_id: str,
        update: WorkflowTemplateUpdate,
        updated_by: Optional[str] = None,
    ) -> WorkflowTemplateModel:
        """Apply a partial update. Stages and transitions are replaced, not merged.

        Removing a stage that an open batch on this template currently sits in
        is rejected with ``STAGE_IN_USE``.
        """
        template = self.require_template(template_id)

        stages = (
            [stage.to_storage() for stage in update.stages]
            if update.stages is not None
            else template.stages
        )
        transitions = (
            [t.to_storage() for t in update.stage_transitions]
            if update.stage_transitions is not None
            else template.stage_transitions
        )
        validate_workflow_definition(stages, transitions or [])
        if update.stages is not None:
            self._ensure_stages_unused(template, {s["stage_code"] for s in stages})
        if update.name is not None and update.name != template.name:
            self._ensure_unique_name(update.name, exclude_id=template_id)

        changed = sorted(update.model_dump(exclude_unset=True).keys())
        for field in ("name", "description", "trigger_rules", "is_active", "is_default"):
            value = getattr(update, field)
            if value is not None:
                setattr(template, field, value)
        template.stages = stages
        template.stage_transitions = transitions
        self._commit(template)

        _safe_log(
            self.db,
            action="workflow_updated",
            workflow_template_id=template.id,
            action_details={"fields": changed},
            executed_by=updated_by,
        )
        return template

    def deactivate_template(
        self, template_id: str, actor: Optional[str] = None
    ) -> WorkflowTemplateModel:
        """Stop new batches from using a template."""
        template = self.require_template(template_id)
        template.is_active = False
        self.db.commit()
        self.db.refresh(template)

        _safe_log(
            self.db,
            action="workflow_deactivated",
            workflow_template_id=template.id,
            executed_by=actor,
        )
        return template

    def duplicate_template(
        self,
        template_id: str,
        new_name: Optional[str] = None,
        new_description: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> WorkflowTemplateModel:
        """Copy a template's stages and transitions into a new inactive template."""
        source = self.require_template(template_id)
        name = new_name or f"{source.name} (Copy)"
        self._ensure_unique_name(name)

        copy = WorkflowTemplateModel(
            name=name,
            description=new_description
            if new_description is not None
            else f"Copy of {source.description or source.name}",
            trigger_rules=dict(source.trigger_rules or {}),
            stages=[dict(stage) for stage in source.stages or []],
            stage_transitions=[dict(t) for t in source.stage_transitions or []],
            is_active=False,
            is_default=False,
            created_by=actor,
        )
        self.db.add(copy)
        self._commit(copy)

        _safe_log(
            self.db,
            action="workflow_duplicated",
            workflow_template_id=copy.id,
            action_details={"source_workflow_template_id": source.id, "name": name},
            executed_by=actor,
        )
        return copy


class BatchService:
    """Service for creating and reading batches."""

    def __init__(self, db: Session):
        self.db = db

    def create_batch(self, batch: BatchCreate, created_by: Optional[str] = None) -> BatchModel:
        """Create a pending batch with no workflow or stage.

        A ``stock`` batch type is stored as ``custom`` with a stock_batch marker.
        """
        batch_type, criteria = normalize_batch_type(batch.batch_type, batch.criteria)

        db_batch = BatchModel(
            name=batch.name,
            batch_type=batch_type,
            order_item_ids=list(dict.fromkeys(batch.order_item_ids)),
            criteria=criteria,
            current_stage=None,
            status="pending",
            created_by=created_by,
        )
        self.db.add(db_batch)
        self.db.commit()
        self.db.refresh(db_batch)
        return db_batch

    def get_batch(self, batch_id: str) -> Optional[BatchModel]:
        """Get a batch by ID."""
        return self.db.query(BatchModel).filter(BatchModel.id == batch_id).first()

    def get_batches(
        self,
        status: Optional[str] = None,
        workflow_template_id: Optional[str] = None,
        current_stage: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[BatchModel]:
        """Get batches with optional filtering."""
        query = self.db.query(BatchModel)

        if status:
            query = query.filter(BatchModel.status == status)
        if workflow_template_id:
            query = query.filter(BatchModel.workflow_template_id == workflow_template_id)
        if current_stage:
            query = query.filter(BatchModel.current_stage == current_stage)

        return (
            query.order_by(desc(BatchModel.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )


class TaskService:
    """Service for reading tasks and for worker-driven task updates."""

    def __init__(self, db: Session):
        self.db = db

    def get_task(self, task_id: str) -> Optional[TaskModel]:
        """Get a task by ID."""
        return self.db.query(TaskModel).filter(TaskModel.id == task_id).first()

    def require_task(self, task_id: str) -> TaskModel:
        task = self.get_task(task_id)
        if not task:
            raise TaskNotFoundError(task_id)
        return task

    def get_tasks(
        self,
        batch_id: Optional[str] = None,
        stage: Optional[str] = None,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[TaskModel]:
        """Get tasks with optional filtering, oldest first."""
        query = self.db.query(TaskModel)

        if batch_id:
            query = query.filter(TaskModel.batch_id == batch_id)
        if stage:
            query = query.filter(TaskModel.stage == stage)
        if status:
            query = query.filter(TaskModel.status == status)
        if assigned_to:
            query = query.filter(TaskModel.assigned_to == assigned_to)

        return (
            query.order_by(TaskModel.created_at, TaskModel.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def _require_active_worker(self, worker_id: str) -> WorkerModel:
        worker = self.db.query(WorkerModel).filter(WorkerModel.id == worker_id).first()
        if not worker:
            raise WorkerNotFoundError(worker_id)
        if not worker.is_active:
            raise ValidationError(
                f"Worker '{worker_id}' is not active",
                code="WORKER_INACTIVE",
                details={"worker_id": worker_id},
            )
        return worker

    @staticmethod
    def _assign(task: TaskModel, worker_id: str, assigned_by: Optional[str]) -> None:
        task.assigned_to = worker_id
        task.assigned_by = assigned_by
        task.manual_assignment = True
        if task.status == TaskStatus.PENDING.value:
            task.status = TaskStatus.ASSIGNED.value

    def assign_task(
        self, task_id: str, worker_id: str, assigned_by: Optional[str] = None
    ) -> TaskModel:
        """Assign one task to an active worker. Last write wins."""
        task = self.require_task(task_id)
        self._require_active_worker(worker_id)
        if task.status == TaskStatus.COMPLETED.value:
            raise ValidationError(
                f"Task '{task_id}' is already completed",
                code="TASK_COMPLETED",
                details={"task_id": task_id},
            )

        self._assign(task, worker_id, assigned_by)
        self.db.commit()
        self.db.refresh(task)
        return task

    def assign_tasks_bulk(
        self, task_ids: List[str], worker_id: str, assigned_by: Optional[str] = None
    ) -> List[TaskModel]:
        """Assign many tasks to one active worker in a single commit.

        Completed tasks are left alone. Races with a worker claiming one of
        the tasks are last-write-wins.
        """
        self._require_active_worker(worker_id)
        unique_ids = list(dict.fromkeys(task_ids))
        tasks = self.db.query(TaskModel).filter(TaskModel.id.in_(unique_ids)).all()

        found = {task.id for task in tasks}
        missing = [task_id for task_id in unique_ids if task_id not in found]
        if missing:
            raise TaskNotFoundError(missing[0])

        updated = []
        for task in tasks:
            if task.status == TaskStatus.COMPLETED.value:
                continue
            self._assign(task, worker_id, assigned_by)
            updated.append(task)
        self.db.commit()

        logger.info("Assigned %d tasks to worker %s", len(updated), worker_id)
        for task in updated:
            self.db.refresh(task)
        return updated

    def start_task(
        self, task_id: str, worker_id: str, is_privileged: bool = False
    ) -> TaskModel:
        """Move a pending or assigned task to in_progress.

        Only the assignee may start an assigned task unless the caller is
        privileged. Starting an unassigned task claims it.
        """
        task = self.require_task(task_id)
        if task.assigned_to and task.assigned_to != worker_id and not is_privileged:
            raise PermissionDeniedError(
                "Only the assigned worker can start this task",
                details={"task_id": task_id},
            )
        if task.status not in (TaskStatus.PENDING.value, TaskStatus.ASSIGNED.value):
            raise ValidationError(
                f"Task '{task_id}' cannot be started from status '{task.status}'",
                code="INVALID_TASK_STATUS",
                details={"task_id": task_id, "status": task.status},
            )

        if not task.assigned_to:
            task.assigned_to = worker_id
        task.status = TaskStatus.IN_PROGRESS.value
        task.started_at = utc_now()
        self.db.commit()
        self.db.refresh(task)
        return task

    def complete_task(
        self, task_id: str, worker_id: str, is_privileged: bool = False
    ) -> TaskModel:
        """Mark a task completed."""
        task = self.require_task(task_id)
        if task.assigned_to != worker_id and not is_privileged:
            raise PermissionDeniedError(
                "Only the assigned worker can complete this task",
                details={"task_id": task_id},
            )
        if task.status == TaskStatus.COMPLETED.value:
            raise ValidationError(
                f"Task '{task_id}' is already completed",
                code="INVALID_TASK_STATUS",
                details={"task_id": task_id, "status": task.status},
            )

        task.status = TaskStatus.COMPLETED.value
        task.completed_at = utc_now()
        if task.started_at is None:
            task.started_at = task.completed_at
        self.db.commit()
        self.db.refresh(task)
        return task


class AutomationRuleService:
    """Service for managing automation rules in the database."""

    def __init__(self, db: Session):
        self.db = db

    def _check_workflow(self, workflow_template_id: Optional[str]) -> None:
        if workflow_template_id and not (
            self.db.query(WorkflowTemplateModel.id)
            .filter(WorkflowTemplateModel.id == workflow_template_id)
            .first()
        ):
            raise WorkflowNotFoundError(workflow_template_id)

    def create_rule(
        self, rule: AutomationRuleCreate, created_by: Optional[str] = None
    ) -> AutomationRuleModel:
        """Validate and store a new automation rule."""
        validate_rule_definition(rule.trigger_config, rule.conditions, rule.actions)
        self._check_workflow(rule.workflow_template_id)

        db_rule = AutomationRuleModel(
            workflow_template_id=rule.workflow_template_id,
            name=rule.name,
            description=rule.description,
            trigger_config=rule.trigger_config,
            conditions=rule.conditions,
            actions=rule.actions,
            priority=rule.priority,
            execution_order=rule.execution_order,
            is_active=rule.is_active,
            created_by=created_by,
            updated_by=created_by,
        )
        self.db.add(db_rule)
        self.db.commit()
        self.db.refresh(db_rule)
        return db_rule

    def get_rule(self, rule_id: str) -> Optional[AutomationRuleModel]:
        """Get an automation rule by ID."""
        return (
            self.db.query(AutomationRuleModel)
            .filter(AutomationRuleModel.id == rule_id)
            .first()
        )

    def require_rule(self, rule_id: str, active_only: bool = False) -> AutomationRuleModel:
        rule = self.get_rule(rule_id)
        if not rule or (active_only and not rule.is_active):
            raise RuleNotFoundError(rule_id, inactive=active_only)
        return rule

    def get_rules(
        self,
        workflow_template_id: Optional[str] = None,
        include_global: bool = True,
        active_only: bool = False,
        trigger_type: Optional[str] = None,
    ) -> List[AutomationRuleModel]:
        """Get rules, highest priority first, then by execution order.

        With a workflow id, returns that workflow's rules plus the global ones
        unless ``include_global`` is False.
        """
        query = self.db.query(AutomationRuleModel)

        if workflow_template_id:
            scope = AutomationRuleModel.workflow_template_id == workflow_template_id
            if include_global:
                scope = or_(scope, AutomationRuleModel.workflow_template_id.is_(None))
            query = query.filter(scope)
        if active_only:
            query = query.filter(AutomationRuleModel.is_active.is_(True))

        rules = query.order_by(
            desc(AutomationRuleModel.priority),
            AutomationRuleModel.execution_order,
            AutomationRuleModel.created_at,
        ).all()
        if trigger_type:
            rules = [r for r in rules if (r.trigger_config or {}).get("type") == trigger_type]
        return rules

    def update_rule(
        self, rule_id: str, update: AutomationRuleUpdate, updated_by: Optional[str] = None
    ) -> AutomationRuleModel:
        """Apply a partial update."""
        rule = self.require_rule(rule_id)
        validate_rule_definition(update.trigger_config, update.conditions, update.actions)

        for field, value in update.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(rule, field, value)
        rule.updated_by = updated_by
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def delete_rule(self, rule_id: str) -> Dict[str, Any]:
        """Deactivate a rule with execution history, delete one without."""
        rule = self.require_rule(rule_id)
        executions = ExecutionLogService(self.db).count_rule_executions(rule_id)

        if executions:
            rule.is_active = False
            self.db.commit()
            logger.info("Deactivated automation rule %s (%d executions)", rule_id, executions)
            return {"id": rule_id, "deleted": False, "deactivated": True}

        self.db.delete(rule)
        self.db.commit()
        logger.info("Deleted automation rule %s", rule_id)
        return {"id": rule_id, "deleted": True, "deactivated": False}

    def update_execution_stats(
        self, rule: AutomationRuleModel, execution_time_ms: int
    ) -> AutomationRuleModel:
        """Fold one execution into the rule's running statistics."""
        count = (rule.execution_count or 0) + 1
        previous = rule.average_execution_time_ms or 0
        rule.average_execution_time_ms = round(
            (previous * (count - 1) + execution_time_ms) / count
        )
        rule.execution_count = count
        rule.last_executed_at = utc_now()
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def get_metrics(
        self, days: int = 30, workflow_template_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Execution summary over the last ``days`` days plus per-rule figures."""
        since = utc_now() - timedelta(days=days)

        query = self.db.query(AutomationExecutionModel).filter(
            AutomationExecutionModel.executed_at >= since
        )
        if workflow_template_id:
            query = query.filter(
                AutomationExecutionModel.workflow_template_id == workflow_template_id
            )
        executions = query.all()

        rules = self.get_rules(workflow_template_id=workflow_template_id)
        successful = sum(1 for e in executions if e.execution_status == "success")
        average = (
            round(sum(e.execution_time_ms or 0 for e in executions) / len(executions))
            if executions
            else 0
        )

        return {
            "summary": {
                "total_rules": len(rules),
                "active_rules": sum(1 for r in rules if r.is_active),
                "total_executions": len(executions),
                "successful_executions": successful,
                "failed_executions": len(executions) - successful,
                "average_execution_time_ms": average,
            },
            "rules_performance": [
                {
                    "id": r.id,
                    "name": r.name,
                    "is_active": r.is_active,
                    "execution_count": r.execution_count,
                    "last_executed_at": r.last_executed_at.isoformat()
                    if r.last_executed_at
                    else None,
                    "average_execution_time_ms": r.average_execution_time_ms,
                }
                for r in sorted(rules, key=lambda r: r.execution_count, reverse=True)
            ],
            "filters": {"days": days, "workflow_template_id": workflow_template_id},
        }
