"""
Stage transition engine.

Moves a batch between stages of its workflow. The batch row is the only
authoritative write; the transition record and the execution-log entry that
follow it are best-effort and never undo the move.

Per-batch serialization uses the batch ``version`` column: every write is a
conditional ``UPDATE ... WHERE id = :id AND version = :seen``. When another
writer got there first, the batch is re-read, re-validated and the update
retried, up to ``settings.transition_max_retries`` attempts.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.base import utc_now
from ..db.execution_log_service import ExecutionLogService
from ..db.models import BatchModel, TaskModel, WorkflowTemplateModel
from ..enums import (
    CLOSED_BATCH_STATUSES,
    AssignmentRule,
    BatchStatus,
    PseudoStage,
    TransitionType,
    values,
)
from ..errors import (
    BatchNotFoundError,
    ConcurrentTransitionError,
    DependencyError,
    InvalidStageError,
    InvalidWorkflowConfigError,
    TaskCreationError,
    ValidationError,
    WorkflowError,
    WorkflowNotFoundError,
)
from .stage_graph import PSEUDO_STAGES, valid_target_stages
from .task_generator import TaskGenerator, stage_spec_tasks

logger = logging.getLogger(__name__)

# Prepares the column values for a conditional batch update, or raises
Prepare = Callable[[BatchModel], Dict[str, Any]]


def derive_status(stored_stage: Optional[str]) -> str:
    """Batch status implied by a stored current_stage."""
    if stored_stage is None:
        return BatchStatus.PENDING.value
    if stored_stage == PseudoStage.COMPLETED.value:
        return BatchStatus.COMPLETED.value
    return BatchStatus.ACTIVE.value


def _ensure_open(batch: BatchModel) -> None:
    if batch.status in CLOSED_BATCH_STATUSES:
        raise ValidationError(
            f"Batch '{batch.id}' is {batch.status} and cannot change stage",
            code="BATCH_CLOSED",
            details={"batch_id": batch.id, "status": batch.status},
        )


class StageTransitionEngine:
    """Validate and execute batch stage changes."""

    def __init__(
        self,
        db: Session,
        log_service: Optional[ExecutionLogService] = None,
        task_generator: Optional[TaskGenerator] = None,
        max_retries: Optional[int] = None,
    ):
        self.db = db
        self.log_service = log_service or ExecutionLogService(db)
        self.task_generator = task_generator or TaskGenerator(db, log_service=self.log_service)
        self.max_retries = max(1, max_retries or get_settings().transition_max_retries)

    def _load_batch(self, batch_id: str) -> BatchModel:
        batch = (
            self.db.query(BatchModel)
            .populate_existing()
            .filter(BatchModel.id == batch_id)
            .first()
        )
        if not batch:
            raise BatchNotFoundError(batch_id)
        return batch

    def _apply(
        self, batch_id: str, prepare: Prepare
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Re-read, validate and conditionally update a batch.

        Returns:
            (stage, status and workflow before the update, the values written)

        Raises:
            ConcurrentTransitionError: every attempt lost the version race
            DependencyError: the update itself failed
        """
        for attempt in range(1, self.max_retries + 1):
            batch = self._load_batch(batch_id)
            new_values = prepare(batch)
            seen_version = batch.version
            before = {
                "current_stage": batch.current_stage,
                "status": batch.status,
                "workflow_template_id": batch.workflow_template_id,
            }

            try:
                result = self.db.execute(
                    update(BatchModel)
                    .where(BatchModel.id == batch_id, BatchModel.version == seen_version)
                    .values(version=seen_version + 1, updated_at=utc_now(), **new_values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    self.db.commit()
                    return before, new_values
                self.db.rollback()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("Batch update failed for %s: %s", batch_id, e)
                raise DependencyError(
                    f"Failed to update batch '{batch_id}'",
                    code="BATCH_UPDATE_FAILED",
                    details={"batch_id": batch_id},
                ) from e

            logger.warning(
                "Batch %s changed concurrently (version %s), attempt %d/%d",
                batch_id,
                seen_version,
                attempt,
                self.max_retries,
            )

        raise ConcurrentTransitionError(batch_id)

    def _record_transition(
        self,
        batch_id: str,
        workflow_template_id: Optional[str],
        from_stage: Optional[str],
        to_stage: str,
        transition_type: str,
        actor: Optional[str],
        notes: Optional[str],
    ) -> None:
        try:
            self.log_service.record_transition(
                batch_id=batch_id,
                workflow_template_id=workflow_template_id,
                from_stage=from_stage,
                to_stage=to_stage,
                transition_type=transition_type,
                transitioned_by=None
                if transition_type == TransitionType.AUTOMATIC.value
                else actor,
                notes=notes,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to record transition for batch %s: %s", batch_id, e)

    def _log(
        self,
        batch_id: str,
        workflow_template_id: Optional[str],
        stage: Optional[str],
        action: str,
        details: Dict[str, Any],
        actor: Optional[str],
        execution_type: str,
    ) -> None:
        try:
            self.log_service.log_execution(
                action=action,
                workflow_template_id=workflow_template_id,
                batch_id=batch_id,
                stage=stage,
                action_details=details,
                executed_by=actor,
                execution_type=execution_type,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to log %s for batch %s: %s", action, batch_id, e)

    def _create_stage_spec_tasks(
        self, batch: BatchModel, template: WorkflowTemplateModel, stage: str, actor: Optional[str]
    ) -> int:
        """Create the stage's configured TaskSpec tasks not already present."""
        stage_def = template.get_stage(stage)
        if not stage_def or not stage_def.get("tasks"):
            return 0

        present = {
            (task_type, title)
            for task_type, title in self.db.query(TaskModel.task_type, TaskModel.title)
            .filter(
                TaskModel.batch_id == batch.id,
                TaskModel.stage == stage,
                TaskModel.order_item_id.is_(None),
            )
            .all()
        }
        tasks = [
            task
            for task in stage_spec_tasks(batch, stage_def, actor)
            if (task.task_type, task.title) not in present
        ]
        if not tasks:
            return 0

        try:
            self.db.add_all(tasks)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Stage task creation failed for batch %s stage %s: %s", batch.id, stage, e)
            raise TaskCreationError(
                f"Failed to create configured tasks for stage '{stage}'",
                details={"batch_id": batch.id, "stage": stage},
            ) from e
        return len(tasks)

    def transition(
        self,
        batch_id: str,
        target_stage: str,
        actor: Optional[str] = None,
        transition_type: str = TransitionType.MANUAL.value,
        notes: Optional[str] = None,
        create_tasks: bool = False,
        auto_assign: bool = False,
        assignment_rule: str = AssignmentRule.LEAST_BUSY.value,
    ) -> Dict[str, Any]:
        """Move a batch to ``target_stage``.

        ``pending`` returns the batch to not-started (current_stage None),
        ``completed`` closes it. Any workflow stage makes it active. Entering a
        stage creates its configured TaskSpec tasks; with ``create_tasks`` the
        per-order-item Task Generator runs instead.

        Returns:
            {"previous_stage", "new_stage", "requested_stage", "status",
             "tasks_created", "batch"}

        Raises:
            ValidationError: empty stage, bad transition type, same stage,
                closed batch
            BatchNotFoundError, InvalidWorkflowConfigError, InvalidStageError,
            ConcurrentTransitionError, TaskCreationError
        """
        if not isinstance(target_stage, str) or not target_stage.strip():
            raise ValidationError("Target stage is required", code="STAGE_REQUIRED")
        target_stage = target_stage.strip()

        transition_type = (
            transition_type.value
            if isinstance(transition_type, TransitionType)
            else transition_type
        )
        if transition_type not in values(TransitionType):
            raise ValidationError(
                f"Invalid transition_type '{transition_type}'",
                code="INVALID_TRANSITION_TYPE",
                details={
                    "transition_type": transition_type,
                    "valid_transition_types": values(TransitionType),
                },
            )

        stored_stage = None if target_stage == PseudoStage.PENDING.value else target_stage

        def prepare(batch: BatchModel) -> Dict[str, Any]:
            template = batch.workflow_template
            if template is None or not template.stages:
                raise InvalidWorkflowConfigError(
                    f"Batch '{batch.id}' has no workflow with stages",
                    details={"batch_id": batch.id},
                )
            valid = valid_target_stages(template.stages)
            if target_stage not in valid:
                raise InvalidStageError(target_stage, valid)
            _ensure_open(batch)
            if (batch.current_stage or PseudoStage.PENDING.value) == target_stage:
                raise ValidationError(
                    f"Batch is already in the '{target_stage}' stage",
                    code="ALREADY_IN_STAGE",
                    details={"batch_id": batch.id, "stage": target_stage},
                )
            return {"current_stage": stored_stage, "status": derive_status(stored_stage)}

        before, written = self._apply(batch_id, prepare)
        batch = self._load_batch(batch_id)
        template = batch.workflow_template
        previous_stage = before["current_stage"]

        logger.info(
            "Batch %s moved %s -> %s (%s)",
            batch_id,
            previous_stage or PseudoStage.PENDING.value,
            target_stage,
            transition_type,
        )

        self._record_transition(
            batch_id, template.id, previous_stage, target_stage, transition_type, actor, notes
        )

        tasks_created = 0
        if stored_stage is not None and stored_stage not in PSEUDO_STAGES:
            if create_tasks:
                try:
                    result = self.task_generator.generate_tasks(
                        batch_id,
                        auto_assign=auto_assign,
                        assignment_rule=assignment_rule,
                        stage_override=stored_stage,
                        actor=actor,
                        execution_type=transition_type,
                    )
                except WorkflowError as e:
                    raise TaskCreationError(
                        f"Batch moved to '{stored_stage}' but tasks were not created: {e.message}",
                        details={"batch_id": batch_id, "stage": stored_stage, "cause": e.code},
                    ) from e
                tasks_created = result["tasks_created"]
            else:
                tasks_created = self._create_stage_spec_tasks(batch, template, stored_stage, actor)

        self._log(
            batch_id,
            template.id,
            target_stage,
            "stage_transition",
            {
                "from_stage": previous_stage,
                "to_stage": target_stage,
                "transition_type": transition_type,
                "create_tasks": create_tasks,
                "auto_assign": auto_assign,
                "tasks_created": tasks_created,
            },
            actor,
            transition_type,
        )

        self.db.refresh(batch)
        return {
            "previous_stage": previous_stage,
            "new_stage": written["current_stage"],
            "requested_stage": target_stage,
            "status": written["status"],
            "tasks_created": tasks_created,
            "batch": batch.to_dict(include_workflow=True),
        }

    def assign_workflow(
        self,
        batch_id: str,
        workflow_template_id: str,
        start_at_stage: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Attach a workflow template to a batch.

        Without ``start_at_stage`` the batch stays not-started; the first move
        is a regular transition. A batch moved to a different workflow without
        ``start_at_stage`` returns to not-started. With it, the batch enters
        that stage.

        Raises:
            BatchNotFoundError, WorkflowNotFoundError, ValidationError
            (inactive template, closed batch), InvalidWorkflowConfigError,
            InvalidStageError, ConcurrentTransitionError
        """
        template = (
            self.db.query(WorkflowTemplateModel)
            .filter(WorkflowTemplateModel.id == workflow_template_id)
            .first()
        )
        if not template:
            raise WorkflowNotFoundError(workflow_template_id)
        if not template.is_active:
            raise ValidationError(
                f"Workflow template '{template.name}' is inactive",
                code="WORKFLOW_INACTIVE",
                details={"workflow_template_id": workflow_template_id},
            )
        codes = template.stage_codes()
        if not codes:
            raise InvalidWorkflowConfigError(
                f"Workflow template '{template.name}' has no stages",
                details={"workflow_template_id": workflow_template_id},
            )
        if start_at_stage is not None and start_at_stage not in codes:
            raise InvalidStageError(start_at_stage, codes)

        def prepare(batch: BatchModel) -> Dict[str, Any]:
            _ensure_open(batch)
            new_values: Dict[str, Any] = {"workflow_template_id": template.id}
            if start_at_stage is not None:
                new_values["current_stage"] = start_at_stage
                new_values["status"] = derive_status(start_at_stage)
            elif batch.workflow_template_id != template.id and batch.current_stage is not None:
                # A new workflow starts from not-started
                new_values["current_stage"] = None
                new_values["status"] = BatchStatus.PENDING.value
            return new_values

        before, written = self._apply(batch_id, prepare)
        batch = self._load_batch(batch_id)
        previous_stage = before["current_stage"]

        self._log(
            batch_id,
            template.id,
            start_at_stage,
            "workflow_assigned",
            {
                "previous_workflow_template_id": before["workflow_template_id"],
                "workflow_template_id": template.id,
                "start_at_stage": start_at_stage,
            },
            actor,
            "manual",
        )

        tasks_created = 0
        if start_at_stage is not None and start_at_stage != previous_stage:
            self._record_transition(
                batch_id, template.id, previous_stage, start_at_stage, "manual", actor, None
            )
            tasks_created = self._create_stage_spec_tasks(batch, template, start_at_stage, actor)
        elif "current_stage" in written and previous_stage is not None:
            self._record_transition(
                batch_id,
                template.id,
                previous_stage,
                PseudoStage.PENDING.value,
                "manual",
                actor,
                "Workflow reassigned",
            )

        self.db.refresh(batch)
        return {
            "batch": batch.to_dict(include_workflow=True),
            "previous_stage": previous_stage,
            "tasks_created": tasks_created,
        }

    def cancel_batch(
        self, batch_id: str, actor: Optional[str] = None, notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Cancel a batch. Cancelled batches accept no further transitions."""

        def prepare(batch: BatchModel) -> Dict[str, Any]:
            _ensure_open(batch)
            return {"current_stage": None, "status": BatchStatus.CANCELLED.value}

        before, _ = self._apply(batch_id, prepare)
        batch = self._load_batch(batch_id)
        logger.info("Batch %s cancelled at stage %s", batch_id, before["current_stage"])

        self._log(
            batch_id,
            batch.workflow_template_id,
            before["current_stage"],
            "batch_cancelled",
            {"from_stage": before["current_stage"], "notes": notes},
            actor,
            "manual",
        )
        return batch.to_dict(include_workflow=True)
