"""
Execution / transition log service.

Appends and queries the append-only history tables. Callers on the transition
path treat appends as best-effort: they catch ``SQLAlchemyError``, roll back and
keep going, so a log failure never undoes the primary state change.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from .base import generate_ulid, utc_now
from .execution_log_models import (
    AutomationExecutionModel,
    StageTransitionModel,
    WorkflowExecutionLogModel,
)


class ExecutionLogService:
    """Service for the execution and transition log.

    Usage:
        log = ExecutionLogService(db_session)
        log.record_transition(batch.id, batch.workflow_template_id, "sanding", "qc")
    """

    def __init__(self, db: Session):
        self.db = db

    def record_transition(
        self,
        batch_id: str,
        workflow_template_id: Optional[str],
        from_stage: Optional[str],
        to_stage: str,
        transition_type: str = "manual",
        transitioned_by: Optional[str] = None,
        notes: Optional[str] = None,
        transition_time: Optional[datetime] = None,
    ) -> StageTransitionModel:
        """Append a stage transition record.

        Args:
            batch_id: Batch that moved
            workflow_template_id: Workflow the batch was following
            from_stage: Stage before the move (None when the batch had not started)
            to_stage: Requested target stage
            transition_type: "automatic" or "manual"
            transitioned_by: Acting worker id, None for automated moves
            notes: Optional free-text note
            transition_time: Defaults to now (UTC)

        Returns:
            The created StageTransitionModel
        """
        record = StageTransitionModel(
            id=generate_ulid(),
            batch_id=batch_id,
            workflow_template_id=workflow_template_id,
            from_stage=from_stage,
            to_stage=to_stage,
            transition_type=transition_type,
            transitioned_by=transitioned_by,
            notes=notes,
            transition_time=transition_time or utc_now(),
        )

        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def log_execution(
        self,
        action: str,
        workflow_template_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        stage: Optional[str] = None,
        action_details: Optional[Dict[str, Any]] = None,
        executed_by: Optional[str] = None,
        execution_type: str = "manual",
    ) -> WorkflowExecutionLogModel:
        """Append a workflow execution-log entry."""
        entry = WorkflowExecutionLogModel(
            id=generate_ulid(),
            workflow_template_id=workflow_template_id,
            batch_id=batch_id,
            stage=stage,
            action=action,
            action_details=action_details or {},
            executed_by=executed_by,
            execution_type=execution_type,
            created_at=utc_now(),
        )

        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def record_automation_execution(
        self,
        automation_rule_id: str,
        execution_status: str,
        execution_time_ms: int,
        workflow_template_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        task_id: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        conditions_evaluated: Optional[List[Dict[str, Any]]] = None,
        conditions_met: Optional[List[Dict[str, Any]]] = None,
        actions_executed: Optional[List[Dict[str, Any]]] = None,
        error_message: Optional[str] = None,
    ) -> AutomationExecutionModel:
        """Append an automation execution record."""
        record = AutomationExecutionModel(
            id=generate_ulid(),
            automation_rule_id=automation_rule_id,
            workflow_template_id=workflow_template_id,
            batch_id=batch_id,
            task_id=task_id,
            trigger_data=trigger_data or {},
            conditions_evaluated=conditions_evaluated or [],
            conditions_met=conditions_met or [],
            actions_executed=actions_executed or [],
            execution_status=execution_status,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
            executed_at=utc_now(),
        )

        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    # Queries

    def get_batch_transitions(self, batch_id: str) -> List[StageTransitionModel]:
        """Get the transition history for a batch, oldest first."""
        return (
            self.db.query(StageTransitionModel)
            .filter(StageTransitionModel.batch_id == batch_id)
            .order_by(StageTransitionModel.transition_time, StageTransitionModel.id)
            .all()
        )

    def get_execution_log(
        self,
        batch_id: Optional[str] = None,
        workflow_template_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowExecutionLogModel]:
        """Query execution-log entries, newest first."""
        query = self.db.query(WorkflowExecutionLogModel)

        if batch_id:
            query = query.filter(WorkflowExecutionLogModel.batch_id == batch_id)
        if workflow_template_id:
            query = query.filter(
                WorkflowExecutionLogModel.workflow_template_id == workflow_template_id
            )
        if action:
            query = query.filter(WorkflowExecutionLogModel.action == action)

        return (
            query.order_by(
                desc(WorkflowExecutionLogModel.created_at),
                desc(WorkflowExecutionLogModel.id),
            )
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_automation_executions(
        self,
        automation_rule_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AutomationExecutionModel]:
        """Query automation execution records, newest first."""
        query = self.db.query(AutomationExecutionModel)

        if automation_rule_id:
            query = query.filter(
                AutomationExecutionModel.automation_rule_id == automation_rule_id
            )
        if batch_id:
            query = query.filter(AutomationExecutionModel.batch_id == batch_id)
        if since:
            query = query.filter(AutomationExecutionModel.executed_at >= since)

        return (
            query.order_by(desc(AutomationExecutionModel.executed_at))
            .limit(limit)
            .all()
        )

    def count_rule_executions(self, automation_rule_id: str) -> int:
        """Number of persisted executions for a rule."""
        return (
            self.db.query(func.count(AutomationExecutionModel.id))
            .filter(AutomationExecutionModel.automation_rule_id == automation_rule_id)
            .scalar()
            or 0
        )
