"""
Execution and transition log models.

Append-only history consumed by analytics and by the automation evaluator:
- StageTransitionModel: every batch move between stages
- WorkflowExecutionLogModel: workflow-level actions (transitions, generated
  tasks, template edits) with free-form details
- AutomationExecutionModel: every non-dry-run automation rule evaluation
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from .base import Base, UTCDateTime, generate_ulid, utc_now

transition_type_enum = Enum("automatic", "manual", name="transition_type")

execution_type_enum = Enum("manual", "automatic", name="execution_type")

execution_status_enum = Enum("success", "failed", name="automation_execution_status")


class StageTransitionModel(Base):
    """One recorded move of a batch from one stage (or pending) to another."""

    __tablename__ = "stage_transitions"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    batch_id = Column(String(36), ForeignKey("work_batches.id"), nullable=False, index=True)
    workflow_template_id = Column(String(36), nullable=True, index=True)

    from_stage = Column(String(100), nullable=True)
    to_stage = Column(String(100), nullable=False)
    transition_type = Column(transition_type_enum, nullable=False, default="manual")

    # Null for automated transitions
    transitioned_by = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)

    transition_time = Column(UTCDateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("ix_stage_transitions_batch_time", "batch_id", "transition_time"),
        Index("ix_stage_transitions_workflow_stage", "workflow_template_id", "to_stage"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "workflow_template_id": self.workflow_template_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "transition_type": self.transition_type,
            "transitioned_by": self.transitioned_by,
            "notes": self.notes,
            "transition_time": self.transition_time.isoformat()
            if self.transition_time
            else None,
        }


class WorkflowExecutionLogModel(Base):
    """Workflow-level action record for analytics."""

    __tablename__ = "workflow_execution_log"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    workflow_template_id = Column(String(36), nullable=True, index=True)
    batch_id = Column(String(36), nullable=True, index=True)
    stage = Column(String(100), nullable=True)

    # e.g. stage_transition, tasks_generated, workflow_updated
    action = Column(String(50), nullable=False, index=True)
    action_details = Column(JSON, nullable=False, default=dict)

    executed_by = Column(String(36), nullable=True)
    execution_type = Column(execution_type_enum, nullable=False, default="manual")

    created_at = Column(UTCDateTime, nullable=False, default=utc_now, index=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "workflow_template_id": self.workflow_template_id,
            "batch_id": self.batch_id,
            "stage": self.stage,
            "action": self.action,
            "action_details": self.action_details or {},
            "executed_by": self.executed_by,
            "execution_type": self.execution_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AutomationExecutionModel(Base):
    """Outcome of one automation rule evaluation."""

    __tablename__ = "automation_executions"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    automation_rule_id = Column(
        String(36), ForeignKey("automation_rules.id"), nullable=False, index=True
    )
    workflow_template_id = Column(String(36), nullable=True, index=True)
    batch_id = Column(String(36), nullable=True, index=True)
    task_id = Column(String(36), nullable=True)

    trigger_data = Column(JSON, nullable=False, default=dict)
    conditions_evaluated = Column(JSON, nullable=False, default=list)
    conditions_met = Column(JSON, nullable=False, default=list)
    actions_executed = Column(JSON, nullable=False, default=list)

    execution_status = Column(execution_status_enum, nullable=False)
    error_message = Column(Text, nullable=True)
    execution_time_ms = Column(Integer, nullable=False, default=0)

    executed_at = Column(UTCDateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("ix_automation_executions_rule_time", "automation_rule_id", "executed_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "automation_rule_id": self.automation_rule_id,
            "workflow_template_id": self.workflow_template_id,
            "batch_id": self.batch_id,
            "task_id": self.task_id,
            "trigger_data": self.trigger_data or {},
            "conditions_evaluated": self.conditions_evaluated or [],
            "conditions_met": self.conditions_met or [],
            "actions_executed": self.actions_executed or [],
            "execution_status": self.execution_status,
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
