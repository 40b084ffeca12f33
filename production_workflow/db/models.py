"""
SQLAlchemy models for the production workflow engine.

Mutable state lives here: workers, workflow templates, batches, tasks and
automation rules. Append-only history lives in ``execution_log_models``.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, generate_ulid, utc_now


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


batch_type_enum = Enum("model", "wood_type", "custom", name="batch_type")

batch_status_enum = Enum(
    "pending", "active", "completed", "cancelled", name="batch_status"
)

task_status_enum = Enum(
    "pending", "assigned", "in_progress", "blocked", "completed", name="task_status"
)


class WorkerModel(Base):
    """A person who can be assigned tasks."""

    __tablename__ = "workers"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=True, unique=True)
    role = Column(String(50), nullable=False, default="worker", index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    skills = Column(JSON, nullable=False, default=list)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    def skill_set(self) -> set:
        return set(self.skills or [])

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "skills": self.skills or [],
            "created_at": _iso(self.created_at),
        }


class WorkflowTemplateModel(Base):
    """A reusable stage graph.

    ``stages`` holds the ordered stage definitions as dictionaries (see
    ``schemas.workflow.StageDefinition``); ``stage_transitions`` holds the allowed
    directed edges.
    """

    __tablename__ = "workflow_templates"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    name = Column(String(200), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    trigger_rules = Column(JSON, nullable=False, default=dict)

    stages = Column(JSON, nullable=False, default=list)
    stage_transitions = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_default = Column(Boolean, nullable=False, default=False)

    created_by = Column(String(36), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def stage_codes(self) -> List[str]:
        """Stage codes in workflow order."""
        return [stage["stage_code"] for stage in self.stages or []]

    def get_stage(self, stage_code: str) -> Optional[Dict[str, Any]]:
        """Return the stage definition for a code, or None."""
        for stage in self.stages or []:
            if stage.get("stage_code") == stage_code:
                return stage
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_rules": self.trigger_rules or {},
            "stages": self.stages or [],
            "stage_transitions": self.stage_transitions or [],
            "is_active": self.is_active,
            "is_default": self.is_default,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class BatchModel(Base):
    """A named group of order items moving together through a workflow.

    ``version`` is bumped on every stage/status change and guards the
    conditional update that serializes concurrent transitions.
    """

    __tablename__ = "work_batches"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    name = Column(String(200), nullable=False)
    batch_type = Column(batch_type_enum, nullable=False, default="custom")

    workflow_template_id = Column(
        String(36), ForeignKey("workflow_templates.id"), nullable=True, index=True
    )
    current_stage = Column(String(100), nullable=True, index=True)
    status = Column(batch_status_enum, nullable=False, default="pending", index=True)

    order_item_ids = Column(JSON, nullable=False, default=list)
    criteria = Column(JSON, nullable=False, default=dict)

    version = Column(Integer, nullable=False, default=1)

    created_by = Column(String(36), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    workflow_template = relationship("WorkflowTemplateModel")

    __table_args__ = (Index("ix_work_batches_status_stage", "status", "current_stage"),)

    def to_dict(self, include_workflow: bool = False) -> Dict[str, Any]:
        """Convert model to dictionary."""
        data = {
            "id": self.id,
            "name": self.name,
            "batch_type": self.batch_type,
            "workflow_template_id": self.workflow_template_id,
            "current_stage": self.current_stage,
            "status": self.status,
            "order_item_ids": self.order_item_ids or [],
            "criteria": self.criteria or {},
            "version": self.version,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_workflow:
            template = self.workflow_template
            data["workflow_template"] = (
                {
                    "id": template.id,
                    "name": template.name,
                    "description": template.description,
                }
                if template
                else None
            )
        return data


class TaskModel(Base):
    """A unit of work for one order item (or one configured stage task)."""

    __tablename__ = "work_tasks"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    batch_id = Column(String(36), ForeignKey("work_batches.id"), nullable=True, index=True)
    order_item_id = Column(String(128), nullable=True, index=True)
    workflow_template_id = Column(String(36), nullable=True)

    stage = Column(String(100), nullable=False, index=True)
    task_type = Column(String(100), nullable=False)
    title = Column(String(300), nullable=True)
    task_description = Column(Text, nullable=True)

    assigned_to = Column(String(36), ForeignKey("workers.id"), nullable=True, index=True)
    assigned_by = Column(String(36), nullable=True)

    status = Column(task_status_enum, nullable=False, default="pending", index=True)
    priority = Column(String(20), nullable=False, default="normal")
    estimated_hours = Column(Float, nullable=True)

    auto_generated = Column(Boolean, nullable=False, default=False)
    manual_assignment = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "batch_id", "order_item_id", "stage", name="uq_work_tasks_batch_item_stage"
        ),
        Index("ix_work_tasks_batch_stage", "batch_id", "stage"),
        Index("ix_work_tasks_assignee_status", "assigned_to", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "order_item_id": self.order_item_id,
            "workflow_template_id": self.workflow_template_id,
            "stage": self.stage,
            "task_type": self.task_type,
            "title": self.title,
            "task_description": self.task_description,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "status": self.status,
            "priority": self.priority,
            "estimated_hours": self.estimated_hours,
            "auto_generated": self.auto_generated,
            "manual_assignment": self.manual_assignment,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class AutomationRuleModel(Base):
    """A trigger / conditions / actions rule, optionally scoped to one workflow."""

    __tablename__ = "automation_rules"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    workflow_template_id = Column(
        String(36), ForeignKey("workflow_templates.id"), nullable=True, index=True
    )
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    trigger_config = Column(JSON, nullable=False, default=dict)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)

    priority = Column(Integer, nullable=False, default=0)
    execution_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Execution statistics
    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(UTCDateTime, nullable=True)
    average_execution_time_ms = Column(Integer, nullable=True)

    created_by = Column(String(36), nullable=True)
    updated_by = Column(String(36), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_automation_rules_order", "priority", "execution_order"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "workflow_template_id": self.workflow_template_id,
            "name": self.name,
            "description": self.description,
            "trigger_config": self.trigger_config or {},
            "conditions": self.conditions or [],
            "actions": self.actions or [],
            "priority": self.priority,
            "execution_order": self.execution_order,
            "is_active": self.is_active,
            "execution_count": self.execution_count,
            "last_executed_at": _iso(self.last_executed_at),
            "average_execution_time_ms": self.average_execution_time_ms,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class RoundRobinCursorModel(Base):
    """Last worker handed a task for a (workflow, stage) pair."""

    __tablename__ = "round_robin_cursors"

    workflow_key = Column(String(36), primary_key=True)
    stage = Column(String(100), primary_key=True)
    last_worker_id = Column(String(36), nullable=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
