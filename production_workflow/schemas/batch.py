"""Batch request models and batch-type normalization."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, constr, field_validator

from ..enums import (
    AssignmentRule,
    BatchType,
    RequestedBatchType,
    TaskPriority,
    TransitionType,
    values,
)
from ..errors import ValidationError


def normalize_batch_type(
    requested: str, criteria: Optional[Dict[str, Any]] = None
) -> Tuple[str, Dict[str, Any]]:
    """Map a requested batch type onto the persisted set.

    ``stock`` is stored as ``custom`` with ``criteria["stock_batch"] = True``.
    Any other value outside the persisted set is rejected.

    Returns:
        (persisted batch type, criteria copy)
    """
    criteria = dict(criteria or {})
    raw = requested.value if isinstance(requested, RequestedBatchType) else requested

    if raw == RequestedBatchType.STOCK.value:
        criteria["stock_batch"] = True
        return BatchType.CUSTOM.value, criteria
    if raw in values(BatchType):
        return raw, criteria

    raise ValidationError(
        f"Invalid batch_type '{raw}'",
        code="INVALID_BATCH_TYPE",
        details={"batch_type": raw, "valid_batch_types": values(RequestedBatchType)},
    )


class BatchCreate(BaseModel):
    name: constr(min_length=1, max_length=200)
    batch_type: str = RequestedBatchType.CUSTOM.value
    order_item_ids: List[constr(min_length=1, max_length=128)] = Field(
        default_factory=list
    )
    criteria: Dict[str, Any] = Field(default_factory=dict)
    workflow_template_id: Optional[str] = None
    start_at_stage: Optional[str] = None

    @field_validator("order_item_ids")
    @classmethod
    def dedupe_order_items(cls, v: List[str]) -> List[str]:
        """Order items are an ordered set; keep the first occurrence."""
        return list(dict.fromkeys(v))


class AssignWorkflowRequest(BaseModel):
    workflow_template_id: constr(min_length=1)
    start_at_stage: Optional[str] = None


class BatchTransitionRequest(BaseModel):
    stage: str
    transition_type: str = TransitionType.MANUAL.value
    notes: Optional[str] = None
    create_tasks: bool = False
    auto_assign: bool = False
    assignment_rule: AssignmentRule = AssignmentRule.LEAST_BUSY
    # Run stage_complete automation rules for the stage being left
    run_automations: bool = False


class GenerateTasksRequest(BaseModel):
    auto_assign: bool = False
    assignment_rule: AssignmentRule = AssignmentRule.LEAST_BUSY
    specific_worker_id: Optional[str] = None
    override_existing: bool = False
    stage_override: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
