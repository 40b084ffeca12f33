"""Automation rule request models."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, constr

from ..enums import ActionType, AssignmentRule, ConditionType, Operator, TriggerType, values
from ..errors import ValidationError


class AutomationRuleCreate(BaseModel):
    """
    Automation rule definition.

    ``trigger_config``, ``conditions`` and ``actions`` are validated against the
    closed vocabularies by ``validate_rule_definition`` below so the
    error lists the accepted values.
    """

    name: constr(min_length=1, max_length=200)
    description: Optional[str] = None
    workflow_template_id: Optional[str] = None
    trigger_config: Dict[str, Any]
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    actions: List[Dict[str, Any]]
    priority: int = 0
    execution_order: int = 0
    is_active: bool = True

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Notify QC on large batches",
                "trigger_config": {"type": "stage_complete", "stage": "sanding"},
                "conditions": [
                    {"type": "batch_size", "operator": "greater_than_or_equal", "value": 5}
                ],
                "actions": [
                    {"type": "notify", "channel": "#qc", "message": "Large batch inbound"}
                ],
                "priority": 10,
            }
        }


class AutomationRuleUpdate(BaseModel):
    name: Optional[constr(min_length=1, max_length=200)] = None
    description: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    actions: Optional[List[Dict[str, Any]]] = None
    priority: Optional[int] = None
    execution_order: Optional[int] = None
    is_active: Optional[bool] = None


class AutomationExecuteRequest(BaseModel):
    """Trigger-source call for one rule."""

    automation_rule_id: constr(min_length=1)
    batch_id: Optional[str] = None
    task_id: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False


def _reject(message: str, code: str, **details: Any) -> None:
    raise ValidationError(message, code=code, details=details)


def validate_rule_definition(
    trigger_config: Optional[Dict[str, Any]],
    conditions: Optional[List[Dict[str, Any]]],
    actions: Optional[List[Dict[str, Any]]],
) -> None:
    """Check a rule's trigger, conditions and actions against the vocabularies.

    ``None`` skips a part (partial updates). Errors list the accepted values.

    Raises:
        ValidationError
    """
    if trigger_config is not None:
        trigger_type = trigger_config.get("type") if isinstance(trigger_config, dict) else None
        if trigger_type not in values(TriggerType):
            _reject(
                f"Invalid trigger_config.type '{trigger_type}'",
                "INVALID_TRIGGER_TYPE",
                trigger_type=trigger_type,
                valid_trigger_types=values(TriggerType),
            )

    for index, condition in enumerate(conditions or []):
        condition_type = condition.get("type")
        if condition_type not in values(ConditionType):
            _reject(
                f"Invalid condition type '{condition_type}' at position {index}",
                "INVALID_CONDITION_TYPE",
                index=index,
                valid_condition_types=values(ConditionType),
            )
        if condition_type == ConditionType.WORKER_AVAILABLE.value:
            continue
        operator = condition.get("operator")
        if operator not in values(Operator):
            _reject(
                f"Invalid operator '{operator}' at position {index}",
                "INVALID_OPERATOR",
                index=index,
                valid_operators=values(Operator),
            )
        if "value" not in condition:
            _reject(
                f"Condition at position {index} has no value",
                "MISSING_CONDITION_VALUE",
                index=index,
            )
        value = condition["value"]
        if operator == Operator.BETWEEN.value and not (
            isinstance(value, (list, tuple)) and len(value) == 2
        ):
            _reject(
                f"'between' needs a [low, high] value at position {index}",
                "INVALID_CONDITION_VALUE",
                index=index,
            )

    if actions is not None:
        if not actions:
            _reject("At least one action is required", "NO_ACTIONS")
        for index, action in enumerate(actions):
            action_type = action.get("type")
            if action_type not in values(ActionType):
                _reject(
                    f"Invalid action type '{action_type}' at position {index}",
                    "INVALID_ACTION_TYPE",
                    index=index,
                    valid_action_types=values(ActionType),
                )
            rule = action.get("assignment_rule")
            if rule is not None and rule not in values(AssignmentRule):
                _reject(
                    f"Invalid assignment_rule '{rule}' at position {index}",
                    "INVALID_ASSIGNMENT_RULE",
                    index=index,
                    valid_assignment_rules=values(AssignmentRule),
                )
