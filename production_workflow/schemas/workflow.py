"""
Workflow template request models.

Compatibility: stage definitions also accept the dashboard's field names
('stage' for stage_code, 'name' for display_name) and transitions accept
'from_stage' / 'to_stage'. Legacy names are resolved and cleared on load.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, conint, constr, model_validator

from ..enums import AssignmentRule, TaskPriority, TransitionType


class TaskSpec(BaseModel):
    """A task created for the whole batch when it enters a stage."""

    type: constr(min_length=1, max_length=100)
    title: constr(min_length=1, max_length=300)
    priority: TaskPriority = TaskPriority.NORMAL
    estimated_minutes: Optional[conint(ge=0)] = None


class StageDefinition(BaseModel):
    """One stage of a workflow."""

    stage_code: Optional[constr(min_length=1, max_length=100)] = None
    display_name: Optional[constr(min_length=1, max_length=200)] = None
    description: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    required_skills: List[str] = Field(default_factory=list)
    is_automated: bool = False
    auto_assign_rule: AssignmentRule = AssignmentRule.NONE
    is_optional: bool = False
    tasks: List[TaskSpec] = Field(default_factory=list)

    # Legacy aliases
    stage: Optional[constr(min_length=1, max_length=100)] = None
    name: Optional[constr(min_length=1, max_length=200)] = None

    @model_validator(mode="after")
    def resolve_legacy_aliases(self) -> "StageDefinition":
        if self.stage_code is None and self.stage is not None:
            object.__setattr__(self, "stage_code", self.stage)
        if self.display_name is None and self.name is not None:
            object.__setattr__(self, "display_name", self.name)
        object.__setattr__(self, "stage", None)
        object.__setattr__(self, "name", None)
        return self

    def to_storage(self) -> Dict[str, Any]:
        """Dictionary form stored in ``workflow_templates.stages``."""
        return self.model_dump(mode="json", exclude={"stage", "name"})


class StageTransitionDefinition(BaseModel):
    """An allowed directed edge. from_stage_code None means the workflow start."""

    from_stage_code: Optional[str] = None
    to_stage_code: Optional[constr(min_length=1, max_length=100)] = None
    transition_type: TransitionType = TransitionType.MANUAL

    # Legacy aliases
    from_stage: Optional[str] = None
    to_stage: Optional[constr(min_length=1, max_length=100)] = None

    @model_validator(mode="after")
    def resolve_legacy_aliases(self) -> "StageTransitionDefinition":
        if self.from_stage_code is None and self.from_stage is not None:
            object.__setattr__(self, "from_stage_code", self.from_stage)
        if self.to_stage_code is None and self.to_stage is not None:
            object.__setattr__(self, "to_stage_code", self.to_stage)
        if self.to_stage_code is None:
            raise ValueError("Either 'to_stage_code' or 'to_stage' must be provided")
        object.__setattr__(self, "from_stage", None)
        object.__setattr__(self, "to_stage", None)
        return self

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"from_stage", "to_stage"})


class WorkflowTemplateCreate(BaseModel):
    name: constr(min_length=1, max_length=200)
    description: Optional[str] = None
    trigger_rules: Dict[str, Any] = Field(default_factory=dict)
    stages: List[StageDefinition] = Field(default_factory=list)
    stage_transitions: List[StageTransitionDefinition] = Field(default_factory=list)
    is_active: bool = True
    is_default: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Standard Build",
                "description": "Sanding then quality control",
                "stages": [
                    {
                        "stage_code": "sanding",
                        "display_name": "Sanding",
                        "estimated_hours": 1.5,
                        "required_skills": ["sanding"],
                        "auto_assign_rule": "least_busy",
                    },
                    {
                        "stage_code": "qc",
                        "display_name": "Quality Control",
                        "required_skills": ["qc"],
                        "tasks": [
                            {"type": "inspection", "title": "Final inspection"}
                        ],
                    },
                ],
                "stage_transitions": [
                    {"from_stage_code": None, "to_stage_code": "sanding"},
                    {"from_stage_code": "sanding", "to_stage_code": "qc"},
                ],
            }
        }


class WorkflowTemplateUpdate(BaseModel):
    """Partial update. Stages and transitions are replaced wholesale when given."""

    name: Optional[constr(min_length=1, max_length=200)] = None
    description: Optional[str] = None
    trigger_rules: Optional[Dict[str, Any]] = None
    stages: Optional[List[StageDefinition]] = None
    stage_transitions: Optional[List[StageTransitionDefinition]] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None


class WorkflowDuplicateRequest(BaseModel):
    name: Optional[constr(min_length=1, max_length=200)] = None
    description: Optional[str] = None

