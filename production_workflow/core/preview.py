"""
Workflow preview: estimated flow of a sample batch through a template.
"""

import math
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..db.models import WorkerModel, WorkflowTemplateModel
from ..enums import ALL_STAGES_SKILL, AssignmentRule
from .stage_graph import next_stages

DEFAULT_HOURS_PER_ITEM = 2.0

# Workers sampled per stage in the preview payload
SAMPLE_WORKERS = 3


def _skilled(workers: List[WorkerModel], stage: Dict[str, Any]) -> List[WorkerModel]:
    wanted = {stage["stage_code"], *(stage.get("required_skills") or [])}
    return [
        w for w in workers if w.skill_set() & wanted or ALL_STAGES_SKILL in w.skill_set()
    ]


def preview_workflow(
    db: Session, template: WorkflowTemplateModel, sample_batch_size: int = 10
) -> Dict[str, Any]:
    """Estimate per-stage capacity and duration for a sample batch size.

    A stage's parallel capacity is min(skilled active workers, batch size);
    its duration is ceil(batch size / capacity) * hours per item, or just the
    hours per item when nobody is skilled for it.
    """
    workers = (
        db.query(WorkerModel)
        .filter(WorkerModel.is_active.is_(True))
        .order_by(WorkerModel.name, WorkerModel.id)
        .all()
    )
    stages = template.stages or []
    transitions = template.stage_transitions or []

    preview_stages = []
    for index, stage in enumerate(stages):
        code = stage["stage_code"]
        skilled = _skilled(workers, stage)
        hours = stage.get("estimated_hours") or DEFAULT_HOURS_PER_ITEM
        capacity = min(len(skilled), sample_batch_size)
        duration = math.ceil(sample_batch_size / capacity) * hours if capacity else hours

        preview_stages.append(
            {
                "stage_code": code,
                "stage_name": stage.get("display_name") or code,
                "description": stage.get("description")
                or f"{stage.get('display_name') or code} processing",
                "estimated_hours_per_item": hours,
                "estimated_total_duration": duration,
                "automation_type": "automated" if stage.get("is_automated") else "manual",
                "assignment_rule": stage.get("auto_assign_rule") or AssignmentRule.NONE.value,
                "available_workers": len(skilled),
                "sample_workers": [
                    {"id": w.id, "name": w.name} for w in skilled[:SAMPLE_WORKERS]
                ],
                "batch_capacity": capacity,
                "next_stages": next_stages(transitions, code),
                "dependencies": [stages[index - 1]["stage_code"]] if index > 0 else [],
                "is_optional": bool(stage.get("is_optional")),
            }
        )

    automated = sum(1 for s in preview_stages if s["automation_type"] == "automated")
    total = len(preview_stages)
    return {
        "workflow": {
            "id": template.id,
            "name": template.name,
            "description": template.description,
            "is_active": template.is_active,
        },
        "sample_batch_size": sample_batch_size,
        "stages": preview_stages,
        "statistics": {
            "total_stages": total,
            "automated_stages": automated,
            "manual_stages": total - automated,
            "automation_percentage": round(automated / total * 100) if total else 0,
            "estimated_total_hours": sum(s["estimated_total_duration"] for s in preview_stages),
            "bottleneck_stages": [
                s["stage_code"] for s in preview_stages if s["available_workers"] < 2
            ],
        },
    }
