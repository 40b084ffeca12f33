"""
Batch routes: creation, workflow assignment, stage transitions and task
generation.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.automation import AutomationDispatcher, AutomationEvaluator
from ..core.notifications import Notifier
from ..core.task_generator import TaskGenerator
from ..core.transitions import StageTransitionEngine
from ..db.base import get_db
from ..db.execution_log_service import ExecutionLogService
from ..db.services import BatchService, TaskService
from ..deps import active_caller, notifier, privileged_caller
from ..errors import BatchNotFoundError
from ..policy.access import Caller
from ..schemas import (
    AssignWorkflowRequest,
    BatchCreate,
    BatchTransitionRequest,
    GenerateTasksRequest,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/batches", tags=["batches"])


def _require_batch(db: Session, batch_id: str):
    batch = BatchService(db).get_batch(batch_id)
    if not batch:
        raise BatchNotFoundError(batch_id)
    return batch


@router.post("", status_code=201)
async def create_batch(
    batch: BatchCreate,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create a batch, optionally assigning a workflow right away."""
    db_batch = BatchService(db).create_batch(batch, created_by=caller.worker_id)
    logger.info("Batch created", batch_id=db_batch.id, batch_type=db_batch.batch_type)

    if batch.workflow_template_id:
        result = StageTransitionEngine(db).assign_workflow(
            db_batch.id,
            batch.workflow_template_id,
            start_at_stage=batch.start_at_stage,
            actor=caller.worker_id,
        )
        return {"status": "success", "batch": result["batch"]}

    return {"status": "success", "batch": db_batch.to_dict(include_workflow=True)}


@router.get("")
async def list_batches(
    status: Optional[str] = None,
    workflow_template_id: Optional[str] = None,
    current_stage: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List batches with optional filtering."""
    batches = BatchService(db).get_batches(
        status=status,
        workflow_template_id=workflow_template_id,
        current_stage=current_stage,
        limit=limit,
        offset=offset,
    )
    return [b.to_dict(include_workflow=True) for b in batches]


@router.get("/{batch_id}")
async def get_batch(
    batch_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Get a batch by ID."""
    return _require_batch(db, batch_id).to_dict(include_workflow=True)


@router.post("/{batch_id}/assign-workflow")
async def assign_workflow(
    batch_id: str,
    request: AssignWorkflowRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Attach a workflow template to a batch."""
    result = StageTransitionEngine(db).assign_workflow(
        batch_id,
        request.workflow_template_id,
        start_at_stage=request.start_at_stage,
        actor=caller.worker_id,
    )
    return {
        "status": "success",
        "message": "Workflow assigned to batch successfully",
        **result,
    }


@router.post("/{batch_id}/transition")
async def transition_batch(
    batch_id: str,
    request: BatchTransitionRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
    sink: Notifier = Depends(notifier),
) -> Dict[str, Any]:
    """Move a batch to another stage of its workflow."""
    result = StageTransitionEngine(db).transition(
        batch_id,
        request.stage,
        actor=caller.worker_id,
        transition_type=request.transition_type,
        notes=request.notes,
        create_tasks=request.create_tasks,
        auto_assign=request.auto_assign,
        assignment_rule=request.assignment_rule,
    )
    logger.info(
        "Batch transitioned",
        batch_id=batch_id,
        from_stage=result["previous_stage"],
        to_stage=result["requested_stage"],
        by=caller.worker_id,
    )

    if request.run_automations and result["previous_stage"]:
        dispatcher = AutomationDispatcher(AutomationEvaluator(db, notifier=sink))
        result["automations"] = await dispatcher.on_stage_transition(
            batch_id,
            result["previous_stage"],
            workflow_template_id=result["batch"]["workflow_template_id"],
            actor=caller.worker_id,
        )

    return {"status": "success", **result}


@router.post("/{batch_id}/generate-tasks", status_code=201)
async def generate_tasks(
    batch_id: str,
    request: GenerateTasksRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create one task per order item for the batch's stage."""
    result = TaskGenerator(db).generate_tasks(
        batch_id,
        auto_assign=request.auto_assign,
        assignment_rule=request.assignment_rule,
        specific_worker_id=request.specific_worker_id,
        override_existing=request.override_existing,
        stage_override=request.stage_override,
        priority=request.priority,
        actor=caller.worker_id,
    )
    return {"status": "success", **result}


@router.post("/{batch_id}/cancel")
async def cancel_batch(
    batch_id: str,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Cancel a batch."""
    batch = StageTransitionEngine(db).cancel_batch(batch_id, actor=caller.worker_id)
    return {"status": "success", "batch": batch}


@router.get("/{batch_id}/tasks")
async def list_batch_tasks(
    batch_id: str,
    stage: Optional[str] = None,
    status: Optional[str] = None,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List a batch's tasks, optionally for one stage."""
    _require_batch(db, batch_id)
    tasks = TaskService(db).get_tasks(batch_id=batch_id, stage=stage, status=status, limit=10000)
    return [t.to_dict() for t in tasks]


@router.get("/{batch_id}/history")
async def batch_history(
    batch_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Stage transitions (oldest first) and execution-log entries for a batch."""
    _require_batch(db, batch_id)
    log = ExecutionLogService(db)
    return {
        "batch_id": batch_id,
        "transitions": [t.to_dict() for t in log.get_batch_transitions(batch_id)],
        "execution_log": [e.to_dict() for e in log.get_execution_log(batch_id=batch_id)],
    }
