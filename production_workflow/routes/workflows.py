"""
Workflow template routes.

Templates are created, edited, duplicated and deactivated by privileged
callers; any active worker may read and preview them.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.preview import preview_workflow
from ..db.base import get_db
from ..db.services import WorkflowTemplateService
from ..deps import active_caller, privileged_caller
from ..policy.access import Caller
from ..schemas import (
    WorkflowDuplicateRequest,
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
)

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.post("", status_code=201)
async def create_workflow(
    template: WorkflowTemplateCreate,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create a new workflow template."""
    db_template = WorkflowTemplateService(db).create_template(
        template, created_by=caller.worker_id
    )
    return {"status": "success", "workflow": db_template.to_dict()}


@router.get("")
async def list_workflows(
    active_only: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List workflow templates."""
    templates = WorkflowTemplateService(db).get_templates(
        active_only=active_only, limit=limit, offset=offset
    )
    return [t.to_dict() for t in templates]


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Get a workflow template by ID."""
    return WorkflowTemplateService(db).require_template(workflow_id).to_dict()


@router.patch("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    update: WorkflowTemplateUpdate,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Edit a workflow template."""
    db_template = WorkflowTemplateService(db).update_template(
        workflow_id, update, updated_by=caller.worker_id
    )
    return {"status": "success", "workflow": db_template.to_dict()}


@router.delete("/{workflow_id}")
async def deactivate_workflow(
    workflow_id: str,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Deactivate a workflow template. Templates are never deleted."""
    db_template = WorkflowTemplateService(db).deactivate_template(
        workflow_id, actor=caller.worker_id
    )
    return {"status": "success", "workflow": db_template.to_dict()}


@router.post("/{workflow_id}/duplicate", status_code=201)
async def duplicate_workflow(
    workflow_id: str,
    request: WorkflowDuplicateRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Copy a template into a new, inactive template."""
    db_template = WorkflowTemplateService(db).duplicate_template(
        workflow_id,
        new_name=request.name,
        new_description=request.description,
        actor=caller.worker_id,
    )
    return {"status": "success", "workflow": db_template.to_dict()}


@router.get("/{workflow_id}/preview")
async def preview(
    workflow_id: str,
    sample_batch_size: int = Query(10, ge=1, le=10000),
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Estimate how a sample batch would flow through the template."""
    template = WorkflowTemplateService(db).require_template(workflow_id)
    return preview_workflow(db, template, sample_batch_size)
