"""
Task and worker routes.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db.base import get_db
from ..db.services import TaskService, WorkerService
from ..deps import active_caller, privileged_caller
from ..errors import WorkerNotFoundError
from ..policy.access import Caller, is_privileged
from ..schemas import AssignTaskRequest, BulkAssignRequest, WorkerCreate

router = APIRouter(tags=["tasks"])


@router.get("/tasks")
async def list_tasks(
    batch_id: Optional[str] = None,
    stage: Optional[str] = None,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List tasks with optional filtering."""
    tasks = TaskService(db).get_tasks(
        batch_id=batch_id,
        stage=stage,
        status=status,
        assigned_to=assigned_to,
        limit=limit,
        offset=offset,
    )
    return [t.to_dict() for t in tasks]


@router.post("/tasks/assign-bulk")
async def assign_tasks_bulk(
    request: BulkAssignRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Assign many tasks to one worker."""
    tasks = TaskService(db).assign_tasks_bulk(
        request.task_ids, request.worker_id, assigned_by=caller.worker_id
    )
    return {
        "status": "success",
        "assigned_count": len(tasks),
        "tasks": [t.to_dict() for t in tasks],
    }


@router.get("/tasks/{task_id}")
async def get_task(
    task_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Get a task by ID."""
    return TaskService(db).require_task(task_id).to_dict()


@router.post("/tasks/{task_id}/assign")
async def assign_task(
    task_id: str,
    request: AssignTaskRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Assign a task to a worker."""
    task = TaskService(db).assign_task(task_id, request.worker_id, assigned_by=caller.worker_id)
    return {"status": "success", "task": task.to_dict()}


@router.post("/tasks/{task_id}/start")
async def start_task(
    task_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Start working on a task."""
    task = TaskService(db).start_task(
        task_id, caller.worker_id, is_privileged=is_privileged(caller)
    )
    return {"status": "success", "task": task.to_dict()}


@router.post("/tasks/{task_id}/complete")
async def complete_task(
    task_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Mark a task completed."""
    task = TaskService(db).complete_task(
        task_id, caller.worker_id, is_privileged=is_privileged(caller)
    )
    return {"status": "success", "task": task.to_dict()}


@router.post("/workers", status_code=201, tags=["workers"])
async def create_worker(
    worker: WorkerCreate,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Register a worker."""
    db_worker = WorkerService(db).create_worker(worker)
    return {"status": "success", "worker": db_worker.to_dict()}


@router.get("/workers", tags=["workers"])
async def list_workers(
    active_only: bool = True,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List workers."""
    return [w.to_dict() for w in WorkerService(db).get_workers(active_only=active_only)]


@router.get("/workers/{worker_id}", tags=["workers"])
async def get_worker(
    worker_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Get a worker by ID."""
    worker = WorkerService(db).get_worker(worker_id)
    if not worker:
        raise WorkerNotFoundError(worker_id)
    return worker.to_dict()
