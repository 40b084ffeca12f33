"""Task and worker request models."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, conlist, constr


class AssignTaskRequest(BaseModel):
    worker_id: constr(min_length=1)


class BulkAssignRequest(BaseModel):
    task_ids: conlist(constr(min_length=1), min_length=1, max_length=500)
    worker_id: constr(min_length=1)


class WorkerCreate(BaseModel):
    name: constr(min_length=1, max_length=200)
    email: Optional[constr(min_length=3, max_length=320)] = None
    role: constr(min_length=1, max_length=50) = "worker"
    skills: List[str] = Field(default_factory=list)
    is_active: bool = True
