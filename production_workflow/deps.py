"""
FastAPI dependencies: caller resolution and collaborators.

Authentication is out of scope; the caller is identified by the ``X-Worker-Id``
header and looked up in the workers table.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .core.notifications import Notifier, get_notifier
from .db.base import get_db
from .db.models import WorkerModel
from .policy.access import Caller, require_active, require_privileged


def get_caller(
    x_worker_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Caller:
    """Resolve the calling worker or reject the request."""
    if not x_worker_id:
        raise HTTPException(status_code=401, detail="X-Worker-Id header is required")

    worker = db.query(WorkerModel).filter(WorkerModel.id == x_worker_id).first()
    if not worker:
        raise HTTPException(status_code=401, detail="Unknown worker")

    return Caller(worker_id=worker.id, role=worker.role, is_active=worker.is_active)


def active_caller(caller: Caller = Depends(get_caller)) -> Caller:
    return require_active(caller)


def privileged_caller(caller: Caller = Depends(get_caller)) -> Caller:
    return require_privileged(caller)


def notifier() -> Notifier:
    return get_notifier()
