"""
Access policy for workflow operations.

Pure, testable checks over a resolved caller: no DB access, no FastAPI
request objects.

Policy Rules:
- every operation requires an active caller
- editing templates and automation rules, moving batches, generating and
  assigning tasks, and executing automation rules require a privileged role
- reads and a worker's own task start/complete require only an active caller

Configuration:
- PRIVILEGED_ROLES: Comma-separated privileged roles (default "manager,supervisor")
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from ..errors import PermissionDeniedError


class Caller(BaseModel):
    """The identity collaborator's answer for a request."""

    worker_id: str
    role: Optional[str] = None
    is_active: bool = False


class AccessConfig(BaseModel):
    """Configuration for access checks."""

    privileged_roles: List[str] = ["manager", "supervisor"]


def _get_default_access_config() -> AccessConfig:
    """Build the access config from settings (lazy to avoid import cycles)."""
    from ..config import settings

    return AccessConfig(privileged_roles=settings.privileged_role_set())


def require_active(caller: Optional[Caller]) -> Caller:
    """Reject missing or inactive callers.

    Raises:
        PermissionDeniedError: code INACTIVE_WORKER
    """
    if caller is None or not caller.is_active:
        raise PermissionDeniedError(
            "Caller is not an active worker",
            code="INACTIVE_WORKER",
        )
    return caller


def is_privileged(caller: Caller, config: Optional[AccessConfig] = None) -> bool:
    if config is None:
        config = _get_default_access_config()
    return caller.is_active and caller.role in config.privileged_roles


def require_privileged(
    caller: Optional[Caller], config: Optional[AccessConfig] = None
) -> Caller:
    """Reject callers without a privileged role.

    Raises:
        PermissionDeniedError: code INACTIVE_WORKER or ROLE_NOT_PRIVILEGED
    """
    caller = require_active(caller)
    if config is None:
        config = _get_default_access_config()
    if caller.role not in config.privileged_roles:
        raise PermissionDeniedError(
            f"Role '{caller.role}' may not perform this operation. "
            f"Allowed roles: {', '.join(config.privileged_roles)}",
            code="ROLE_NOT_PRIVILEGED",
            details={"role": caller.role, "allowed_roles": config.privileged_roles},
        )
    return caller
