"""Access policy for workflow operations."""

from .access import (
    AccessConfig,
    Caller,
    is_privileged,
    require_active,
    require_privileged,
)

__all__ = [
    "AccessConfig",
    "Caller",
    "is_privileged",
    "require_active",
    "require_privileged",
]
