"""
Wire vocabulary for the production workflow engine.

Every value accepted at the boundary (HTTP, CLI, stored rule JSON) is one of
these closed sets. ``str`` enums so members compare equal to their raw values.
"""

from enum import Enum
from typing import List, Type


class PseudoStage(str, Enum):
    """Reserved stage codes valid in every workflow."""

    PENDING = "pending"
    COMPLETED = "completed"


class BatchType(str, Enum):
    """Persisted batch types."""

    MODEL = "model"
    WOOD_TYPE = "wood_type"
    CUSTOM = "custom"


class RequestedBatchType(str, Enum):
    """Batch types accepted at the boundary. STOCK is stored as CUSTOM."""

    MODEL = "model"
    WOOD_TYPE = "wood_type"
    CUSTOM = "custom"
    STOCK = "stock"


class BatchStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TransitionType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class AssignmentRule(str, Enum):
    """Worker selection policies."""

    NONE = "none"
    ROUND_ROBIN = "round_robin"
    LEAST_BUSY = "least_busy"
    SPECIFIC_WORKER = "specific_worker"


class TriggerType(str, Enum):
    """Automation trigger types."""

    STAGE_COMPLETE = "stage_complete"
    TIME_ELAPSED = "time_elapsed"
    MANUAL = "manual"
    SCHEDULE = "schedule"
    BATCH_SIZE = "batch_size"
    BOTTLENECK_DETECTED = "bottleneck_detected"


class ConditionType(str, Enum):
    """Automation condition types the evaluator understands."""

    BATCH_SIZE = "batch_size"
    WORKER_AVAILABLE = "worker_available"
    TIME_OF_DAY = "time_of_day"


class Operator(str, Enum):
    """Comparison operators for automation conditions."""

    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    BETWEEN = "between"


class ActionType(str, Enum):
    """Automation action types."""

    ASSIGN_TASK = "assign_task"
    NOTIFY = "notify"
    CREATE_TASKS = "create_tasks"
    GENERATE_REPORT = "generate_report"


# Task states that count toward a worker's load
ACTIVE_TASK_STATUSES = (TaskStatus.ASSIGNED.value, TaskStatus.IN_PROGRESS.value)

# Batch states that accept no further transitions
CLOSED_BATCH_STATUSES = (BatchStatus.COMPLETED.value, BatchStatus.CANCELLED.value)

# Skill that qualifies a worker for any stage
ALL_STAGES_SKILL = "all_stages"


def values(enum_cls: Type[Enum]) -> List[str]:
    """Raw values of an enum, in declaration order."""
    return [member.value for member in enum_cls]
