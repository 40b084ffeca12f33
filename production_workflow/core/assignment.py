"""
Assignment policy resolver.

Chooses a worker for stage work given a policy name and a skill filter:

- round_robin: rotates through the candidates using a persisted cursor per
  (workflow, stage); uniform random choice when persistence is disabled
- least_busy: fewest tasks in {assigned, in_progress}; ties go to the first
  candidate (candidates are ordered by name, then id)
- specific_worker: the caller-supplied worker, which must exist and be active

The candidate pool is every active worker, narrowed to those whose skills
intersect the required skills (or who hold ``all_stages``). When nobody
matches, the unfiltered pool is used instead.
"""

import logging
import random
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.models import RoundRobinCursorModel, TaskModel, WorkerModel
from ..enums import ACTIVE_TASK_STATUSES, ALL_STAGES_SKILL, AssignmentRule, values
from ..errors import ValidationError, WorkerNotFoundError

logger = logging.getLogger(__name__)


class AssignmentResolver:
    """Resolve a worker for an assignment rule.

    Args:
        db: Database session. Cursor updates are flushed, not committed; the
            caller's transaction owns them.
        persistent_round_robin: Override ``settings.round_robin_persistent``
        rng: Random source for non-persistent round robin
    """

    def __init__(
        self,
        db: Session,
        persistent_round_robin: Optional[bool] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        if persistent_round_robin is None:
            persistent_round_robin = get_settings().round_robin_persistent
        self.persistent_round_robin = persistent_round_robin
        self._rng = rng or random.Random()

    def active_workers(self) -> List[WorkerModel]:
        return (
            self.db.query(WorkerModel)
            .filter(WorkerModel.is_active.is_(True))
            .order_by(WorkerModel.name, WorkerModel.id)
            .all()
        )

    def candidates(self, required_skills: Optional[Iterable[str]] = None) -> List[WorkerModel]:
        """Active workers qualified for the skills, or all active workers."""
        pool = self.active_workers()
        skills = set(required_skills or [])
        if not skills:
            return pool

        skilled = [
            worker
            for worker in pool
            if worker.skill_set() & skills or ALL_STAGES_SKILL in worker.skill_set()
        ]
        if not skilled:
            logger.info(
                "No worker has skills %s; falling back to all %d active workers",
                sorted(skills),
                len(pool),
            )
            return pool
        return skilled

    def get_specific_worker(self, worker_id: Optional[str]) -> WorkerModel:
        """Validate a caller-chosen worker.

        Raises:
            ValidationError: no worker id given, or the worker is inactive
            WorkerNotFoundError: unknown worker id
        """
        if not worker_id:
            raise ValidationError(
                "specific_worker_id is required for the specific_worker rule",
                code="WORKER_REQUIRED",
            )
        worker = self.db.query(WorkerModel).filter(WorkerModel.id == worker_id).first()
        if not worker:
            raise WorkerNotFoundError(worker_id)
        if not worker.is_active:
            raise ValidationError(
                f"Worker '{worker_id}' is not active",
                code="WORKER_INACTIVE",
                details={"worker_id": worker_id},
            )
        return worker

    def count_active_tasks(self, worker_ids: List[str]) -> Dict[str, int]:
        """Open task count per worker id (zero for workers with none)."""
        counts = dict.fromkeys(worker_ids, 0)
        if not worker_ids:
            return counts
        rows = (
            self.db.query(TaskModel.assigned_to, func.count(TaskModel.id))
            .filter(TaskModel.assigned_to.in_(worker_ids))
            .filter(TaskModel.status.in_(ACTIVE_TASK_STATUSES))
            .group_by(TaskModel.assigned_to)
            .all()
        )
        for worker_id, count in rows:
            counts[worker_id] = count
        return counts

    def resolve(
        self,
        rule: str,
        stage: Optional[str] = None,
        required_skills: Optional[Iterable[str]] = None,
        workflow_template_id: Optional[str] = None,
        specific_worker_id: Optional[str] = None,
    ) -> Optional[WorkerModel]:
        """Pick a worker for ``rule``.

        Returns:
            The chosen worker, or None when there are no active workers.

        Raises:
            ValidationError: unsupported rule, or a bad specific worker
            WorkerNotFoundError: unknown specific worker
        """
        rule = rule.value if isinstance(rule, AssignmentRule) else rule

        if rule == AssignmentRule.SPECIFIC_WORKER.value:
            return self.get_specific_worker(specific_worker_id)

        if rule not in (AssignmentRule.ROUND_ROBIN.value, AssignmentRule.LEAST_BUSY.value):
            raise ValidationError(
                f"Unsupported assignment rule '{rule}'",
                code="INVALID_ASSIGNMENT_RULE",
                details={
                    "assignment_rule": rule,
                    "valid_assignment_rules": [
                        r for r in values(AssignmentRule) if r != AssignmentRule.NONE.value
                    ],
                },
            )

        pool = self.candidates(required_skills)
        if not pool:
            logger.warning("No active workers available for stage %s", stage)
            return None

        if rule == AssignmentRule.LEAST_BUSY.value:
            worker = self._least_busy(pool)
        else:
            worker = self._round_robin(pool, workflow_template_id, stage)

        logger.debug("Resolved %s for stage %s -> %s", rule, stage, worker.id)
        return worker

    def _least_busy(self, pool: List[WorkerModel]) -> WorkerModel:
        counts = self.count_active_tasks([w.id for w in pool])
        # min() keeps the first of equal keys
        return min(pool, key=lambda w: counts[w.id])

    def _round_robin(
        self,
        pool: List[WorkerModel],
        workflow_template_id: Optional[str],
        stage: Optional[str],
    ) -> WorkerModel:
        if not self.persistent_round_robin:
            return self._rng.choice(pool)

        workflow_key = workflow_template_id or ""
        stage_key = stage or ""
        cursor = (
            self.db.query(RoundRobinCursorModel)
            .filter(
                RoundRobinCursorModel.workflow_key == workflow_key,
                RoundRobinCursorModel.stage == stage_key,
            )
            .first()
        )

        ids = [w.id for w in pool]
        if cursor and cursor.last_worker_id in ids:
            worker = pool[(ids.index(cursor.last_worker_id) + 1) % len(pool)]
        else:
            worker = pool[0]

        if cursor is None:
            cursor = RoundRobinCursorModel(
                workflow_key=workflow_key, stage=stage_key, last_worker_id=worker.id
            )
            self.db.add(cursor)
        else:
            cursor.last_worker_id = worker.id
        self.db.flush()
        return worker
