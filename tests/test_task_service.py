"""Tests for worker-driven task operations."""

import pytest

from production_workflow.core.task_generator import TaskGenerator
from production_workflow.db.services import TaskService
from production_workflow.errors import (
    PermissionDeniedError,
    TaskNotFoundError,
    ValidationError,
)


@pytest.fixture
def sanding_tasks(db, template, make_batch):
    batch = make_batch(workflow=template, start_at_stage="sanding")
    result = TaskGenerator(db).generate_tasks(batch.id)
    return [TaskService(db).require_task(task_id) for task_id in result["task_ids"]]


class TestAssignTask:
    def test_assigns_pending_task(self, db, sanding_tasks, make_worker, manager):
        worker = make_worker("Sam Sander")

        task = TaskService(db).assign_task(sanding_tasks[0].id, worker.id, assigned_by=manager.id)

        assert task.assigned_to == worker.id
        assert task.assigned_by == manager.id
        assert task.status == "assigned"
        assert task.manual_assignment is True

    def test_inactive_worker_rejected(self, db, sanding_tasks, make_worker):
        worker = make_worker("Ina Ctive", is_active=False)

        with pytest.raises(ValidationError) as exc_info:
            TaskService(db).assign_task(sanding_tasks[0].id, worker.id)

        assert exc_info.value.code == "WORKER_INACTIVE"

    def test_completed_task_rejected(self, db, sanding_tasks, make_worker, manager):
        worker = make_worker("Sam Sander")
        service = TaskService(db)
        service.complete_task(sanding_tasks[0].id, manager.id, is_privileged=True)

        with pytest.raises(ValidationError) as exc_info:
            service.assign_task(sanding_tasks[0].id, worker.id)

        assert exc_info.value.code == "TASK_COMPLETED"

    def test_reassignment_last_write_wins(self, db, sanding_tasks, make_worker):
        first = make_worker("Avery")
        second = make_worker("Blake")
        service = TaskService(db)

        service.assign_task(sanding_tasks[0].id, first.id)
        task = service.assign_task(sanding_tasks[0].id, second.id)

        assert task.assigned_to == second.id


class TestAssignBulk:
    def test_assigns_all(self, db, sanding_tasks, make_worker):
        worker = make_worker("Sam Sander")

        tasks = TaskService(db).assign_tasks_bulk([t.id for t in sanding_tasks], worker.id)

        assert len(tasks) == 3
        assert {t.assigned_to for t in tasks} == {worker.id}

    def test_missing_task_changes_nothing(self, db, sanding_tasks, make_worker):
        worker = make_worker("Sam Sander")

        with pytest.raises(TaskNotFoundError):
            TaskService(db).assign_tasks_bulk([sanding_tasks[0].id, "ghost"], worker.id)

        db.refresh(sanding_tasks[0])
        assert sanding_tasks[0].assigned_to is None

    def test_skips_completed(self, db, sanding_tasks, make_worker, manager):
        worker = make_worker("Sam Sander")
        service = TaskService(db)
        service.complete_task(sanding_tasks[0].id, manager.id, is_privileged=True)

        tasks = service.assign_tasks_bulk([t.id for t in sanding_tasks], worker.id)

        assert sanding_tasks[0].id not in {t.id for t in tasks}
        assert len(tasks) == 2


class TestStartAndComplete:
    def test_assignee_starts_and_completes(self, db, sanding_tasks, make_worker):
        worker = make_worker("Sam Sander")
        service = TaskService(db)
        service.assign_task(sanding_tasks[0].id, worker.id)

        started = service.start_task(sanding_tasks[0].id, worker.id)
        assert started.status == "in_progress"
        assert started.started_at is not None

        completed = service.complete_task(sanding_tasks[0].id, worker.id)
        assert completed.status == "completed"
        assert completed.completed_at >= completed.started_at

    def test_other_worker_cannot_start(self, db, sanding_tasks, make_worker):
        owner = make_worker("Avery")
        other = make_worker("Blake")
        service = TaskService(db)
        service.assign_task(sanding_tasks[0].id, owner.id)

        with pytest.raises(PermissionDeniedError):
            service.start_task(sanding_tasks[0].id, other.id)

    def test_privileged_caller_can_start(self, db, sanding_tasks, make_worker, manager):
        owner = make_worker("Avery")
        service = TaskService(db)
        service.assign_task(sanding_tasks[0].id, owner.id)

        task = service.start_task(sanding_tasks[0].id, manager.id, is_privileged=True)

        assert task.status == "in_progress"
        assert task.assigned_to == owner.id

    def test_starting_unassigned_task_claims_it(self, db, sanding_tasks, make_worker):
        worker = make_worker("Sam Sander")

        task = TaskService(db).start_task(sanding_tasks[0].id, worker.id)

        assert task.assigned_to == worker.id

    def test_cannot_start_twice(self, db, sanding_tasks, make_worker):
        worker = make_worker("Sam Sander")
        service = TaskService(db)
        service.start_task(sanding_tasks[0].id, worker.id)

        with pytest.raises(ValidationError) as exc_info:
            service.start_task(sanding_tasks[0].id, worker.id)

        assert exc_info.value.code == "INVALID_TASK_STATUS"

    def test_cannot_complete_twice(self, db, sanding_tasks, manager):
        service = TaskService(db)
        service.complete_task(sanding_tasks[0].id, manager.id, is_privileged=True)

        with pytest.raises(ValidationError):
            service.complete_task(sanding_tasks[0].id, manager.id, is_privileged=True)
