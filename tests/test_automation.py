"""Tests for the automation rule evaluator and dispatcher."""

import asyncio
import time
from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from production_workflow.core.automation import (
    CONDITIONS_NOT_MET,
    DRY_RUN_DETAILS,
    AutomationDispatcher,
    AutomationEvaluator,
    compare,
)
from production_workflow.db.execution_log_service import ExecutionLogService
from production_workflow.db.models import AutomationRuleModel, TaskModel
from production_workflow.db.services import AutomationRuleService
from production_workflow.errors import BatchNotFoundError, RuleNotFoundError, ValidationError
from production_workflow.schemas import AutomationRuleCreate, AutomationRuleUpdate


def ten_am():
    return datetime(2026, 3, 2, 10, 15)


@pytest.fixture
def make_rule(db):
    def _make(**kwargs):
        data = {
            "name": "Rule",
            "trigger_config": {"type": "manual"},
            "conditions": [],
            "actions": [{"type": "notify", "channel": "#floor", "message": "hello"}],
        }
        data.update(kwargs)
        return AutomationRuleService(db).create_rule(AutomationRuleCreate(**data))

    return _make


@pytest.fixture
def evaluator(db, notifier):
    return AutomationEvaluator(db, notifier=notifier, clock=ten_am, action_timeout=1.0)


class TestCompare:
    """Condition operators."""

    @pytest.mark.parametrize(
        "operator,actual,expected,result",
        [
            ("equals", 5, 5, True),
            ("equals", 5, 6, False),
            ("greater_than", 6, 5, True),
            ("less_than", 4, 5, True),
            ("greater_than_or_equal", 5, 5, True),
            ("less_than_or_equal", 6, 5, False),
            ("contains", "walnut-table", "walnut", True),
            ("between", 10, [8, 17], True),
            ("between", 17, [8, 17], True),
            ("between", 18, [8, 17], False),
        ],
    )
    def test_operators(self, operator, actual, expected, result):
        assert compare(operator, actual, expected) is result

    def test_unknown_operator_is_false(self):
        assert compare("roughly", 5, 5) is False

    def test_incomparable_values_are_false(self):
        assert compare("greater_than", 5, "five") is False

    def test_between_needs_two_bounds(self):
        assert compare("between", 5, [1]) is False


class TestConditions:
    """AND semantics over every condition."""

    @pytest.mark.asyncio
    async def test_no_conditions_is_vacuously_true(self, evaluator, make_rule, notifier):
        rule = make_rule()

        result = await evaluator.execute(rule)

        assert result["success"] is True
        assert result["error"] is None
        assert notifier.sent == [("#floor", "hello")]
        assert result["actions_executed"][0]["executed"] is True

    @pytest.mark.asyncio
    async def test_one_false_condition_blocks_actions(
        self, evaluator, make_rule, make_batch, notifier, db
    ):
        rule = make_rule(
            conditions=[
                {"type": "batch_size", "operator": "greater_than_or_equal", "value": 2},
                {"type": "time_of_day", "operator": "greater_than", "value": 12},
            ]
        )
        batch = make_batch()

        result = await evaluator.execute(rule, batch=batch)

        assert result["success"] is False
        assert result["error"] == CONDITIONS_NOT_MET
        assert [c["result"] for c in result["conditions_evaluated"]] == [True, False]
        assert len(result["conditions_met"]) == 1
        assert result["actions_executed"] == []
        assert notifier.sent == []

        record = ExecutionLogService(db).get_automation_executions(rule.id)[0]
        assert record.execution_status == "failed"
        assert record.error_message == CONDITIONS_NOT_MET

    @pytest.mark.asyncio
    async def test_batch_size_without_batch_is_false(self, evaluator, make_rule):
        rule = make_rule(
            conditions=[{"type": "batch_size", "operator": "greater_than", "value": 0}]
        )

        result = await evaluator.execute(rule)

        assert result["success"] is False
        assert result["conditions_evaluated"][0]["details"] == "No batch in context"

    @pytest.mark.asyncio
    async def test_time_of_day_between(self, evaluator, make_rule):
        rule = make_rule(
            conditions=[{"type": "time_of_day", "operator": "between", "value": [8, 17]}]
        )

        result = await evaluator.execute(rule)

        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_unknown_condition_defaults_true(self, db, evaluator, notifier):
        rule = AutomationRuleModel(
            name="Legacy",
            trigger_config={"type": "manual"},
            conditions=[{"type": "moon_phase", "operator": "equals", "value": "full"}],
            actions=[{"type": "notify"}],
        )
        db.add(rule)
        db.commit()

        result = await evaluator.execute(rule)

        assert result["success"] is True
        evaluation = result["conditions_evaluated"][0]
        assert evaluation["result"] is True
        assert "defaulted to true" in evaluation["details"]
        assert notifier.sent[0][0] == "#production"


class TestActions:
    """Action handlers and their recorded outcomes."""

    @pytest.mark.asyncio
    async def test_unknown_action_is_not_executed(self, db, evaluator):
        rule = AutomationRuleModel(
            name="Legacy",
            trigger_config={"type": "manual"},
            conditions=[],
            actions=[{"type": "launch_rocket"}],
        )
        db.add(rule)
        db.commit()

        result = await evaluator.execute(rule)

        assert result["success"] is True
        assert result["actions_executed"][0]["executed"] is False
        assert result["actions_executed"][0]["details"] == "Unknown action type"

    @pytest.mark.asyncio
    async def test_action_timeout(self, db, make_rule):
        class SlowNotifier:
            async def notify(self, channel, message):
                await asyncio.sleep(5)
                return True

        evaluator = AutomationEvaluator(db, notifier=SlowNotifier(), action_timeout=0.05)
        rule = make_rule()

        result = await evaluator.execute(rule)

        action = result["actions_executed"][0]
        assert action["executed"] is False
        assert "timed out" in action["details"]

    @pytest.mark.asyncio
    async def test_notifier_failure_is_recorded(self, db, make_rule):
        class BrokenNotifier:
            async def notify(self, channel, message):
                raise RuntimeError("webhook down")

        evaluator = AutomationEvaluator(db, notifier=BrokenNotifier(), action_timeout=1.0)
        rule = make_rule()

        result = await evaluator.execute(rule)

        assert result["success"] is True
        assert result["actions_executed"][0]["executed"] is False

    @pytest.mark.asyncio
    async def test_undelivered_notification(self, evaluator, make_rule, notifier):
        notifier.delivered = False
        rule = make_rule()

        result = await evaluator.execute(rule)

        assert result["actions_executed"][0]["executed"] is False
        assert result["actions_executed"][0]["details"] == "Notification to #floor failed"

    @pytest.mark.asyncio
    async def test_create_tasks_action(self, db, evaluator, make_rule, template, make_batch):
        batch = make_batch(workflow=template, start_at_stage="sanding")
        rule = make_rule(actions=[{"type": "create_tasks"}])

        result = await evaluator.execute(rule, batch=batch)

        assert result["actions_executed"][0]["executed"] is True
        assert "3 tasks created" in result["actions_executed"][0]["details"]
        count = db.query(TaskModel).filter(TaskModel.batch_id == batch.id).count()
        assert count == 3

    @pytest.mark.asyncio
    async def test_create_tasks_without_batch(self, evaluator, make_rule):
        rule = make_rule(actions=[{"type": "create_tasks"}])

        result = await evaluator.execute(rule)

        action = result["actions_executed"][0]
        assert action["executed"] is False
        assert action["error_code"] == "NO_BATCH"

    @pytest.mark.asyncio
    async def test_assign_task_action(
        self, db, evaluator, make_rule, template, make_batch, make_worker
    ):
        worker = make_worker("Sam Sander", skills=["qc"])
        batch = make_batch(workflow=template, start_at_stage="qc")
        task = db.query(TaskModel).filter(TaskModel.batch_id == batch.id).one()
        rule = make_rule(actions=[{"type": "assign_task", "assignment_rule": "least_busy"}])

        result = await evaluator.execute(rule, batch=batch, task=task)

        assert result["actions_executed"][0]["executed"] is True
        db.refresh(task)
        assert task.assigned_to == worker.id
        assert task.status == "assigned"

    @pytest.mark.asyncio
    async def test_generate_report_action(self, db, evaluator, make_rule, template, make_batch):
        batch = make_batch(workflow=template, start_at_stage="qc")
        rule = make_rule(actions=[{"type": "generate_report"}])

        await evaluator.execute(rule, batch=batch)

        entries = ExecutionLogService(db).get_execution_log(
            batch_id=batch.id, action="report_generated"
        )
        assert len(entries) == 1
        assert entries[0].action_details["tasks_by_status"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_report_store_failure_does_not_stop_later_actions(
        self, db, evaluator, make_rule, template, make_batch, notifier, monkeypatch
    ):
        batch = make_batch(workflow=template, start_at_stage="qc")
        rule = make_rule(
            actions=[
                {"type": "generate_report"},
                {"type": "notify", "channel": "#floor", "message": "done"},
            ]
        )

        def broken_log(**kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(evaluator.log_service, "log_execution", broken_log)

        result = await evaluator.execute(rule, batch=batch)

        assert result["success"] is True
        report, notify = result["actions_executed"]
        assert report["executed"] is True
        assert "not stored" in report["details"]
        assert notify["executed"] is True
        assert notifier.sent == [("#floor", "done")]


class TestSessionBoundTimeout:
    """Actions that hold the session are bounded at commit time."""

    @pytest.mark.asyncio
    async def test_slow_create_tasks_is_rolled_back(
        self, db, make_rule, template, make_batch, notifier, monkeypatch
    ):
        evaluator = AutomationEvaluator(db, notifier=notifier, action_timeout=0.05)
        batch = make_batch(workflow=template, start_at_stage="sanding")
        rule = make_rule(
            actions=[
                {"type": "create_tasks"},
                {"type": "notify", "channel": "#floor", "message": "next"},
            ]
        )
        generate = evaluator.task_generator.generate_tasks

        def slow_generate(*args, **kwargs):
            time.sleep(0.2)
            return generate(*args, **kwargs)

        monkeypatch.setattr(evaluator.task_generator, "generate_tasks", slow_generate)

        result = await evaluator.execute(rule, batch=batch)

        create, notify = result["actions_executed"]
        assert create["executed"] is False
        assert "timed out" in create["details"]
        assert notify["executed"] is True
        count = db.query(TaskModel).filter(TaskModel.batch_id == batch.id).count()
        assert count == 0

    @pytest.mark.asyncio
    async def test_commit_listener_is_removed(self, db, make_rule, notifier):
        evaluator = AutomationEvaluator(db, notifier=notifier, action_timeout=0.05)
        rule = make_rule()

        await evaluator.execute(rule)
        time.sleep(0.1)

        AutomationRuleService(db).update_rule(rule.id, AutomationRuleUpdate(priority=3))
        db.refresh(rule)
        assert rule.priority == 3


class TestDryRun:
    """Dry runs list actions but change nothing."""

    @pytest.mark.asyncio
    async def test_dry_run_persists_nothing(self, db, evaluator, make_rule, notifier):
        rule = make_rule()

        result = await evaluator.execute(rule, dry_run=True)

        assert result["success"] is True
        assert result["dry_run"] is True
        assert result["actions_executed"] == [
            {
                "action_type": "notify",
                "config": {"type": "notify", "channel": "#floor", "message": "hello"},
                "executed": False,
                "details": DRY_RUN_DETAILS,
            }
        ]
        assert notifier.sent == []
        assert ExecutionLogService(db).count_rule_executions(rule.id) == 0
        db.refresh(rule)
        assert rule.execution_count == 0

    @pytest.mark.asyncio
    async def test_dry_run_reports_unmet_conditions(self, evaluator, make_rule):
        rule = make_rule(
            conditions=[{"type": "time_of_day", "operator": "less_than", "value": 6}]
        )

        result = await evaluator.execute(rule, dry_run=True)

        assert result["success"] is False
        assert result["actions_executed"] == []


class TestExecutionStats:
    """Persisted executions update the rule."""

    @pytest.mark.asyncio
    async def test_counts_and_timestamps(self, db, evaluator, make_rule):
        rule = make_rule()

        await evaluator.execute(rule)
        await evaluator.execute(rule)

        db.refresh(rule)
        assert rule.execution_count == 2
        assert rule.last_executed_at is not None
        assert rule.average_execution_time_ms is not None
        assert ExecutionLogService(db).count_rule_executions(rule.id) == 2


class TestExecuteById:
    """Trigger-source entry point."""

    @pytest.mark.asyncio
    async def test_inactive_rule_is_not_found(self, evaluator, make_rule):
        rule = make_rule(is_active=False)

        with pytest.raises(RuleNotFoundError):
            await evaluator.execute_by_id(rule.id)

    @pytest.mark.asyncio
    async def test_missing_batch(self, evaluator, make_rule):
        rule = make_rule()

        with pytest.raises(BatchNotFoundError):
            await evaluator.execute_by_id(rule.id, batch_id="missing")

    @pytest.mark.asyncio
    async def test_includes_rule_name(self, evaluator, make_rule):
        rule = make_rule(name="Morning ping")

        result = await evaluator.execute_by_id(rule.id, trigger_data={"source": "cron"})

        assert result["rule_name"] == "Morning ping"
        assert result["success"] is True


class TestDispatcher:
    """stage_complete rules fire for the stage that was left."""

    @pytest.mark.asyncio
    async def test_runs_matching_rules_in_priority_order(
        self, db, evaluator, make_rule, template, make_batch, notifier
    ):
        batch = make_batch(workflow=template, start_at_stage="sanding")
        low = make_rule(
            name="Any stage",
            trigger_config={"type": "stage_complete"},
            actions=[{"type": "notify", "message": "any"}],
            priority=1,
        )
        high = make_rule(
            name="After sanding",
            workflow_template_id=template.id,
            trigger_config={"type": "stage_complete", "stage": "sanding"},
            actions=[{"type": "notify", "message": "sanded"}],
            priority=5,
        )
        make_rule(
            name="After qc",
            trigger_config={"type": "stage_complete", "stage": "qc"},
            actions=[{"type": "notify", "message": "inspected"}],
        )
        make_rule(name="Manual only", actions=[{"type": "notify", "message": "manual"}])

        results = await AutomationDispatcher(evaluator).on_stage_transition(
            batch.id, "sanding", workflow_template_id=template.id
        )

        assert [r["automation_rule_id"] for r in results] == [high.id, low.id]
        assert [message for _, message in notifier.sent] == ["sanded", "any"]

    @pytest.mark.asyncio
    async def test_without_workflow_only_global_rules(
        self, evaluator, make_rule, template, make_batch
    ):
        batch = make_batch()
        make_rule(
            name="Scoped",
            workflow_template_id=template.id,
            trigger_config={"type": "stage_complete"},
        )
        global_rule = make_rule(name="Global", trigger_config={"type": "stage_complete"})

        results = await AutomationDispatcher(evaluator).on_stage_transition(batch.id, "sanding")

        assert [r["automation_rule_id"] for r in results] == [global_rule.id]


class TestAutomationRuleService:
    """Rule storage, ordering, deletion and metrics."""

    def test_ordering(self, db, make_rule):
        late = make_rule(name="Late", priority=1, execution_order=2)
        early = make_rule(name="Early", priority=1, execution_order=1)
        urgent = make_rule(name="Urgent", priority=9)

        rules = AutomationRuleService(db).get_rules()

        assert [r.id for r in rules] == [urgent.id, early.id, late.id]

    def test_trigger_type_filter(self, db, make_rule):
        make_rule(name="Manual")
        stage_rule = make_rule(name="Stage", trigger_config={"type": "stage_complete"})

        rules = AutomationRuleService(db).get_rules(trigger_type="stage_complete")

        assert [r.id for r in rules] == [stage_rule.id]

    def test_update_validates(self, db, make_rule):
        rule = make_rule()

        with pytest.raises(ValidationError) as exc_info:
            AutomationRuleService(db).update_rule(
                rule.id, AutomationRuleUpdate(actions=[{"type": "launch"}])
            )

        assert exc_info.value.code == "INVALID_ACTION_TYPE"

    def test_update_applies_fields(self, db, make_rule):
        rule = make_rule()

        updated = AutomationRuleService(db).update_rule(
            rule.id, AutomationRuleUpdate(priority=7, is_active=False), updated_by="w1"
        )

        assert updated.priority == 7
        assert updated.is_active is False
        assert updated.updated_by == "w1"

    def test_delete_without_history_is_hard(self, db, make_rule):
        rule = make_rule()
        service = AutomationRuleService(db)

        outcome = service.delete_rule(rule.id)

        assert outcome["deleted"] is True
        assert service.get_rule(rule.id) is None

    @pytest.mark.asyncio
    async def test_delete_with_history_deactivates(self, db, evaluator, make_rule):
        rule = make_rule()
        await evaluator.execute(rule)
        service = AutomationRuleService(db)

        outcome = service.delete_rule(rule.id)

        assert outcome == {"id": rule.id, "deleted": False, "deactivated": True}
        assert service.require_rule(rule.id).is_active is False

    @pytest.mark.asyncio
    async def test_metrics(self, db, evaluator, make_rule):
        passing = make_rule(name="Passing")
        failing = make_rule(
            name="Failing",
            conditions=[{"type": "batch_size", "operator": "equals", "value": 3}],
        )
        await evaluator.execute(passing)
        await evaluator.execute(passing)
        await evaluator.execute(failing)

        metrics = AutomationRuleService(db).get_metrics(days=7)

        summary = metrics["summary"]
        assert summary["total_rules"] == 2
        assert summary["total_executions"] == 3
        assert summary["successful_executions"] == 2
        assert summary["failed_executions"] == 1
        assert metrics["rules_performance"][0]["id"] == passing.id
        assert metrics["filters"] == {"days": 7, "workflow_template_id": None}
