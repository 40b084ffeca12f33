"""
Automation rule evaluator and dispatcher.

A rule fires when every one of its conditions holds (AND, vacuously true for
no conditions). Conditions are all evaluated, never short-circuited, so the
result always carries the full diagnostic trail. Actions run in order, each
under its own timeout, and each records its own outcome.

Condition and action types outside the known sets are handled explicitly:
an unknown condition evaluates true with a "defaulted to true" note, an
unknown action is recorded as not executed.

Every non-dry-run evaluation is persisted as an automation execution record
and folded into the rule's statistics. Dry runs persist nothing.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.execution_log_service import ExecutionLogService
from ..db.models import AutomationRuleModel, BatchModel, TaskModel
from ..db.services import AutomationRuleService, TaskService
from ..enums import (
    ActionType,
    AssignmentRule,
    ConditionType,
    Operator,
    TaskStatus,
    TriggerType,
)
from ..errors import BatchNotFoundError, TaskNotFoundError, WorkflowError
from .assignment import AssignmentResolver
from .notifications import DEFAULT_CHANNEL, Notifier, get_notifier
from .task_generator import TaskGenerator

logger = logging.getLogger(__name__)

CONDITIONS_NOT_MET = "Not all conditions were met"
DRY_RUN_DETAILS = "Dry run - action not executed"


class ActionDeadlineExceeded(Exception):
    """Raised on commit when an action has outrun its timeout."""


def compare(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a condition operator. Incomparable values and unknown operators give False."""
    try:
        if operator == Operator.EQUALS.value:
            return actual == expected
        if operator == Operator.GREATER_THAN.value:
            return actual > expected
        if operator == Operator.LESS_THAN.value:
            return actual < expected
        if operator == Operator.GREATER_THAN_OR_EQUAL.value:
            return actual >= expected
        if operator == Operator.LESS_THAN_OR_EQUAL.value:
            return actual <= expected
        if operator == Operator.CONTAINS.value:
            return str(expected) in str(actual)
        if operator == Operator.BETWEEN.value:
            if not isinstance(expected, (list, tuple)) or len(expected) != 2:
                return False
            low, high = expected
            return low <= actual <= high
    except TypeError:
        return False
    return False


class AutomationEvaluator:
    """Evaluate automation rules against a batch / task context.

    Args:
        db: Database session
        notifier: Sink for notify actions (defaults to the configured notifier)
        resolver: Worker resolver for assign_task actions
        task_generator: Generator for create_tasks actions
        clock: Returns the evaluator's local time, used by time_of_day
        action_timeout: Seconds allowed per action
    """

    def __init__(
        self,
        db: Session,
        notifier: Optional[Notifier] = None,
        resolver: Optional[AssignmentResolver] = None,
        task_generator: Optional[TaskGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        action_timeout: Optional[float] = None,
    ):
        self.db = db
        self.notifier = notifier or get_notifier()
        self.resolver = resolver or AssignmentResolver(db)
        self.log_service = ExecutionLogService(db)
        self.task_generator = task_generator or TaskGenerator(
            db, resolver=self.resolver, log_service=self.log_service
        )
        self.rules = AutomationRuleService(db)
        self.tasks = TaskService(db)
        self.clock = clock or datetime.now
        self.action_timeout = (
            action_timeout
            if action_timeout is not None
            else get_settings().automation_action_timeout_seconds
        )

    # Conditions

    def evaluate_condition(
        self, condition: Dict[str, Any], batch: Optional[BatchModel]
    ) -> Dict[str, Any]:
        condition_type = condition.get("type")
        operator = condition.get("operator")
        expected = condition.get("value")
        evaluation = {
            "condition_type": condition_type,
            "config": condition,
            "result": False,
            "details": "",
        }

        if condition_type == ConditionType.BATCH_SIZE.value:
            if batch is None:
                evaluation["details"] = "No batch in context"
            else:
                size = len(batch.order_item_ids or [])
                evaluation["result"] = compare(operator, size, expected)
                evaluation["details"] = f"Batch size: {size} {operator} {expected}"
        elif condition_type == ConditionType.WORKER_AVAILABLE.value:
            evaluation["result"] = True
            evaluation["details"] = "Worker availability checked"
        elif condition_type == ConditionType.TIME_OF_DAY.value:
            hour = self.clock().hour
            evaluation["result"] = compare(operator, hour, expected)
            evaluation["details"] = f"Current hour: {hour} {operator} {expected}"
        else:
            evaluation["result"] = True
            evaluation["details"] = (
                f"Unknown condition type '{condition_type}' - defaulted to true"
            )
        return evaluation

    def evaluate_conditions(
        self, conditions: List[Dict[str, Any]], batch: Optional[BatchModel]
    ) -> List[Dict[str, Any]]:
        return [self.evaluate_condition(c, batch) for c in conditions]

    # Actions

    def _assign_task(
        self, action: Dict[str, Any], task: Optional[TaskModel], actor: Optional[str]
    ) -> str:
        if task is None:
            raise WorkflowError("No task in context", code="NO_TASK")

        rule = action.get("assignment_rule") or AssignmentRule.LEAST_BUSY.value
        required_skills = action.get("required_skills")
        if required_skills is None and task.batch_id:
            batch = self.db.query(BatchModel).filter(BatchModel.id == task.batch_id).first()
            template = batch.workflow_template if batch else None
            stage_def = template.get_stage(task.stage) if template else None
            required_skills = (stage_def or {}).get("required_skills") or []

        worker = self.resolver.resolve(
            rule,
            stage=task.stage,
            required_skills=required_skills,
            workflow_template_id=task.workflow_template_id,
            specific_worker_id=action.get("worker_id"),
        )
        if worker is None:
            raise WorkflowError("No active workers available", code="NO_WORKERS")

        self.tasks.assign_task(task.id, worker.id, assigned_by=actor)
        return f"Task {task.id} assigned to {worker.name} ({rule})"

    async def _notify(
        self,
        rule: AutomationRuleModel,
        action: Dict[str, Any],
        batch: Optional[BatchModel],
    ) -> Dict[str, Any]:
        channel = action.get("channel") or DEFAULT_CHANNEL
        message = action.get("message") or (
            f"Automation rule '{rule.name}' fired"
            + (f" for batch '{batch.name}'" if batch else "")
        )
        try:
            delivered = await self.notifier.notify(channel, message)
        except Exception as e:  # notification is fire-and-forget
            logger.warning("Notifier raised for %s: %s", channel, e)
            delivered = False
        return {
            "executed": bool(delivered),
            "details": f"Notification sent to {channel}"
            if delivered
            else f"Notification to {channel} failed",
        }

    def _create_tasks(
        self, action: Dict[str, Any], batch: Optional[BatchModel], actor: Optional[str]
    ) -> str:
        if batch is None:
            raise WorkflowError("No batch in context", code="NO_BATCH")
        result = self.task_generator.generate_tasks(
            batch.id,
            auto_assign=action.get("auto_assign", False),
            assignment_rule=action.get("assignment_rule") or AssignmentRule.LEAST_BUSY.value,
            specific_worker_id=action.get("worker_id"),
            override_existing=action.get("override_existing", False),
            stage_override=action.get("stage"),
            priority=action.get("priority") or "normal",
            actor=actor,
            execution_type="automatic",
        )
        return f"{result['tasks_created']} tasks created for stage: {result['stage']}"

    def _generate_report(
        self, rule: AutomationRuleModel, batch: Optional[BatchModel], actor: Optional[str]
    ) -> str:
        if batch is None:
            raise WorkflowError("No batch in context", code="NO_BATCH")

        by_status: Dict[str, int] = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.get_tasks(batch_id=batch.id, limit=10000):
            by_status[task.status] = by_status.get(task.status, 0) + 1
        report = {
            "automation_rule_id": rule.id,
            "batch_status": batch.status,
            "current_stage": batch.current_stage,
            "order_items": len(batch.order_item_ids or []),
            "tasks_by_status": by_status,
        }
        try:
            self.log_service.log_execution(
                action="report_generated",
                workflow_template_id=batch.workflow_template_id,
                batch_id=batch.id,
                stage=batch.current_stage,
                action_details=report,
                executed_by=actor,
                execution_type="automatic",
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to store report for batch %s: %s", batch.id, e)
            return f"Report generated for batch '{batch.name}' (not stored)"
        return f"Report generated for batch '{batch.name}'"

    async def _dispatch(
        self,
        rule: AutomationRuleModel,
        action: Dict[str, Any],
        batch: Optional[BatchModel],
        task: Optional[TaskModel],
        actor: Optional[str],
    ) -> Dict[str, Any]:
        action_type = action.get("type")
        if action_type == ActionType.ASSIGN_TASK.value:
            return {"executed": True, "details": self._assign_task(action, task, actor)}
        if action_type == ActionType.NOTIFY.value:
            return await self._notify(rule, action, batch)
        if action_type == ActionType.CREATE_TASKS.value:
            return {"executed": True, "details": self._create_tasks(action, batch, actor)}
        if action_type == ActionType.GENERATE_REPORT.value:
            return {"executed": True, "details": self._generate_report(rule, batch, actor)}
        return {"executed": False, "details": "Unknown action type"}

    async def run_action(
        self,
        rule: AutomationRuleModel,
        action: Dict[str, Any],
        batch: Optional[BatchModel],
        task: Optional[TaskModel],
        actor: Optional[str],
    ) -> Dict[str, Any]:
        """Run one action under the action timeout and record its outcome.

        Awaiting actions are cancelled at the deadline. Session-bound actions
        cannot be interrupted, so any commit they attempt after the deadline
        is refused and their writes are rolled back.
        """
        outcome = {"action_type": action.get("type"), "config": action}
        deadline = time.monotonic() + self.action_timeout

        def check_deadline(session):
            if time.monotonic() > deadline:
                raise ActionDeadlineExceeded()

        event.listen(self.db, "before_commit", check_deadline)
        try:
            outcome.update(
                await asyncio.wait_for(
                    self._dispatch(rule, action, batch, task, actor),
                    timeout=self.action_timeout,
                )
            )
        except (asyncio.TimeoutError, ActionDeadlineExceeded):
            self.db.rollback()
            outcome.update(
                executed=False,
                details=f"Action timed out after {self.action_timeout} seconds",
            )
        except WorkflowError as e:
            outcome.update(executed=False, details=e.message, error_code=e.code)
        finally:
            event.remove(self.db, "before_commit", check_deadline)
        return outcome

    # Entry points

    async def execute(
        self,
        rule: AutomationRuleModel,
        batch: Optional[BatchModel] = None,
        task: Optional[TaskModel] = None,
        actor: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Evaluate a rule and, when every condition holds, run its actions.

        Returns:
            {"success", "conditions_evaluated", "conditions_met",
             "actions_executed", "error", "dry_run", "execution_time_ms"}
        """
        started = time.perf_counter()
        result: Dict[str, Any] = {
            "success": False,
            "conditions_evaluated": [],
            "conditions_met": [],
            "actions_executed": [],
            "error": None,
            "dry_run": dry_run,
        }

        try:
            evaluated = self.evaluate_conditions(rule.conditions or [], batch)
            met = [c for c in evaluated if c["result"]]
            result["conditions_evaluated"] = evaluated
            result["conditions_met"] = met

            if len(met) != len(evaluated):
                result["error"] = CONDITIONS_NOT_MET
            elif dry_run:
                result["actions_executed"] = [
                    {
                        "action_type": action.get("type"),
                        "config": action,
                        "executed": False,
                        "details": DRY_RUN_DETAILS,
                    }
                    for action in rule.actions or []
                ]
                result["success"] = True
            else:
                for action in rule.actions or []:
                    result["actions_executed"].append(
                        await self.run_action(rule, action, batch, task, actor)
                    )
                result["success"] = True
        except Exception as e:  # recorded as a failed execution below
            logger.exception("Automation rule %s failed", rule.id)
            result["success"] = False
            result["error"] = str(e) or e.__class__.__name__

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result["execution_time_ms"] = elapsed_ms

        if not dry_run:
            self._persist(rule, batch, task, actor, trigger_data, result, elapsed_ms)

        logger.info(
            "Automation rule %s evaluated: success=%s met=%d/%d dry_run=%s",
            rule.id,
            result["success"],
            len(result["conditions_met"]),
            len(result["conditions_evaluated"]),
            dry_run,
        )
        return result

    def _persist(
        self,
        rule: AutomationRuleModel,
        batch: Optional[BatchModel],
        task: Optional[TaskModel],
        actor: Optional[str],
        trigger_data: Optional[Dict[str, Any]],
        result: Dict[str, Any],
        elapsed_ms: int,
    ) -> None:
        # Discard any transaction an action left failed
        self.db.rollback()
        self.log_service.record_automation_execution(
            automation_rule_id=rule.id,
            execution_status="success" if result["success"] else "failed",
            execution_time_ms=elapsed_ms,
            workflow_template_id=rule.workflow_template_id,
            batch_id=batch.id if batch else None,
            task_id=task.id if task else None,
            trigger_data={**(trigger_data or {}), "executed_by": actor},
            conditions_evaluated=result["conditions_evaluated"],
            conditions_met=result["conditions_met"],
            actions_executed=result["actions_executed"],
            error_message=result["error"],
        )
        self.rules.update_execution_stats(rule, elapsed_ms)

    async def execute_by_id(
        self,
        rule_id: str,
        batch_id: Optional[str] = None,
        task_id: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Trigger-source entry point: load the rule and context, then execute.

        Raises:
            RuleNotFoundError: missing or inactive rule
            BatchNotFoundError, TaskNotFoundError
        """
        rule = self.rules.require_rule(rule_id, active_only=True)

        batch = None
        if batch_id:
            batch = self.db.query(BatchModel).filter(BatchModel.id == batch_id).first()
            if not batch:
                raise BatchNotFoundError(batch_id)
        task = None
        if task_id:
            task = self.tasks.get_task(task_id)
            if not task:
                raise TaskNotFoundError(task_id)

        result = await self.execute(
            rule,
            batch=batch,
            task=task,
            actor=actor,
            trigger_data=trigger_data,
            dry_run=dry_run,
        )
        result["rule_name"] = rule.name
        return result


class AutomationDispatcher:
    """Run the rules subscribed to workflow events.

    The transition engine never calls this itself; trigger sources (HTTP
    handlers, the CLI, schedulers) call it after a transition succeeds.
    """

    def __init__(self, evaluator: AutomationEvaluator):
        self.evaluator = evaluator

    async def on_stage_transition(
        self,
        batch_id: str,
        completed_stage: Optional[str],
        workflow_template_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Execute the stage_complete rules for the stage a batch just left.

        Rules are the active workflow-scoped and global rules whose trigger is
        ``stage_complete`` with no stage filter or a matching ``stage``, in
        priority / execution order.
        """
        rules = self.evaluator.rules.get_rules(
            workflow_template_id=workflow_template_id,
            active_only=True,
            trigger_type=TriggerType.STAGE_COMPLETE.value,
        )
        if not workflow_template_id:
            rules = [r for r in rules if r.workflow_template_id is None]

        batch = (
            self.evaluator.db.query(BatchModel).filter(BatchModel.id == batch_id).first()
        )
        if not batch:
            raise BatchNotFoundError(batch_id)

        results = []
        for rule in rules:
            stage_filter = (rule.trigger_config or {}).get("stage")
            if stage_filter and stage_filter != completed_stage:
                continue
            result = await self.evaluator.execute(
                rule,
                batch=batch,
                actor=actor,
                trigger_data={
                    "event": TriggerType.STAGE_COMPLETE.value,
                    "stage": completed_stage,
                },
            )
            result["automation_rule_id"] = rule.id
            results.append(result)
        return results
