"""
Automation rule routes.

``POST /automation/execute`` is the trigger-source entry point: schedulers and
operators call it per rule. There is no internal scheduler.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.automation import AutomationEvaluator
from ..core.notifications import Notifier
from ..db.base import get_db, utc_now
from ..db.execution_log_service import ExecutionLogService
from ..db.services import AutomationRuleService
from ..deps import active_caller, notifier, privileged_caller
from ..policy.access import Caller
from ..schemas import (
    AutomationExecuteRequest,
    AutomationRuleCreate,
    AutomationRuleUpdate,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/automation", tags=["automation"])


@router.post("/rules", status_code=201)
async def create_rule(
    rule: AutomationRuleCreate,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create an automation rule."""
    db_rule = AutomationRuleService(db).create_rule(rule, created_by=caller.worker_id)
    return {"status": "success", "rule": db_rule.to_dict()}


@router.get("/rules")
async def list_rules(
    workflow_template_id: Optional[str] = None,
    active_only: bool = False,
    trigger_type: Optional[str] = None,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List rules, highest priority first."""
    rules = AutomationRuleService(db).get_rules(
        workflow_template_id=workflow_template_id,
        active_only=active_only,
        trigger_type=trigger_type,
    )
    return [r.to_dict() for r in rules]


@router.get("/rules/{rule_id}")
async def get_rule(
    rule_id: str,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Get an automation rule by ID."""
    return AutomationRuleService(db).require_rule(rule_id).to_dict()


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    update: AutomationRuleUpdate,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Edit an automation rule."""
    db_rule = AutomationRuleService(db).update_rule(
        rule_id, update, updated_by=caller.worker_id
    )
    return {"status": "success", "rule": db_rule.to_dict()}


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Delete a rule, or deactivate it when it has execution history."""
    return {"status": "success", **AutomationRuleService(db).delete_rule(rule_id)}


@router.post("/execute")
async def execute_rule(
    request: AutomationExecuteRequest,
    caller: Caller = Depends(privileged_caller),
    db: Session = Depends(get_db),
    sink: Notifier = Depends(notifier),
) -> Dict[str, Any]:
    """Evaluate one rule against an optional batch / task."""
    result = await AutomationEvaluator(db, notifier=sink).execute_by_id(
        request.automation_rule_id,
        batch_id=request.batch_id,
        task_id=request.task_id,
        trigger_data={**request.trigger_data, "manual_execution": True},
        dry_run=request.dry_run,
        actor=caller.worker_id,
    )
    logger.info(
        "Automation rule executed",
        rule_id=request.automation_rule_id,
        success=result["success"],
        dry_run=request.dry_run,
    )
    return {
        "success": result["success"],
        "message": "Dry run completed" if request.dry_run else "Automation rule executed",
        "execution": result,
    }


@router.get("/executions")
async def list_executions(
    rule_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=1000),
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Recent automation executions, newest first."""
    executions = ExecutionLogService(db).get_automation_executions(
        automation_rule_id=rule_id,
        batch_id=batch_id,
        since=utc_now() - timedelta(days=days),
        limit=limit,
    )
    return [e.to_dict() for e in executions]


@router.get("/metrics")
async def metrics(
    days: int = Query(30, ge=1, le=365),
    workflow_template_id: Optional[str] = None,
    caller: Caller = Depends(active_caller),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Automation execution summary and per-rule performance."""
    return AutomationRuleService(db).get_metrics(
        days=days, workflow_template_id=workflow_template_id
    )
