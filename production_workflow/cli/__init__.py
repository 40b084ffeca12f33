"""
Command Line Interface for the production workflow engine.
"""

import asyncio
import json
from typing import List, Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..core.automation import AutomationEvaluator
from ..core.notifications import get_notifier
from ..db.base import get_session_local, init_database
from ..db.execution_log_service import ExecutionLogService
from ..db.services import WorkerService, WorkflowTemplateService
from ..errors import WorkflowError
from ..logging_config import configure_logging
from ..schemas import WorkerCreate

app = typer.Typer(help="Production Workflow - batch and stage workflow engine")
console = Console()


@app.callback()
def main():
    """Production Workflow - batch and stage workflow engine."""
    configure_logging(get_settings())


def _fail(error: WorkflowError) -> None:
    console.print(f"❌ [{error.code}] {error.message}")
    if error.details:
        console.print(error.details)
    raise typer.Exit(code=1)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Run in development mode with reload"),
):
    """Start the HTTP API."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit("🏭 Starting Production Workflow", style="bold blue"))
    console.print(f"🚀 Listening on http://{host}:{port}")
    uvicorn.run(
        "production_workflow.main:app",
        host=host,
        port=port,
        reload=dev,
        workers=1 if dev else settings.api_workers,
    )


@app.command("init-db")
def init_db():
    """Create all database tables."""
    init_database()
    console.print("✅ Database initialized")


@app.command("create-worker")
def create_worker(
    name: str = typer.Argument(..., help="Worker name"),
    email: str = typer.Argument(..., help="Worker email (unique)"),
    role: str = typer.Option("worker", help="Worker role"),
    skill: List[str] = typer.Option([], "--skill", help="Skill (repeatable)"),
):
    """Register a worker. Useful for bootstrapping the first manager."""
    db = get_session_local()()
    try:
        worker = WorkerService(db).create_worker(
            WorkerCreate(name=name, email=email, role=role, skills=skill)
        )
        console.print(f"✅ Created worker {worker.name} ({worker.id})")
    except WorkflowError as e:
        _fail(e)
    finally:
        db.close()


@app.command()
def workflows(
    active_only: bool = typer.Option(False, help="Only show active templates"),
):
    """List workflow templates."""
    db = get_session_local()()
    try:
        templates = WorkflowTemplateService(db).get_templates(active_only=active_only)
        if not templates:
            console.print("No workflow templates")
            return

        table = Table(
            title="Workflow Templates", show_header=True, header_style="bold cyan"
        )
        table.add_column("ID", style="dim")
        table.add_column("Name", style="yellow")
        table.add_column("Active", style="green")
        table.add_column("Stages", style="magenta")

        for template in templates:
            table.add_row(
                template.id,
                template.name,
                "🟢" if template.is_active else "🔴",
                " → ".join(template.stage_codes()),
            )
        console.print(table)
    finally:
        db.close()


@app.command("execute-rule")
def execute_rule(
    rule_id: str = typer.Argument(..., help="Automation rule ID"),
    batch_id: Optional[str] = typer.Option(None, help="Batch in context"),
    task_id: Optional[str] = typer.Option(None, help="Task in context"),
    dry_run: bool = typer.Option(False, help="Evaluate without executing actions"),
    trigger_data: str = typer.Option("{}", help="JSON trigger data"),
):
    """Execute one automation rule. Entry point for schedulers and cron."""
    try:
        data = json.loads(trigger_data)
    except json.JSONDecodeError:
        console.print("❌ Invalid JSON trigger data")
        raise typer.Exit(code=1)

    db = get_session_local()()
    try:
        evaluator = AutomationEvaluator(db, notifier=get_notifier())
        result = asyncio.run(
            evaluator.execute_by_id(
                rule_id,
                batch_id=batch_id,
                task_id=task_id,
                trigger_data=data,
                dry_run=dry_run,
            )
        )
    except WorkflowError as e:
        _fail(e)
    finally:
        db.close()

    status = "✅" if result["success"] else "❌"
    console.print(f"{status} Rule {result.get('rule_name', rule_id)}")
    if result.get("error"):
        console.print(f"   {result['error']}")

    table = Table(title="Actions", show_header=True, header_style="bold magenta")
    table.add_column("Action", style="cyan")
    table.add_column("Executed", style="green")
    table.add_column("Details")
    for action in result["actions_executed"]:
        table.add_row(
            action["action_type"],
            "yes" if action["executed"] else "no",
            str(action.get("details", "")),
        )
    console.print(table)


@app.command("batch-history")
def batch_history(batch_id: str = typer.Argument(..., help="Batch ID")):
    """Show the stage transitions of a batch, oldest first."""
    db = get_session_local()()
    try:
        transitions = ExecutionLogService(db).get_batch_transitions(batch_id)
        if not transitions:
            console.print("No transitions recorded")
            return

        table = Table(
            title=f"Batch {batch_id}", show_header=True, header_style="bold cyan"
        )
        table.add_column("Time", style="dim")
        table.add_column("From", style="yellow")
        table.add_column("To", style="green")
        table.add_column("Type")
        table.add_column("By")
        for record in transitions:
            table.add_row(
                record.transition_time.isoformat(),
                record.from_stage or "-",
                record.to_stage,
                record.transition_type,
                record.transitioned_by or "-",
            )
        console.print(table)
    finally:
        db.close()


if __name__ == "__main__":
    app()
