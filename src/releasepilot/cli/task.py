"""Task CLI commands.

This module provides CLI commands for listing the tasks of a release and
retrying failed ones.
"""

from __future__ import annotations

import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from releasepilot.cli.release import parse_uuid
from releasepilot.database.models.release import ReleaseStage
from releasepilot.database.models.task import TaskStatus

app = typer.Typer(help="Task commands")
console = Console()


@app.command(name="list")
def list_tasks(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    stage: Annotated[
        Optional[str],
        typer.Option("--stage", help="Filter by stage (KICKOFF, REGRESSION, POST_REGRESSION, DISTRIBUTION)"),
    ] = None,
    status: Annotated[Optional[str], typer.Option("--status", "-s", help="Filter by status")] = None,
    format: Annotated[str, typer.Option("--format", "-f", help="Output format (table or json)")] = "table",
) -> None:
    """List the tasks of a release."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    try:
        stage_filter = ReleaseStage(stage.upper()) if stage else None
        status_filter = TaskStatus(status.upper()) if status else None
    except ValueError as e:
        console.print(f"[red]Invalid filter:[/red] {e}")
        raise typer.Exit(code=1)

    tasks = run_operation(
        "listing tasks",
        lambda services: services.orchestrator.list_tasks(release_uuid, stage=stage_filter, status=status_filter),
    )

    if format == "json":
        output = [
            {
                "id": str(t.id),
                "task_type": t.task_type.value,
                "stage": t.stage.value,
                "status": t.status.value,
                "regression_cycle_id": str(t.regression_cycle_id) if t.regression_cycle_id else None,
                "retry_count": t.retry_count,
                "conclusion": t.conclusion,
            }
            for t in tasks
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True, overflow="fold")
    table.add_column("Type", style="bold")
    table.add_column("Stage", style="blue")
    table.add_column("Status")
    table.add_column("Retries", justify="right", style="dim")

    for t in tasks:
        status_color = {
            "PENDING": "dim",
            "IN_PROGRESS": "blue",
            "AWAITING_CALLBACK": "yellow",
            "AWAITING_MANUAL_BUILD": "yellow",
            "COMPLETED": "green",
            "FAILED": "red",
            "SKIPPED": "dim",
        }.get(t.status.value, "white")
        table.add_row(
            str(t.id)[:8] + "...",
            t.task_type.value,
            t.stage.value,
            f"[{status_color}]{t.status.value}[/{status_color}]",
            str(t.retry_count),
        )

    console.print(table)


@app.command()
def retry(
    task_id: Annotated[str, typer.Argument(help="Task UUID")],
    actor: Annotated[str, typer.Option("--actor", "-a", help="Actor id")] = "cli",
    role: Annotated[str, typer.Option("--role", help="Actor role")] = "MEMBER",
) -> None:
    """Reset a FAILED task to PENDING so the next tick runs it again."""
    from releasepilot.main import cli_actor, run_operation

    task_uuid = parse_uuid(task_id, "task")
    who = cli_actor(actor, role)
    task = run_operation("retrying task", lambda services: services.orchestrator.retry_task(task_uuid, who))

    console.print(
        Panel(
            f"[bold]ID:[/bold] {task.id}\n"
            f"[bold]Type:[/bold] {task.task_type.value}\n"
            f"[bold]Status:[/bold] {task.status.value}\n"
            f"[bold]Retries:[/bold] {task.retry_count}",
            title="Task Retried",
            border_style="green",
        )
    )
