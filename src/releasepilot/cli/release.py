"""Release control CLI commands.

This module provides CLI commands for listing and inspecting releases and
for the lifecycle operations available over the API.
"""

from __future__ import annotations

import json
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from releasepilot.database.models.release import ReleaseStatus
from releasepilot.orchestrator.cron import ReleaseView

app = typer.Typer(help="Release control commands")
console = Console()

ActorOption = Annotated[str, typer.Option("--actor", "-a", help="Actor id recorded in the audit trail")]
RoleOption = Annotated[str, typer.Option("--role", help="Actor role (MEMBER, RELEASE_PILOT, ADMIN)")]

STATUS_COLORS = {
    "PENDING": "dim",
    "IN_PROGRESS": "blue",
    "PAUSED": "yellow",
    "SUBMITTED": "magenta",
    "COMPLETED": "green",
    "ARCHIVED": "dim",
}


def parse_uuid(value: str, label: str = "release") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label} UUID:[/red] {value}")
        raise typer.Exit(code=1)


def show_release(view: ReleaseView, title: str = "Release") -> None:
    """Print a release panel."""
    color = STATUS_COLORS.get(view.status.value, "white")
    stages = "\n".join(f"  {stage}: {status}" for stage, status in view.stage_statuses.items())
    panel = Panel(
        f"[bold]ID:[/bold] {view.release_id}\n"
        f"[bold]Key:[/bold] {view.release_key} ({view.release_type.value})\n"
        f"[bold]Status:[/bold] [{color}]{view.status.value}[/{color}]\n"
        f"[bold]Phase:[/bold] {view.phase.value}\n"
        f"[bold]Stage:[/bold] {view.current_stage.value}\n"
        f"[bold]Cron:[/bold] {view.cron_status.value if view.cron_status else '-'}"
        f" (pause: {view.pause_type.value if view.pause_type else '-'})\n"
        f"[bold]Latest cycle:[/bold] {view.latest_cycle_tag or '-'}\n"
        f"[bold]Stages:[/bold]\n{stages}",
        title=title,
        border_style=color,
    )
    console.print(panel)


@app.command(name="list")
def list_releases(
    tenant_id: Annotated[Optional[str], typer.Option("--tenant", "-t", help="Tenant id")] = None,
    status: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status (PENDING, IN_PROGRESS, PAUSED, ...)"),
    ] = None,
    active: Annotated[bool, typer.Option("--active", help="Hide archived releases")] = False,
    format: Annotated[str, typer.Option("--format", "-f", help="Output format (table or json)")] = "table",
) -> None:
    """List releases."""
    from releasepilot.main import run_operation

    status_filter = None
    if status is not None:
        try:
            status_filter = ReleaseStatus(status.upper())
        except ValueError:
            console.print(
                f"[red]Invalid status:[/red] {status}. "
                f"Valid values: {', '.join(s.value for s in ReleaseStatus)}"
            )
            raise typer.Exit(code=1)

    views = run_operation(
        "listing releases",
        lambda services: services.orchestrator.list_releases(
            tenant_id, status_filter, include_archived=not active
        ),
    )

    if format == "json":
        console.print(json.dumps([view.model_dump(mode="json") for view in views], indent=2))
        return

    if not views:
        console.print("[yellow]No releases found[/yellow]")
        return

    table = Table(title="Releases")
    table.add_column("ID", style="cyan", no_wrap=True, overflow="fold")
    table.add_column("Key", style="bold")
    table.add_column("Tenant", style="dim")
    table.add_column("Status")
    table.add_column("Phase", style="blue")
    table.add_column("Cron", style="dim")

    for view in views:
        color = STATUS_COLORS.get(view.status.value, "white")
        table.add_row(
            view.release_id[:8] + "...",
            view.release_key,
            view.tenant_id,
            f"[{color}]{view.status.value}[/{color}]",
            view.phase.value,
            view.cron_status.value if view.cron_status else "-",
        )

    console.print(table)


@app.command()
def show(release_id: Annotated[str, typer.Argument(help="Release UUID")]) -> None:
    """Show a release with its derived phase."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    view = run_operation("loading release", lambda services: services.orchestrator.get_release(release_uuid))
    show_release(view)


@app.command()
def pause(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    reason: Annotated[Optional[str], typer.Option("--reason", "-r", help="Why the release is paused")] = None,
    actor: ActorOption = "cli",
    role: RoleOption = "MEMBER",
) -> None:
    """Pause a release."""
    from releasepilot.main import cli_actor, run_operation

    release_uuid = parse_uuid(release_id)
    who = cli_actor(actor, role)
    view = run_operation(
        "pausing release", lambda services: services.orchestrator.pause(release_uuid, who, reason)
    )
    show_release(view, title="Release Paused")


@app.command()
def resume(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    actor: ActorOption = "cli",
    role: RoleOption = "MEMBER",
) -> None:
    """Resume a paused release."""
    from releasepilot.main import cli_actor, run_operation

    release_uuid = parse_uuid(release_id)
    who = cli_actor(actor, role)
    view = run_operation("resuming release", lambda services: services.orchestrator.resume(release_uuid, who))
    show_release(view, title="Release Resumed")


@app.command()
def archive(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    reason: Annotated[Optional[str], typer.Option("--reason", "-r", help="Why the release is archived")] = None,
    actor: ActorOption = "cli",
    role: RoleOption = "MEMBER",
) -> None:
    """Archive a release; its cron job stops for good."""
    from releasepilot.main import cli_actor, run_operation

    release_uuid = parse_uuid(release_id)
    who = cli_actor(actor, role)
    view = run_operation(
        "archiving release", lambda services: services.orchestrator.archive(release_uuid, who, reason)
    )
    show_release(view, title="Release Archived")


@app.command()
def complete(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    actor: ActorOption = "cli",
    role: RoleOption = "MEMBER",
) -> None:
    """Mark a distributed release as completed."""
    from releasepilot.main import cli_actor, run_operation

    release_uuid = parse_uuid(release_id)
    who = cli_actor(actor, role)
    view = run_operation(
        "completing release", lambda services: services.orchestrator.complete_release(release_uuid, who)
    )
    show_release(view, title="Release Completed")


@app.command()
def trigger(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    force: Annotated[
        bool,
        typer.Option("--force", help="Force the regression approval (RELEASE_PILOT or ADMIN only)"),
    ] = False,
    actor: ActorOption = "cli",
    role: RoleOption = "MEMBER",
) -> None:
    """Start the next stage of a release."""
    from releasepilot.main import cli_actor, run_operation

    release_uuid = parse_uuid(release_id)
    who = cli_actor(actor, role)
    view = run_operation(
        "triggering next stage",
        lambda services: services.orchestrator.trigger_next_stage(release_uuid, who, force_approve=force),
    )
    show_release(view, title="Stage Triggered")


@app.command()
def approval(release_id: Annotated[str, typer.Argument(help="Release UUID")]) -> None:
    """Show the regression approval requirements."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    result = run_operation(
        "evaluating approval", lambda services: services.orchestrator.evaluate_approval(release_uuid)
    )

    table = Table(title=f"Approval ({'ready' if result.can_approve else 'blocked'})")
    table.add_column("Requirement", style="bold")
    table.add_column("Met")
    for name, met in result.requirements.model_dump().items():
        table.add_row(name, "[green]yes[/green]" if met else "[red]no[/red]")
    console.print(table)
