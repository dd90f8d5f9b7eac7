"""Staged rollout CLI commands."""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel

from releasepilot.cli.release import parse_uuid
from releasepilot.database.models.release import Platform
from releasepilot.database.models.submission import Submission

app = typer.Typer(help="Staged rollout commands")
console = Console()

ReasonOption = Annotated[Optional[str], typer.Option("--reason", "-r", help="Reason recorded in the history")]
ActorOption = Annotated[str, typer.Option("--actor", "-a", help="Actor id")]


def parse_platform(value: str) -> Platform:
    try:
        return Platform(value.upper())
    except ValueError:
        console.print(f"[red]Invalid platform:[/red] {value}. Valid values: ANDROID, IOS, WEB")
        raise typer.Exit(code=1)


def show_submission(submission: Submission, title: str) -> None:
    console.print(
        Panel(
            f"[bold]Submission:[/bold] {submission.id}\n"
            f"[bold]Platform:[/bold] {submission.platform.value}\n"
            f"[bold]Status:[/bold] {submission.status.value}\n"
            f"[bold]Rollout:[/bold] {submission.rollout_percentage:g}%",
            title=title,
            border_style="cyan",
        )
    )


@app.command()
def update(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    platform: Annotated[str, typer.Argument(help="Platform (ANDROID or IOS)")],
    percentage: Annotated[float, typer.Argument(help="Target rollout percentage")],
    reason: ReasonOption = None,
    actor: ActorOption = "cli",
) -> None:
    """Change the rollout percentage of a live submission."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    target = parse_platform(platform)
    submission = run_operation(
        "updating rollout",
        lambda services: services.submissions.update_rollout(release_uuid, target, percentage, actor, reason),
    )
    show_submission(submission, "Rollout Updated")


@app.command()
def pause(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    platform: Annotated[str, typer.Argument(help="Platform")],
    reason: ReasonOption = None,
    actor: ActorOption = "cli",
) -> None:
    """Pause a staged rollout."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    target = parse_platform(platform)
    submission = run_operation(
        "pausing rollout",
        lambda services: services.submissions.pause_rollout(release_uuid, target, reason, actor),
    )
    show_submission(submission, "Rollout Paused")


@app.command()
def resume(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    platform: Annotated[str, typer.Argument(help="Platform")],
    reason: ReasonOption = None,
    actor: ActorOption = "cli",
) -> None:
    """Resume a paused rollout."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    target = parse_platform(platform)
    submission = run_operation(
        "resuming rollout",
        lambda services: services.submissions.resume_rollout(release_uuid, target, actor, reason),
    )
    show_submission(submission, "Rollout Resumed")


@app.command()
def halt(
    release_id: Annotated[str, typer.Argument(help="Release UUID")],
    platform: Annotated[str, typer.Argument(help="Platform")],
    reason: Annotated[str, typer.Option("--reason", "-r", help="Why the rollout is halted")],
    actor: ActorOption = "cli",
) -> None:
    """Halt a rollout for good. A reason is required."""
    from releasepilot.main import run_operation

    release_uuid = parse_uuid(release_id)
    target = parse_platform(platform)
    submission = run_operation(
        "halting rollout",
        lambda services: services.submissions.halt_rollout(release_uuid, target, reason, actor),
    )
    show_submission(submission, "Rollout Halted")
