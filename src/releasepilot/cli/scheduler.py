"""Global scheduler CLI commands.

``run`` keeps the scheduler loop alive until interrupted; ``tick`` runs a
single round, or a single release, and prints what happened.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from releasepilot.cli.release import parse_uuid
from releasepilot.orchestrator.scheduler import TickReport
from releasepilot.services import Services

app = typer.Typer(help="Global scheduler commands")
console = Console()


def show_report(report: TickReport) -> None:
    if report.overlapped:
        console.print("[yellow]Previous round still running; nothing done[/yellow]")
        return

    console.print(
        f"[green]Ticked {report.processed_count} release(s)[/green] "
        f"[dim]in {report.duration_ms} ms, {len(report.skipped)} skipped[/dim]"
    )
    if report.errors:
        table = Table(title="Errors")
        table.add_column("Release", style="cyan", no_wrap=True)
        table.add_column("Error", style="red")
        for error in report.errors:
            table.add_row(error.release_id, error.error)
        console.print(table)


@app.command()
def run() -> None:
    """Run the scheduler loop until interrupted with Ctrl+C."""
    from releasepilot.main import get_app_context, run_operation

    ctx = get_app_context()
    console.print(
        Panel(
            f"[bold]Interval:[/bold] {ctx.config.scheduler.interval_seconds}s\n"
            f"[bold]Max concurrent releases:[/bold] {ctx.config.scheduler.max_concurrent_releases}\n"
            f"[bold]Lease timeout:[/bold] {ctx.config.scheduler.lock_timeout_seconds}s",
            title="Starting Scheduler",
            border_style="cyan",
        )
    )

    async def _run(services: Services) -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await services.scheduler.start()
        await stop.wait()
        console.print("[yellow]Shutdown signal received. Stopping scheduler...[/yellow]")

    run_operation("running scheduler", _run)
    console.print("[green]Scheduler stopped[/green]")


@app.command()
def tick(
    release_id: Annotated[
        Optional[str],
        typer.Option("--release", "-r", help="Tick only this release"),
    ] = None,
) -> None:
    """Run one scheduler round, or one orchestrator pass for a release."""
    from releasepilot.main import run_operation

    if release_id is None:
        report = run_operation("running scheduler round", lambda services: services.scheduler.run_once())
        show_report(report)
        return

    release_uuid = parse_uuid(release_id)
    result = run_operation("ticking release", lambda services: services.orchestrator.tick(release_uuid))
    console.print(
        Panel(
            f"[bold]Release:[/bold] {result.release_id}\n"
            f"[bold]Phase:[/bold] {result.phase.value}\n"
            f"[bold]Stage:[/bold] {result.current_stage.value}\n"
            f"[bold]Cron:[/bold] {result.cron_status.value} (pause: {result.pause_type.value})",
            title="Tick",
            border_style="green",
        )
    )
