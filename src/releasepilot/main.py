"""Main CLI entry point for ReleasePilot.

This module provides the Typer application with sub-commands for release
control, task retries, rollout control and the global scheduler.

Usage:
    releasepilot serve --port 8000
    releasepilot release list --tenant acme
    releasepilot release trigger <release-id> --force --role ADMIN
    releasepilot rollout update <release-id> ANDROID 50
    releasepilot scheduler run
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Optional, TypeVar

import typer
from rich.console import Console

from releasepilot.actors import Actor, ActorRole
from releasepilot.cli import release as release_cli
from releasepilot.cli import rollout as rollout_cli
from releasepilot.cli import scheduler as scheduler_cli
from releasepilot.cli import task as task_cli
from releasepilot.config import ReleasePilotConfig, load_config
from releasepilot.database.connection import get_engine, get_session_factory
from releasepilot.errors import ReleasePilotError
from releasepilot.logging import setup_logging
from releasepilot.services import Services, build_services

T = TypeVar("T")

app = typer.Typer(
    name="releasepilot",
    help="ReleasePilot: release and rollout orchestration",
    no_args_is_help=True,
)

app.add_typer(release_cli.app, name="release", help="Control releases")
app.add_typer(task_cli.app, name="task", help="Inspect and retry tasks")
app.add_typer(rollout_cli.app, name="rollout", help="Control staged rollouts")
app.add_typer(scheduler_cli.app, name="scheduler", help="Run the global scheduler")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded ReleasePilot configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: ReleasePilotConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)

    def services(self) -> Services:
        """Build a fresh service graph for one command run."""
        return build_services(self.session_factory, self.config)


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: ReleasePilotConfig) -> AppContext:
    global _app_context
    _app_context = AppContext(config)
    return _app_context


def cli_actor(actor_id: str, role: str) -> Actor:
    """Build the Actor a command runs as."""
    try:
        return Actor(id=actor_id, role=ActorRole(role.upper()))
    except ValueError:
        console.print(f"[red]Invalid role:[/red] {role}. Valid values: {', '.join(r.value for r in ActorRole)}")
        raise typer.Exit(code=1)


def run_operation(label: str, operation: Callable[[Services], Awaitable[T]]) -> T:
    """Run one service operation on a fresh event loop.

    Domain errors are printed with their error code; the command exits
    with status 1 on any failure.
    """
    ctx = get_app_context()

    async def _run() -> T:
        services = ctx.services()
        try:
            return await operation(services)
        finally:
            await services.close()
            await ctx.engine.dispose()

    try:
        return asyncio.run(_run())
    except ReleasePilotError as e:
        console.print(f"[red]Error {label}:[/red] {e.code}: {e.message}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error {label}:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (defaults to web.host)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (defaults to web.port)"),
    ] = None,
    with_scheduler: Annotated[
        bool,
        typer.Option("--with-scheduler", help="Run the global scheduler inside the web process"),
    ] = False,
) -> None:
    """Start the ReleasePilot API server."""
    import uvicorn

    from releasepilot.web.app import create_app

    config = get_app_context().config
    if with_scheduler:
        config.scheduler.run_in_web = True
    bind_host = host or config.web.host
    bind_port = port or config.web.port

    console.print("[bold cyan]Starting ReleasePilot API[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {bind_host}")
    console.print(f"[dim]Port:[/dim] {bind_port}")
    console.print(f"[dim]Scheduler:[/dim] {'in-process' if config.scheduler.run_in_web else 'external'}")
    console.print()

    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_level="info")


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration, configure logging and initialize the context."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
