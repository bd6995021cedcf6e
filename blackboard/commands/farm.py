"""The farm and spawn commands: run threads through worker containers."""

from pathlib import Path
from typing import Optional

import typer

from ..config.constants import (
    AUTH_MODES,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_WORKER_IMAGE,
    DEFAULT_WORKER_MEMORY,
)
from ..config.settings import find_project_root, get_plugin_root
from ..models.threads import ThreadStore
from ..models.workers import WorkerRegistry
from ..runtime.docker import DockerRuntime
from ..services.auth import AuthResolver
from ..services.farm import FarmConfig, FarmStats, FleetOrchestrator
from ..utils.output import console, print_json
from ._helpers import get_state, handle_command_error, open_database


def _farm_config(auth: str, repo: Optional[Path], **kwargs) -> FarmConfig:
    if auth not in AUTH_MODES:
        console.print(f"[red]Error: --auth must be one of {', '.join(AUTH_MODES)}[/red]")
        raise typer.Exit(1)

    repo_dir = repo.resolve() if repo else None
    return FarmConfig(
        auth_mode=auth,
        repo_dir=repo_dir,
        project_root=repo_dir or find_project_root() or Path.cwd(),
        plugin_root=get_plugin_root(),
        **kwargs,
    )


def _orchestrator(db, config: FarmConfig, on_progress=None) -> FleetOrchestrator:
    return FleetOrchestrator(
        registry=WorkerRegistry(db),
        runtime=DockerRuntime(),
        work_source=ThreadStore(db),
        auth=AuthResolver(),
        config=config,
        db_path=db.db_path,
        on_progress=on_progress,
    )


@handle_command_error("running farm")
def farm(
    ctx: typer.Context,
    threads: Optional[str] = typer.Option(
        None, "--threads", "-t", help="Comma-separated thread names (default: all with pending work)"
    ),
    concurrency: int = typer.Option(
        DEFAULT_CONCURRENCY, "--concurrency", "-c", min=1, help="Maximum workers at once"
    ),
    auth: str = typer.Option("env", "--auth", help=f"Authentication mode: {', '.join(AUTH_MODES)}"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key for env auth"),
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repository to mount into workers"),
    max_iterations: int = typer.Option(
        DEFAULT_MAX_ITERATIONS, "--max-iterations", help="Iteration cap per worker"
    ),
    memory: str = typer.Option(DEFAULT_WORKER_MEMORY, "--memory", help="Memory limit per worker"),
    image: str = typer.Option(DEFAULT_WORKER_IMAGE, "--image", help="Worker image"),
    build: bool = typer.Option(False, "--build", help="Rebuild the worker image first"),
    json_output: bool = typer.Option(False, "--json", help="Output summary as JSON"),
):
    """Run threads with pending plan steps in parallel worker containers."""
    names = [n.strip() for n in threads.split(",") if n.strip()] if threads else None
    config = _farm_config(
        auth,
        repo,
        threads=names,
        concurrency=concurrency,
        api_key=api_key,
        max_iterations=max_iterations,
        memory=memory,
        image=image,
        build=build,
    )

    quiet = json_output or get_state(ctx).quiet

    def show_progress(stats: FarmStats) -> None:
        if not quiet:
            console.print(f"[dim]{stats.summary()}[/dim]")

    with open_database(ctx) as db:
        result = _orchestrator(db, config, on_progress=show_progress).run()

    if json_output:
        print_json(result.to_dict())
        return

    console.print(
        f"\n[bold]Farm complete:[/bold] [green]{result.completed} completed[/green], "
        f"[red]{result.failed} failed[/red] ({result.total} threads)"
    )


@handle_command_error("spawning worker")
def spawn(
    ctx: typer.Context,
    thread: str = typer.Argument(..., help="Thread to work on (active or paused)"),
    auth: str = typer.Option("env", "--auth", help=f"Authentication mode: {', '.join(AUTH_MODES)}"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key for env auth"),
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repository to mount into the worker"),
    max_iterations: int = typer.Option(
        DEFAULT_MAX_ITERATIONS, "--max-iterations", help="Iteration cap for the worker"
    ),
    memory: str = typer.Option(DEFAULT_WORKER_MEMORY, "--memory", help="Memory limit"),
    image: str = typer.Option(DEFAULT_WORKER_IMAGE, "--image", help="Worker image"),
    build: bool = typer.Option(False, "--build", help="Rebuild the worker image first"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Start one worker container for a single thread."""
    config = _farm_config(
        auth,
        repo,
        threads=[thread],
        api_key=api_key,
        max_iterations=max_iterations,
        memory=memory,
        image=image,
        build=build,
    )

    with open_database(ctx) as db:
        worker = _orchestrator(db, config).spawn_thread(thread)

    if json_output:
        print_json(
            {
                "worker_id": worker.id,
                "container_id": worker.container_id,
                "thread_name": worker.owner_name,
                "thread_id": worker.thread_id,
            }
        )
        return

    if get_state(ctx).quiet:
        return

    console.print("[green]Worker spawned[/green]")
    console.print(f"  Worker ID:    [cyan]{worker.id}[/cyan]")
    console.print(f"  Container ID: {worker.container_id[:12]}")
    console.print(f"  Thread:       {worker.owner_name}")
    console.print(f"\nStop with: [cyan]blackboard kill {worker.short_id}[/cyan]")
