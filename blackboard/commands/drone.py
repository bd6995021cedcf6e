"""Drone commands: define, list, start, stop and follow persistent agents."""

from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape
from rich.table import Table

from ..config.constants import (
    DEFAULT_DRONE_COOLDOWN_SECONDS,
    DEFAULT_DRONE_MAX_ITERATIONS,
    DEFAULT_DRONE_MEMORY,
    DEFAULT_DRONE_TIMEOUT_MINUTES,
    DEFAULT_LOG_LIMIT,
    DEFAULT_WORKER_IMAGE,
)
from ..config.settings import find_project_root, get_plugin_root
from ..models.drones import DroneStore, WorkerEvent
from ..models.workers import WorkerRegistry
from ..runtime.docker import DockerRuntime
from ..services.auth import AuthResolver
from ..services.drone_ops import DroneLauncher, LaunchOptions, follow_events
from ..utils.output import console, print_json
from ._helpers import handle_command_error, open_database, styled_status

app = typer.Typer(help="Manage drones: persistent agents that run on their own branch")


@app.command()
@handle_command_error("creating drone")
def new(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Drone name (kebab-case)"),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Prompt text"),
    prompt_file: Optional[Path] = typer.Option(
        None, "--file", "-f", exists=True, dir_okay=False, help="Read the prompt from a file"
    ),
    max_iterations: int = typer.Option(DEFAULT_DRONE_MAX_ITERATIONS, "--max-iterations"),
    timeout: int = typer.Option(DEFAULT_DRONE_TIMEOUT_MINUTES, "--timeout", help="Minutes"),
    cooldown: int = typer.Option(DEFAULT_DRONE_COOLDOWN_SECONDS, "--cooldown", help="Seconds"),
):
    """Create a drone."""
    if prompt_file is not None:
        prompt = prompt_file.read_text()
    if not prompt:
        console.print("[red]Error: provide --prompt or --file[/red]")
        raise typer.Exit(1)

    with open_database(ctx) as db:
        drone = DroneStore(db).create(
            name,
            prompt,
            max_iterations=max_iterations,
            timeout_minutes=timeout,
            cooldown_seconds=cooldown,
        )
    console.print(f"[green]✓ Created drone[/green] [cyan]{drone.name}[/cyan] ({drone.id[:8]})")


@app.command(name="list")
@handle_command_error("listing drones")
def list_drones(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", help="active, paused or archived"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List drones and whether each is running."""
    with open_database(ctx) as db:
        store = DroneStore(db)
        drones = store.list(status)
        sessions = {d.id: store.current_session(d) for d in drones}

    if json_output:
        print_json(
            [
                {
                    "id": d.id,
                    "name": d.name,
                    "status": d.status,
                    "max_iterations": d.max_iterations,
                    "cooldown_seconds": d.cooldown_seconds,
                    "running_session": sessions[d.id].id if sessions[d.id] else None,
                }
                for d in drones
            ]
        )
        return

    if not drones:
        console.print("[yellow]No drones found[/yellow]")
        return

    table = Table(title="Drones")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Session")
    table.add_column("Branch", style="dim")
    table.add_column("Max iter", justify="right")

    for d in drones:
        session = sessions[d.id]
        table.add_row(
            d.name,
            styled_status(d.status),
            styled_status("running") + f" {session.id[:8]}" if session else "-",
            session.git_branch or "-" if session else "-",
            str(d.max_iterations),
        )
    console.print(table)


@app.command()
@handle_command_error("starting drone")
def start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Drone name or id"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key (if no OAuth login)"),
    image: str = typer.Option(DEFAULT_WORKER_IMAGE, "--image"),
    memory: str = typer.Option(DEFAULT_DRONE_MEMORY, "--memory"),
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repository to mount"),
    build: bool = typer.Option(False, "--build", help="Rebuild the worker image first"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations"),
    cooldown: Optional[int] = typer.Option(None, "--cooldown", help="Seconds between iterations"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Start a new session for a drone."""
    repo_dir = repo.resolve() if repo else None
    options = LaunchOptions(
        api_key=api_key,
        image=image,
        memory=memory,
        repo_dir=repo_dir,
        build=build,
        max_iterations=max_iterations,
        cooldown_seconds=cooldown,
        project_root=repo_dir or find_project_root() or Path.cwd(),
        plugin_root=get_plugin_root(),
    )

    with open_database(ctx) as db:
        launcher = DroneLauncher(
            DroneStore(db), WorkerRegistry(db), DockerRuntime(), AuthResolver(), db.db_path
        )
        result = launcher.launch(name, options)

    if json_output:
        print_json(
            {
                "session_id": result.session_id,
                "worker_id": result.worker_id,
                "container_id": result.container_id,
                "git_branch": result.git_branch,
            }
        )
        return

    console.print(f"[green]✓ Drone {escape(name)} started[/green]")
    console.print(f"  Session:   [cyan]{result.session_id[:8]}[/cyan]")
    console.print(f"  Worker:    {result.worker_id[:8]}")
    console.print(f"  Container: {result.container_id[:12]}")
    console.print(f"  Branch:    {result.git_branch}")


@app.command()
@handle_command_error("stopping drone")
def stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Drone name or id"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Stop a drone's running session."""
    with open_database(ctx) as db:
        launcher = DroneLauncher(
            DroneStore(db), WorkerRegistry(db), DockerRuntime(), AuthResolver(), db.db_path
        )
        result = launcher.stop(name)

    if json_output:
        print_json({"session_id": result.session_id, "worker_id": result.worker_id})
        return
    console.print(f"[green]✓ Drone {escape(name)} stopped[/green] (session {result.session_id[:8]})")


def _event_dict(event: WorkerEvent) -> dict:
    return {
        "id": event.id,
        "worker_id": event.worker_id,
        "iteration": event.iteration,
        "timestamp": event.timestamp,
        "event_type": event.event_type,
        "tool_name": event.tool_name,
        "file_path": event.file_path,
        "tool_output_preview": event.tool_output_preview,
        "duration_ms": event.duration_ms,
    }


def _print_event(event: WorkerEvent) -> None:
    stamp = event.timestamp.strftime("%H:%M:%S") if event.timestamp else "--:--:--"
    style = {"tool_call": "cyan", "tool_result": "green", "error": "red"}.get(event.event_type, "white")
    parts = [f"[dim]{stamp}[/dim]", f"[dim]#{event.iteration}[/dim]", f"[{style}]{event.event_type}[/{style}]"]
    if event.tool_name:
        parts.append(f"[bold]{escape(event.tool_name)}[/bold]")
    if event.file_path:
        parts.append(escape(event.file_path))
    elif event.tool_output_preview:
        parts.append(escape(event.tool_output_preview[:80]))
    if event.duration_ms is not None:
        parts.append(f"[dim]({event.duration_ms}ms)[/dim]")
    console.print(" ".join(parts))


@app.command()
@handle_command_error("reading drone logs")
def logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Drone name or id"),
    limit: int = typer.Option(DEFAULT_LOG_LIMIT, "--limit", "-n", help="Number of events"),
    tool: Optional[str] = typer.Option(None, "--tool", help="Only events for this tool"),
    file: Optional[str] = typer.Option(None, "--file", help="Only events touching this path"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep printing new events"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the tool-call log of a drone's sessions."""
    with open_database(ctx) as db:
        store = DroneStore(db)
        drone = store.require(name)
        events = store.list_events(
            store.session_worker_ids(drone), limit=limit, tool=tool, file_path=file
        )

        if json_output:
            print_json([_event_dict(e) for e in events])
            return

        if not events and not follow:
            console.print(f"[yellow]No events for drone {escape(drone.name)}[/yellow]")
            return

        for event in events:
            _print_event(event)

        if follow:
            console.print("\n[dim]Following events... Press Ctrl+C to stop[/dim]\n")
            try:
                follow_events(
                    store,
                    drone,
                    _print_event,
                    tool=tool,
                    file_path=file,
                    after_id=events[-1].id if events else 0,
                )
            except KeyboardInterrupt:
                console.print("\n[yellow]Stopped following[/yellow]")
