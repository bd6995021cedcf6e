"""Worker commands: list, drain, kill, and the in-container progress hooks."""

from typing import Optional

import typer
from rich.table import Table

from ..config.constants import DEFAULT_STOP_TIMEOUT_SECONDS
from ..exceptions import DatabaseBusyError
from ..models.drones import DroneStore
from ..models.threads import ThreadStore
from ..models.workers import Worker, WorkerRegistry
from ..runtime.docker import DockerRuntime
from ..services.worker_ops import drain_workers, kill_worker, resolve_kill_target
from ..utils.output import console, print_json
from ..utils.retry import retry
from ._helpers import handle_command_error, open_database, styled_status

# In-container hooks: `blackboard worker heartbeat|iteration|finish`
hooks_app = typer.Typer(help="Progress hooks called by agents inside worker containers")

# Containers write concurrently with the orchestrator; ride out a busy database
_busy_retry = retry(max_retries=5, min_backoff=0.2, max_backoff=2.0, exceptions=(DatabaseBusyError,))


def _format_age(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def _worker_dict(worker: Worker) -> dict:
    return {
        "id": worker.id,
        "container_id": worker.container_id,
        "owner": worker.owner_name,
        "thread_id": worker.thread_id,
        "status": worker.status,
        "auth_mode": worker.auth_mode,
        "iteration": worker.iteration,
        "max_iterations": worker.max_iterations,
        "last_heartbeat": worker.last_heartbeat,
        "created_at": worker.created_at,
    }


@handle_command_error("listing workers")
def workers(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", "-a", help="Include finished workers"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows with --all"),
    prune: bool = typer.Option(False, "--prune", help="Delete finished workers older than 24h"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List running workers."""
    with open_database(ctx) as db:
        registry = WorkerRegistry(db)

        if prune:
            removed = registry.purge_old()
            if json_output:
                print_json({"pruned": removed})
            else:
                console.print(f"[green]Pruned {removed} old worker record(s)[/green]")
            return

        rows = registry.list_all(limit) if show_all else registry.list_active()

    if json_output:
        print_json([_worker_dict(w) for w in rows])
        return

    if not rows:
        console.print("[yellow]No workers found[/yellow]" if show_all else "[yellow]No running workers[/yellow]")
        return

    table = Table(title="Workers" if show_all else "Running Workers")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Owner")
    table.add_column("Status")
    table.add_column("Iteration", justify="right")
    table.add_column("Heartbeat")
    table.add_column("Auth")
    table.add_column("Container", style="dim")

    for w in rows:
        table.add_row(
            w.short_id,
            w.owner_name or "-",
            styled_status(w.status),
            f"{w.iteration}/{w.max_iterations}",
            _format_age(w.heartbeat_age) if w.is_running else "-",
            w.auth_mode or "-",
            w.container_id[:12] if w.container_id else "-",
        )
    console.print(table)


@handle_command_error("draining workers")
def drain(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Kill instead of graceful stop"),
    timeout: int = typer.Option(
        DEFAULT_STOP_TIMEOUT_SECONDS, "--timeout", help="Seconds to wait for graceful stop"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Stop every running worker and mark it killed."""
    with open_database(ctx) as db:
        result = drain_workers(WorkerRegistry(db), DockerRuntime(), force=force, timeout=timeout)

    if json_output:
        print_json(result.to_dict())
        return

    if not result.workers:
        console.print("[yellow]No running workers to drain[/yellow]")
        return

    for outcome in result.workers:
        label = f"{outcome.worker_id[:8]} ({outcome.owner or '-'})"
        if outcome.success:
            console.print(f"[green]✓[/green] {label}")
        else:
            console.print(f"[red]✗[/red] {label}: {outcome.error}")
    console.print(f"\nDrained {result.drained} worker(s), {result.failed} failed")


@handle_command_error("killing worker")
def kill(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Worker id, id prefix, or thread name"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Kill a worker container and mark it killed."""
    with open_database(ctx) as db:
        registry = WorkerRegistry(db)
        worker = resolve_kill_target(registry, ThreadStore(db), target)
        killed = kill_worker(registry, DockerRuntime(), worker)

    if json_output:
        print_json(
            {
                "success": True,
                "worker_id": worker.id,
                "container_id": worker.container_id,
                "owner": worker.owner_name,
                "container_killed": killed,
                "status": "killed",
            }
        )
        return

    if not killed:
        console.print("[yellow]Warning: container kill failed (it may already be gone)[/yellow]")
    console.print(f"Worker [cyan]{worker.short_id}[/cyan] ({worker.owner_name or '-'}) marked as killed")


# =============================================================================
# In-container hooks
# =============================================================================


def _require_running(changed: bool, worker_id: str) -> None:
    if not changed:
        console.print(f"[red]Error: Worker {worker_id} is not running[/red]")
        raise typer.Exit(1)


@hooks_app.command()
@handle_command_error("recording heartbeat")
def heartbeat(
    ctx: typer.Context,
    worker_id: str = typer.Argument(..., help="Worker id"),
):
    """Record a heartbeat for a running worker."""
    with open_database(ctx) as db:
        changed = _busy_retry(WorkerRegistry(db).update_heartbeat)(worker_id)
    _require_running(changed, worker_id)


@hooks_app.command()
@handle_command_error("recording iteration")
def iteration(
    ctx: typer.Context,
    worker_id: str = typer.Argument(..., help="Worker id"),
    number: int = typer.Argument(..., min=0, help="Current iteration"),
):
    """Record the current iteration (also counts as a heartbeat)."""
    with open_database(ctx) as db:
        changed = _busy_retry(WorkerRegistry(db).record_progress)(worker_id, number)
        if changed:
            _busy_retry(DroneStore(db).record_session_iteration)(worker_id, number)
    _require_running(changed, worker_id)


@hooks_app.command()
@handle_command_error("finishing worker")
def finish(
    ctx: typer.Context,
    worker_id: str = typer.Argument(..., help="Worker id"),
    status: str = typer.Option("completed", "--status", "-s", help="completed or failed"),
):
    """Mark a worker finished."""
    if status not in ("completed", "failed"):
        console.print("[red]Error: --status must be 'completed' or 'failed'[/red]")
        raise typer.Exit(1)
    with open_database(ctx) as db:
        changed = _busy_retry(WorkerRegistry(db).update_status)(worker_id, status)
    _require_running(changed, worker_id)
