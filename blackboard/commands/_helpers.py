"""Shared command helpers.

- @handle_command_error: consistent error output and exit codes
- open_database(): open the shared database for the duration of a command
- get_state(): global options from the root callback
"""

from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Iterator, Optional, TypeVar

import typer
from rich.markup import escape

from ..config.settings import get_db_path
from ..database.connection import Database
from ..exceptions import BlackboardError
from ..utils.output import console

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class CliState:
    """Global options parsed by the root callback."""
    db: Optional[str] = None
    verbose: bool = False
    quiet: bool = False


def get_state(ctx: typer.Context) -> CliState:
    root = ctx.find_root()
    if isinstance(root.obj, CliState):
        return root.obj
    return CliState()


@contextmanager
def open_database(ctx: typer.Context) -> Iterator[Database]:
    """Open the database named by --db / BLACKBOARD_DB / the project, close on exit."""
    db = Database(get_db_path(get_state(ctx).db)).open()
    try:
        yield db
    finally:
        db.close()


def handle_command_error(
    operation: str | None = None,
    *,
    exit_code: int = 1,
) -> Callable[[F], F]:
    """Decorator for consistent error handling in CLI commands.

    Blackboard errors already carry remediation text and are printed as-is;
    anything else is prefixed with the operation name.

    Example:
        @app.command()
        @handle_command_error("stopping drone")
        def stop(ctx: typer.Context, name: str):
            ...
    """

    def decorator(func: F) -> F:
        op = operation or func.__name__.replace("_", " ")

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except typer.Exit:
                raise
            except typer.Abort:
                console.print("[yellow]Cancelled[/yellow]")
                raise typer.Exit(0) from None
            except BlackboardError as e:
                console.print(f"[red]Error: {escape(str(e))}[/red]", highlight=False)
                raise typer.Exit(exit_code) from e
            except Exception as e:
                console.print(f"[red]Error {op}: {escape(str(e))}[/red]", highlight=False)
                raise typer.Exit(exit_code) from e

        return wrapper  # type: ignore[return-value]

    return decorator


STATUS_STYLES = {
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "killed": "magenta",
    "stopped": "blue",
    "active": "green",
    "paused": "yellow",
    "archived": "dim",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"
