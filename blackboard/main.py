#!/usr/bin/env python3
"""
Main CLI entry point for blackboard
"""

from typing import Optional

import typer

from blackboard import __version__
from blackboard.commands import drone, farm, workers
from blackboard.commands._helpers import CliState
from blackboard.utils.logging_utils import setup_cli_logging

app = typer.Typer(
    name="blackboard",
    help="Coordinate Claude Code agents: worker containers, farms and drones.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None, "--db", envvar="BLACKBOARD_DB", help="Path to the blackboard database"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
):
    """
    blackboard - coordination layer for Claude Code agents

    [bold]Examples:[/bold]

    Work every thread with pending steps, three at a time:
        [cyan]blackboard farm --concurrency 3[/cyan]

    Stop everything:
        [cyan]blackboard drain[/cyan]

    Start a drone:
        [cyan]blackboard drone start dep-updater[/cyan]
    """
    if verbose and quiet:
        typer.echo("Error: --verbose and --quiet are mutually exclusive", err=True)
        raise typer.Exit(1)

    setup_cli_logging(verbose=verbose, quiet=quiet)
    ctx.obj = CliState(db=db, verbose=verbose, quiet=quiet)


@app.command()
def version():
    """Show blackboard version"""
    typer.echo(f"blackboard version {__version__}")


app.command(name="farm")(farm.farm)
app.command(name="spawn")(farm.spawn)
app.command(name="workers")(workers.workers)
app.command(name="drain")(workers.drain)
app.command(name="kill")(workers.kill)
app.add_typer(drone.app, name="drone")
app.add_typer(workers.hooks_app, name="worker")


def run():
    """Entry point for the installed console script"""
    app()


if __name__ == "__main__":
    run()
