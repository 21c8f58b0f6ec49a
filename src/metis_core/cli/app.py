"""
Root Typer application for the metis-core CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from metis_core.cli.executions import app as executions_app
from metis_core.cli.worker import app as worker_app

app = Typer(
    name="metis-core",
    help="metis-core -- workflow execution engine for DPS-backed dataset processing.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from metis_core import __version__

        typer.echo(f"metis-core {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """metis-core CLI -- run workers, inspect and cancel executions."""


app.add_typer(worker_app, name="worker", help="Run the execution worker.")
app.add_typer(executions_app, name="executions", help="Inspect and cancel executions.")


if __name__ == "__main__":
    app()
