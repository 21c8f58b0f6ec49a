"""
CLI: ``metis-core executions`` -- inspect and cancel workflow executions.
"""

from __future__ import annotations

import typer

from metis_core.cli.utils import console, fail, open_repository, output_execution, output_queue
from metis_core.core.errors import NoWorkflowExecutionFoundError

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show_execution(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show an execution and its plugins."""
    repository = open_repository(database_url)
    execution = repository.get_by_id(execution_id)
    if execution is None:
        fail(f"No workflow execution found with id {execution_id}")
    output_execution(execution, as_json=json_out)


@app.command()
def cancel(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    cancelled_by: str = typer.Option(..., "--by", "-b", help="User identifier recorded as cancelledBy"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Request cancellation of a queued or running execution.

    The running worker notices the flag on its next poll, kills the DPS task
    and marks the execution CANCELLED.
    """
    from metis_core.execution.orchestrator import WorkflowOrchestrator

    repository = open_repository(database_url)
    orchestrator = WorkflowOrchestrator(repository)
    try:
        flagged = orchestrator.cancel_workflow_execution(execution_id, cancelled_by)
    except NoWorkflowExecutionFoundError as exc:
        fail(exc.message)
        return
    if flagged:
        console.print(f"[green]Cancellation requested[/green] for {execution_id} by {cancelled_by}")
    else:
        console.print(f"[yellow]Execution {execution_id} is already finished; nothing to cancel[/yellow]")


@app.command("queued")
def list_queued(
    limit: int = typer.Option(50, "--limit", "-n"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List queued executions in dispatch order."""
    repository = open_repository(database_url)
    page = repository.list_queued(limit)
    output_queue(page.items, as_json=json_out)
    if page.next_cursor is not None and not json_out:
        console.print(f"\n[dim]Showing first {len(page.items)}; more are queued[/dim]")
