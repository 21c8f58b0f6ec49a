"""
CLI utility helpers -- settings, repository access and output formatting.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from metis_core.core.errors import ConfigError
from metis_core.core.settings import EngineSettings, load_settings
from metis_core.persistence.sql import SqlExecutionRepository
from metis_core.workflow.models import WorkflowExecution

console = Console()
err_console = Console(stderr=True)


# ── Settings / repository helpers ────────────────────────────────────────


def make_settings(database_url: str | None = None, **overrides: Any) -> EngineSettings:
    """Load settings from the environment, applying CLI overrides."""
    if database_url:
        overrides["database_url"] = database_url
    try:
        return load_settings(**overrides)
    except ConfigError as exc:
        err_console.print(f"[bold red]Invalid configuration[/bold red]: {exc.message}")
        raise typer.Exit(code=2) from exc


def open_repository(database_url: str | None = None) -> SqlExecutionRepository:
    settings = make_settings(database_url)
    return SqlExecutionRepository.from_url(settings.database_url)


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str, code: int = 1) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


def output_execution(execution: WorkflowExecution, *, as_json: bool = False) -> None:
    """Render one execution: header fields then a plugin table."""
    if as_json:
        console.print_json(json.dumps(execution.to_document(), default=str))
        return

    console.print(f"[bold]Execution: {execution.id}[/bold]")
    header = {
        "dataset": execution.dataset_id,
        "status": execution.status.value,
        "priority": execution.priority,
        "created": execution.created_date,
        "started": execution.started_date,
        "finished": execution.finished_date,
        "cancelling": execution.cancelling,
        "cancelled_by": execution.cancelled_by,
    }
    for key, value in header.items():
        console.print(f"  [cyan]{key}[/cyan]: {value}")

    table = Table(title="Plugins", show_lines=False, pad_edge=False)
    for column in ("#", "type", "status", "external task", "processed", "errors", "fail message"):
        table.add_column(column, overflow="fold")
    for index, plugin in enumerate(execution.plugins):
        progress = plugin.execution_progress
        table.add_row(
            str(index),
            plugin.plugin_type.value,
            plugin.status.value,
            plugin.external_task_id or "",
            f"{progress.processed_records}/{progress.expected_records}",
            str(progress.errors),
            plugin.fail_message or "",
        )
    console.print(table)


def output_queue(executions: list[WorkflowExecution], *, as_json: bool = False) -> None:
    if as_json:
        payload = [
            {
                "id": execution.id,
                "dataset_id": execution.dataset_id,
                "priority": execution.priority,
                "created_date": execution.created_date.isoformat(),
            }
            for execution in executions
        ]
        console.print_json(json.dumps(payload))
        return

    if not executions:
        console.print("[dim]No items.[/dim]")
        return

    table = Table(title="Queued executions", show_lines=False, pad_edge=False)
    for column in ("id", "dataset", "priority", "created", "plugins"):
        table.add_column(column, overflow="fold")
    for execution in executions:
        table.add_row(
            execution.id,
            execution.dataset_id,
            str(execution.priority),
            execution.created_date.isoformat(),
            ", ".join(plugin.plugin_type.value for plugin in execution.plugins),
        )
    console.print(table)
