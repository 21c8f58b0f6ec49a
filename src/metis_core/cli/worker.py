"""
CLI: ``metis-core worker`` -- run the scheduler and monitor in this process.
"""

from __future__ import annotations

import asyncio
import signal

import typer

from metis_core.cli.utils import console, make_settings
from metis_core.core.settings import EngineSettings

app = typer.Typer(no_args_is_help=True)


async def serve(settings: EngineSettings, stop_event: asyncio.Event | None = None) -> None:
    """Wire the engine from *settings* and run until *stop_event* is set."""
    from metis_core.dps.client import HttpDpsClient
    from metis_core.execution.driver import PluginDriver
    from metis_core.execution.executor import WorkflowExecutor
    from metis_core.execution.monitor import ExecutionMonitor
    from metis_core.execution.scheduler import ExecutionScheduler
    from metis_core.persistence.sql import SqlExecutionRepository

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    repository = SqlExecutionRepository.from_url(settings.database_url)
    async with HttpDpsClient.from_settings(settings) as dps:
        driver = PluginDriver.from_settings(dps, settings)
        monitor = ExecutionMonitor.from_settings(repository, settings)
        executor = WorkflowExecutor.from_settings(repository, driver, monitor, settings)
        scheduler = ExecutionScheduler.from_settings(repository, executor, settings)

        monitor.start()
        scheduler.start()
        try:
            await stop_event.wait()
        finally:
            await scheduler.stop()
            await monitor.stop()


@app.command("start")
def start(
    database_url: str | None = typer.Option(None, "--database-url", "-d", help="SQLAlchemy database URL"),
    workers: int | None = typer.Option(None, "--workers", "-w", help="Concurrent executions"),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between DPS polls"),
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),
) -> None:
    """Start a worker: dispatch queued executions and monitor claims.

    Example::

        metis-core worker start --workers 4 --poll-interval 30
        metis-core worker start -d postgresql+psycopg://metis@db/metis --id worker-a
    """
    from metis_core.core.logging import configure_logging

    overrides: dict[str, object] = {}
    if workers is not None:
        overrides["max_concurrent_executions"] = workers
    if poll_interval is not None:
        overrides["poll_interval_seconds"] = poll_interval
    if worker_id is not None:
        overrides["worker_id"] = worker_id
    settings = make_settings(database_url, **overrides)
    configure_logging(level=settings.log_level, json_format=settings.json_logs)

    console.print(
        f"[bold green]Starting metis-core worker[/bold green] {settings.worker_id} "
        f"(executions={settings.max_concurrent_executions}, "
        f"poll={settings.poll_interval_seconds}s, tick={settings.scheduler_tick_seconds}s)"
    )
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")
    console.print("[dim]Worker stopped; running executions will be reclaimed[/dim]")
