"""
Shared pytest fixtures for metis-core tests.

This module provides:
- repository: RecordingRepository (in-memory store plus call log)
- dps: ScriptedDps answering progress polls from a script
- settings: EngineSettings isolated from the host environment
- make_executor: executor wired for tests (zero poll interval, no retry delays)

Test doubles and record builders live in ``tests/_support/doubles.py``.

Usage:
    Fixtures are auto-discovered by pytest::

        @pytest.mark.asyncio
        async def test_something(repository, dps, make_executor):
            executor = make_executor()
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import Any, Callable

import pytest

from metis_core.core.settings import EngineSettings
from metis_core.execution.driver import PluginDriver
from metis_core.execution.executor import WorkflowExecutor
from metis_core.execution.monitor import ExecutionMonitor
from metis_core.execution.retry import NoRetry
from tests._support.doubles import RecordingRepository, ScriptedDps


# =============================================================================
# Repository / DPS
# =============================================================================


@pytest.fixture
def repository() -> RecordingRepository:
    """Fresh in-memory repository that records every call."""
    return RecordingRepository()


@pytest.fixture
def dps() -> ScriptedDps:
    """DPS double with an empty script; tests fill ``dps.script``."""
    return ScriptedDps()


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove METIS_* variables of the host environment."""
    for key in list(os.environ):
        if key.startswith("METIS_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def settings(clean_env) -> EngineSettings:
    """Settings isolated from METIS_* variables and .env files."""
    return EngineSettings(
        _env_file=None,
        worker_id="worker-test",
        database_url="sqlite:///:memory:",
        default_xslt_url="http://xslt.example.org/xslts",
        validation_external_schemas_zip_url="http://schemas.example.org/external.zip",
        validation_internal_schemas_zip_url="http://schemas.example.org/internal.zip",
    )


# =============================================================================
# Engine wiring
# =============================================================================


@pytest.fixture
def make_executor(repository: RecordingRepository, dps: ScriptedDps) -> Callable[..., WorkflowExecutor]:
    """Executor wired with the shared repository and DPS double.

    ``clock`` drives the executor only; the monitor stamps claims with the
    repository's clock. Keyword arguments not consumed here go to
    :class:`PluginDriver` (budgets such as ``transient_retry_budget``).
    """

    def _make(
        worker_id: str = "worker-a",
        stall_threshold: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] | None = None,
        cancellation_check_interval_polls: int = 1,
        poll_interval_seconds: float = 0,
        **driver_kwargs: Any,
    ) -> WorkflowExecutor:
        driver_kwargs.setdefault("submit_retry", NoRetry())
        driver = PluginDriver(
            dps,
            ecloud_base_url="http://ecloud.example.org/mcs",
            ecloud_provider="metis_provider",
            **driver_kwargs,
        )
        clock_kwargs = {"clock": clock} if clock is not None else {}
        monitor = ExecutionMonitor(
            repository,
            worker_id=worker_id,
            claim_ttl=timedelta(minutes=2),
            repository_retry=NoRetry(),
        )
        return WorkflowExecutor(
            repository,
            driver,
            monitor,
            poll_interval_seconds=poll_interval_seconds,
            stall_threshold=stall_threshold,
            cancellation_check_interval_polls=cancellation_check_interval_polls,
            repository_retry=NoRetry(),
            **clock_kwargs,
        )

    return _make
