"""Tests for PluginDriver: submission, monitoring budgets and cancellation."""

from __future__ import annotations

import pytest

from metis_core.core.errors import ExternalTaskHardError, ExternalTaskTransientError
from metis_core.dps.models import TaskState
from metis_core.execution.driver import (
    MonitorResult,
    MonitorSession,
    PluginDriver,
    plugin_status_for,
)
from metis_core.execution.retry import ExponentialBackoff, NoRetry
from metis_core.workflow.models import MetisPlugin, PluginStatus
from metis_core.workflow.plugins import PluginType
from tests._support.doubles import ScriptedDps, make_execution, metadata, progress


def make_driver(dps, **kwargs) -> PluginDriver:
    kwargs.setdefault("submit_retry", NoRetry())
    return PluginDriver(
        dps,
        ecloud_base_url="http://ecloud.example.org/mcs",
        ecloud_provider="metis_provider",
        **kwargs,
    )


def running_plugin(plugin_type: PluginType = PluginType.OAIPMH_HARVEST) -> MetisPlugin:
    plugin = MetisPlugin(metadata=metadata(plugin_type))
    plugin.status = PluginStatus.RUNNING
    plugin.external_task_id = "ext-1"
    return plugin


class TestStateMapping:
    """DPS task state to plugin status."""

    def test_mapping(self):
        assert plugin_status_for(TaskState.PENDING) is PluginStatus.PENDING
        assert plugin_status_for(TaskState.CURRENTLY_PROCESSING) is PluginStatus.RUNNING
        assert plugin_status_for(TaskState.PROCESSED) is PluginStatus.FINISHED
        assert plugin_status_for(TaskState.DROPPED) is PluginStatus.FAILED

    def test_monitor_result_without_observation(self):
        result = MonitorResult(task_state=None)
        assert result.observed is False
        assert result.plugin_status is None


class TestExecute:
    """Submitting a plugin's task."""

    @pytest.mark.asyncio
    async def test_success_sets_running_and_task_id(self):
        """A successful submission stores the external task id and RUNNING."""
        dps = ScriptedDps()
        execution = make_execution()
        plugin = execution.plugins[0]

        result = await make_driver(dps).execute(execution, plugin)

        assert result.unwrap() == "task-1"
        assert plugin.external_task_id == "task-1"
        assert plugin.status is PluginStatus.RUNNING
        assert plugin.started_date is not None

    @pytest.mark.asyncio
    async def test_hard_error_is_returned(self):
        """A 4xx submission is an Err and the plugin stays queued."""
        dps = ScriptedDps(submit_error=ExternalTaskHardError("rejected", http_status=400))
        execution = make_execution()
        plugin = execution.plugins[0]

        result = await make_driver(dps).execute(execution, plugin)

        assert result.is_err()
        assert result.error.message == "rejected"
        assert result.error.context.execution_id == execution.id
        assert plugin.status is PluginStatus.INQUEUE
        assert plugin.external_task_id is None

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_budget(self):
        """Transient submission failures are retried, then reported as hard."""
        dps = ScriptedDps(submit_error=ExternalTaskTransientError("503", http_status=503))
        driver = make_driver(dps, submit_retry=ExponentialBackoff(max_retries=3, base_delay=0, jitter=False))
        execution = make_execution()

        result = await driver.execute(execution, execution.plugins[0])

        assert isinstance(result.error, ExternalTaskHardError)
        assert "after 3 attempts" in result.error.message

    @pytest.mark.asyncio
    async def test_composition_error_is_returned(self):
        """A plugin that cannot be composed never reaches the DPS."""
        dps = ScriptedDps()
        execution = make_execution()
        execution.plugins[0].metadata.url = None

        result = await make_driver(dps).execute(execution, execution.plugins[0])

        assert result.is_err()
        assert "Invalid task" in result.error.message
        assert dps.submitted == []


class TestMonitor:
    """Polling budgets K, N and M."""

    @pytest.mark.asyncio
    async def test_observation_resets_counters(self):
        dps = ScriptedDps([progress(TaskState.CURRENTLY_PROCESSING, processed=7)])
        session = MonitorSession(consecutive_transient_failures=2, consecutive_hard_failures=1)

        result = await make_driver(dps).monitor(running_plugin(), session)

        observation = result.unwrap()
        assert observation.task_state is TaskState.CURRENTLY_PROCESSING
        assert observation.progress.processed_records == 7
        assert session.consecutive_transient_failures == 0
        assert session.consecutive_hard_failures == 0

    @pytest.mark.asyncio
    async def test_transient_below_pending_threshold_is_no_observation(self):
        """Fewer than K transient failures produce no observation."""
        dps = ScriptedDps([ExternalTaskTransientError("503")])
        driver = make_driver(dps, pending_after_transient_failures=2)

        result = await driver.monitor(running_plugin(), MonitorSession())

        assert result.unwrap().task_state is None

    @pytest.mark.asyncio
    async def test_transient_reports_pending(self):
        """K or more transient failures report PENDING."""
        dps = ScriptedDps([ExternalTaskTransientError("503")] * 2)
        driver = make_driver(dps, pending_after_transient_failures=2)
        session = MonitorSession()

        await driver.monitor(running_plugin(), session)
        result = await driver.monitor(running_plugin(), session)

        assert result.unwrap().task_state is TaskState.PENDING

    @pytest.mark.asyncio
    async def test_transient_beyond_budget_is_error(self):
        dps = ScriptedDps([ExternalTaskTransientError("503")] * 3)
        driver = make_driver(dps, transient_retry_budget=2)
        session = MonitorSession()
        plugin = running_plugin()

        results = [await driver.monitor(plugin, session) for _ in range(3)]

        assert [r.is_ok() for r in results] == [True, True, False]
        assert isinstance(results[-1].error, ExternalTaskHardError)

    @pytest.mark.asyncio
    async def test_hard_failures_tolerated_below_budget(self):
        """Hard failures below M yield no observation; the M-th is an error."""
        dps = ScriptedDps([ExternalTaskHardError("404")] * 3)
        driver = make_driver(dps, monitor_retry_budget=3)
        session = MonitorSession()
        plugin = running_plugin()

        results = [await driver.monitor(plugin, session) for _ in range(3)]

        assert results[0].unwrap().task_state is None
        assert results[1].unwrap().task_state is None
        assert results[2].is_err()

    @pytest.mark.asyncio
    async def test_hard_counter_resets_on_success(self):
        """Only consecutive failures count towards M."""
        dps = ScriptedDps([
            ExternalTaskHardError("404"),
            ExternalTaskHardError("404"),
            progress(TaskState.CURRENTLY_PROCESSING),
            ExternalTaskHardError("404"),
            ExternalTaskHardError("404"),
        ])
        driver = make_driver(dps, monitor_retry_budget=3)
        session = MonitorSession()
        plugin = running_plugin()

        results = [await driver.monitor(plugin, session) for _ in range(5)]

        assert all(result.is_ok() for result in results)

    @pytest.mark.asyncio
    async def test_dropped_carries_reason(self):
        dps = ScriptedDps([progress(TaskState.DROPPED, info="quota exceeded")])

        result = await make_driver(dps).monitor(running_plugin(), MonitorSession())

        assert result.unwrap().fail_reason == "quota exceeded"

    @pytest.mark.asyncio
    async def test_dropped_without_info_has_default_reason(self):
        dps = ScriptedDps([progress(TaskState.DROPPED)])

        result = await make_driver(dps).monitor(running_plugin(), MonitorSession())

        assert result.unwrap().fail_reason == "Task was dropped by the DPS"

    @pytest.mark.asyncio
    async def test_plugin_without_task_cannot_be_monitored(self):
        plugin = running_plugin()
        plugin.external_task_id = None

        result = await make_driver(ScriptedDps()).monitor(plugin, MonitorSession())

        assert result.is_err()


class TestCancel:
    """Best-effort, idempotent kill."""

    @pytest.mark.asyncio
    async def test_kills_task_with_reason(self):
        dps = ScriptedDps()

        result = await make_driver(dps).cancel(running_plugin(), "curator")

        assert result.is_ok()
        assert dps.killed == [("oai_harvest", "ext-1", "curator")]

    @pytest.mark.asyncio
    async def test_terminal_plugin_is_noop(self):
        dps = ScriptedDps()
        plugin = running_plugin()
        plugin.status = PluginStatus.FINISHED

        result = await make_driver(dps).cancel(plugin, "curator")

        assert result.is_ok()
        assert dps.killed == []

    @pytest.mark.asyncio
    async def test_kill_failure_is_err(self):
        class FailingKill(ScriptedDps):
            async def kill_task(self, topology, external_task_id, reason):
                raise ExternalTaskTransientError("503")

        result = await make_driver(FailingKill()).cancel(running_plugin(), "curator")

        assert result.is_err()


class TestFromSettings:
    def test_budgets_come_from_settings(self, settings):
        driver = PluginDriver.from_settings(ScriptedDps(), settings)

        assert driver._monitor_retry_budget == settings.monitor_retry_budget
        assert driver._transient_retry_budget == settings.transient_retry_budget
        assert driver._pending_after == settings.pending_after_transient_failures
