"""Tests for WorkflowExecutor: claim, submit, monitor, cancel, finalize."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from metis_core.core.errors import ExternalTaskHardError, ExternalTaskTransientError
from metis_core.dps.models import TaskState
from metis_core.execution.cancellation import CancellationToken
from metis_core.execution.driver import PluginDriver
from metis_core.execution.executor import WorkflowExecutor
from metis_core.execution.monitor import ExecutionMonitor
from metis_core.execution.retry import NoRetry
from metis_core.workflow.models import (
    CancelledSystemId,
    PluginStatus,
    WorkflowStatus,
)
from metis_core.workflow.plugins import PluginType
from tests._support.doubles import (
    T0,
    RecordingRepository,
    ScriptedDps,
    dedupe,
    make_execution,
    progress,
)


class SteppingClock:
    """Clock that moves forward by ``step`` on every call."""

    def __init__(self, start=T0, step=timedelta(minutes=11)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


class SharedClock:
    """Clock moved by hand, shared by every component of a scenario."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


class SlowSubmitDps(ScriptedDps):
    """DPS whose submission spends minutes of clock time in retries.

    Each step moves the clock, waits for the claim keeper to renew, then lets
    a rival worker run its stale-claim tick.
    """

    def __init__(self, clock, repository, rival, steps=10, step=timedelta(seconds=30), **kwargs):
        super().__init__(**kwargs)
        self.clock = clock
        self.repository = repository
        self.rival = rival
        self.steps = steps
        self.step = step

    async def submit_task(self, topology, task):
        for _ in range(self.steps):
            self.clock.advance(self.step)
            seen = self.repository.renewals
            while self.repository.renewals < seen + 2:
                await asyncio.sleep(0.001)
            await self.rival.tick()
        return await super().submit_task(topology, task)


class TestHappyPath:
    """Single plugin driven to FINISHED."""

    @pytest.mark.asyncio
    async def test_plugin_runs_to_finished(self, repository, dps, make_executor):
        """Statuses after initialize are RUNNING, RUNNING, FINISHED."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [
            progress(TaskState.CURRENTLY_PROCESSING, processed=10),
            progress(TaskState.PROCESSED, processed=100),
        ]

        result = await make_executor().run(execution.id)

        assert result is not None
        assert result.status is WorkflowStatus.FINISHED
        assert repository.plugin_statuses()[1:] == [
            PluginStatus.RUNNING,
            PluginStatus.RUNNING,
            PluginStatus.FINISHED,
        ]
        assert repository.calls.count("update") == 1

    @pytest.mark.asyncio
    async def test_initialize_write_marks_execution_running(self, repository, dps, make_executor):
        """The first write is the RUNNING execution with its plugin still queued."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [progress(TaskState.PROCESSED, processed=5, expected=5)]

        await make_executor().run(execution.id)

        first = repository.monitor_info_writes[0]
        assert first.status is WorkflowStatus.RUNNING
        assert first.started_date is not None
        assert first.plugins[0].status is PluginStatus.INQUEUE

    @pytest.mark.asyncio
    async def test_stored_record_after_finish(self, repository, dps, make_executor):
        """Finished execution keeps counters and dates and holds no claim."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [progress(TaskState.PROCESSED, processed=100)]

        await make_executor().run(execution.id)

        stored = repository.get_by_id(execution.id)
        plugin = stored.plugins[0]
        assert stored.status is WorkflowStatus.FINISHED
        assert stored.finished_date is not None
        assert stored.claim is None
        assert plugin.external_task_id == "task-1"
        assert plugin.execution_progress.processed_records == 100
        assert plugin.execution_progress.progress_percentage == 100
        assert plugin.finished_date is not None
        assert stored.created_date <= stored.started_date <= stored.updated_date

    @pytest.mark.asyncio
    async def test_submits_to_plugin_topology(self, repository, dps, make_executor):
        """The OAI-PMH harvest goes to the oai_harvest topology."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [progress(TaskState.PROCESSED)]

        await make_executor().run(execution.id)

        topology, task = dps.submitted[0]
        assert topology == "oai_harvest"
        assert task.input_data
        assert task.parameters["OUTPUT_DATA_SETS"].endswith("/data-sets/ecloud-1001")


class TestFailures:
    """Submission and monitoring failures end the execution FAILED."""

    @pytest.mark.asyncio
    async def test_submit_error_fails_plugin(self, repository, dps, make_executor):
        """A rejected submission fails the plugin without any polling."""
        execution = make_execution()
        repository.create(execution)
        dps.submit_error = ExternalTaskHardError("boom", http_status=400)

        result = await make_executor().run(execution.id)

        assert result.status is WorkflowStatus.FAILED
        assert result.plugins[0].status is PluginStatus.FAILED
        assert result.plugins[0].fail_message == "boom"
        assert dps.progress_calls == 0
        stored = repository.get_by_id(execution.id)
        assert stored.status is WorkflowStatus.FAILED
        assert stored.plugins[0].fail_message == "boom"

    @pytest.mark.asyncio
    async def test_dropped_task_fails_execution(self, repository, dps, make_executor):
        """DPS DROPPED maps to a FAILED plugin carrying the DPS reason."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [
            progress(TaskState.CURRENTLY_PROCESSING, processed=3),
            progress(TaskState.DROPPED, processed=3, info="Task dropped: disk full"),
        ]

        result = await make_executor().run(execution.id)

        assert repository.plugin_statuses()[1:] == [
            PluginStatus.RUNNING,
            PluginStatus.RUNNING,
            PluginStatus.FAILED,
        ]
        assert result.plugins[0].fail_message == "Task dropped: disk full"
        assert repository.get_by_id(execution.id).status is WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_monitor_budget_exhausted(self, repository, dps, make_executor):
        """Three consecutive hard monitor failures fail the plugin."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [ExternalTaskHardError("bad gateway body")] * 3

        result = await make_executor(monitor_retry_budget=3).run(execution.id)

        assert result.status is WorkflowStatus.FAILED
        assert "3 consecutive" in result.plugins[0].fail_message
        assert dps.progress_calls == 3

    @pytest.mark.asyncio
    async def test_stall_fails_plugin_and_kills_task(self, repository, dps, make_executor):
        """Processed records frozen past the threshold fail the plugin."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [progress(TaskState.CURRENTLY_PROCESSING, processed=5)] * 20

        executor = make_executor(stall_threshold=timedelta(minutes=30), clock=SteppingClock())
        result = await executor.run(execution.id)

        plugin = result.plugins[0]
        assert result.status is WorkflowStatus.FAILED
        assert plugin.status is PluginStatus.FAILED
        assert plugin.fail_message == "No processed records change for 30 minutes"
        assert len(dps.killed) == 1
        assert dps.killed[0][2] == plugin.fail_message


class TestTransientRecovery:
    """Upstream 5xx while monitoring."""

    @pytest.mark.asyncio
    async def test_pending_then_recovery(self, repository, dps, make_executor):
        """Four transient errors park the plugin in PENDING until the DPS answers."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [ExternalTaskTransientError("503", http_status=503)] * 4 + [
            progress(TaskState.CURRENTLY_PROCESSING, processed=40),
            progress(TaskState.PROCESSED, processed=100),
        ]

        result = await make_executor().run(execution.id)

        assert result.status is WorkflowStatus.FINISHED
        assert dedupe(repository.plugin_statuses()[2:]) == [
            PluginStatus.PENDING,
            PluginStatus.RUNNING,
            PluginStatus.FINISHED,
        ]

    @pytest.mark.asyncio
    async def test_transient_budget_exhausted(self, repository, dps, make_executor):
        """More consecutive 5xx than the budget allows fails the plugin."""
        execution = make_execution()
        repository.create(execution)
        dps.script = [ExternalTaskTransientError("503", http_status=503)] * 4

        result = await make_executor(transient_retry_budget=3).run(execution.id)

        assert result.status is WorkflowStatus.FAILED
        assert "DPS unavailable" in result.plugins[0].fail_message


class TestCancellation:
    """User and system cancellation."""

    @pytest.mark.asyncio
    async def test_minute_cap_cancel(self, repository, dps, make_executor):
        """Cancel flag raised on the second tick kills the task and keeps cancelledBy."""
        execution = make_execution()
        repository.create(execution)
        reason = CancelledSystemId.SYSTEM_MINUTE_CAP_EXPIRE.value

        def flag_then_report():
            repository.set_cancelling(execution.id, reason)
            return progress(TaskState.CURRENTLY_PROCESSING, processed=20)

        dps.script = [progress(TaskState.CURRENTLY_PROCESSING, processed=10), flag_then_report]

        result = await make_executor().run(execution.id)

        assert dps.killed == [("oai_harvest", "task-1", reason)]
        assert result.plugins[0].status is PluginStatus.CANCELLED
        assert result.status is WorkflowStatus.CANCELLED
        stored = repository.get_by_id(execution.id)
        assert stored.status is WorkflowStatus.CANCELLED
        assert stored.cancelled_by == reason
        assert stored.cancelling is True
        assert repository.calls.count("update") == 1

    @pytest.mark.asyncio
    async def test_token_cancel_before_submission(self, repository, dps, make_executor):
        """A token cancelled up front cancels every plugin without submitting."""
        execution = make_execution((PluginType.OAIPMH_HARVEST, PluginType.VALIDATION_EXTERNAL))
        repository.create(execution)
        token = CancellationToken()
        token.cancel("user-1")

        result = await make_executor().run(execution.id, token)

        assert result.status is WorkflowStatus.CANCELLED
        assert [plugin.status for plugin in result.plugins] == [PluginStatus.CANCELLED] * 2
        assert result.cancelled_by == "user-1"
        assert dps.submitted == []

    @pytest.mark.asyncio
    async def test_token_interrupts_monitoring(self, repository, dps, make_executor):
        """Cancelling the token mid-run wakes the poll loop and kills the task."""
        execution = make_execution()
        repository.create(execution)
        token = CancellationToken()

        def cancel_token():
            token.cancel("user-2")
            return progress(TaskState.CURRENTLY_PROCESSING, processed=1)

        dps.script = [cancel_token]

        result = await make_executor().run(execution.id, token)

        assert result.status is WorkflowStatus.CANCELLED
        assert dps.killed[0][2] == "user-2"

    @pytest.mark.asyncio
    async def test_persisted_cancelled_by_wins_over_token(self, repository, dps, make_executor):
        """The stored cancelledBy is kept when the token carries another reason."""
        execution = make_execution()
        repository.create(execution)
        repository.set_cancelling(execution.id, "curator")
        token = CancellationToken()
        token.cancel("scheduler")

        result = await make_executor().run(execution.id, token)

        assert result.cancelled_by == "curator"

    @pytest.mark.asyncio
    async def test_cancel_keeps_final_dps_state(self, repository, dps, make_executor):
        """A task that completes while being killed is CANCELLED but keeps the DPS outcome."""
        execution = make_execution()
        repository.create(execution)

        def flag_then_report():
            repository.set_cancelling(execution.id, "user-1")
            return progress(TaskState.CURRENTLY_PROCESSING, processed=90)

        dps.script = [flag_then_report]
        dps.after_kill = progress(TaskState.PROCESSED, processed=100)

        result = await make_executor().run(execution.id)

        plugin = result.plugins[0]
        assert plugin.status is PluginStatus.CANCELLED
        assert plugin.execution_progress.status is TaskState.PROCESSED
        assert plugin.execution_progress.processed_records == 100
        stored = repository.get_by_id(execution.id).plugins[0]
        assert stored.execution_progress.status is TaskState.PROCESSED

    @pytest.mark.asyncio
    async def test_cancel_wait_paces_polls_after_token_cancel(
        self, repository, dps, make_executor, monkeypatch
    ):
        """Waiting for the killed task sleeps the poll interval even with the token set."""
        execution = make_execution()
        execution.status = WorkflowStatus.RUNNING
        execution.started_date = T0
        execution.plugins[0].status = PluginStatus.RUNNING
        execution.plugins[0].external_task_id = "task-77"
        repository.create(execution)
        dps.after_kill = progress(TaskState.CURRENTLY_PROCESSING, processed=5)
        pauses = []
        real_sleep = asyncio.sleep

        async def recording_sleep(seconds, *args, **kwargs):
            if seconds == 5:
                pauses.append(seconds)
                dps.after_kill = progress(TaskState.DROPPED, processed=5)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", recording_sleep)
        token = CancellationToken()
        token.cancel("user-1")

        result = await make_executor(poll_interval_seconds=5).run(execution.id, token)

        assert result.status is WorkflowStatus.CANCELLED
        assert pauses == [5]
        assert dps.progress_calls == 2
        assert result.plugins[0].execution_progress.status is TaskState.DROPPED


class TestClaims:
    """Claim handling around a run."""

    @pytest.mark.asyncio
    async def test_unclaimable_execution(self, repository, dps, make_executor):
        """A refused claim returns immediately without other interactions."""
        execution = make_execution()
        repository.create(execution)
        repository.try_claim(execution.id, "other", timedelta(minutes=5))
        repository.reset_calls()

        result = await make_executor().run(execution.id)

        assert result is None
        assert repository.calls == ["try_claim"]
        assert dps.submitted == []
        assert dps.progress_calls == 0

    @pytest.mark.asyncio
    async def test_claim_lost_mid_run(self, repository, dps, make_executor):
        """Another worker taking over makes the run abort without a terminal write."""
        execution = make_execution()
        repository.create(execution)

        def steal_claim():
            repository.release_claim(execution.id, "worker-a")
            repository.try_claim(execution.id, "worker-b", timedelta(minutes=5))
            return progress(TaskState.CURRENTLY_PROCESSING, processed=1)

        dps.script = [steal_claim]

        result = await make_executor().run(execution.id)

        assert result is None
        stored = repository.get_by_id(execution.id)
        assert stored.status is WorkflowStatus.RUNNING
        assert stored.claim.worker_id == "worker-b"
        assert "update" not in repository.calls

    @pytest.mark.asyncio
    async def test_claim_held_through_slow_submission(self):
        """A submission outlasting the claim TTL keeps the lease; no rival takes over."""
        clock = SharedClock()
        ttl = timedelta(minutes=2)
        repository = RecordingRepository(clock=clock)
        execution = make_execution()
        repository.create(execution)
        rival = ExecutionMonitor(
            repository, worker_id="worker-b", claim_ttl=ttl, repository_retry=NoRetry(), clock=clock
        )
        dps = SlowSubmitDps(clock, repository, rival)
        dps.script = [progress(TaskState.PROCESSED, processed=100)]
        monitor = ExecutionMonitor(
            repository,
            worker_id="worker-a",
            claim_ttl=ttl,
            repository_retry=NoRetry(),
            renew_interval_seconds=0,
            clock=clock,
        )
        driver = PluginDriver(
            dps,
            ecloud_base_url="http://ecloud.example.org/mcs",
            ecloud_provider="metis_provider",
            submit_retry=NoRetry(),
        )
        executor = WorkflowExecutor(
            repository, driver, monitor, poll_interval_seconds=0, repository_retry=NoRetry(), clock=clock
        )

        result = await asyncio.wait_for(executor.run(execution.id), timeout=10)

        assert clock() - T0 == timedelta(minutes=5)
        assert rival.get_stats().requeued == 0
        assert len(dps.submitted) == 1
        assert result.status is WorkflowStatus.FINISHED
        assert repository.get_by_id(execution.id).status is WorkflowStatus.FINISHED

        await asyncio.sleep(0.05)
        renewals = repository.renewals
        await asyncio.sleep(0.05)
        assert repository.renewals == renewals


class TestResume:
    """Executions handed over by stale reclamation."""

    @pytest.mark.asyncio
    async def test_resume_monitors_without_resubmitting(self, repository, dps, make_executor):
        """A plugin that already has a DPS task is monitored, not resubmitted."""
        execution = make_execution()
        execution.status = WorkflowStatus.RUNNING
        execution.started_date = T0
        plugin = execution.plugins[0]
        plugin.status = PluginStatus.RUNNING
        plugin.external_task_id = "task-77"
        plugin.started_date = T0
        repository.create(execution)
        dps.script = [progress(TaskState.PROCESSED, processed=50, expected=50)]

        result = await make_executor().run(execution.id)

        assert dps.submitted == []
        assert result.status is WorkflowStatus.FINISHED
        assert result.started_date == T0
        assert result.plugins[0].external_task_id == "task-77"

    @pytest.mark.asyncio
    async def test_requeued_execution_keeps_started_date(self, repository, dps, make_executor):
        """Re-initializing a requeued execution does not move startedDate."""
        execution = make_execution()
        execution.started_date = T0
        repository.create(execution)
        dps.script = [progress(TaskState.PROCESSED)]

        result = await make_executor().run(execution.id)

        assert result.started_date == T0


class TestChaining:
    """Several plugins in one execution."""

    @pytest.mark.asyncio
    async def test_second_plugin_reads_first_plugin_revision(self, repository, dps, make_executor):
        """Each plugin consumes the revision written by the plugin before it."""
        execution = make_execution((PluginType.OAIPMH_HARVEST, PluginType.VALIDATION_EXTERNAL))
        repository.create(execution)
        dps.script = [
            progress(TaskState.PROCESSED, processed=10, expected=10),
            progress(TaskState.PROCESSED, processed=10, expected=10),
        ]

        result = await make_executor().run(execution.id)

        assert result.status is WorkflowStatus.FINISHED
        assert [topology for topology, _ in dps.submitted] == ["oai_harvest", "validation"]
        second = result.plugins[1]
        assert second.previous_revision.execution_id == execution.id
        assert second.previous_revision.plugin_index == 0
        assert second.previous_revision.revision_timestamp == result.plugins[0].started_date
        _, task = dps.submitted[1]
        assert task.parameters["REVISION_NAME"] == "OAIPMH_HARVEST"

    @pytest.mark.asyncio
    async def test_failure_stops_the_chain(self, repository, dps, make_executor):
        """A failed first plugin leaves the next one queued and unsubmitted."""
        execution = make_execution((PluginType.OAIPMH_HARVEST, PluginType.VALIDATION_EXTERNAL))
        repository.create(execution)
        dps.script = [progress(TaskState.DROPPED, info="harvest failed")]

        result = await make_executor().run(execution.id)

        assert result.status is WorkflowStatus.FAILED
        assert result.plugins[1].status is PluginStatus.INQUEUE
        assert len(dps.submitted) == 1

    @pytest.mark.asyncio
    async def test_at_most_one_active_plugin(self, repository, dps, make_executor):
        """No write ever shows two plugins PENDING or RUNNING at once."""
        execution = make_execution((PluginType.OAIPMH_HARVEST, PluginType.VALIDATION_EXTERNAL))
        repository.create(execution)
        dps.script = [
            progress(TaskState.CURRENTLY_PROCESSING, processed=1),
            progress(TaskState.PROCESSED, processed=2),
            progress(TaskState.PENDING),
            progress(TaskState.PROCESSED, processed=2),
        ]

        await make_executor().run(execution.id)

        for write in repository.monitor_info_writes:
            assert len(write.active_plugins()) <= 1
