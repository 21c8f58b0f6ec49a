"""
Workflow executor: drives one claimed execution to a terminal state.

State machine:
    ::

        run(execution_id)
        │
        ├── 1. claim            monitor.claim_execution → None: return, no side effects
        ├── 2. initialize       INQUEUE → RUNNING, startedDate kept when already set
        ├── 3. plugins in order
        │      ├── cancelling?  → 5
        │      ├── execute      Err → plugin FAILED → 6
        │      └── monitor loop until the plugin is terminal
        ├── 4. plugin outcome   FINISHED: next | FAILED: 6 | CANCELLED: 5
        ├── 5. cancel path      kill active task, wait for DPS terminal state,
        │                       remaining plugins CANCELLED
        └── 6. finalize         finishedDate, terminal status, single ``update``

    Every write carries a freshly extended claim (the heartbeat), and a claim
    keeper task renews it between writes. Losing the claim or exhausting
    repository retries aborts the run without touching the execution; stale
    reclamation hands it to the next worker.

Monitor loop (per plugin):
    ::

        sleep(poll interval)           interruptible by the cancellation token
        is_cancelling?                 every ``cancellation_check_interval_polls`` polls
        driver.monitor                 Err → FAILED; observation → status + counters
        stall check                    processedRecords unchanged for the threshold → FAILED
        update_monitor_info

Tags:
    executor, workflow, state-machine, monitoring, cancellation, metis-core
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from metis_core.core.errors import ClaimLostError, RepositoryError, TaskStalledError
from metis_core.core.logging import LogContext, get_logger
from metis_core.core.timestamps import utc_now
from metis_core.dps.models import TaskState
from metis_core.execution.cancellation import CancellationToken
from metis_core.execution.chain_policy import link_to_previous, previous_in_execution
from metis_core.execution.driver import MonitorResult, MonitorSession, PluginDriver
from metis_core.execution.monitor import ExecutionMonitor
from metis_core.execution.retry import ExponentialBackoff, RetryStrategy, call_with_retry
from metis_core.persistence.repository import ExecutionRepository
from metis_core.workflow.models import (
    MetisPlugin,
    PluginStatus,
    WorkflowExecution,
    WorkflowStatus,
)

logger = get_logger(__name__)


class RunOutcome(str, Enum):
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def workflow_status(self) -> WorkflowStatus:
        return WorkflowStatus(self.value)


class WorkflowExecutor:
    """Runs executions claimed through an :class:`ExecutionMonitor`."""

    def __init__(
        self,
        repository: ExecutionRepository,
        driver: PluginDriver,
        monitor: ExecutionMonitor,
        *,
        poll_interval_seconds: float = 30.0,
        stall_threshold: timedelta = timedelta(minutes=30),
        cancellation_check_interval_polls: int = 1,
        repository_retry: RetryStrategy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.driver = driver
        self.monitor = monitor
        self.poll_interval_seconds = poll_interval_seconds
        self.stall_threshold = stall_threshold
        self.cancellation_check_interval_polls = max(1, cancellation_check_interval_polls)
        self._retry = repository_retry or ExponentialBackoff(max_retries=3)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        repository: ExecutionRepository,
        driver: PluginDriver,
        monitor: ExecutionMonitor,
        settings: Any,
        **kwargs: Any,
    ) -> WorkflowExecutor:
        return cls(
            repository,
            driver,
            monitor,
            poll_interval_seconds=settings.poll_interval_seconds,
            stall_threshold=settings.stall_threshold,
            cancellation_check_interval_polls=settings.cancellation_check_interval_polls,
            repository_retry=ExponentialBackoff(max_retries=settings.repository_retry_attempts),
            **kwargs,
        )

    # ── Entry point ──────────────────────────────────────────────

    async def run(
        self,
        execution_id: str,
        token: CancellationToken | None = None,
    ) -> WorkflowExecution | None:
        """Drive *execution_id* to a terminal state.

        Returns the final execution, or None when it could not be claimed or
        the run was abandoned to reclamation.
        """
        token = token or CancellationToken()
        try:
            execution = await self.monitor.claim_execution(execution_id)
        except RepositoryError as exc:
            logger.error("executor.claim_failed", execution_id=execution_id, error=exc.message)
            return None
        if execution is None:
            return None

        async with LogContext(execution_id=execution.id, worker_id=self.monitor.worker_id):
            keeper = asyncio.create_task(self.monitor.keep_claim(execution))
            try:
                await self._initialize(execution)
                outcome = await self._run_plugins(execution, token)
                await self._finalize(execution, outcome)
            except ClaimLostError:
                logger.warning("executor.claim_lost", dataset_id=execution.dataset_id)
                return None
            except RepositoryError as exc:
                logger.error(
                    "executor.repository_failed",
                    dataset_id=execution.dataset_id,
                    error=exc.message,
                )
                return None
            finally:
                keeper.cancel()
                await asyncio.wait({keeper})
        return execution

    # ── Steps ────────────────────────────────────────────────────

    async def _persist(self, write: Callable[[WorkflowExecution], None], execution: WorkflowExecution) -> None:
        self.monitor.heartbeat(execution)
        await call_with_retry(self._retry, write, execution)

    async def _initialize(self, execution: WorkflowExecution) -> None:
        if execution.status is not WorkflowStatus.INQUEUE:
            logger.info("executor.resumed", status=execution.status.value)
            return
        now = self._clock()
        execution.transition_to(WorkflowStatus.RUNNING)
        if execution.started_date is None:
            execution.started_date = now
        execution.updated_date = now
        await self._persist(self.repository.update_monitor_info, execution)
        logger.info(
            "executor.started",
            dataset_id=execution.dataset_id,
            plugin_types=[plugin.plugin_type.value for plugin in execution.plugins],
        )

    async def _run_plugins(self, execution: WorkflowExecution, token: CancellationToken) -> RunOutcome:
        for index, plugin in enumerate(execution.plugins):
            if plugin.status is PluginStatus.FINISHED:
                continue
            if plugin.status is PluginStatus.FAILED:
                return RunOutcome.FAILED
            if plugin.status is PluginStatus.CANCELLED:
                return await self._cancel_remaining(execution)

            if await self._cancel_requested(execution, token):
                return await self._cancel_remaining(execution)

            if plugin.status is PluginStatus.INQUEUE:
                previous = previous_in_execution(execution, index)
                if previous is not None:
                    link_to_previous(plugin, previous)
                result = await self.driver.execute(execution, plugin, now=self._clock())
                if result.is_err():
                    plugin.fail(_message_of(result.error), self._clock())
                    logger.error(
                        "executor.plugin_submit_failed",
                        plugin_type=plugin.plugin_type.value,
                        error=plugin.fail_message,
                    )
                    return RunOutcome.FAILED
                execution.updated_date = self._clock()
                await self._persist(self.repository.update_monitor_info, execution)
            else:
                logger.info(
                    "executor.plugin_resumed",
                    plugin_type=plugin.plugin_type.value,
                    external_task_id=plugin.external_task_id,
                )

            status = await self._monitor_plugin(execution, plugin, token)
            if status is PluginStatus.FAILED:
                return RunOutcome.FAILED
            if status is PluginStatus.CANCELLED:
                return await self._cancel_remaining(execution)
            logger.info("executor.plugin_finished", plugin_type=plugin.plugin_type.value)

        return RunOutcome.FINISHED

    async def _monitor_plugin(
        self,
        execution: WorkflowExecution,
        plugin: MetisPlugin,
        token: CancellationToken,
    ) -> PluginStatus:
        session = MonitorSession()
        last_processed = plugin.execution_progress.processed_records
        last_change = self._clock()
        polls = 0

        while True:
            interrupted = await token.sleep(self.poll_interval_seconds)
            polls += 1
            if interrupted or polls % self.cancellation_check_interval_polls == 0:
                if await self._cancel_requested(execution, token):
                    await self._cancel_plugin(execution, plugin)
                    return plugin.status

            result = await self.driver.monitor(plugin, session)
            now = self._clock()
            if result.is_err():
                plugin.fail(_message_of(result.error), now)
                await self._persist(self.repository.update_monitor_info, execution)
                logger.error(
                    "executor.plugin_monitor_failed",
                    plugin_type=plugin.plugin_type.value,
                    error=plugin.fail_message,
                )
                return plugin.status

            self._apply(plugin, result.unwrap(), now)
            execution.updated_date = now
            if plugin.status.is_terminal:
                await self._persist(self.repository.update_monitor_info, execution)
                return plugin.status

            processed = plugin.execution_progress.processed_records
            if processed != last_processed:
                last_processed, last_change = processed, now
            elif now - last_change >= self.stall_threshold:
                minutes = int(self.stall_threshold.total_seconds() // 60)
                stalled = TaskStalledError(
                    f"No processed records change for {minutes} minutes"
                )
                await self.driver.cancel(plugin, stalled.message)
                plugin.fail(stalled.message, now)
                await self._persist(self.repository.update_monitor_info, execution)
                logger.error(
                    "executor.plugin_stalled",
                    plugin_type=plugin.plugin_type.value,
                    processed_records=processed,
                )
                return plugin.status

            await self._persist(self.repository.update_monitor_info, execution)

    def _apply(self, plugin: MetisPlugin, observation: MonitorResult, now: datetime) -> None:
        target = observation.plugin_status
        if target is None:
            return
        progress = observation.progress
        if progress is not None:
            plugin.execution_progress.observe(
                expected_records=progress.expected_records,
                processed_records=progress.processed_records,
                errors=progress.errors,
                status=progress.state,
            )
        if target is PluginStatus.FAILED:
            plugin.fail(observation.fail_reason or "Task failed", now)
            return
        plugin.transition_to(target)
        plugin.updated_date = now
        if target is PluginStatus.FINISHED:
            plugin.finished_date = now

    # ── Cancellation ─────────────────────────────────────────────

    async def _cancel_requested(self, execution: WorkflowExecution, token: CancellationToken) -> bool:
        if execution.cancelling:
            return True
        flagged = await call_with_retry(self._retry, self.repository.is_cancelling, execution.id)
        if not flagged and not token.cancelled:
            return False
        stored = await call_with_retry(self._retry, self.repository.get_by_id, execution.id)
        execution.cancelling = True
        if stored is not None and stored.cancelled_by:
            execution.cancelled_by = stored.cancelled_by
        elif execution.cancelled_by is None:
            execution.cancelled_by = token.reason
        logger.info("executor.cancel_requested", cancelled_by=execution.cancelled_by)
        return True

    async def _cancel_plugin(self, execution: WorkflowExecution, plugin: MetisPlugin) -> None:
        """Kill the plugin's task, wait for a terminal DPS state, mark CANCELLED."""
        if plugin.status.is_terminal:
            return
        reason = execution.cancelled_by or "cancelled"
        result = await self.driver.cancel(plugin, reason)
        dps_state = None
        if result.is_ok() and plugin.external_task_id:
            dps_state = await self._await_task_end(execution, plugin)

        now = self._clock()
        plugin.transition_to(PluginStatus.CANCELLED)
        plugin.finished_date = now
        plugin.updated_date = now
        logger.info(
            "executor.plugin_cancelled",
            plugin_type=plugin.plugin_type.value,
            external_task_id=plugin.external_task_id,
            dps_state=dps_state.value if dps_state else None,
            processed_records=plugin.execution_progress.processed_records,
        )

    async def _await_task_end(self, execution: WorkflowExecution, plugin: MetisPlugin) -> TaskState | None:
        """Poll the killed task until the DPS reports it ended; the final state seen."""
        session = MonitorSession()
        started = self._clock()
        while self._clock() - started < self.stall_threshold:
            result = await self.driver.monitor(plugin, session)
            if result.is_err():
                return None
            observation = result.unwrap()
            if observation.task_state is not None and observation.task_state.is_terminal:
                progress = observation.progress
                plugin.execution_progress.observe(
                    expected_records=progress.expected_records if progress else 0,
                    processed_records=progress.processed_records if progress else 0,
                    errors=progress.errors if progress else 0,
                    status=observation.task_state,
                )
                return observation.task_state
            execution.updated_date = self._clock()
            await self._persist(self.repository.update_monitor_info, execution)
            # the run token is usually already set here and would not pause
            await asyncio.sleep(self.poll_interval_seconds)
        return None

    async def _cancel_remaining(self, execution: WorkflowExecution) -> RunOutcome:
        for plugin in execution.plugins:
            if plugin.status.is_terminal:
                continue
            if plugin.status.is_active:
                await self._cancel_plugin(execution, plugin)
            else:
                plugin.transition_to(PluginStatus.CANCELLED)
                plugin.updated_date = self._clock()
        return RunOutcome.CANCELLED

    # ── Finalize ─────────────────────────────────────────────────

    async def _finalize(self, execution: WorkflowExecution, outcome: RunOutcome) -> None:
        now = self._clock()
        execution.transition_to(outcome.workflow_status)
        execution.finished_date = now
        execution.updated_date = now
        await self._persist(self.repository.update, execution)
        await self.monitor.release(execution.id)
        logger.info(
            "executor.finished",
            dataset_id=execution.dataset_id,
            status=execution.status.value,
            cancelled_by=execution.cancelled_by,
        )


def _message_of(error: Exception) -> str:
    return getattr(error, "message", None) or str(error)


__all__ = ["WorkflowExecutor", "RunOutcome"]
