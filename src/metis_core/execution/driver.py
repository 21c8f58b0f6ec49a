"""
Plugin driver: submit a plugin's DPS task, poll it, cancel it.

Every operation returns a :class:`~metis_core.core.result.Result` so the
executor branches on outcomes instead of catching exceptions. The driver
mutates the plugin it is handed (external task id, status, dates); the
executor owns persistence.

Monitoring budget:
    ::

        DPS call outcome          counters                       result
        ───────────────────────   ────────────────────────────   ───────────────────────────
        task state observed       reset both                     Ok(MonitorResult(state))
        transient (5xx, network)  transient += 1                 Ok(None) while < K
                                                                 Ok(PENDING) while <= N
                                                                 Err(ExternalTaskHardError)
        hard (4xx, unreadable)    hard += 1                      Ok(None) while < M
                                                                 Err(ExternalTaskHardError)

    K = pending_after_transient_failures, N = transient_retry_budget,
    M = monitor_retry_budget. ``MonitorResult.task_state is None`` means
    "no observation this tick".

Tags:
    driver, dps, plugin, monitoring, result, metis-core
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from metis_core.core.errors import (
    ExternalTaskError,
    ExternalTaskHardError,
    ExternalTaskTransientError,
)
from metis_core.core.logging import get_logger
from metis_core.core.result import Err, Ok, Result
from metis_core.core.timestamps import utc_now
from metis_core.dps.client import DpsClient
from metis_core.dps.models import TaskProgress, TaskState
from metis_core.execution.retry import ExponentialBackoff, RetryContext, RetryStrategy
from metis_core.workflow.models import MetisPlugin, PluginStatus, WorkflowExecution
from metis_core.workflow.tasks import EcloudTarget, TaskCompositionError, compose_task

logger = get_logger(__name__)

TASK_STATE_TO_PLUGIN_STATUS: dict[TaskState, PluginStatus] = {
    TaskState.PENDING: PluginStatus.PENDING,
    TaskState.CURRENTLY_PROCESSING: PluginStatus.RUNNING,
    TaskState.PROCESSED: PluginStatus.FINISHED,
    TaskState.DROPPED: PluginStatus.FAILED,
}


def plugin_status_for(state: TaskState) -> PluginStatus:
    return TASK_STATE_TO_PLUGIN_STATUS[state]


@dataclass(frozen=True)
class MonitorResult:
    """Outcome of one polling call."""

    task_state: TaskState | None
    progress: TaskProgress | None = None
    fail_reason: str | None = None

    @property
    def observed(self) -> bool:
        return self.task_state is not None

    @property
    def plugin_status(self) -> PluginStatus | None:
        return plugin_status_for(self.task_state) if self.task_state else None


@dataclass
class MonitorSession:
    """Consecutive-failure counters for one plugin's monitoring.

    Owned by the executor, one per plugin run, so the shared driver keeps no
    per-plugin state.
    """

    consecutive_transient_failures: int = 0
    consecutive_hard_failures: int = 0

    def reset(self) -> None:
        self.consecutive_transient_failures = 0
        self.consecutive_hard_failures = 0


class PluginDriver:
    """Drives plugins through the DPS."""

    def __init__(
        self,
        dps: DpsClient,
        *,
        ecloud_base_url: str,
        ecloud_provider: str,
        monitor_retry_budget: int = 3,
        transient_retry_budget: int = 20,
        pending_after_transient_failures: int = 1,
        submit_retry: RetryStrategy | None = None,
    ) -> None:
        self._dps = dps
        self._ecloud_base_url = ecloud_base_url
        self._ecloud_provider = ecloud_provider
        self._monitor_retry_budget = monitor_retry_budget
        self._transient_retry_budget = transient_retry_budget
        self._pending_after = pending_after_transient_failures
        self._submit_retry = submit_retry or ExponentialBackoff(
            max_retries=transient_retry_budget, base_delay=1.0, max_delay=30.0
        )

    @classmethod
    def from_settings(cls, dps: DpsClient, settings: Any, **kwargs: Any) -> PluginDriver:
        return cls(
            dps,
            ecloud_base_url=settings.ecloud_base_url,
            ecloud_provider=settings.ecloud_provider,
            monitor_retry_budget=settings.monitor_retry_budget,
            transient_retry_budget=settings.transient_retry_budget,
            pending_after_transient_failures=settings.pending_after_transient_failures,
            **kwargs,
        )

    def _target(self, execution: WorkflowExecution) -> EcloudTarget:
        return EcloudTarget(
            base_url=self._ecloud_base_url,
            provider=self._ecloud_provider,
            dataset_id=execution.ecloud_dataset_id or execution.dataset_id,
        )

    # ── execute ──────────────────────────────────────────────────

    async def execute(
        self,
        execution: WorkflowExecution,
        plugin: MetisPlugin,
        now: datetime | None = None,
    ) -> Result[str]:
        """Compose and submit the plugin's task; on success the plugin is RUNNING.

        Returns ``Ok(external_task_id)`` or ``Err(ExternalTaskError)``.
        """
        now = now or utc_now()
        if plugin.started_date is None:
            plugin.started_date = now

        try:
            task = compose_task(plugin, self._target(execution))
        except TaskCompositionError as exc:
            return Err(ExternalTaskHardError(f"Invalid task: {exc}", cause=exc).with_context(
                execution_id=execution.id, plugin_type=plugin.plugin_type.value
            ))

        ctx = RetryContext(
            strategy=self._submit_retry,
            on_retry=lambda attempt, error, delay: logger.warning(
                "driver.submit_retry",
                execution_id=execution.id,
                plugin_type=plugin.plugin_type.value,
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error=str(error),
            ),
        )
        try:
            external_task_id = await ctx.run_async(
                self._dps.submit_task, plugin.topology.value, task
            )
        except ExternalTaskTransientError as exc:
            return Err(ExternalTaskHardError(
                f"Submission failed after {ctx.attempt} attempts: {exc.message}", cause=exc
            ).with_context(execution_id=execution.id, plugin_type=plugin.plugin_type.value))
        except ExternalTaskError as exc:
            return Err(exc.with_context(execution_id=execution.id, plugin_type=plugin.plugin_type.value))

        plugin.external_task_id = external_task_id
        plugin.transition_to(PluginStatus.RUNNING)
        plugin.updated_date = now
        logger.info(
            "driver.submitted",
            execution_id=execution.id,
            plugin_type=plugin.plugin_type.value,
            topology=plugin.topology.value,
            external_task_id=external_task_id,
        )
        return Ok(external_task_id)

    # ── monitor ──────────────────────────────────────────────────

    async def monitor(self, plugin: MetisPlugin, session: MonitorSession) -> Result[MonitorResult]:
        """One polling call against the DPS."""
        if not plugin.external_task_id:
            return Err(ExternalTaskHardError(
                f"{plugin.plugin_type.value} has no external task to monitor"
            ))
        try:
            progress = await self._dps.get_task_progress(
                plugin.topology.value, plugin.external_task_id
            )
        except ExternalTaskTransientError as exc:
            session.consecutive_transient_failures += 1
            failures = session.consecutive_transient_failures
            logger.warning(
                "driver.monitor_transient_failure",
                plugin_type=plugin.plugin_type.value,
                external_task_id=plugin.external_task_id,
                consecutive=failures,
                error=exc.message,
            )
            if failures > self._transient_retry_budget:
                return Err(ExternalTaskHardError(
                    f"DPS unavailable for {failures} consecutive polls: {exc.message}",
                    cause=exc,
                ).with_context(external_task_id=plugin.external_task_id))
            if failures >= self._pending_after:
                return Ok(MonitorResult(task_state=TaskState.PENDING))
            return Ok(MonitorResult(task_state=None))
        except ExternalTaskError as exc:
            session.consecutive_hard_failures += 1
            failures = session.consecutive_hard_failures
            message = exc.message
            logger.warning(
                "driver.monitor_failure",
                plugin_type=plugin.plugin_type.value,
                external_task_id=plugin.external_task_id,
                consecutive=failures,
                error=message,
            )
            if failures >= self._monitor_retry_budget:
                return Err(ExternalTaskHardError(
                    f"Monitoring failed {failures} consecutive times: {message}", cause=exc
                ).with_context(external_task_id=plugin.external_task_id))
            return Ok(MonitorResult(task_state=None))

        session.reset()
        fail_reason = None
        if progress.state is TaskState.DROPPED:
            fail_reason = progress.info or "Task was dropped by the DPS"
        return Ok(MonitorResult(task_state=progress.state, progress=progress, fail_reason=fail_reason))

    # ── cancel ───────────────────────────────────────────────────

    async def cancel(self, plugin: MetisPlugin, reason: str) -> Result[None]:
        """Best-effort kill of the plugin's DPS task; idempotent."""
        if plugin.status.is_terminal or not plugin.external_task_id:
            return Ok(None)
        try:
            await self._dps.kill_task(plugin.topology.value, plugin.external_task_id, reason)
        except ExternalTaskError as exc:
            logger.warning(
                "driver.cancel_failed",
                plugin_type=plugin.plugin_type.value,
                external_task_id=plugin.external_task_id,
                error=exc.message,
            )
            return Err(exc)
        return Ok(None)


__all__ = [
    "PluginDriver",
    "MonitorResult",
    "MonitorSession",
    "TASK_STATE_TO_PLUGIN_STATUS",
    "plugin_status_for",
]
