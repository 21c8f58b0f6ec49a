"""
Orchestrator facade: the calls outer surfaces make.

    add_workflow_in_queue       validate order → chain policy → factory → create → notify
    cancel_workflow_execution   persist the cancel flag (+ local wake-up)
    trigger_scheduled           due calendar triggers → add_workflow_in_queue

Tags:
    orchestrator, enqueue, cancel, schedule, metis-core
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from metis_core.core.errors import (
    ConfigError,
    ExecutionAlreadyExistsError,
    NoWorkflowExecutionFoundError,
    RepositoryError,
)
from metis_core.core.logging import get_logger
from metis_core.core.result import Err, Ok, Result
from metis_core.core.timestamps import utc_now
from metis_core.execution.chain_policy import PluginChainPolicy
from metis_core.execution.factory import WorkflowFactory
from metis_core.execution.scheduler import ExecutionScheduler
from metis_core.persistence.repository import ExecutionRepository
from metis_core.workflow.dataset import Dataset, ScheduledTrigger, Workflow
from metis_core.workflow.models import PluginStatus, WorkflowExecution, WorkflowStatus
from metis_core.workflow.plugins import PluginType

logger = get_logger(__name__)


class WorkflowOrchestrator:
    """Entry point for enqueueing and cancelling executions."""

    def __init__(
        self,
        repository: ExecutionRepository,
        factory: WorkflowFactory | None = None,
        chain_policy: PluginChainPolicy | None = None,
        scheduler: ExecutionScheduler | None = None,
        worker_id: str = "orchestrator",
        claim_ttl: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.factory = factory
        self.chain_policy = chain_policy or PluginChainPolicy(repository)
        self.scheduler = scheduler
        self.worker_id = worker_id
        self.claim_ttl = claim_ttl
        self._clock = clock
        self._last_trigger_run: datetime | None = None

    def add_workflow_in_queue(
        self,
        dataset: Dataset,
        workflow: Workflow,
        enforced_predecessor_type: PluginType | None = None,
        priority: int = 0,
    ) -> Result[WorkflowExecution]:
        """Create and persist an INQUEUE execution for *dataset*.

        Errors:
            PluginExecutionNotAllowed: invalid plugin order, or no valid
                predecessor for the first plugin.
            ExecutionAlreadyExistsError: the dataset already has a queued or
                running execution.
        """
        if self.factory is None:
            return Err(ConfigError("Orchestrator has no workflow factory configured"))
        plugin_types = workflow.enabled_types()
        ordered = self.chain_policy.validate_order(plugin_types)
        if ordered.is_err():
            return Err(ordered.error)

        if self.repository.has_active_execution(dataset.dataset_id):
            return Err(ExecutionAlreadyExistsError(
                f"Dataset {dataset.dataset_id} already has an active execution"
            ).with_context(dataset_id=dataset.dataset_id))

        predecessor = self.chain_policy.compute_predecessor(
            dataset.dataset_id, plugin_types[0], enforced_predecessor_type
        )
        if predecessor.is_err():
            return predecessor.map_err(lambda error: error.with_context(dataset_id=dataset.dataset_id))

        created = self.factory.create(
            workflow, dataset, predecessor.unwrap(), priority=priority, now=self._clock()
        )
        if created.is_err():
            return created
        execution = created.unwrap()

        try:
            self.repository.create(execution)
        except RepositoryError as exc:
            return Err(exc)

        logger.info(
            "orchestrator.execution_enqueued",
            execution_id=execution.id,
            dataset_id=dataset.dataset_id,
            priority=priority,
            plugin_types=[plugin_type.value for plugin_type in plugin_types],
        )
        if self.scheduler is not None:
            self.scheduler.notify()
        return Ok(execution)

    def cancel_workflow_execution(self, execution_id: str, cancelled_by: str) -> bool:
        """Flag *execution_id* for cancellation.

        Returns False when the execution is already terminal.

        Raises:
            NoWorkflowExecutionFoundError: unknown execution id.
        """
        execution = self.repository.get_by_id(execution_id)
        if execution is None:
            raise NoWorkflowExecutionFoundError(
                f"No workflow execution found with id {execution_id}"
            ).with_context(execution_id=execution_id)
        if execution.is_terminal:
            logger.info(
                "orchestrator.cancel_ignored",
                execution_id=execution_id,
                status=execution.status.value,
            )
            return False

        flagged = self.repository.set_cancelling(execution_id, cancelled_by)
        if flagged:
            logger.info(
                "orchestrator.cancel_requested",
                execution_id=execution_id,
                cancelled_by=cancelled_by,
            )
            if self.scheduler is not None:
                self.scheduler.signal_cancel(execution_id, cancelled_by)
            if execution.status is WorkflowStatus.INQUEUE:
                self._cancel_unstarted(execution_id)
        return flagged

    def _cancel_unstarted(self, execution_id: str) -> None:
        """Finish a queued execution that never submitted a task.

        Executions holding DPS tasks (requeued by reclamation) are left to a
        worker, which kills the tasks first.
        """
        if not self.repository.try_claim(execution_id, self.worker_id, self.claim_ttl, self._clock()):
            return
        try:
            execution = self.repository.get_by_id(execution_id)
            if execution is None or execution.status is not WorkflowStatus.INQUEUE:
                return
            if any(plugin.status is not PluginStatus.INQUEUE for plugin in execution.plugins):
                return
            now = self._clock()
            for plugin in execution.plugins:
                plugin.transition_to(PluginStatus.CANCELLED)
                plugin.updated_date = now
            execution.transition_to(WorkflowStatus.CANCELLED)
            execution.finished_date = now
            execution.updated_date = now
            self.repository.update(execution)
            logger.info("orchestrator.execution_cancelled", execution_id=execution_id)
        finally:
            self.repository.release_claim(execution_id, self.worker_id)

    def trigger_scheduled(
        self,
        triggers: list[ScheduledTrigger],
        now: datetime | None = None,
    ) -> list[WorkflowExecution]:
        """Enqueue executions for triggers with an occurrence since the last call."""
        now = now or self._clock()
        since = self._last_trigger_run
        created: list[WorkflowExecution] = []
        for trigger in triggers:
            if not trigger.is_due(since, now):
                continue
            dataset_id = trigger.dataset.dataset_id
            if self.repository.has_active_execution(dataset_id):
                logger.info("orchestrator.trigger_skipped", dataset_id=dataset_id, reason="active")
                continue
            result = self.add_workflow_in_queue(trigger.dataset, trigger.workflow, priority=trigger.priority)
            if result.is_err():
                logger.warning(
                    "orchestrator.trigger_failed",
                    dataset_id=dataset_id,
                    frequency=trigger.frequency.value,
                    error=str(result.error),
                )
                continue
            created.append(result.unwrap())
        self._last_trigger_run = now
        return created


__all__ = ["WorkflowOrchestrator"]
