"""
Execution scheduler: bounded worker pool fed from the repository queue.

Beat-as-poller: every tick (or on :meth:`ExecutionScheduler.notify`) the
scheduler pages through queued executions in (priority, created) order and
dispatches admitted candidates to free workers.

Admission:
    1. At most one RUNNING execution per dataset, counting executions this
       process has dispatched but not yet initialized.
    2. At most ``max_concurrent`` executions in flight in this process.

Priority is an absolute ordering, not a weight: a burst of high-priority
work defers older low-priority work until the burst drains.

Shutdown is cooperative: in-flight runs are cancelled and left RUNNING with
their claim, which expires and is reclaimed by the monitor.

Tags:
    scheduler, worker-pool, admission, asyncio, beat-as-poller, metis-core
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from metis_core.core.errors import RepositoryError
from metis_core.core.logging import get_logger
from metis_core.core.timestamps import utc_now
from metis_core.execution.cancellation import CancellationToken
from metis_core.execution.executor import WorkflowExecutor
from metis_core.execution.retry import ExponentialBackoff, RetryStrategy, call_with_retry
from metis_core.persistence.repository import ExecutionRepository
from metis_core.workflow.models import WorkflowExecution

logger = get_logger(__name__)


@dataclass
class SchedulerStats:
    """Statistics for the scheduler loop."""

    tick_count: int = 0
    dispatched: int = 0
    skipped_by_admission: int = 0
    active: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "dispatched": self.dispatched,
            "skipped_by_admission": self.skipped_by_admission,
            "active": self.active,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class _Slot:
    dataset_id: str
    token: CancellationToken
    task: asyncio.Task[Any] | None = field(default=None)


class ExecutionScheduler:
    """Dispatches queued executions to a bounded pool of executor runs.

    Example:
        >>> scheduler = ExecutionScheduler(repository, executor, max_concurrent=4)
        >>> scheduler.start()
        >>> scheduler.notify()     # after enqueueing
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        executor: WorkflowExecutor,
        *,
        max_concurrent: int = 4,
        tick_seconds: float = 60.0,
        page_size: int = 50,
        repository_retry: RetryStrategy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.max_concurrent = max_concurrent
        self.tick_seconds = tick_seconds
        self.page_size = page_size
        self._retry = repository_retry or ExponentialBackoff(max_retries=3)
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._slots: dict[str, _Slot] = {}
        self._stats = SchedulerStats()
        self._wake = asyncio.Event()
        self._stopping = False
        self._loop_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        repository: ExecutionRepository,
        executor: WorkflowExecutor,
        settings: Any,
        **kwargs: Any,
    ) -> ExecutionScheduler:
        return cls(
            repository,
            executor,
            max_concurrent=settings.max_concurrent_executions,
            tick_seconds=settings.scheduler_tick_seconds,
            page_size=settings.queue_page_size,
            repository_retry=ExponentialBackoff(max_retries=settings.repository_retry_attempts),
            **kwargs,
        )

    # === Lifecycle ===

    def start(self) -> None:
        if self.is_running:
            logger.warning("scheduler.already_running")
            return
        self._stopping = False
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(
            "scheduler.started",
            max_concurrent=self.max_concurrent,
            tick_seconds=self.tick_seconds,
        )

    async def stop(self) -> None:
        """Stop ticking and abandon in-flight runs to reclamation."""
        self._stopping = True
        self._wake.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        tasks = [slot.task for slot in self._slots.values() if slot.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler.stopped", abandoned=len(tasks))

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def notify(self) -> None:
        """Wake the loop for an immediate tick."""
        self._wake.set()

    def signal_cancel(self, execution_id: str, reason: str | None = None) -> bool:
        """Interrupt a local run so it reads the persisted cancel flag now."""
        slot = self._slots.get(execution_id)
        if slot is None:
            return False
        slot.token.cancel(reason)
        return True

    def get_stats(self) -> SchedulerStats:
        self._stats.active = len(self._slots)
        return self._stats

    async def wait_idle(self) -> None:
        """Wait until every dispatched run has returned."""
        tasks = [slot.task for slot in self._slots.values() if slot.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # === Tick ===

    async def _loop(self) -> None:
        while not self._stopping:
            await self._tick()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                pass
            self._wake.clear()

    async def _tick(self) -> int:
        """One pass over the queue; returns how many runs were dispatched."""
        self._stats.tick_count += 1
        self._stats.last_tick = self._clock()
        dispatched = 0
        try:
            cursor = None
            while len(self._slots) < self.max_concurrent:
                page = await call_with_retry(
                    self._retry, self.repository.list_queued, self.page_size, cursor
                )
                for execution in page.items:
                    if len(self._slots) >= self.max_concurrent:
                        break
                    if await self._admit(execution):
                        self._dispatch(execution)
                        dispatched += 1
                if page.next_cursor is None:
                    break
                cursor = page.next_cursor
        except RepositoryError as exc:
            self._stats.last_error = exc.message
            logger.error("scheduler.tick_failed", error=exc.message)

        if dispatched:
            logger.info("scheduler.dispatched", count=dispatched, active=len(self._slots))
        return dispatched

    async def _admit(self, execution: WorkflowExecution) -> bool:
        if execution.id in self._slots:
            return False
        if any(slot.dataset_id == execution.dataset_id for slot in self._slots.values()):
            self._stats.skipped_by_admission += 1
            return False
        running = await call_with_retry(
            self._retry, self.repository.count_running_for_dataset, execution.dataset_id
        )
        if running > 0:
            self._stats.skipped_by_admission += 1
            logger.debug(
                "scheduler.dataset_busy",
                execution_id=execution.id,
                dataset_id=execution.dataset_id,
            )
            return False
        return True

    def _dispatch(self, execution: WorkflowExecution) -> None:
        slot = _Slot(dataset_id=execution.dataset_id, token=CancellationToken())
        self._slots[execution.id] = slot
        slot.task = asyncio.create_task(self._run(execution.id, slot))
        self._stats.dispatched += 1
        logger.debug(
            "scheduler.execution_dispatched",
            execution_id=execution.id,
            dataset_id=execution.dataset_id,
            priority=execution.priority,
        )

    async def _run(self, execution_id: str, slot: _Slot) -> None:
        try:
            async with self._semaphore:
                await self.executor.run(execution_id, slot.token)
        except asyncio.CancelledError:
            logger.info("scheduler.run_abandoned", execution_id=execution_id)
            raise
        except Exception:
            logger.exception("scheduler.run_crashed", execution_id=execution_id)
        finally:
            self._slots.pop(execution_id, None)
            if not self._stopping:
                self._wake.set()


__all__ = ["ExecutionScheduler", "SchedulerStats"]
