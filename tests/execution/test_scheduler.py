"""Tests for ExecutionScheduler: ordering, admission and the worker pool."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from metis_core.core.errors import RepositoryError
from metis_core.execution.retry import NoRetry
from metis_core.execution.scheduler import ExecutionScheduler, SchedulerStats
from metis_core.persistence.memory import InMemoryExecutionRepository
from metis_core.workflow.models import WorkflowStatus
from tests._support.doubles import T0, make_execution


class GatedExecutor:
    """Executor double whose runs block until the gate opens."""

    def __init__(self, error: Exception | None = None) -> None:
        self.started: list[str] = []
        self.tokens = {}
        self.gate = asyncio.Event()
        self.error = error

    async def run(self, execution_id, token=None):
        self.started.append(execution_id)
        self.tokens[execution_id] = token
        if self.error is not None:
            raise self.error
        await self.gate.wait()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def make_scheduler(repository, executor, **kwargs) -> ExecutionScheduler:
    kwargs.setdefault("repository_retry", NoRetry())
    kwargs.setdefault("tick_seconds", 60.0)
    return ExecutionScheduler(repository, executor, **kwargs)


def queue(repository, dataset_id, priority=0, minutes=0):
    execution = make_execution(dataset_id=dataset_id, priority=priority, created=T0 + timedelta(minutes=minutes))
    repository.create(execution)
    return execution


@pytest.fixture
def store():
    return InMemoryExecutionRepository()


@pytest.fixture
def executor():
    return GatedExecutor()


class TestOrdering:
    """Dispatch follows (priority, created) order."""

    @pytest.mark.asyncio
    async def test_lower_priority_value_runs_first(self, store, executor):
        low = queue(store, "a", priority=5)
        high = queue(store, "b", priority=1)
        middle = queue(store, "c", priority=3)
        scheduler = make_scheduler(store, executor, max_concurrent=2)

        dispatched = await scheduler._tick()
        await wait_until(lambda: len(executor.started) == 2)

        assert dispatched == 2
        assert executor.started == [high.id, middle.id]
        assert low.id not in executor.started
        executor.gate.set()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_equal_priority_oldest_first(self, store, executor):
        newer = queue(store, "a", minutes=5)
        older = queue(store, "b", minutes=1)
        scheduler = make_scheduler(store, executor, max_concurrent=1)

        await scheduler._tick()
        await wait_until(lambda: executor.started)

        assert executor.started == [older.id]
        assert newer.id not in executor.started
        executor.gate.set()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_pages_through_queue(self, store, executor):
        queued = [queue(store, f"ds-{n}", minutes=n) for n in range(3)]
        scheduler = make_scheduler(store, executor, max_concurrent=3, page_size=1)

        dispatched = await scheduler._tick()
        await wait_until(lambda: len(executor.started) == 3)

        assert dispatched == 3
        assert executor.started == [execution.id for execution in queued]
        executor.gate.set()
        await scheduler.wait_idle()


class TestAdmission:
    """One execution per dataset, bounded pool."""

    @pytest.mark.asyncio
    async def test_one_dispatch_per_dataset(self, store, executor):
        first = queue(store, "1001", minutes=0)
        queue(store, "1001", minutes=1)
        scheduler = make_scheduler(store, executor, max_concurrent=4)

        dispatched = await scheduler._tick()

        assert dispatched == 1
        assert scheduler.get_stats().skipped_by_admission == 1
        await wait_until(lambda: executor.started)
        assert executor.started == [first.id]
        executor.gate.set()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_running_dataset_is_skipped(self, store, executor):
        busy = make_execution(dataset_id="1001")
        busy.status = WorkflowStatus.RUNNING
        store.create(busy)
        queue(store, "1001", minutes=1)
        scheduler = make_scheduler(store, executor)

        dispatched = await scheduler._tick()

        assert dispatched == 0
        assert scheduler.get_stats().skipped_by_admission == 1

    @pytest.mark.asyncio
    async def test_pool_is_bounded(self, store, executor):
        for n in range(3):
            queue(store, f"ds-{n}", minutes=n)
        scheduler = make_scheduler(store, executor, max_concurrent=1)

        assert await scheduler._tick() == 1
        assert await scheduler._tick() == 0
        assert scheduler.get_stats().active == 1
        executor.gate.set()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_slot_freed_after_run(self, store, executor):
        queue(store, "1001")
        scheduler = make_scheduler(store, executor)
        await scheduler._tick()

        executor.gate.set()
        await scheduler.wait_idle()

        assert scheduler.get_stats().active == 0

    @pytest.mark.asyncio
    async def test_crashed_run_frees_slot(self, store):
        executor = GatedExecutor(error=RuntimeError("executor bug"))
        queue(store, "1001")
        scheduler = make_scheduler(store, executor)

        await scheduler._tick()
        await scheduler.wait_idle()

        assert scheduler.get_stats().active == 0
        assert scheduler.get_stats().dispatched == 1


class TestSignals:
    @pytest.mark.asyncio
    async def test_signal_cancel_sets_token(self, store, executor):
        execution = queue(store, "1001")
        scheduler = make_scheduler(store, executor)
        await scheduler._tick()
        await wait_until(lambda: executor.started)

        assert scheduler.signal_cancel(execution.id, "user-1") is True

        token = executor.tokens[execution.id]
        assert token.cancelled
        assert token.reason == "user-1"
        executor.gate.set()
        await scheduler.wait_idle()

    def test_signal_cancel_unknown_execution(self, store, executor):
        scheduler = make_scheduler(store, executor)

        assert scheduler.signal_cancel("missing") is False

    @pytest.mark.asyncio
    async def test_repository_error_is_recorded(self, executor):
        repository = MagicMock()
        repository.list_queued.side_effect = RepositoryError("db down")
        scheduler = make_scheduler(repository, executor)

        assert await scheduler._tick() == 0
        assert scheduler.get_stats().last_error == "db down"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_dispatches_and_stop_abandons(self, store, executor):
        execution = queue(store, "1001")
        scheduler = make_scheduler(store, executor)

        scheduler.start()
        await wait_until(lambda: executor.started)
        assert scheduler.is_running
        await scheduler.stop()

        assert not scheduler.is_running
        assert executor.started == [execution.id]
        assert scheduler.get_stats().active == 0

    @pytest.mark.asyncio
    async def test_notify_wakes_loop(self, store, executor):
        scheduler = make_scheduler(store, executor)
        scheduler.start()
        await wait_until(lambda: scheduler.get_stats().tick_count == 1)

        execution = queue(store, "1001")
        scheduler.notify()
        await wait_until(lambda: executor.started)

        assert executor.started == [execution.id]
        executor.gate.set()
        await scheduler.stop()

    def test_stats_to_dict(self):
        data = SchedulerStats(tick_count=1, dispatched=2).to_dict()

        assert data["dispatched"] == 2
        assert data["last_tick"] is None

    def test_from_settings(self, settings, store, executor):
        scheduler = ExecutionScheduler.from_settings(store, executor, settings)

        assert scheduler.max_concurrent == settings.max_concurrent_executions
        assert scheduler.page_size == settings.queue_page_size
        assert scheduler.tick_seconds == settings.scheduler_tick_seconds
