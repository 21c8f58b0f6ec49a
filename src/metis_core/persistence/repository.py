"""
Execution repository contract.

The repository is the single source of truth shared by every worker and
every orchestrator process. Its claim primitive is the only coordination
point between instances: a worker mutates an execution only while it holds a
live claim on it.

Architecture:
    ::

        ExecutionRepository (Protocol)
        ├── create / get_by_id
        ├── update                full replace (claim-guarded)
        ├── update_monitor_info   status, dates, plugins (claim-guarded)
        ├── update_plugins        plugin list only (claim-guarded)
        ├── try_claim / release_claim
        ├── is_cancelling / set_cancelling
        ├── list_queued           (priority ASC, created ASC) pages
        ├── count_running_for_dataset / has_active_execution
        ├── find_stale_claims / requeue_stale
        ├── find_running_started_before
        └── find_finished_plugins / set_plugin_data_status

    Implementations:
        memory.py   InMemoryExecutionRepository (thread-safe, tests + single process)
        sql.py      SqlExecutionRepository (SQLAlchemy, shared across processes)

Guardrails:
    ❌ DON'T: Write without a claim while another worker holds a live one
    ✅ DO: Stamp ``execution.claim`` with a fresh expiry before every write

    ❌ DON'T: Let a full replace clear ``cancelling`` set by someone else
    ✅ DO: Treat ``cancelling`` / ``cancelledBy`` as sticky once set

Tags:
    repository, persistence, claim, lease, protocol, metis-core
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from metis_core.core.timestamps import from_iso8601, to_iso8601
from metis_core.workflow.models import DataStatus, MetisPlugin, WorkflowExecution
from metis_core.workflow.plugins import PluginType


@dataclass(frozen=True)
class QueueCursor:
    """Position after the last item of a queue page."""

    priority: int
    created_date: datetime
    execution_id: str

    def encode(self) -> str:
        return f"{self.priority}|{to_iso8601(self.created_date)}|{self.execution_id}"

    @classmethod
    def decode(cls, value: str) -> QueueCursor:
        priority, created, execution_id = value.split("|", 2)
        return cls(int(priority), from_iso8601(created), execution_id)

    @classmethod
    def after(cls, execution: WorkflowExecution) -> QueueCursor:
        return cls(execution.priority, execution.created_date, execution.id)

    def sort_key(self) -> tuple[int, datetime, str]:
        return (self.priority, self.created_date, self.execution_id)


def queue_sort_key(execution: WorkflowExecution) -> tuple[int, datetime, str]:
    """Ordering of queued executions: priority, then creation, then id."""
    return (execution.priority, execution.created_date, execution.id)


@dataclass
class QueuePage:
    items: list[WorkflowExecution]
    next_cursor: QueueCursor | None = None


@dataclass(frozen=True)
class FinishedPluginRef:
    """A FINISHED plugin together with where it lives."""

    execution_id: str
    plugin_index: int
    plugin: MetisPlugin
    execution_started_date: datetime | None


@runtime_checkable
class ExecutionRepository(Protocol):
    """Persistence contract for workflow executions.

    All writes are total replaces of the fields they cover, never deltas.
    Claim-guarded writes raise :class:`~metis_core.core.errors.ClaimLostError`
    when the stored claim belongs to a different worker or has expired, and
    persist the claim carried by the execution (which refreshes its expiry).
    """

    def create(self, execution: WorkflowExecution) -> None: ...

    def get_by_id(self, execution_id: str) -> WorkflowExecution | None: ...

    def update(self, execution: WorkflowExecution) -> None: ...

    def update_monitor_info(self, execution: WorkflowExecution) -> None: ...

    def update_plugins(self, execution: WorkflowExecution) -> None: ...

    def try_claim(
        self,
        execution_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Atomic compare-and-set on (worker id, claim expiry).

        Succeeds when the execution is not terminal, its claim is absent,
        expired or already ours, and no other execution of the same dataset
        holds a live claim.
        """
        ...

    def renew_claim(
        self,
        execution_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Push a live claim held by *worker_id* out to ``now + ttl``.

        False when the claim expired, moved to another worker, or the
        execution is terminal; an expired claim is never revived.
        """
        ...

    def release_claim(self, execution_id: str, worker_id: str) -> None: ...

    def is_cancelling(self, execution_id: str) -> bool: ...

    def set_cancelling(self, execution_id: str, cancelled_by: str) -> bool:
        """Flag a non-terminal execution for cancellation; False if terminal."""
        ...

    def list_queued(self, limit: int, since_cursor: QueueCursor | None = None) -> QueuePage: ...

    def count_running_for_dataset(self, dataset_id: str) -> int: ...

    def has_active_execution(self, dataset_id: str) -> bool: ...

    def find_stale_claims(self, now: datetime) -> list[str]: ...

    def requeue_stale(self, execution_id: str, now: datetime) -> bool:
        """Revert a RUNNING execution with an expired claim to INQUEUE."""
        ...

    def find_running_started_before(self, cutoff: datetime) -> list[str]: ...

    def find_finished_plugins(
        self,
        dataset_id: str,
        plugin_types: frozenset[PluginType] | None = None,
    ) -> list[FinishedPluginRef]: ...

    def set_plugin_data_status(
        self,
        execution_id: str,
        plugin_index: int,
        data_status: DataStatus,
    ) -> None: ...


__all__ = [
    "ExecutionRepository",
    "QueueCursor",
    "QueuePage",
    "FinishedPluginRef",
    "queue_sort_key",
]
