"""In-memory execution repository.

Thread-safe (one re-entrant lock around every operation) so the executor can
call it through ``asyncio.to_thread``. Stored records are deep copies; callers
never share state with the store.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Callable

from metis_core.core.errors import ClaimLostError, RepositoryError
from metis_core.core.logging import get_logger
from metis_core.core.timestamps import utc_now
from metis_core.persistence.repository import (
    FinishedPluginRef,
    QueueCursor,
    QueuePage,
    queue_sort_key,
)
from metis_core.workflow.models import (
    Claim,
    DataStatus,
    PluginStatus,
    WorkflowExecution,
    WorkflowStatus,
)
from metis_core.workflow.plugins import PluginType

logger = get_logger(__name__)


class InMemoryExecutionRepository:
    """Execution repository kept in process memory."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._records: dict[str, WorkflowExecution] = {}
        self._lock = threading.RLock()
        self._clock = clock

    # ── Basic CRUD ───────────────────────────────────────────────

    def create(self, execution: WorkflowExecution) -> None:
        with self._lock:
            if execution.id in self._records:
                raise RepositoryError(f"Execution {execution.id} already exists")
            self._records[execution.id] = execution.copy()
        logger.debug("repository.created", execution_id=execution.id, dataset_id=execution.dataset_id)

    def get_by_id(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            stored = self._records.get(execution_id)
            return stored.copy() if stored else None

    def all(self) -> list[WorkflowExecution]:
        with self._lock:
            return [record.copy() for record in self._records.values()]

    # ── Claim-guarded writes ─────────────────────────────────────

    def _stored_for_write(self, execution: WorkflowExecution) -> WorkflowExecution:
        stored = self._records.get(execution.id)
        if stored is None:
            raise RepositoryError(f"Execution {execution.id} does not exist")
        if stored.is_terminal:
            raise RepositoryError(f"Execution {execution.id} is terminal ({stored.status.value})")
        incoming = execution.claim
        current = stored.claim
        if incoming is None:
            if current is not None and current.is_live(self._clock()):
                raise ClaimLostError(execution.id, None)
        elif (
            current is None
            or current.worker_id != incoming.worker_id
            or not current.is_live(self._clock())
        ):
            raise ClaimLostError(execution.id, incoming.worker_id)
        return stored

    def update(self, execution: WorkflowExecution) -> None:
        with self._lock:
            stored = self._stored_for_write(execution)
            replacement = execution.copy()
            replacement.cancelling = stored.cancelling or execution.cancelling
            replacement.cancelled_by = stored.cancelled_by or execution.cancelled_by
            self._records[execution.id] = replacement

    def update_monitor_info(self, execution: WorkflowExecution) -> None:
        with self._lock:
            stored = self._stored_for_write(execution)
            incoming = execution.copy()
            stored.status = incoming.status
            stored.started_date = incoming.started_date
            stored.updated_date = incoming.updated_date
            stored.plugins = incoming.plugins
            stored.claim = incoming.claim

    def update_plugins(self, execution: WorkflowExecution) -> None:
        with self._lock:
            stored = self._stored_for_write(execution)
            incoming = execution.copy()
            stored.plugins = incoming.plugins
            stored.claim = incoming.claim

    # ── Claims ───────────────────────────────────────────────────

    def try_claim(
        self,
        execution_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        now = now or self._clock()
        with self._lock:
            stored = self._records.get(execution_id)
            if stored is None or stored.is_terminal:
                return False
            if stored.claim is not None and stored.claim.is_live(now) and stored.claim.worker_id != worker_id:
                return False
            for other in self._records.values():
                if other.id == execution_id or other.dataset_id != stored.dataset_id:
                    continue
                if other.is_terminal:
                    continue
                if other.status is WorkflowStatus.RUNNING or (
                    other.claim is not None and other.claim.is_live(now)
                ):
                    return False
            stored.claim = Claim(worker_id=worker_id, expires_at=now + ttl)
            return True

    def renew_claim(
        self,
        execution_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        now = now or self._clock()
        with self._lock:
            stored = self._records.get(execution_id)
            if stored is None or stored.is_terminal or stored.claim is None:
                return False
            if stored.claim.worker_id != worker_id or not stored.claim.is_live(now):
                return False
            stored.claim = Claim(worker_id=worker_id, expires_at=now + ttl)
            return True

    def release_claim(self, execution_id: str, worker_id: str) -> None:
        with self._lock:
            stored = self._records.get(execution_id)
            if stored is not None and stored.claim is not None and stored.claim.worker_id == worker_id:
                stored.claim = None

    # ── Cancellation ─────────────────────────────────────────────

    def is_cancelling(self, execution_id: str) -> bool:
        with self._lock:
            stored = self._records.get(execution_id)
            return bool(stored and stored.cancelling)

    def set_cancelling(self, execution_id: str, cancelled_by: str) -> bool:
        with self._lock:
            stored = self._records.get(execution_id)
            if stored is None or stored.is_terminal:
                return False
            if not stored.cancelling:
                stored.cancelling = True
                stored.cancelled_by = cancelled_by
            return True

    # ── Queries ──────────────────────────────────────────────────

    def list_queued(self, limit: int, since_cursor: QueueCursor | None = None) -> QueuePage:
        with self._lock:
            queued = sorted(
                (r for r in self._records.values() if r.status is WorkflowStatus.INQUEUE),
                key=queue_sort_key,
            )
            if since_cursor is not None:
                queued = [r for r in queued if queue_sort_key(r) > since_cursor.sort_key()]
            items = [r.copy() for r in queued[:limit]]
        next_cursor = QueueCursor.after(items[-1]) if len(items) == limit and items else None
        return QueuePage(items=items, next_cursor=next_cursor)

    def count_running_for_dataset(self, dataset_id: str) -> int:
        with self._lock:
            return sum(
                1
                for r in self._records.values()
                if r.dataset_id == dataset_id and r.status is WorkflowStatus.RUNNING
            )

    def has_active_execution(self, dataset_id: str) -> bool:
        with self._lock:
            return any(
                r.dataset_id == dataset_id and not r.is_terminal for r in self._records.values()
            )

    def find_stale_claims(self, now: datetime) -> list[str]:
        with self._lock:
            return [
                r.id
                for r in self._records.values()
                if r.status is WorkflowStatus.RUNNING
                and (r.claim is None or not r.claim.is_live(now))
            ]

    def requeue_stale(self, execution_id: str, now: datetime) -> bool:
        with self._lock:
            stored = self._records.get(execution_id)
            if stored is None or stored.status is not WorkflowStatus.RUNNING:
                return False
            if stored.claim is not None and stored.claim.is_live(now):
                return False
            stored.transition_to(WorkflowStatus.INQUEUE)
            stored.claim = None
            return True

    def find_running_started_before(self, cutoff: datetime) -> list[str]:
        with self._lock:
            return [
                r.id
                for r in self._records.values()
                if r.status is WorkflowStatus.RUNNING
                and not r.cancelling
                and r.started_date is not None
                and r.started_date < cutoff
            ]

    def find_finished_plugins(
        self,
        dataset_id: str,
        plugin_types: frozenset[PluginType] | None = None,
    ) -> list[FinishedPluginRef]:
        with self._lock:
            refs = []
            for record in self._records.values():
                if record.dataset_id != dataset_id:
                    continue
                for index, plugin in enumerate(record.plugins):
                    if plugin.status is not PluginStatus.FINISHED:
                        continue
                    if plugin_types is not None and plugin.plugin_type not in plugin_types:
                        continue
                    refs.append(FinishedPluginRef(
                        execution_id=record.id,
                        plugin_index=index,
                        plugin=copy.deepcopy(plugin),
                        execution_started_date=record.started_date,
                    ))
            return refs

    def set_plugin_data_status(
        self,
        execution_id: str,
        plugin_index: int,
        data_status: DataStatus,
    ) -> None:
        with self._lock:
            stored = self._records.get(execution_id)
            if stored is None or not 0 <= plugin_index < len(stored.plugins):
                raise RepositoryError(f"No plugin {plugin_index} in execution {execution_id}")
            stored.plugins[plugin_index].data_status = data_status


__all__ = ["InMemoryExecutionRepository"]
