"""SQLAlchemy-backed execution repository.

Safe to share between orchestrator processes: every claim decision and every
claim-guarded write is a single conditional ``UPDATE``, so two workers can
never both believe they hold the same execution.

This module provides:

* ``create_metis_engine``      -- engine with SQLite tweaks (WAL, in-memory pool)
* ``metis_session_factory``    -- ``sessionmaker`` with ``expire_on_commit=False``
* ``SqlExecutionRepository``   -- the repository implementation
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, create_engine, event, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker
from sqlalchemy.pool import StaticPool

from metis_core.core.errors import ClaimLostError, RepositoryError, RepositoryTransientError
from metis_core.core.logging import get_logger
from metis_core.core.timestamps import ensure_utc, to_naive_utc, utc_now
from metis_core.persistence.repository import FinishedPluginRef, QueueCursor, QueuePage
from metis_core.persistence.tables import MetisBase, WorkflowExecutionTable
from metis_core.workflow.models import (
    Claim,
    DataStatus,
    MetisPlugin,
    PluginStatus,
    WORKFLOW_TERMINAL,
    WorkflowExecution,
    WorkflowStatus,
)
from metis_core.workflow.plugins import PluginType

logger = get_logger(__name__)

_TERMINAL_VALUES = [status.value for status in WORKFLOW_TERMINAL]


def create_metis_engine(url: str = "sqlite:///metis_core.db", *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    In-memory SQLite gets a ``StaticPool`` so every session (and every
    thread) sees the same database.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        in_memory = url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url
        if in_memory:
            kwargs.setdefault("poolclass", StaticPool)
        engine = create_engine(url, echo=echo, **kwargs)

        if not in_memory:
            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.close()

        return engine
    return create_engine(url, echo=echo, **kwargs)


def metis_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a ``sessionmaker`` bound to *engine* with ``expire_on_commit=False``."""
    return sessionmaker(bind=engine, expire_on_commit=False)


# ── Row mapping ──────────────────────────────────────────────────────────


def _row_values(execution: WorkflowExecution) -> dict[str, Any]:
    return {
        "dataset_id": execution.dataset_id,
        "ecloud_dataset_id": execution.ecloud_dataset_id,
        "workflow_priority": execution.priority,
        "workflow_status": execution.status.value,
        "metis_plugins": [plugin.to_document() for plugin in execution.plugins],
        "created_date": to_naive_utc(execution.created_date),
        "started_date": to_naive_utc(execution.started_date),
        "updated_date": to_naive_utc(execution.updated_date),
        "finished_date": to_naive_utc(execution.finished_date),
        "worker_id": execution.claim.worker_id if execution.claim else None,
        "claim_expires_date": to_naive_utc(execution.claim.expires_at) if execution.claim else None,
    }


def _from_row(row: WorkflowExecutionTable) -> WorkflowExecution:
    claim = None
    if row.worker_id and row.claim_expires_date is not None:
        claim = Claim(worker_id=row.worker_id, expires_at=ensure_utc(row.claim_expires_date))
    return WorkflowExecution(
        id=row.id,
        dataset_id=row.dataset_id,
        ecloud_dataset_id=row.ecloud_dataset_id,
        plugins=[MetisPlugin.from_document(doc) for doc in row.metis_plugins],
        priority=row.workflow_priority,
        status=WorkflowStatus(row.workflow_status),
        created_date=ensure_utc(row.created_date),
        started_date=ensure_utc(row.started_date),
        updated_date=ensure_utc(row.updated_date),
        finished_date=ensure_utc(row.finished_date),
        cancelling=bool(row.cancelling),
        cancelled_by=row.cancelled_by,
        claim=claim,
    )


class SqlExecutionRepository:
    """Execution repository over any SQLAlchemy-supported database."""

    def __init__(
        self,
        engine: Engine,
        *,
        create_schema: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._session_factory = metis_session_factory(engine)
        self._clock = clock
        if create_schema:
            MetisBase.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> SqlExecutionRepository:
        return cls(create_metis_engine(url), **kwargs)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except OperationalError as exc:
            raise RepositoryTransientError(f"Database unavailable: {exc}", cause=exc) from exc
        except IntegrityError as exc:
            raise RepositoryError(f"Integrity violation: {exc}", cause=exc) from exc
        except SQLAlchemyError as exc:
            raise RepositoryError(f"Database error: {exc}", cause=exc) from exc

    # ── Basic CRUD ───────────────────────────────────────────────

    def create(self, execution: WorkflowExecution) -> None:
        with self._session() as session:
            session.add(WorkflowExecutionTable(
                id=execution.id,
                cancelling=execution.cancelling,
                cancelled_by=execution.cancelled_by,
                **_row_values(execution),
            ))
        logger.debug("repository.created", execution_id=execution.id, dataset_id=execution.dataset_id)

    def get_by_id(self, execution_id: str) -> WorkflowExecution | None:
        with self._session() as session:
            row = session.get(WorkflowExecutionTable, execution_id)
            return _from_row(row) if row else None

    # ── Claim-guarded writes ─────────────────────────────────────

    def _guarded_update(self, execution: WorkflowExecution, values: dict[str, Any]) -> None:
        table = WorkflowExecutionTable
        now = to_naive_utc(self._clock())
        stmt = update(table).where(
            table.id == execution.id,
            table.workflow_status.not_in(_TERMINAL_VALUES),
        )
        if execution.claim is None:
            stmt = stmt.where(or_(table.worker_id.is_(None), table.claim_expires_date <= now))
        else:
            stmt = stmt.where(
                table.worker_id == execution.claim.worker_id,
                table.claim_expires_date > now,
            )
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        with self._session() as session:
            result = session.execute(stmt)
            if result.rowcount:
                return
            row = session.get(table, execution.id)
            if row is None:
                raise RepositoryError(f"Execution {execution.id} does not exist")
            if row.workflow_status in _TERMINAL_VALUES:
                raise RepositoryError(
                    f"Execution {execution.id} is terminal ({row.workflow_status})"
                )
            raise ClaimLostError(
                execution.id, execution.claim.worker_id if execution.claim else None
            )

    def update(self, execution: WorkflowExecution) -> None:
        values = _row_values(execution)
        if execution.cancelling:
            # cancelling is sticky: never cleared, first cancelledBy wins
            values["cancelling"] = True
            values["cancelled_by"] = func.coalesce(
                WorkflowExecutionTable.cancelled_by, execution.cancelled_by
            )
        self._guarded_update(execution, values)

    def update_monitor_info(self, execution: WorkflowExecution) -> None:
        values = _row_values(execution)
        self._guarded_update(execution, {
            key: values[key]
            for key in (
                "workflow_status",
                "started_date",
                "updated_date",
                "metis_plugins",
                "worker_id",
                "claim_expires_date",
            )
        })

    def update_plugins(self, execution: WorkflowExecution) -> None:
        values = _row_values(execution)
        self._guarded_update(execution, {
            key: values[key] for key in ("metis_plugins", "worker_id", "claim_expires_date")
        })

    # ── Claims ───────────────────────────────────────────────────

    def try_claim(
        self,
        execution_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        table = WorkflowExecutionTable
        other = aliased(WorkflowExecutionTable)
        moment = to_naive_utc(now or self._clock())

        dataset_busy = (
            select(other.id)
            .where(
                other.dataset_id == table.dataset_id,
                other.id != table.id,
                other.workflow_status.not_in(_TERMINAL_VALUES),
                or_(
                    other.workflow_status == WorkflowStatus.RUNNING.value,
                    and_(other.worker_id.is_not(None), other.claim_expires_date > moment),
                ),
            )
            .exists()
        )
        stmt = (
            update(table)
            .where(
                table.id == execution_id,
                table.workflow_status.not_in(_TERMINAL_VALUES),
                or_(
                    table.worker_id.is_(None),
                    table.claim_expires_date <= moment,
                    table.worker_id == worker_id,
                ),
                ~dataset_busy,
            )
            .values(worker_id=worker_id, claim_expires_date=moment + ttl)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            claimed = bool(session.execute(stmt).rowcount)
        logger.debug("repository.try_claim", execution_id=execution_id, worker_id=worker_id, claimed=claimed)
        return claimed

    def renew_claim(
        self,
        execution_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        table = WorkflowExecutionTable
        moment = to_naive_utc(now or self._clock())
        stmt = (
            update(table)
            .where(
                table.id == execution_id,
                table.workflow_status.not_in(_TERMINAL_VALUES),
                table.worker_id == worker_id,
                table.claim_expires_date > moment,
            )
            .values(claim_expires_date=moment + ttl)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            return bool(session.execute(stmt).rowcount)

    def release_claim(self, execution_id: str, worker_id: str) -> None:
        table = WorkflowExecutionTable
        stmt = (
            update(table)
            .where(table.id == execution_id, table.worker_id == worker_id)
            .values(worker_id=None, claim_expires_date=None)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            session.execute(stmt)

    # ── Cancellation ─────────────────────────────────────────────

    def is_cancelling(self, execution_id: str) -> bool:
        table = WorkflowExecutionTable
        with self._session() as session:
            value = session.scalar(select(table.cancelling).where(table.id == execution_id))
            return bool(value)

    def set_cancelling(self, execution_id: str, cancelled_by: str) -> bool:
        table = WorkflowExecutionTable
        stmt = (
            update(table)
            .where(
                table.id == execution_id,
                table.workflow_status.not_in(_TERMINAL_VALUES),
            )
            .values(
                cancelling=True,
                cancelled_by=func.coalesce(table.cancelled_by, cancelled_by),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            return bool(session.execute(stmt).rowcount)

    # ── Queries ──────────────────────────────────────────────────

    def list_queued(self, limit: int, since_cursor: QueueCursor | None = None) -> QueuePage:
        table = WorkflowExecutionTable
        stmt = select(table).where(table.workflow_status == WorkflowStatus.INQUEUE.value)
        if since_cursor is not None:
            created = to_naive_utc(since_cursor.created_date)
            stmt = stmt.where(or_(
                table.workflow_priority > since_cursor.priority,
                and_(
                    table.workflow_priority == since_cursor.priority,
                    or_(
                        table.created_date > created,
                        and_(table.created_date == created, table.id > since_cursor.execution_id),
                    ),
                ),
            ))
        stmt = stmt.order_by(
            table.workflow_priority.asc(), table.created_date.asc(), table.id.asc()
        ).limit(limit)
        with self._session() as session:
            items = [_from_row(row) for row in session.scalars(stmt)]
        next_cursor = QueueCursor.after(items[-1]) if items and len(items) == limit else None
        return QueuePage(items=items, next_cursor=next_cursor)

    def count_running_for_dataset(self, dataset_id: str) -> int:
        table = WorkflowExecutionTable
        stmt = select(func.count()).select_from(table).where(
            table.dataset_id == dataset_id,
            table.workflow_status == WorkflowStatus.RUNNING.value,
        )
        with self._session() as session:
            return int(session.scalar(stmt) or 0)

    def has_active_execution(self, dataset_id: str) -> bool:
        table = WorkflowExecutionTable
        stmt = select(table.id).where(
            table.dataset_id == dataset_id,
            table.workflow_status.not_in(_TERMINAL_VALUES),
        ).limit(1)
        with self._session() as session:
            return session.scalar(stmt) is not None

    def find_stale_claims(self, now: datetime) -> list[str]:
        table = WorkflowExecutionTable
        moment = to_naive_utc(now)
        stmt = select(table.id).where(
            table.workflow_status == WorkflowStatus.RUNNING.value,
            or_(table.claim_expires_date.is_(None), table.claim_expires_date <= moment),
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def requeue_stale(self, execution_id: str, now: datetime) -> bool:
        table = WorkflowExecutionTable
        moment = to_naive_utc(now)
        stmt = (
            update(table)
            .where(
                table.id == execution_id,
                table.workflow_status == WorkflowStatus.RUNNING.value,
                or_(table.claim_expires_date.is_(None), table.claim_expires_date <= moment),
            )
            .values(
                workflow_status=WorkflowStatus.INQUEUE.value,
                worker_id=None,
                claim_expires_date=None,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            return bool(session.execute(stmt).rowcount)

    def find_running_started_before(self, cutoff: datetime) -> list[str]:
        table = WorkflowExecutionTable
        stmt = select(table.id).where(
            table.workflow_status == WorkflowStatus.RUNNING.value,
            table.cancelling.is_(False),
            table.started_date.is_not(None),
            table.started_date < to_naive_utc(cutoff),
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def find_finished_plugins(
        self,
        dataset_id: str,
        plugin_types: frozenset[PluginType] | None = None,
    ) -> list[FinishedPluginRef]:
        table = WorkflowExecutionTable
        stmt = select(table).where(table.dataset_id == dataset_id)
        refs: list[FinishedPluginRef] = []
        with self._session() as session:
            rows = list(session.scalars(stmt))
        for row in rows:
            for index, doc in enumerate(row.metis_plugins):
                if doc.get("pluginStatus") != PluginStatus.FINISHED.value:
                    continue
                if plugin_types is not None and PluginType(doc["pluginType"]) not in plugin_types:
                    continue
                refs.append(FinishedPluginRef(
                    execution_id=row.id,
                    plugin_index=index,
                    plugin=MetisPlugin.from_document(doc),
                    execution_started_date=ensure_utc(row.started_date),
                ))
        return refs

    def set_plugin_data_status(
        self,
        execution_id: str,
        plugin_index: int,
        data_status: DataStatus,
    ) -> None:
        with self._session() as session:
            row = session.get(WorkflowExecutionTable, execution_id)
            if row is None or not 0 <= plugin_index < len(row.metis_plugins):
                raise RepositoryError(f"No plugin {plugin_index} in execution {execution_id}")
            plugins = [dict(doc) for doc in row.metis_plugins]
            plugins[plugin_index]["dataStatus"] = data_status.value
            row.metis_plugins = plugins


__all__ = ["SqlExecutionRepository", "create_metis_engine", "metis_session_factory"]
