"""SQLAlchemy 2.0 ORM tables for workflow executions.

Uses ``DeclarativeBase`` with a ``type_annotation_map`` so Mapped columns use
plain Python types. Datetimes are stored as naive UTC (SQLite has no tz
support); conversion happens in :mod:`metis_core.persistence.sql`.

The plugin list is stored as a JSON array of plugin documents, keeping the
persisted field names (``pluginType``, ``pluginStatus``, ``externalTaskId``...).
Query-relevant execution fields are real columns.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class MetisBase(DeclarativeBase):
    """Shared declarative base.

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``bool``  → ``Boolean``
    * ``datetime.datetime`` → ``DateTime``
    * ``list``  → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime,
        dict: JSON,
        list: JSON,
    }


class WorkflowExecutionTable(MetisBase):
    __tablename__ = "metis_workflow_executions"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    dataset_id: Mapped[str] = mapped_column(Text, nullable=False)
    ecloud_dataset_id: Mapped[str | None] = mapped_column(Text)
    workflow_priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    workflow_status: Mapped[str] = mapped_column(Text, nullable=False)
    metis_plugins: Mapped[list] = mapped_column(JSON, nullable=False)
    created_date: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    started_date: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    updated_date: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    finished_date: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    cancelling: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_by: Mapped[str | None] = mapped_column(Text)

    # --- claim ---
    worker_id: Mapped[str | None] = mapped_column(Text)
    claim_expires_date: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_metis_executions_queue", "workflow_status", "workflow_priority", "created_date"),
        Index("ix_metis_executions_dataset", "dataset_id", "workflow_status"),
    )


__all__ = ["MetisBase", "WorkflowExecutionTable"]
