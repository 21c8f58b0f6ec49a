"""Execution persistence: repository contract plus in-memory and SQL implementations."""

from metis_core.persistence.memory import InMemoryExecutionRepository
from metis_core.persistence.repository import (
    ExecutionRepository,
    FinishedPluginRef,
    QueueCursor,
    QueuePage,
)
from metis_core.persistence.sql import SqlExecutionRepository, create_metis_engine

__all__ = [
    "ExecutionRepository",
    "FinishedPluginRef",
    "InMemoryExecutionRepository",
    "QueueCursor",
    "QueuePage",
    "SqlExecutionRepository",
    "create_metis_engine",
]
