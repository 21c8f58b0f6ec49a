"""Workflow execution domain models.

Defines the records the engine drives:

- WorkflowExecution: one run of a workflow for a dataset (ordered plugins)
- MetisPlugin: one step of that run, backed by one DPS task
- ExecutionProgress: record counters observed from the DPS
- PreviousRevision: id-based pointer to the plugin whose output is consumed
- Claim: (worker id, expiry) lease embedded in the execution

Documents produced by ``to_document`` keep the persisted field names
(``_id``, ``datasetId``, ``workflowStatus``, ``metisPlugins`` ...).
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from metis_core.core.errors import InvalidTransitionError
from metis_core.core.timestamps import (
    from_iso8601,
    generate_object_id,
    to_iso8601,
    utc_now,
)
from metis_core.dps.models import TaskState
from metis_core.workflow.plugins import (
    PluginMetadata,
    PluginType,
    Topology,
    metadata_from_document,
    topology_of,
)


class CancelledSystemId(str, Enum):
    """Identifiers persisted in ``cancelledBy`` for system-initiated cancels."""

    SYSTEM_MINUTE_CAP_EXPIRE = "SYSTEM_MINUTE_CAP_EXPIRE"


class WorkflowStatus(str, Enum):
    """Status of a workflow execution.

    Valid transition graph::

        INQUEUE  → RUNNING | CANCELLED
        RUNNING  → FINISHED | FAILED | CANCELLED | INQUEUE (reclamation)
        FINISHED → (terminal)
        FAILED   → (terminal)
        CANCELLED → (terminal)
    """

    INQUEUE = "INQUEUE"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in WORKFLOW_TERMINAL


WORKFLOW_TERMINAL: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.FINISHED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
})

WORKFLOW_VALID_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.INQUEUE: frozenset({
        WorkflowStatus.RUNNING,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.RUNNING: frozenset({
        WorkflowStatus.FINISHED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
        WorkflowStatus.INQUEUE,  # stale-claim reclamation only
    }),
    WorkflowStatus.FINISHED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}


class PluginStatus(str, Enum):
    """Status of one plugin inside an execution.

    Valid transition graph::

        INQUEUE → PENDING | RUNNING | FAILED | CANCELLED
        PENDING → RUNNING | FINISHED | FAILED | CANCELLED
        RUNNING → PENDING | FINISHED | FAILED | CANCELLED
        FINISHED, FAILED, CANCELLED → (terminal)
    """

    INQUEUE = "INQUEUE"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in PLUGIN_TERMINAL

    @property
    def is_active(self) -> bool:
        return self in (PluginStatus.PENDING, PluginStatus.RUNNING)


PLUGIN_TERMINAL: frozenset[PluginStatus] = frozenset({
    PluginStatus.FINISHED,
    PluginStatus.FAILED,
    PluginStatus.CANCELLED,
})

PLUGIN_VALID_TRANSITIONS: dict[PluginStatus, frozenset[PluginStatus]] = {
    PluginStatus.INQUEUE: frozenset({
        PluginStatus.PENDING,
        PluginStatus.RUNNING,
        PluginStatus.FAILED,
        PluginStatus.CANCELLED,
    }),
    PluginStatus.PENDING: frozenset({
        PluginStatus.RUNNING,
        PluginStatus.FINISHED,
        PluginStatus.FAILED,
        PluginStatus.CANCELLED,
    }),
    PluginStatus.RUNNING: frozenset({
        PluginStatus.PENDING,
        PluginStatus.FINISHED,
        PluginStatus.FAILED,
        PluginStatus.CANCELLED,
    }),
    PluginStatus.FINISHED: frozenset(),
    PluginStatus.FAILED: frozenset(),
    PluginStatus.CANCELLED: frozenset(),
}


class DataStatus(str, Enum):
    """Whether a finished plugin's output may still be used as a predecessor."""

    VALID = "VALID"
    DEPRECATED = "DEPRECATED"


def validate_workflow_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Re-asserting the current non-terminal status is allowed.
    """
    if current == target and not current.is_terminal:
        return
    if target not in WORKFLOW_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "WorkflowStatus")


def validate_plugin_transition(current: PluginStatus, target: PluginStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if current == target and not current.is_terminal:
        return
    if target not in PLUGIN_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "PluginStatus")


@dataclass
class ExecutionProgress:
    """Record counters for one plugin, as last observed from the DPS."""

    expected_records: int = 0
    processed_records: int = 0
    progress_percentage: int = 0
    errors: int = 0
    status: TaskState | None = None

    def observe(
        self,
        *,
        expected_records: int,
        processed_records: int,
        errors: int,
        status: TaskState | None,
    ) -> None:
        """Apply an observation; counters never go backwards."""
        self.expected_records = max(self.expected_records, expected_records)
        self.processed_records = max(self.processed_records, processed_records)
        self.errors = max(self.errors, errors)
        if self.expected_records > 0:
            self.progress_percentage = min(
                100, int(self.processed_records * 100 / self.expected_records)
            )
        if status is not None:
            self.status = status

    def to_document(self) -> dict[str, Any]:
        return {
            "expectedRecords": self.expected_records,
            "processedRecords": self.processed_records,
            "progressPercentage": self.progress_percentage,
            "errors": self.errors,
            "status": self.status.value if self.status else None,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> ExecutionProgress:
        if not doc:
            return cls()
        status = doc.get("status")
        return cls(
            expected_records=doc.get("expectedRecords", 0),
            processed_records=doc.get("processedRecords", 0),
            progress_percentage=doc.get("progressPercentage", 0),
            errors=doc.get("errors", 0),
            status=TaskState(status) if status else None,
        )


@dataclass(frozen=True)
class PreviousRevision:
    """Pointer to the finished plugin whose output a plugin consumes.

    Identifier based: the referenced plugin is ``plugins[plugin_index]`` of
    execution ``execution_id`` and is resolved through the repository.
    """

    plugin_type: PluginType
    revision_name: str
    revision_timestamp: datetime
    execution_id: str
    plugin_index: int

    def to_document(self) -> dict[str, Any]:
        return {
            "pluginType": self.plugin_type.value,
            "revisionName": self.revision_name,
            "revisionTimestamp": to_iso8601(self.revision_timestamp),
            "executionId": self.execution_id,
            "pluginIndex": self.plugin_index,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> PreviousRevision | None:
        if not doc:
            return None
        return cls(
            plugin_type=PluginType(doc["pluginType"]),
            revision_name=doc["revisionName"],
            revision_timestamp=from_iso8601(doc["revisionTimestamp"]),
            execution_id=doc["executionId"],
            plugin_index=doc["pluginIndex"],
        )


@dataclass(frozen=True)
class Claim:
    """Lease permitting one worker to mutate an execution."""

    worker_id: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    def held_by(self, worker_id: str, now: datetime) -> bool:
        return self.worker_id == worker_id and self.is_live(now)


@dataclass
class MetisPlugin:
    """One plugin instance of an execution."""

    metadata: PluginMetadata
    status: PluginStatus = PluginStatus.INQUEUE
    external_task_id: str | None = None
    started_date: datetime | None = None
    updated_date: datetime | None = None
    finished_date: datetime | None = None
    fail_message: str | None = None
    execution_progress: ExecutionProgress = field(default_factory=ExecutionProgress)
    previous_revision: PreviousRevision | None = None
    data_status: DataStatus = DataStatus.VALID

    @property
    def plugin_type(self) -> PluginType:
        return self.metadata.plugin_type

    @property
    def topology(self) -> Topology:
        return topology_of(self.plugin_type)

    def transition_to(self, target: PluginStatus) -> None:
        validate_plugin_transition(self.status, target)
        self.status = target

    def fail(self, message: str, now: datetime) -> None:
        self.transition_to(PluginStatus.FAILED)
        self.fail_message = message
        self.finished_date = now
        self.updated_date = now

    def to_document(self) -> dict[str, Any]:
        return {
            "pluginType": self.plugin_type.value,
            "topologyName": self.topology.value,
            "pluginStatus": self.status.value,
            "externalTaskId": self.external_task_id,
            "executionProgress": self.execution_progress.to_document(),
            "pluginMetadata": self.metadata.to_document(),
            "startedDate": to_iso8601(self.started_date),
            "updatedDate": to_iso8601(self.updated_date),
            "finishedDate": to_iso8601(self.finished_date),
            "failMessage": self.fail_message,
            "previousRevisionInformation": (
                self.previous_revision.to_document() if self.previous_revision else None
            ),
            "dataStatus": self.data_status.value,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> MetisPlugin:
        return cls(
            metadata=metadata_from_document(doc["pluginMetadata"]),
            status=PluginStatus(doc.get("pluginStatus", PluginStatus.INQUEUE.value)),
            external_task_id=doc.get("externalTaskId"),
            started_date=from_iso8601(doc.get("startedDate")),
            updated_date=from_iso8601(doc.get("updatedDate")),
            finished_date=from_iso8601(doc.get("finishedDate")),
            fail_message=doc.get("failMessage"),
            execution_progress=ExecutionProgress.from_document(doc.get("executionProgress")),
            previous_revision=PreviousRevision.from_document(
                doc.get("previousRevisionInformation")
            ),
            data_status=DataStatus(doc.get("dataStatus", DataStatus.VALID.value)),
        )


@dataclass
class WorkflowExecution:
    """A concrete run of a workflow: ordered plugins plus shared state.

    Example:
        >>> execution = WorkflowExecution.create(
        ...     dataset_id="12345",
        ...     plugins=[MetisPlugin(metadata=OaipmhHarvestMetadata(url="http://oai"))],
        ... )
        >>> execution.status
        <WorkflowStatus.INQUEUE: 'INQUEUE'>
    """

    id: str
    dataset_id: str
    plugins: list[MetisPlugin]
    priority: int = 0
    ecloud_dataset_id: str | None = None
    status: WorkflowStatus = WorkflowStatus.INQUEUE
    created_date: datetime = field(default_factory=utc_now)
    started_date: datetime | None = None
    updated_date: datetime | None = None
    finished_date: datetime | None = None
    cancelling: bool = False
    cancelled_by: str | None = None
    claim: Claim | None = None

    @classmethod
    def create(
        cls,
        dataset_id: str,
        plugins: list[MetisPlugin],
        priority: int = 0,
        now: datetime | None = None,
        ecloud_dataset_id: str | None = None,
    ) -> WorkflowExecution:
        """Create a new, un-persisted execution in INQUEUE status."""
        return cls(
            id=generate_object_id(),
            dataset_id=dataset_id,
            ecloud_dataset_id=ecloud_dataset_id,
            plugins=plugins,
            priority=priority,
            created_date=now or utc_now(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, target: WorkflowStatus) -> None:
        validate_workflow_transition(self.status, target)
        self.status = target

    def current_plugin(self) -> MetisPlugin | None:
        """The first plugin that is not terminal, if any."""
        for plugin in self.plugins:
            if not plugin.status.is_terminal:
                return plugin
        return None

    def active_plugins(self) -> list[MetisPlugin]:
        return [plugin for plugin in self.plugins if plugin.status.is_active]

    def plugin_index(self, plugin: MetisPlugin) -> int:
        for index, candidate in enumerate(self.plugins):
            if candidate is plugin:
                return index
        raise ValueError(f"Plugin {plugin.plugin_type.value} is not part of execution {self.id}")

    def copy(self) -> WorkflowExecution:
        """Deep copy, so stored and in-flight records never share state."""
        return copy.deepcopy(self)

    def to_document(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "datasetId": self.dataset_id,
            "ecloudDatasetId": self.ecloud_dataset_id,
            "workflowPriority": self.priority,
            "workflowStatus": self.status.value,
            "metisPlugins": [plugin.to_document() for plugin in self.plugins],
            "createdDate": to_iso8601(self.created_date),
            "startedDate": to_iso8601(self.started_date),
            "updatedDate": to_iso8601(self.updated_date),
            "finishedDate": to_iso8601(self.finished_date),
            "cancelling": self.cancelling,
            "cancelledBy": self.cancelled_by,
            "workerId": self.claim.worker_id if self.claim else None,
            "claimExpiresDate": to_iso8601(self.claim.expires_at) if self.claim else None,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> WorkflowExecution:
        claim = None
        if doc.get("workerId") and doc.get("claimExpiresDate"):
            claim = Claim(
                worker_id=doc["workerId"],
                expires_at=from_iso8601(doc["claimExpiresDate"]),
            )
        return cls(
            id=doc["_id"],
            dataset_id=doc["datasetId"],
            ecloud_dataset_id=doc.get("ecloudDatasetId"),
            plugins=[MetisPlugin.from_document(p) for p in doc.get("metisPlugins", [])],
            priority=doc.get("workflowPriority", 0),
            status=WorkflowStatus(doc.get("workflowStatus", WorkflowStatus.INQUEUE.value)),
            created_date=from_iso8601(doc["createdDate"]),
            started_date=from_iso8601(doc.get("startedDate")),
            updated_date=from_iso8601(doc.get("updatedDate")),
            finished_date=from_iso8601(doc.get("finishedDate")),
            cancelling=bool(doc.get("cancelling", False)),
            cancelled_by=doc.get("cancelledBy"),
            claim=claim,
        )


__all__ = [
    "CancelledSystemId",
    "WorkflowStatus",
    "PluginStatus",
    "DataStatus",
    "WORKFLOW_TERMINAL",
    "WORKFLOW_VALID_TRANSITIONS",
    "PLUGIN_TERMINAL",
    "PLUGIN_VALID_TRANSITIONS",
    "validate_workflow_transition",
    "validate_plugin_transition",
    "ExecutionProgress",
    "PreviousRevision",
    "Claim",
    "MetisPlugin",
    "WorkflowExecution",
]
