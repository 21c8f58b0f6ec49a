"""DPS wire models: tasks, output revisions and task progress."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from metis_core.core.timestamps import to_iso8601


class TaskState(str, Enum):
    """State of a DPS task as reported by the task-progress endpoint."""

    PENDING = "PENDING"
    CURRENTLY_PROCESSING = "CURRENTLY_PROCESSING"
    PROCESSED = "PROCESSED"
    DROPPED = "DROPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.PROCESSED, TaskState.DROPPED)


class InputDataType(str, Enum):
    DATASET_URLS = "DATASET_URLS"
    REPOSITORY_URLS = "REPOSITORY_URLS"


_TASK_IDS = itertools.count(1)
_TASK_IDS_LOCK = threading.Lock()


def _next_task_id() -> int:
    with _TASK_IDS_LOCK:
        return next(_TASK_IDS)


@dataclass
class Revision:
    """Output revision stamped on every record a task writes."""

    revision_name: str
    revision_provider_id: str
    creation_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "revisionName": self.revision_name,
            "revisionProviderId": self.revision_provider_id,
            "creationTimeStamp": to_iso8601(self.creation_timestamp),
        }


@dataclass
class DpsTask:
    """A task submission body for the DPS."""

    input_data: dict[InputDataType, list[str]] = field(default_factory=dict)
    parameters: dict[str, str] = field(default_factory=dict)
    output_revision: Revision | None = None
    harvesting_details: dict[str, Any] | None = None
    task_id: int = field(default_factory=_next_task_id)
    task_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "taskId": self.task_id,
            "taskName": self.task_name,
            "inputData": {key.value: value for key, value in self.input_data.items()},
            "parameters": dict(self.parameters),
        }
        if self.output_revision is not None:
            body["outputRevision"] = self.output_revision.to_dict()
        if self.harvesting_details is not None:
            body["harvestingDetails"] = self.harvesting_details
        return body


@dataclass(frozen=True)
class TaskProgress:
    """One observation of a DPS task's progress."""

    state: TaskState
    expected_records: int = 0
    processed_records: int = 0
    errors: int = 0
    info: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskProgress:
        return cls(
            state=TaskState(data.get("state") or data.get("status")),
            expected_records=int(data.get("expectedSize") or data.get("expectedRecords") or 0),
            processed_records=int(
                data.get("processedElementCount") or data.get("processedRecords") or 0
            ),
            errors=int(data.get("errors") or 0),
            info=data.get("info"),
        )


__all__ = ["TaskState", "InputDataType", "Revision", "DpsTask", "TaskProgress"]
