"""Read-only inputs to the engine: datasets, workflow templates, XSLTs, triggers."""

from __future__ import annotations

import calendar
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from metis_core.core.timestamps import ensure_utc, generate_object_id, utc_now
from metis_core.workflow.plugins import PluginMetadata, PluginType


class HarvestType(str, Enum):
    OAIPMH_HARVEST = "OAIPMH_HARVEST"
    HTTP_HARVEST = "HTTP_HARVEST"


@dataclass
class HarvestingMetadata:
    """How records of a dataset are fetched."""

    harvest_type: HarvestType
    url: str
    metadata_format: str | None = None
    set_spec: str | None = None


@dataclass
class Dataset:
    """Dataset as known to the engine (CRUD lives elsewhere)."""

    dataset_id: str
    dataset_name: str
    ecloud_dataset_id: str
    country: str | None = None
    language: str | None = None
    xslt_id: str | None = None
    harvesting_metadata: HarvestingMetadata | None = None


@dataclass
class Workflow:
    """Workflow template: ordered plugin metadata for one dataset."""

    dataset_id: str
    plugins_metadata: list[PluginMetadata] = field(default_factory=list)

    def enabled_plugins(self) -> list[PluginMetadata]:
        return [metadata for metadata in self.plugins_metadata if metadata.enabled]

    def enabled_types(self) -> list[PluginType]:
        return [metadata.plugin_type for metadata in self.enabled_plugins()]


@dataclass(frozen=True)
class DatasetXslt:
    id: str
    xslt: str
    dataset_id: str | None = None
    created_date: datetime = field(default_factory=utc_now)


class XsltCatalog(Protocol):
    """Lookup of stored XSLTs for transformation plugins."""

    def get_by_id(self, xslt_id: str) -> DatasetXslt | None: ...

    def latest_default(self) -> DatasetXslt | None: ...


class InMemoryXsltCatalog:
    """XSLT catalog kept in process memory."""

    def __init__(self) -> None:
        self._by_id: dict[str, DatasetXslt] = {}
        self._defaults: list[DatasetXslt] = []
        self._lock = threading.Lock()

    def add(self, xslt: str, dataset_id: str | None = None) -> DatasetXslt:
        """Store an XSLT; without *dataset_id* it becomes the newest default."""
        entry = DatasetXslt(id=generate_object_id(), xslt=xslt, dataset_id=dataset_id)
        with self._lock:
            self._by_id[entry.id] = entry
            if dataset_id is None:
                self._defaults.append(entry)
        return entry

    def get_by_id(self, xslt_id: str) -> DatasetXslt | None:
        with self._lock:
            return self._by_id.get(xslt_id)

    def latest_default(self) -> DatasetXslt | None:
        with self._lock:
            if not self._defaults:
                return None
            # later additions win ties on created_date
            return max(reversed(self._defaults), key=lambda entry: entry.created_date)


class ScheduleFrequency(str, Enum):
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class ScheduledTrigger:
    """A (dataset, template, cadence, pointer date) tuple from the calendar subsystem."""

    dataset: Dataset
    workflow: Workflow
    frequency: ScheduleFrequency
    pointer_date: datetime
    priority: int = 0

    def occurrences(self, until: datetime) -> list[datetime]:
        """All occurrences from the pointer date up to and including *until*."""
        pointer = ensure_utc(self.pointer_date)
        until = ensure_utc(until)
        result: list[datetime] = []
        step = 0
        while True:
            if self.frequency is ScheduleFrequency.ONCE:
                occurrence = pointer
            elif self.frequency is ScheduleFrequency.DAILY:
                occurrence = pointer + timedelta(days=step)
            elif self.frequency is ScheduleFrequency.WEEKLY:
                occurrence = pointer + timedelta(weeks=step)
            else:
                occurrence = _add_months(pointer, step)
            if occurrence > until:
                break
            result.append(occurrence)
            if self.frequency is ScheduleFrequency.ONCE:
                break
            step += 1
        return result

    def is_due(self, since: datetime | None, now: datetime) -> bool:
        """True when an occurrence falls in ``(since, now]``."""
        occurrences = self.occurrences(now)
        if not occurrences:
            return False
        if since is None:
            return True
        return occurrences[-1] > ensure_utc(since)


__all__ = [
    "HarvestType",
    "HarvestingMetadata",
    "Dataset",
    "Workflow",
    "DatasetXslt",
    "XsltCatalog",
    "InMemoryXsltCatalog",
    "ScheduleFrequency",
    "ScheduledTrigger",
]
