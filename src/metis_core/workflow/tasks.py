"""Per-plugin-type DPS task composition.

Each plugin type registers one composer that turns the plugin's metadata into
a :class:`DpsTask`. The driver looks the composer up by tag; nothing else in
the engine knows about DPS parameters.

Common parameters for non-harvest tasks::

    REPRESENTATION_NAME      metadataRecord
    REVISION_NAME            revision name of the predecessor plugin
    REVISION_PROVIDER        eCloud provider
    REVISION_TIMESTAMP       predecessor revision timestamp
    NEW_REPRESENTATION_NAME  metadataRecord
    OUTPUT_DATA_SETS         eCloud dataset url (tasks that write records)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from metis_core.dps.models import DpsTask, InputDataType, Revision
from metis_core.workflow.models import MetisPlugin
from metis_core.workflow.plugins import (
    HttpHarvestMetadata,
    IndexToPreviewMetadata,
    IndexToPublishMetadata,
    LinkCheckingMetadata,
    OaipmhHarvestMetadata,
    PluginType,
    TransformationMetadata,
    ValidationExternalMetadata,
    ValidationInternalMetadata,
)

REPRESENTATION_NAME = "metadataRecord"
DATASET_URL_TEMPLATE = "{base}/data-providers/{provider}/data-sets/{dataset}"


class TaskCompositionError(ValueError):
    """The plugin lacks information required to build its DPS task."""


@dataclass(frozen=True)
class EcloudTarget:
    """Where a task reads and writes records in eCloud."""

    base_url: str
    provider: str
    dataset_id: str

    @property
    def dataset_url(self) -> str:
        return DATASET_URL_TEMPLATE.format(
            base=self.base_url.rstrip("/"), provider=self.provider, dataset=self.dataset_id
        )


def format_revision_timestamp(moment: datetime) -> str:
    """``yyyy-MM-dd'T'HH:mm:ss.SSSZ`` in UTC, as eCloud expects."""
    moment = moment.astimezone(UTC) if moment.tzinfo else moment.replace(tzinfo=UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _output_revision(plugin: MetisPlugin, target: EcloudTarget) -> Revision:
    if plugin.started_date is None:
        raise TaskCompositionError(
            f"{plugin.plugin_type.value} has no started date for its output revision"
        )
    return Revision(
        revision_name=plugin.plugin_type.value,
        revision_provider_id=target.provider,
        creation_timestamp=plugin.started_date,
    )


def _previous_revision_parameters(plugin: MetisPlugin, target: EcloudTarget) -> dict[str, str]:
    metadata = plugin.metadata
    name = metadata.revision_name_previous_plugin
    timestamp = metadata.revision_timestamp_previous_plugin
    if plugin.previous_revision is not None:
        name = plugin.previous_revision.revision_name
        timestamp = plugin.previous_revision.revision_timestamp
    if not name or timestamp is None:
        raise TaskCompositionError(
            f"{plugin.plugin_type.value} has no previous revision to read from"
        )
    return {
        "REPRESENTATION_NAME": REPRESENTATION_NAME,
        "REVISION_NAME": name,
        "REVISION_PROVIDER": target.provider,
        "REVISION_TIMESTAMP": format_revision_timestamp(timestamp),
    }


def _processing_task(
    plugin: MetisPlugin,
    target: EcloudTarget,
    extra: dict[str, str] | None = None,
    writes_records: bool = True,
) -> DpsTask:
    parameters = _previous_revision_parameters(plugin, target)
    if extra:
        parameters.update(extra)
    output_revision = None
    if writes_records:
        parameters["NEW_REPRESENTATION_NAME"] = REPRESENTATION_NAME
        parameters["OUTPUT_DATA_SETS"] = target.dataset_url
        output_revision = _output_revision(plugin, target)
    return DpsTask(
        input_data={InputDataType.DATASET_URLS: [target.dataset_url]},
        parameters=parameters,
        output_revision=output_revision,
        task_name=plugin.plugin_type.value,
    )


def _harvest_parameters(target: EcloudTarget) -> dict[str, str]:
    return {
        "PROVIDER_ID": target.provider,
        "NEW_REPRESENTATION_NAME": REPRESENTATION_NAME,
        "OUTPUT_DATA_SETS": target.dataset_url,
    }


def compose_oaipmh_harvest(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    metadata = plugin.metadata
    assert isinstance(metadata, OaipmhHarvestMetadata)
    if not metadata.url:
        raise TaskCompositionError("OAIPMH_HARVEST requires a repository url")
    details: dict[str, object] = {}
    if metadata.metadata_format:
        details["schemas"] = [metadata.metadata_format]
    if metadata.set_spec:
        details["sets"] = [metadata.set_spec]
    if metadata.from_date:
        details["dateFrom"] = format_revision_timestamp(metadata.from_date)
    if metadata.until_date:
        details["dateUntil"] = format_revision_timestamp(metadata.until_date)
    return DpsTask(
        input_data={InputDataType.REPOSITORY_URLS: [metadata.url.strip()]},
        parameters=_harvest_parameters(target),
        output_revision=_output_revision(plugin, target),
        harvesting_details=details,
        task_name=plugin.plugin_type.value,
    )


def compose_http_harvest(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    metadata = plugin.metadata
    assert isinstance(metadata, HttpHarvestMetadata)
    if not metadata.url:
        raise TaskCompositionError("HTTP_HARVEST requires a file url")
    parameters = _harvest_parameters(target)
    parameters["METIS_DATASET_ID"] = target.dataset_id
    return DpsTask(
        input_data={InputDataType.REPOSITORY_URLS: [metadata.url.strip()]},
        parameters=parameters,
        output_revision=_output_revision(plugin, target),
        task_name=plugin.plugin_type.value,
    )


def compose_validation(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    metadata = plugin.metadata
    assert isinstance(metadata, (ValidationExternalMetadata, ValidationInternalMetadata))
    return _processing_task(plugin, target, {
        "SCHEMA_NAME": metadata.url_of_schemas_zip or "",
        "ROOT_LOCATION": metadata.schema_root_path or "",
        "SCHEMATRON_LOCATION": metadata.schematron_root_path or "",
    })


def compose_transformation(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    metadata = plugin.metadata
    assert isinstance(metadata, TransformationMetadata)
    if not metadata.xslt_id and not metadata.xslt_url:
        raise TaskCompositionError("TRANSFORMATION requires an xslt")
    return _processing_task(plugin, target, {
        "XSLT_URL": metadata.xslt_url or metadata.xslt_id or "",
        "METIS_DATASET_ID": target.dataset_id,
        "METIS_DATASET_NAME": metadata.dataset_name or "",
        "METIS_DATASET_COUNTRY": metadata.country or "",
        "METIS_DATASET_LANGUAGE": metadata.language or "",
    })


def compose_plain(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    return _processing_task(plugin, target)


def compose_indexing(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    metadata = plugin.metadata
    assert isinstance(metadata, (IndexToPreviewMetadata, IndexToPublishMetadata))
    return _processing_task(
        plugin,
        target,
        {
            "METIS_DATASET_ID": metadata.dataset_id or target.dataset_id,
            "TARGET_INDEXING_DATABASE": plugin.plugin_type.value,
            "USE_ALT_INDEXING_ENV": str(metadata.use_alternative_indexing_environment).lower(),
            "METIS_PRESERVE_TIMESTAMPS": str(metadata.preserve_timestamps).lower(),
        },
        writes_records=False,
    )


def compose_link_checking(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    metadata = plugin.metadata
    assert isinstance(metadata, LinkCheckingMetadata)
    extra = {}
    if metadata.perform_sampling and metadata.sample_size:
        extra["SAMPLE_SIZE"] = str(metadata.sample_size)
    return _processing_task(plugin, target, extra, writes_records=False)


TaskComposer = Callable[[MetisPlugin, EcloudTarget], DpsTask]

COMPOSERS: dict[PluginType, TaskComposer] = {
    PluginType.OAIPMH_HARVEST: compose_oaipmh_harvest,
    PluginType.HTTP_HARVEST: compose_http_harvest,
    PluginType.VALIDATION_EXTERNAL: compose_validation,
    PluginType.TRANSFORMATION: compose_transformation,
    PluginType.VALIDATION_INTERNAL: compose_validation,
    PluginType.NORMALIZATION: compose_plain,
    PluginType.ENRICHMENT: compose_plain,
    PluginType.MEDIA_PROCESS: compose_plain,
    PluginType.PREVIEW: compose_indexing,
    PluginType.PUBLISH: compose_indexing,
    PluginType.LINK_CHECKING: compose_link_checking,
}


def compose_task(plugin: MetisPlugin, target: EcloudTarget) -> DpsTask:
    """Build the DPS task for *plugin*; raises :class:`TaskCompositionError`."""
    return COMPOSERS[plugin.plugin_type](plugin, target)


__all__ = [
    "REPRESENTATION_NAME",
    "EcloudTarget",
    "TaskCompositionError",
    "TaskComposer",
    "COMPOSERS",
    "compose_task",
    "format_revision_timestamp",
]
