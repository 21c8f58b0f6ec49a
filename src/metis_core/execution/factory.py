"""
Workflow factory: build an un-persisted execution from a template.

Steps:
    1. Keep the template's enabled plugins, in order.
    2. Apply per-type configuration (XSLT, validation schemas, indexing
       environment, link-check sampling).
    3. Point the first plugin at the predecessor resolved by the chain
       policy.

The factory never touches the repository; persisting and enqueueing is
the orchestrator's job.

Tags:
    factory, workflow, execution, template, metis-core
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Callable

from metis_core.core.errors import OrchestrationError, PluginExecutionNotAllowed
from metis_core.core.logging import get_logger
from metis_core.core.result import Err, Ok, Result
from metis_core.execution.chain_policy import link_to_previous
from metis_core.workflow.dataset import Dataset, Workflow, XsltCatalog
from metis_core.workflow.models import MetisPlugin, PreviousRevision, WorkflowExecution
from metis_core.workflow.plugins import (
    IndexToPreviewMetadata,
    IndexToPublishMetadata,
    LinkCheckingMetadata,
    PluginMetadata,
    TransformationMetadata,
    ValidationExternalMetadata,
    ValidationInternalMetadata,
)

logger = get_logger(__name__)


class WorkflowFactory:
    """Creates executions from workflow templates.

    Example:
        >>> factory = WorkflowFactory(settings, xslt_catalog)
        >>> result = factory.create(workflow, dataset, predecessor=None)
        >>> execution = result.unwrap()
    """

    def __init__(self, settings: Any, xslt_catalog: XsltCatalog) -> None:
        self._settings = settings
        self._xslt_catalog = xslt_catalog
        self._configurers: dict[type[PluginMetadata], Callable[[Any, Dataset], None]] = {
            TransformationMetadata: self._setup_transformation,
            ValidationExternalMetadata: self._setup_validation_external,
            ValidationInternalMetadata: self._setup_validation_internal,
            IndexToPreviewMetadata: self._setup_indexing,
            IndexToPublishMetadata: self._setup_indexing,
            LinkCheckingMetadata: self._setup_link_checking,
        }

    def create(
        self,
        workflow: Workflow,
        dataset: Dataset,
        predecessor: PreviousRevision | None,
        priority: int = 0,
        now: datetime | None = None,
    ) -> Result[WorkflowExecution]:
        enabled = [copy.deepcopy(metadata) for metadata in workflow.enabled_plugins()]
        if not enabled:
            return Err(PluginExecutionNotAllowed(
                f"Workflow for dataset {dataset.dataset_id} has no enabled plugins"
            ))

        for metadata in enabled:
            configure = self._configurers.get(type(metadata))
            if configure is None:
                continue
            try:
                configure(metadata, dataset)
            except OrchestrationError as exc:
                return Err(exc.with_context(dataset_id=dataset.dataset_id))

        plugins = [MetisPlugin(metadata=metadata) for metadata in enabled]
        if predecessor is not None:
            link_to_previous(plugins[0], predecessor)

        execution = WorkflowExecution.create(
            dataset_id=dataset.dataset_id,
            plugins=plugins,
            priority=priority,
            now=now,
            ecloud_dataset_id=dataset.ecloud_dataset_id,
        )
        logger.debug(
            "factory.execution_created",
            execution_id=execution.id,
            dataset_id=dataset.dataset_id,
            plugin_types=[plugin.plugin_type.value for plugin in plugins],
        )
        return Ok(execution)

    # ── Per-type setup ───────────────────────────────────────────

    def _setup_transformation(self, metadata: TransformationMetadata, dataset: Dataset) -> None:
        if metadata.custom_xslt and dataset.xslt_id:
            xslt = self._xslt_catalog.get_by_id(dataset.xslt_id)
        else:
            xslt = self._xslt_catalog.latest_default()
        if xslt is None:
            raise OrchestrationError(
                f"No XSLT available for dataset {dataset.dataset_id}"
            )
        metadata.xslt_id = xslt.id
        base_url = self._settings.default_xslt_url
        metadata.xslt_url = f"{base_url.rstrip('/')}/{xslt.id}" if base_url else None
        metadata.dataset_name = f"{dataset.dataset_id}_{dataset.dataset_name}"
        metadata.country = dataset.country
        metadata.language = dataset.language.lower() if dataset.language else None

    def _setup_validation_external(self, metadata: ValidationExternalMetadata, dataset: Dataset) -> None:
        metadata.url_of_schemas_zip = self._settings.validation_external_schemas_zip_url
        metadata.schema_root_path = self._settings.validation_external_schema_root_path
        metadata.schematron_root_path = self._settings.validation_external_schematron_root_path

    def _setup_validation_internal(self, metadata: ValidationInternalMetadata, dataset: Dataset) -> None:
        metadata.url_of_schemas_zip = self._settings.validation_internal_schemas_zip_url
        metadata.schema_root_path = self._settings.validation_internal_schema_root_path
        metadata.schematron_root_path = self._settings.validation_internal_schematron_root_path

    def _setup_indexing(
        self,
        metadata: IndexToPreviewMetadata | IndexToPublishMetadata,
        dataset: Dataset,
    ) -> None:
        metadata.dataset_id = dataset.dataset_id
        metadata.use_alternative_indexing_environment = (
            self._settings.use_alternative_indexing_environment
        )

    def _setup_link_checking(self, metadata: LinkCheckingMetadata, dataset: Dataset) -> None:
        metadata.sample_size = self._settings.default_sampling_size_for_link_checking


__all__ = ["WorkflowFactory"]
