"""
Plugin chain policy: which finished plugin a new plugin consumes.

Rules:
    1. The predecessor is FINISHED in some execution of the same dataset.
    2. Among candidates the newest by finished date wins; ties go to the
       later execution start.
    3. Candidate types come from the predecessor graph in
       :mod:`metis_core.workflow.plugins`.
    4. Harvest plugins have no predecessor.
    5. An explicit predecessor type narrows candidates to that type.
    6. Obsolete candidates are skipped: explicitly DEPRECATED ones, and
       ones after which a plugin of the same family (the type itself or
       anything upstream of it) finished for the dataset. DEPRECATED
       runs never make another candidate obsolete.

Tags:
    chain-policy, predecessor, revision, dag, metis-core
"""

from __future__ import annotations

from metis_core.core.errors import PluginExecutionNotAllowed
from metis_core.core.logging import get_logger
from metis_core.core.result import Err, Ok, Result
from metis_core.persistence.repository import ExecutionRepository, FinishedPluginRef
from metis_core.workflow.models import (
    DataStatus,
    MetisPlugin,
    PluginStatus,
    PreviousRevision,
    WorkflowExecution,
)
from metis_core.workflow.plugins import (
    PluginType,
    family_of,
    is_harvest,
    is_valid_successor,
    predecessor_types,
)

logger = get_logger(__name__)


def revision_of(execution_id: str, plugin_index: int, plugin: MetisPlugin) -> PreviousRevision:
    """Pointer to *plugin*'s output revision."""
    if plugin.started_date is None:
        raise ValueError(f"{plugin.plugin_type.value} never started and has no revision")
    return PreviousRevision(
        plugin_type=plugin.plugin_type,
        revision_name=plugin.plugin_type.value,
        revision_timestamp=plugin.started_date,
        execution_id=execution_id,
        plugin_index=plugin_index,
    )


def link_to_previous(plugin: MetisPlugin, previous: PreviousRevision) -> None:
    """Set the pointer and mirror it into the plugin's metadata."""
    plugin.previous_revision = previous
    plugin.metadata.revision_name_previous_plugin = previous.revision_name
    plugin.metadata.revision_timestamp_previous_plugin = previous.revision_timestamp


def _sort_key(ref: FinishedPluginRef) -> tuple:
    finished = ref.plugin.finished_date
    started = ref.execution_started_date
    return (
        finished is not None,
        finished.timestamp() if finished else 0.0,
        started.timestamp() if started else 0.0,
    )


class PluginChainPolicy:
    """Resolves predecessors and validates plugin order."""

    def __init__(self, repository: ExecutionRepository) -> None:
        self._repository = repository

    def validate_order(self, plugin_types: list[PluginType]) -> Result[None]:
        """Consecutive plugins of a workflow must be valid graph edges."""
        if not plugin_types:
            return Err(PluginExecutionNotAllowed("Workflow has no enabled plugins"))
        for previous, following in zip(plugin_types, plugin_types[1:]):
            if not is_valid_successor(previous, following):
                return Err(PluginExecutionNotAllowed(
                    f"{following.value} cannot follow {previous.value}"
                ))
        return Ok(None)

    def is_obsolete(self, candidate: FinishedPluginRef, finished: list[FinishedPluginRef]) -> bool:
        if candidate.plugin.data_status is DataStatus.DEPRECATED:
            return True
        candidate_finished = candidate.plugin.finished_date
        if candidate_finished is None:
            return False
        family = family_of(candidate.plugin.plugin_type)
        for other in finished:
            if other.execution_id == candidate.execution_id and other.plugin_index == candidate.plugin_index:
                continue
            if other.plugin.plugin_type not in family:
                continue
            # deprecated output supersedes nothing
            if other.plugin.data_status is DataStatus.DEPRECATED:
                continue
            if other.plugin.finished_date is not None and other.plugin.finished_date > candidate_finished:
                return True
        return False

    def compute_predecessor(
        self,
        dataset_id: str,
        plugin_type: PluginType,
        enforced_predecessor_type: PluginType | None = None,
    ) -> Result[PreviousRevision | None]:
        """Find the plugin whose output a new *plugin_type* plugin consumes.

        Returns ``Ok(None)`` for harvest plugins, ``Ok(PreviousRevision)``
        when a valid predecessor exists and ``Err(PluginExecutionNotAllowed)``
        otherwise.
        """
        if is_harvest(plugin_type):
            return Ok(None)

        allowed = predecessor_types(plugin_type)
        if enforced_predecessor_type is not None:
            if enforced_predecessor_type not in allowed:
                return Err(PluginExecutionNotAllowed(
                    f"{plugin_type.value} cannot follow {enforced_predecessor_type.value}"
                ))
            allowed = frozenset({enforced_predecessor_type})

        finished = self._repository.find_finished_plugins(dataset_id)
        candidates = sorted(
            (ref for ref in finished if ref.plugin.plugin_type in allowed),
            key=_sort_key,
            reverse=True,
        )
        for candidate in candidates:
            if self.is_obsolete(candidate, finished):
                logger.debug(
                    "chain_policy.candidate_obsolete",
                    dataset_id=dataset_id,
                    execution_id=candidate.execution_id,
                    plugin_type=candidate.plugin.plugin_type.value,
                )
                continue
            revision = revision_of(candidate.execution_id, candidate.plugin_index, candidate.plugin)
            logger.info(
                "chain_policy.predecessor_found",
                dataset_id=dataset_id,
                plugin_type=plugin_type.value,
                predecessor_type=revision.plugin_type.value,
                predecessor_execution_id=revision.execution_id,
            )
            return Ok(revision)

        return Err(PluginExecutionNotAllowed(
            f"No valid predecessor for {plugin_type.value} in dataset {dataset_id}"
        ).with_context(dataset_id=dataset_id, plugin_type=plugin_type.value))

    def resolve(self, previous: PreviousRevision) -> MetisPlugin | None:
        """Load the plugin a pointer references, if it is still FINISHED."""
        execution = self._repository.get_by_id(previous.execution_id)
        if execution is None or not 0 <= previous.plugin_index < len(execution.plugins):
            return None
        plugin = execution.plugins[previous.plugin_index]
        if plugin.status is not PluginStatus.FINISHED or plugin.plugin_type is not previous.plugin_type:
            return None
        return plugin


def previous_in_execution(execution: WorkflowExecution, index: int) -> PreviousRevision | None:
    """Pointer to the FINISHED plugin right before ``plugins[index]``."""
    if index == 0:
        return None
    predecessor = execution.plugins[index - 1]
    if predecessor.status is not PluginStatus.FINISHED:
        return None
    return revision_of(execution.id, index - 1, predecessor)


__all__ = [
    "PluginChainPolicy",
    "revision_of",
    "link_to_previous",
    "previous_in_execution",
]
