"""Plugin types, their DPS topologies, the predecessor graph and metadata variants.

Plugin metadata is a tagged variant: each plugin type has its own dataclass
carrying only its own fields, and documents carry the ``pluginType`` tag so
:func:`metadata_from_document` can dispatch on it.

Predecessor graph (immediate edges)::

    OAIPMH_HARVEST ─┐
                    ├─► VALIDATION_EXTERNAL ─► TRANSFORMATION ─► VALIDATION_INTERNAL
    HTTP_HARVEST ───┘
        ─► NORMALIZATION ─► ENRICHMENT ─► MEDIA_PROCESS ─► PREVIEW ─► PUBLISH
                                                              │          │
                                                              └──► LINK_CHECKING
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from metis_core.core.timestamps import from_iso8601, to_iso8601


class PluginType(str, Enum):
    """Executable plugin types."""

    OAIPMH_HARVEST = "OAIPMH_HARVEST"
    HTTP_HARVEST = "HTTP_HARVEST"
    VALIDATION_EXTERNAL = "VALIDATION_EXTERNAL"
    TRANSFORMATION = "TRANSFORMATION"
    VALIDATION_INTERNAL = "VALIDATION_INTERNAL"
    NORMALIZATION = "NORMALIZATION"
    ENRICHMENT = "ENRICHMENT"
    MEDIA_PROCESS = "MEDIA_PROCESS"
    PREVIEW = "PREVIEW"
    PUBLISH = "PUBLISH"
    LINK_CHECKING = "LINK_CHECKING"


class Topology(str, Enum):
    """DPS-side task categories; each decides the submit/poll endpoint."""

    OAIPMH_HARVEST = "oai_harvest"
    HTTP_HARVEST = "http_harvest"
    VALIDATION = "validation"
    XSLT_TRANSFORM = "xslt_transform"
    NORMALIZATION = "normalization"
    ENRICHMENT = "enrichment"
    MEDIA_PROCESS = "media_process"
    INDEX = "indexer"
    LINK_CHECKING = "link_checker"


TOPOLOGIES: dict[PluginType, Topology] = {
    PluginType.OAIPMH_HARVEST: Topology.OAIPMH_HARVEST,
    PluginType.HTTP_HARVEST: Topology.HTTP_HARVEST,
    PluginType.VALIDATION_EXTERNAL: Topology.VALIDATION,
    PluginType.TRANSFORMATION: Topology.XSLT_TRANSFORM,
    PluginType.VALIDATION_INTERNAL: Topology.VALIDATION,
    PluginType.NORMALIZATION: Topology.NORMALIZATION,
    PluginType.ENRICHMENT: Topology.ENRICHMENT,
    PluginType.MEDIA_PROCESS: Topology.MEDIA_PROCESS,
    PluginType.PREVIEW: Topology.INDEX,
    PluginType.PUBLISH: Topology.INDEX,
    PluginType.LINK_CHECKING: Topology.LINK_CHECKING,
}

HARVEST_TYPES: frozenset[PluginType] = frozenset({
    PluginType.OAIPMH_HARVEST,
    PluginType.HTTP_HARVEST,
})

# Immediate predecessor types of each plugin type.
PREDECESSORS: dict[PluginType, frozenset[PluginType]] = {
    PluginType.OAIPMH_HARVEST: frozenset(),
    PluginType.HTTP_HARVEST: frozenset(),
    PluginType.VALIDATION_EXTERNAL: HARVEST_TYPES,
    PluginType.TRANSFORMATION: frozenset({PluginType.VALIDATION_EXTERNAL}),
    PluginType.VALIDATION_INTERNAL: frozenset({PluginType.TRANSFORMATION}),
    PluginType.NORMALIZATION: frozenset({PluginType.VALIDATION_INTERNAL}),
    PluginType.ENRICHMENT: frozenset({PluginType.NORMALIZATION}),
    PluginType.MEDIA_PROCESS: frozenset({PluginType.ENRICHMENT}),
    PluginType.PREVIEW: frozenset({PluginType.MEDIA_PROCESS}),
    PluginType.PUBLISH: frozenset({PluginType.PREVIEW}),
    PluginType.LINK_CHECKING: frozenset({PluginType.PREVIEW, PluginType.PUBLISH}),
}


def topology_of(plugin_type: PluginType) -> Topology:
    return TOPOLOGIES[plugin_type]


def is_harvest(plugin_type: PluginType) -> bool:
    return plugin_type in HARVEST_TYPES


def predecessor_types(plugin_type: PluginType) -> frozenset[PluginType]:
    """Immediate predecessor types allowed for *plugin_type*."""
    return PREDECESSORS[plugin_type]


def is_valid_successor(previous: PluginType, following: PluginType) -> bool:
    """True when *following* may consume the output of *previous*."""
    return previous in PREDECESSORS[following]


def upstream_types(plugin_type: PluginType) -> frozenset[PluginType]:
    """All types reachable backwards from *plugin_type* (excluding itself)."""
    seen: set[PluginType] = set()
    stack = list(PREDECESSORS[plugin_type])
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(PREDECESSORS[current])
    return frozenset(seen)


def family_of(plugin_type: PluginType) -> frozenset[PluginType]:
    """The type itself plus everything upstream of it.

    A newer finished run of any family member re-derives the data a
    candidate was built on, so the candidate is obsolete.
    """
    return upstream_types(plugin_type) | {plugin_type}


# =============================================================================
# METADATA VARIANTS
# =============================================================================

_CAMEL_OVERRIDES = {
    "url_of_schemas_zip": "urlOfSchemasZip",
}


def _camel(name: str) -> str:
    if name in _CAMEL_OVERRIDES:
        return _CAMEL_OVERRIDES[name]
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class PluginMetadata:
    """Fields common to every plugin; subclasses add their own."""

    plugin_type: ClassVar[PluginType]

    enabled: bool = True
    revision_name_previous_plugin: str | None = None
    revision_timestamp_previous_plugin: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"pluginType": self.plugin_type.value}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = to_iso8601(value)
            elif isinstance(value, Enum):
                value = value.value
            doc[_camel(f.name)] = value
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> PluginMetadata:
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in doc:
                continue
            value = doc[key]
            if f.name in _DATETIME_FIELDS and isinstance(value, str):
                value = from_iso8601(value)
            kwargs[f.name] = value
        return cls(**kwargs)


_DATETIME_FIELDS = {
    "revision_timestamp_previous_plugin",
    "from_date",
    "until_date",
}


@dataclass
class OaipmhHarvestMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.OAIPMH_HARVEST

    url: str | None = None
    metadata_format: str | None = None
    set_spec: str | None = None
    from_date: datetime | None = None
    until_date: datetime | None = None


@dataclass
class HttpHarvestMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.HTTP_HARVEST

    url: str | None = None


@dataclass
class ValidationExternalMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.VALIDATION_EXTERNAL

    url_of_schemas_zip: str | None = None
    schema_root_path: str | None = None
    schematron_root_path: str | None = None


@dataclass
class ValidationInternalMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.VALIDATION_INTERNAL

    url_of_schemas_zip: str | None = None
    schema_root_path: str | None = None
    schematron_root_path: str | None = None


@dataclass
class TransformationMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.TRANSFORMATION

    custom_xslt: bool = False
    xslt_id: str | None = None
    xslt_url: str | None = None
    dataset_name: str | None = None
    country: str | None = None
    language: str | None = None


@dataclass
class NormalizationMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.NORMALIZATION


@dataclass
class EnrichmentMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.ENRICHMENT


@dataclass
class MediaProcessMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.MEDIA_PROCESS


@dataclass
class IndexToPreviewMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.PREVIEW

    dataset_id: str | None = None
    use_alternative_indexing_environment: bool = False
    preserve_timestamps: bool = False


@dataclass
class IndexToPublishMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.PUBLISH

    dataset_id: str | None = None
    use_alternative_indexing_environment: bool = False
    preserve_timestamps: bool = False


@dataclass
class LinkCheckingMetadata(PluginMetadata):
    plugin_type: ClassVar[PluginType] = PluginType.LINK_CHECKING

    sample_size: int | None = None
    perform_sampling: bool = True


METADATA_TYPES: dict[PluginType, type[PluginMetadata]] = {
    cls.plugin_type: cls
    for cls in (
        OaipmhHarvestMetadata,
        HttpHarvestMetadata,
        ValidationExternalMetadata,
        TransformationMetadata,
        ValidationInternalMetadata,
        NormalizationMetadata,
        EnrichmentMetadata,
        MediaProcessMetadata,
        IndexToPreviewMetadata,
        IndexToPublishMetadata,
        LinkCheckingMetadata,
    )
}


def metadata_for(plugin_type: PluginType | str, **kwargs: Any) -> PluginMetadata:
    """Instantiate the metadata variant for *plugin_type*."""
    return METADATA_TYPES[PluginType(plugin_type)](**kwargs)


def metadata_from_document(doc: dict[str, Any]) -> PluginMetadata:
    """Dispatch on the ``pluginType`` tag of a stored metadata document."""
    try:
        plugin_type = PluginType(doc["pluginType"])
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown plugin metadata document: {doc!r}") from exc
    return METADATA_TYPES[plugin_type].from_document(doc)


__all__ = [
    "PluginType",
    "Topology",
    "TOPOLOGIES",
    "HARVEST_TYPES",
    "PREDECESSORS",
    "topology_of",
    "is_harvest",
    "predecessor_types",
    "is_valid_successor",
    "upstream_types",
    "family_of",
    "PluginMetadata",
    "OaipmhHarvestMetadata",
    "HttpHarvestMetadata",
    "ValidationExternalMetadata",
    "ValidationInternalMetadata",
    "TransformationMetadata",
    "NormalizationMetadata",
    "EnrichmentMetadata",
    "MediaProcessMetadata",
    "IndexToPreviewMetadata",
    "IndexToPublishMetadata",
    "LinkCheckingMetadata",
    "METADATA_TYPES",
    "metadata_for",
    "metadata_from_document",
]
