"""
Metis core - workflow execution engine for the cultural-heritage pipeline.

Datasets flow through ordered plugin chains (harvest, validation,
transformation, enrichment, media, indexing, link checking). Each plugin
delegates bulk record work to the external eCloud DPS and the engine drives
it to completion: claiming executions, polling tasks, persisting progress,
honouring cancellation and choosing predecessor revisions.
"""

__version__ = "0.1.0"
