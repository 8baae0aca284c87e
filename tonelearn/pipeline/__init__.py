"""Ingestion and example selection.

Only the data models are re-exported here. The ingest pipeline, selector
and service depend on :mod:`tonelearn.vector`, which itself imports these
models, so import them from their modules directly.
"""

from tonelearn.pipeline.models import (
    FORWARDED_WITHOUT_COMMENT,
    EmailAddress,
    ExampleSelectionResult,
    HistoricalMessage,
    IndexedExampleRecord,
    IngestionResult,
    RelationshipClassification,
    SelectedExample,
    SelectionStats,
    UsageUpdate,
)

__all__ = [
    "FORWARDED_WITHOUT_COMMENT",
    "EmailAddress",
    "ExampleSelectionResult",
    "HistoricalMessage",
    "IndexedExampleRecord",
    "IngestionResult",
    "RelationshipClassification",
    "SelectedExample",
    "SelectionStats",
    "UsageUpdate",
]
