"""Recipient relationship classification."""

from tonelearn.relationships.detector import (
    DomainRelationshipDetector,
    RelationshipDetector,
)

__all__ = ["DomainRelationshipDetector", "RelationshipDetector"]
