"""Core configuration, errors and shared utilities."""

from tonelearn.core.config import Settings, get_settings, settings
from tonelearn.core.exceptions import (
    DatabaseError,
    EncryptionError,
    ExternalServiceError,
    IngestionAbortedError,
    LLMResponseParseError,
    NotFoundError,
    PatternAnalysisError,
    RelationshipDetectionError,
    ToneLearnException,
    ValidationError,
    sanitize_error,
)

__all__ = [
    "DatabaseError",
    "EncryptionError",
    "ExternalServiceError",
    "IngestionAbortedError",
    "LLMResponseParseError",
    "NotFoundError",
    "PatternAnalysisError",
    "RelationshipDetectionError",
    "Settings",
    "ToneLearnException",
    "ValidationError",
    "get_settings",
    "sanitize_error",
    "settings",
]
