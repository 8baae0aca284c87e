"""Custom exceptions for the tone-learning engine."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe caller-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "DatabaseError": "A database error occurred. Please try again.",
    "ExternalServiceError": "An external service is temporarily unavailable.",
    "RelationshipDetectionError": "Could not classify the recipient relationship.",
    "IngestionAbortedError": "Email import stopped because too many messages failed.",
    "LLMResponseParseError": "The language model returned an unreadable response.",
    "PatternAnalysisError": "Writing style analysis failed. Please try again.",
    "EncryptionError": "A stored credential could not be read.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, caller-facing error message.

    Internal details (provider responses, addresses, key material) stay
    in the server-side logs; only a generic message is returned.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class ToneLearnException(Exception):
    """Base exception for all tone-learning errors."""

    def __init__(
        self,
        message: str,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class NotFoundError(ToneLearnException):
    """Resource not found error."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={"resource": resource, "resource_id": resource_id},
        )


class ValidationError(ToneLearnException):
    """Permanent per-item input error. Never retried."""

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the invalid field.
            details: Additional validation details.
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details=error_details,
        )


class DatabaseError(ToneLearnException):
    """Database operation error."""

    def __init__(self, message: str = "A database error occurred") -> None:
        """Initialize database error.

        Args:
            message: Error message.
        """
        super().__init__(message=message, code="DATABASE_ERROR")


class ExternalServiceError(ToneLearnException):
    """External service (embedding, LLM, index) error."""

    def __init__(self, service: str, message: str | None = None) -> None:
        """Initialize external service error.

        Args:
            service: Name of the external service.
            message: Optional error message.
        """
        super().__init__(
            message=message or f"External service '{service}' is unavailable",
            code="EXTERNAL_SERVICE_ERROR",
            details={"service": service},
        )
        self.service = service


class RelationshipDetectionError(ToneLearnException):
    """Relationship classification failed for a specific message/recipient.

    ``details`` carries the message context (ids, addresses, subject,
    preview) so the failing email can be identified in a large import.
    """

    def __init__(self, message: str, context: dict[str, Any]) -> None:
        super().__init__(message=message, code="RELATIONSHIP_DETECTION_ERROR", details=context)


class IngestionAbortedError(ToneLearnException):
    """Ingestion run stopped because the running error rate crossed the threshold."""

    def __init__(self, processed: int, errors: int, threshold: float) -> None:
        """Initialize ingestion aborted error.

        Args:
            processed: Messages successfully processed before the abort.
            errors: Messages that failed before the abort.
            threshold: Configured error-rate threshold.
        """
        super().__init__(
            message=(
                f"Error rate exceeded threshold {threshold}: "
                f"{errors} errors / {processed} processed"
            ),
            code="INGESTION_ABORTED",
            details={"processed": processed, "errors": errors, "threshold": threshold},
        )
        self.processed = processed
        self.errors = errors
        self.threshold = threshold


class LLMResponseParseError(ToneLearnException):
    """LLM response contained no parseable JSON object."""

    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(
            message=message,
            code="LLM_RESPONSE_PARSE_ERROR",
            details={"response_preview": raw_response[:200]},
        )


class PatternAnalysisError(ToneLearnException):
    """Writing pattern analysis could not produce a profile."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="PATTERN_ANALYSIS_ERROR", details=details)


class EncryptionError(ToneLearnException):
    """Encrypted value could not be decrypted or authenticated."""

    def __init__(self, message: str = "Failed to decrypt data") -> None:
        super().__init__(message=message, code="ENCRYPTION_ERROR")
