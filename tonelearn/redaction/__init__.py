"""Personal name and address redaction."""

from tonelearn.redaction.name_redactor import EMAIL_PLACEHOLDER, NameRedactor, RedactionResult

__all__ = ["EMAIL_PLACEHOLDER", "NameRedactor", "RedactionResult"]
