"""Writing pattern profile models.

Field names are snake_case in Python and camelCase on the wire, matching
the JSON the analysis prompt asks the LLM to produce and the shape stored
in ``profile_data``.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PatternModel(BaseModel):
    """Base for LLM-produced structures: camelCase aliases, nulls mean default."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SentenceDistribution(PatternModel):
    short: float = 0.0
    medium: float = 0.0
    long: float = 0.0


class SentencePatterns(PatternModel):
    avg_length: float = 0.0
    min_length: float = 0.0
    max_length: float = 0.0
    std_deviation: float = 0.0
    distribution: SentenceDistribution = Field(default_factory=SentenceDistribution)
    examples: list[str] = Field(default_factory=list)


class ParagraphPattern(PatternModel):
    type: str
    percentage: float = 0.0
    description: str = ""


class OpeningPattern(PatternModel):
    pattern: str
    frequency: float = 0.0
    notes: str | None = None


class PhrasePercentage(PatternModel):
    """Valediction or typed-name sign-off with its share of emails."""

    phrase: str
    percentage: float = 0.0


class NegativePattern(PatternModel):
    description: str
    confidence: float = 0.0
    examples: list[str] = Field(default_factory=list)
    context: str | None = None


class ResponsePatterns(PatternModel):
    immediate: float = 0.0
    contemplative: float = 0.0
    question_handling: str = ""


class UniqueExpression(PatternModel):
    phrase: str
    context: str = ""
    frequency: float = 0.0


class WritingPatterns(PatternModel):
    """Canonical style profile for one user and relationship (or all)."""

    sentence_patterns: SentencePatterns = Field(default_factory=SentencePatterns)
    paragraph_patterns: list[ParagraphPattern] = Field(default_factory=list)
    opening_patterns: list[OpeningPattern] = Field(default_factory=list)
    valediction: list[PhrasePercentage] = Field(default_factory=list)
    typed_name: list[PhrasePercentage] = Field(default_factory=list)
    negative_patterns: list[NegativePattern] = Field(default_factory=list)
    response_patterns: ResponsePatterns = Field(default_factory=ResponsePatterns)
    unique_expressions: list[UniqueExpression] = Field(default_factory=list)


class DateRange(PatternModel):
    start: datetime | None = None
    end: datetime | None = None


class BatchAnalysisResult(BaseModel):
    """One batch's observations plus the weight it carries in the merge."""

    patterns: WritingPatterns
    email_count: int
    date_range: DateRange = Field(default_factory=DateRange)


class AnalysisEmail(BaseModel):
    """A sent email as fed to pattern analysis."""

    text: str
    date: datetime | None = None
    recipients: list[str] = Field(default_factory=list)
    subject: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AnalysisEmail":
        """Build from an indexed record payload."""
        recipient = payload.get("recipient_email")
        return cls(
            text=payload.get("user_reply", ""),
            date=payload.get("sent_date"),
            recipients=[recipient] if recipient else [],
            subject=payload.get("subject", ""),
        )
