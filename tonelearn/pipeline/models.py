"""Data models shared by ingestion, example selection and pattern analysis."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Stored in place of an empty authored reply (a forward with no added text)
FORWARDED_WITHOUT_COMMENT = "[ForwardedWithoutComment]"


class EmailAddress(BaseModel):
    """A single mailbox as it appears in a header."""

    model_config = ConfigDict(frozen=True)

    address: str = ""
    name: str | None = None

    @property
    def normalized(self) -> str:
        """Lowercased, trimmed address used as the identity key."""
        return self.address.strip().lower()


class RelationshipClassification(BaseModel):
    """Coarse relationship label for a recipient."""

    model_config = ConfigDict(frozen=True)

    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    detection_method: str


class HistoricalMessage(BaseModel):
    """One sent email as observed by the account owner.

    Immutable once built. An empty authored reply is stored as
    :data:`FORWARDED_WITHOUT_COMMENT` so downstream code always sees text.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: str
    uid: str | None = None
    in_reply_to: str | None = None
    date: datetime | None = None
    from_: list[EmailAddress] = Field(default_factory=list, alias="from")
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    subject: str = ""
    text_content: str = ""
    user_reply: str = FORWARDED_WITHOUT_COMMENT
    responded_to: str = ""
    raw_message: str | None = None
    eml_file_path: str | None = None
    relationship: RelationshipClassification | None = None

    @field_validator("user_reply", mode="before")
    @classmethod
    def substitute_empty_reply(cls, v: Any) -> str:
        """Replace a missing or blank reply with the forwarded sentinel."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return FORWARDED_WITHOUT_COMMENT
        return v

    @property
    def sender(self) -> EmailAddress | None:
        """First From address, if any."""
        return self.from_[0] if self.from_ else None

    def unique_recipients(self) -> list[EmailAddress]:
        """To/Cc/Bcc deduplicated by lowercased address, first occurrence wins.

        Entries with a blank address are dropped.
        """
        seen: set[str] = set()
        recipients: list[EmailAddress] = []
        for addr in [*self.to, *self.cc, *self.bcc]:
            key = addr.normalized
            if not key or key in seen:
                continue
            seen.add(key)
            recipients.append(addr)
        return recipients


def record_id(message_id: str, recipient_email: str) -> str:
    """Composite identity of an indexed record."""
    return f"{message_id}:{recipient_email.strip().lower()}"


class IndexedExampleRecord(BaseModel):
    """One message as observed from the perspective of one recipient."""

    id: str
    email_id: str
    user_id: str
    user_reply: str
    raw_text: str = ""
    responded_to: str = ""
    redacted_names: list[str] = Field(default_factory=list)
    redacted_emails: list[str] = Field(default_factory=list)
    recipient_email: str
    subject: str = ""
    sent_date: datetime | None = None
    features: dict[str, Any] = Field(default_factory=dict)
    relationship: RelationshipClassification
    frequency_score: int = 1
    word_count: int = 0
    edit_count: int = 0
    average_edit_distance: float = 0.0
    user_rating: float | None = None
    last_used_at: datetime | None = None
    eml_file: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe payload stored alongside the vector."""
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IndexedExampleRecord":
        return cls.model_validate(payload)


class SelectedExample(BaseModel):
    """A past reply chosen as an in-context style example."""

    id: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float


class SelectionStats(BaseModel):
    total_candidates: int = 0
    relationship_match: int = 0
    direct_correspondence: int = 0


class ExampleSelectionResult(BaseModel):
    """Ranked examples for one draft: direct correspondence first."""

    relationship: RelationshipClassification
    examples: list[SelectedExample] = Field(default_factory=list)
    stats: SelectionStats = Field(default_factory=SelectionStats)


class IngestionResult(BaseModel):
    """Outcome of one historical import run."""

    processed: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    relationship_distribution: dict[str, int] = Field(default_factory=dict)


class UsageUpdate(BaseModel):
    """Feedback on how an example-backed draft was used."""

    record_id: str
    was_used: bool = False
    was_edited: bool = False
    edit_distance: float | None = None
    user_rating: float | None = Field(default=None, ge=0.0, le=5.0)
