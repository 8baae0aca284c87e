"""Per-relationship style summary built from indexed feature bags.

Runs after ingestion, once per relationship type that received new
records. Unlike the LLM pattern analyzer this is pure counting over the
stored features, so it is cheap enough to recompute on every import.
"""

import logging
from collections import Counter, defaultdict
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from tonelearn.db.profile_store import PREFERENCE_STYLE, ProfileStore
from tonelearn.vector.index import SimilarityIndex

logger = logging.getLogger(__name__)

_TOP_GREETINGS = 10
_TOP_EMOJIS = 20


class PhraseFrequency(BaseModel):
    text: str
    frequency: int
    percentage: float


class EmojiUsage(BaseModel):
    emoji: str
    frequency: int
    contexts: list[str] = Field(default_factory=list)


class ContractionUsage(BaseModel):
    uses: bool = False
    frequency: int = 0


class SentimentProfile(BaseModel):
    primary_tone: str = "neutral"
    average_warmth: float = 0.5
    average_formality: float = 0.5


class StructuralProfile(BaseModel):
    average_email_length: float = 0.0
    average_sentence_length: float = 0.0
    complexity_level: str = "moderate"


class AggregatedStyle(BaseModel):
    """Counted style summary for one user and relationship type."""

    relationship_type: str
    greetings: list[PhraseFrequency] = Field(default_factory=list)
    closings: list[PhraseFrequency] = Field(default_factory=list)
    emojis: list[EmojiUsage] = Field(default_factory=list)
    contractions: ContractionUsage = Field(default_factory=ContractionUsage)
    sentiment_profile: SentimentProfile = Field(default_factory=SentimentProfile)
    structural_patterns: StructuralProfile = Field(default_factory=StructuralProfile)
    email_count: int = 0
    last_updated: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    confidence_score: float = 0.0


def confidence_for_sample(email_count: int) -> float:
    """Confidence grows with the number of emails behind a summary."""
    if email_count < 10:
        return 0.2
    if email_count < 50:
        return 0.4
    if email_count < 100:
        return 0.6
    if email_count < 500:
        return 0.8
    return 0.95


def _primary_tone(warmth: float) -> str:
    if warmth > 0.8:
        return "very warm"
    if warmth > 0.6:
        return "warm"
    if warmth > 0.4:
        return "neutral"
    if warmth > 0.2:
        return "professional"
    return "formal"


def _complexity(avg_sentence_length: float) -> str:
    if avg_sentence_length < 10:
        return "simple"
    if avg_sentence_length < 15:
        return "moderate"
    if avg_sentence_length < 20:
        return "complex"
    return "very complex"


def _ranked(counter: Counter[str], total: int, top: int) -> list[PhraseFrequency]:
    return [
        PhraseFrequency(text=text, frequency=count, percentage=round(count / total * 100, 2))
        for text, count in counter.most_common(top)
    ]


class StyleAggregationService:
    """Builds and stores :class:`AggregatedStyle` summaries."""

    def __init__(self, index: SimilarityIndex, profile_store: ProfileStore) -> None:
        self._index = index
        self._profiles = profile_store

    async def aggregate_style_for_user(
        self, user_id: str, relationship_type: str
    ) -> AggregatedStyle:
        """Count greetings, closings, emojis and tone across stored records.

        Args:
            user_id: Account owner.
            relationship_type: Relationship label to summarize.

        Returns:
            The summary. Empty (confidence 0) when no records exist.
        """
        payloads = await self._index.scroll_all(user_id, relationship_type)
        return self.summarize(relationship_type, payloads)

    @staticmethod
    def summarize(relationship_type: str, payloads: list[dict[str, Any]]) -> AggregatedStyle:
        email_count = len(payloads)
        if email_count == 0:
            return AggregatedStyle(relationship_type=relationship_type)

        greetings: Counter[str] = Counter()
        closings: Counter[str] = Counter()
        emoji_contexts: dict[str, set[str]] = defaultdict(set)
        contraction_emails = 0
        total_warmth = 0.0
        total_formality = 0.0
        total_words = 0
        total_sentences = 0

        for payload in payloads:
            features: dict[str, Any] = payload.get("features") or {}
            stats = features.get("stats") or {}
            sentiment = features.get("sentiment") or {}

            if features.get("greeting"):
                greetings[features["greeting"]] += 1
            if features.get("closing"):
                closings[features["closing"]] += 1
            for emoji in sentiment.get("emojis") or []:
                emoji_contexts[emoji].add(sentiment.get("dominant", "neutral"))
            if features.get("contractions"):
                contraction_emails += 1

            total_warmth += float(features.get("warmth", 0.5))
            total_formality += float(stats.get("formality_score", 0.5))
            total_words += int(stats.get("word_count", 0))
            total_sentences += int(stats.get("sentence_count", 0))

        avg_sentence_length = total_words / total_sentences if total_sentences else 0.0
        average_warmth = total_warmth / email_count

        emojis = sorted(emoji_contexts.items(), key=lambda item: len(item[1]), reverse=True)

        return AggregatedStyle(
            relationship_type=relationship_type,
            greetings=_ranked(greetings, email_count, _TOP_GREETINGS),
            closings=_ranked(closings, email_count, _TOP_GREETINGS),
            emojis=[
                EmojiUsage(emoji=emoji, frequency=len(contexts), contexts=sorted(contexts))
                for emoji, contexts in emojis[:_TOP_EMOJIS]
            ],
            contractions=ContractionUsage(
                uses=contraction_emails > email_count * 0.3,
                frequency=contraction_emails,
            ),
            sentiment_profile=SentimentProfile(
                primary_tone=_primary_tone(average_warmth),
                average_warmth=round(average_warmth, 2),
                average_formality=round(total_formality / email_count, 2),
            ),
            structural_patterns=StructuralProfile(
                average_email_length=round(total_words / email_count, 2),
                average_sentence_length=round(avg_sentence_length, 2),
                complexity_level=_complexity(avg_sentence_length),
            ),
            email_count=email_count,
            confidence_score=confidence_for_sample(email_count),
        )

    async def update_style_preferences(self, user_id: str, style: AggregatedStyle) -> None:
        """Replace the stored summary for ``style.relationship_type``."""
        await self._profiles.upsert_profile(
            user_id=user_id,
            preference_type=PREFERENCE_STYLE,
            target_identifier=style.relationship_type,
            profile_data=style.model_dump(mode="json"),
            emails_analyzed=style.email_count,
        )

    async def get_aggregated_style(
        self, user_id: str, relationship_type: str
    ) -> AggregatedStyle | None:
        data = await self._profiles.load_profile(user_id, PREFERENCE_STYLE, relationship_type)
        return AggregatedStyle.model_validate(data) if data else None

    async def refresh(self, user_id: str, relationship_type: str) -> AggregatedStyle:
        """Aggregate and store in one step."""
        style = await self.aggregate_style_for_user(user_id, relationship_type)
        await self.update_style_preferences(user_id, style)
        logger.info(
            "STYLE_AGGREGATION: %s summary refreshed from %d emails",
            relationship_type,
            style.email_count,
            extra={"user_id": user_id},
        )
        return style
