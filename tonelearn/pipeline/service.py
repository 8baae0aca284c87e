"""Tone-learning service: one entry point wiring every component.

Draft generation is not part of this service. Callers build prompts from
the two primitives exposed here, :meth:`ToneLearningService.select_examples`
and the stored writing pattern profiles.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.llm import CompletionProvider, build_completion_provider
from tonelearn.db.profile_store import ProfileStore, SupabaseProfileStore
from tonelearn.db.supabase import SupabaseClient
from tonelearn.pipeline.example_selector import ExampleSelector
from tonelearn.pipeline.ingest import EmailIngestPipeline
from tonelearn.pipeline.models import (
    ExampleSelectionResult,
    HistoricalMessage,
    IngestionResult,
    UsageUpdate,
)
from tonelearn.redaction.name_redactor import NameRedactor
from tonelearn.relationships.detector import DomainRelationshipDetector, RelationshipDetector
from tonelearn.style.aggregation import AggregatedStyle, StyleAggregationService
from tonelearn.style.models import AnalysisEmail, WritingPatterns
from tonelearn.style.pattern_analyzer import WritingPatternAnalyzer
from tonelearn.vector.embeddings import EmbeddingProvider, build_embedding_provider
from tonelearn.vector.index import SimilarityIndex, SupabaseVectorIndex

logger = logging.getLogger(__name__)


class ToneStatistics(BaseModel):
    """What has been learned for a user so far."""

    total_records: int = 0
    relationship_distribution: dict[str, int] = Field(default_factory=dict)
    profiles: list[dict[str, Any]] = Field(default_factory=list)


def _unique_messages(payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """One payload per source message.

    Ingestion stores a record per recipient, so a message sent to three
    people appears three times in the index.
    """
    seen: set[str] = set()
    unique: list[dict[str, Any]] = []
    for payload in payloads:
        email_id = payload.get("email_id") or payload.get("id", "")
        if email_id in seen:
            continue
        seen.add(email_id)
        unique.append(payload)
    return unique


class ToneLearningService:
    """Ingests sent mail, selects examples and maintains style profiles."""

    def __init__(
        self,
        index: SimilarityIndex,
        embeddings: EmbeddingProvider,
        detector: RelationshipDetector,
        llm: CompletionProvider,
        profile_store: ProfileStore,
        redactor: NameRedactor | None = None,
        config: Settings | None = None,
    ) -> None:
        config = config or get_settings()
        redactor = redactor or NameRedactor()
        self._index = index
        self._profiles = profile_store
        self.style_aggregator = StyleAggregationService(index, profile_store)
        self.pipeline = EmailIngestPipeline(
            index=index,
            embeddings=embeddings,
            detector=detector,
            redactor=redactor,
            style_aggregator=self.style_aggregator,
            config=config,
        )
        self.selector = ExampleSelector(index, embeddings, detector, config=config)
        self.analyzer = WritingPatternAnalyzer(llm, profile_store, redactor, config=config)

    async def initialize(self) -> None:
        await self._index.initialize()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_historical_emails(
        self, user_id: str, emails: list[HistoricalMessage]
    ) -> IngestionResult:
        """Index a batch of sent messages. See :class:`EmailIngestPipeline`."""
        return await self.pipeline.process_historical_emails(user_id, emails)

    async def ingest_single_email(self, user_id: str, email: HistoricalMessage) -> list[str]:
        """Index one message and refresh the affected style summaries.

        Errors for the message propagate unchanged.

        Returns:
            Relationship type of each record written.
        """
        relationship_types = await self.pipeline.process_email(user_id, email)
        for relationship_type in dict.fromkeys(relationship_types):
            try:
                await self.style_aggregator.refresh(user_id, relationship_type)
            except Exception as e:
                logger.warning(
                    "Style aggregation failed for %s: %s",
                    relationship_type,
                    e,
                    extra={"user_id": user_id},
                )
        return relationship_types

    async def aggregate_styles(
        self, user_id: str, relationship_types: list[str] | None = None
    ) -> dict[str, AggregatedStyle]:
        """Recompute counted style summaries.

        Args:
            user_id: Account owner.
            relationship_types: Types to refresh. Defaults to every type
                present in the index.
        """
        if relationship_types is None:
            relationship_types = sorted(await self._index.get_relationship_stats(user_id))
        return {
            relationship_type: await self.style_aggregator.refresh(user_id, relationship_type)
            for relationship_type in relationship_types
        }

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def select_examples(
        self,
        user_id: str,
        incoming_email: str,
        recipient_email: str,
        desired_count: int | None = None,
        max_direct_fraction: float | None = None,
    ) -> ExampleSelectionResult:
        return await self.selector.select_examples(
            user_id=user_id,
            incoming_email=incoming_email,
            recipient_email=recipient_email,
            desired_count=desired_count,
            max_direct_fraction=max_direct_fraction,
        )

    # ------------------------------------------------------------------
    # Pattern analysis
    # ------------------------------------------------------------------

    async def analyze_writing_patterns(
        self, user_id: str, relationship: str | None = None
    ) -> WritingPatterns:
        """Analyze the indexed corpus and store the profile.

        Args:
            user_id: Account owner.
            relationship: Limit to one relationship type. ``None`` builds the
                aggregate profile over every message.

        Raises:
            PatternAnalysisError: If there is nothing to analyze or every
                batch fails.
        """
        payloads = await self._index.scroll_all(user_id, relationship)
        emails = [AnalysisEmail.from_payload(p) for p in _unique_messages(payloads)]
        logger.info(
            "Analyzing %d messages for %s",
            len(emails),
            relationship or "aggregate",
            extra={"user_id": user_id},
        )
        return await self.analyzer.analyze_and_save(user_id, emails, relationship)

    async def analyze_all_patterns(self, user_id: str) -> dict[str, WritingPatterns]:
        """Build the aggregate profile and one per relationship type.

        A failing relationship is logged and left out; a failing aggregate
        raises.

        Returns:
            Profiles keyed by relationship type, plus ``"aggregate"``.
        """
        results = {"aggregate": await self.analyze_writing_patterns(user_id)}
        distribution = await self._index.get_relationship_stats(user_id)
        for relationship in sorted(distribution):
            try:
                results[relationship] = await self.analyze_writing_patterns(user_id, relationship)
            except Exception as e:
                logger.warning(
                    "Pattern analysis failed for %s: %s",
                    relationship,
                    e,
                    extra={"user_id": user_id},
                )
        return results

    # ------------------------------------------------------------------
    # Feedback and housekeeping
    # ------------------------------------------------------------------

    async def record_draft_feedback(self, updates: list[UsageUpdate]) -> None:
        """Update usage counters on the examples behind a generated draft."""
        await self._index.update_usage_stats(updates)

    async def clear_user_data(self, user_id: str) -> None:
        """Delete every indexed record and stored profile for a user."""
        await self._index.delete_by_user(user_id)
        await self._profiles.delete_profiles(user_id)
        logger.info("Cleared tone-learning data", extra={"user_id": user_id})

    async def get_tone_statistics(self, user_id: str) -> ToneStatistics:
        distribution = await self._index.get_relationship_stats(user_id)
        profiles = await self._profiles.list_profiles(user_id)
        return ToneStatistics(
            total_records=sum(distribution.values()),
            relationship_distribution=distribution,
            profiles=profiles,
        )


def build_tone_learning_service(
    config: Settings | None = None,
    db: SupabaseClient | None = None,
    user_domains: list[str] | None = None,
) -> ToneLearningService:
    """Construct the service with the configured providers.

    Args:
        config: Settings. Defaults to the cached settings.
        db: Shared Supabase handle. Created from ``config`` if omitted.
        user_domains: Domains the account owner works under, for
            relationship detection.

    Raises:
        ValueError: If required secrets are missing.
    """
    config = config or get_settings()
    config.validate_startup()
    db = db or SupabaseClient(config)
    return ToneLearningService(
        index=SupabaseVectorIndex(db, config),
        embeddings=build_embedding_provider(config),
        detector=DomainRelationshipDetector(user_domains=user_domains),
        llm=build_completion_provider(config),
        profile_store=SupabaseProfileStore(db, config),
        config=config,
    )
