"""Two-phase example retrieval for draft generation.

Phase 1 pulls the user's past replies to the exact recipient, capped at
``floor(desired_count * max_direct_fraction)``. Phase 2 fills the
remaining slots with replies to other people in the same relationship
category. Direct examples always come first.
"""

import logging
import math
from typing import Any

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import ValidationError
from tonelearn.core.resilience import with_retry
from tonelearn.pipeline.features import extract_email_features
from tonelearn.pipeline.models import (
    ExampleSelectionResult,
    RelationshipClassification,
    SelectedExample,
    SelectionStats,
)
from tonelearn.relationships.detector import RelationshipDetector
from tonelearn.vector.embeddings import EmbeddingProvider
from tonelearn.vector.index import SearchFilters, SearchHit, SearchRequest, SimilarityIndex

logger = logging.getLogger(__name__)


def _to_example(hit: SearchHit) -> SelectedExample:
    payload = hit.payload
    metadata = {
        key: payload.get(key)
        for key in (
            "email_id",
            "recipient_email",
            "subject",
            "sent_date",
            "relationship",
            "word_count",
            "features",
        )
        if key in payload
    }
    return SelectedExample(
        id=hit.id,
        text=payload.get("user_reply", ""),
        metadata=metadata,
        score=hit.score,
    )


def _hit_relationship(hit: SearchHit) -> str | None:
    return (hit.payload.get("relationship") or {}).get("type")


class ExampleSelector:
    """Selects in-context style examples for a reply."""

    def __init__(
        self,
        index: SimilarityIndex,
        embeddings: EmbeddingProvider,
        detector: RelationshipDetector,
        config: Settings | None = None,
    ) -> None:
        config = config or get_settings()
        self._index = index
        self._embeddings = embeddings
        self._detector = detector
        self._default_count = config.EXAMPLE_COUNT
        self._default_direct_fraction = config.EXAMPLE_MAX_DIRECT_FRACTION
        self._direct_limit = config.EXAMPLE_DIRECT_SEARCH_LIMIT
        self._category_limit = config.EXAMPLE_CATEGORY_SEARCH_LIMIT
        self._retry_options: dict[str, Any] = {
            "max_attempts": config.PIPELINE_RETRY_ATTEMPTS,
            "initial_delay": config.PIPELINE_RETRY_INITIAL_DELAY,
            "backoff_factor": config.PIPELINE_RETRY_BACKOFF_FACTOR,
        }

    async def select_examples(
        self,
        user_id: str,
        incoming_email: str,
        recipient_email: str,
        desired_count: int | None = None,
        max_direct_fraction: float | None = None,
        subject: str | None = None,
    ) -> ExampleSelectionResult:
        """Pick ranked examples of how the user writes to this recipient.

        Args:
            user_id: Account owner.
            incoming_email: Text of the message being replied to.
            recipient_email: Address the draft will be sent to.
            desired_count: Total examples wanted. Defaults to ``EXAMPLE_COUNT``.
            max_direct_fraction: Cap on the share of direct-correspondence
                examples. Defaults to ``EXAMPLE_MAX_DIRECT_FRACTION``.
            subject: Optional subject passed to relationship detection.

        Returns:
            The detected relationship, examples (direct first), and stats.

        Raises:
            ValidationError: If ``desired_count`` is negative or
                ``max_direct_fraction`` is outside [0, 1].
            Whatever the detector, embedding provider or index raised once
            retries are exhausted.
        """
        count = desired_count if desired_count is not None else self._default_count
        fraction = (
            max_direct_fraction
            if max_direct_fraction is not None
            else self._default_direct_fraction
        )
        if count < 0:
            raise ValidationError(
                f"desired_count must be non-negative, got {count}", field="desired_count"
            )
        if not 0.0 <= fraction <= 1.0:
            raise ValidationError(
                f"max_direct_fraction must be within [0, 1], got {fraction}",
                field="max_direct_fraction",
            )
        recipient = recipient_email.strip().lower()

        hints = extract_email_features(incoming_email, recipient).context_hints()
        relationship: RelationshipClassification = await with_retry(
            lambda: self._detector.detect(
                user_id=user_id,
                recipient_email=recipient,
                subject=subject,
                context_hints=hints,
            ),
            description="relationship detection",
            **self._retry_options,
        )

        vector = await with_retry(
            lambda: self._embeddings.embed(incoming_email),
            description="embed incoming email",
            **self._retry_options,
        )

        max_direct = math.floor(count * fraction)

        # Phase 1: direct correspondence
        direct_request = SearchRequest(
            user_id=user_id,
            vector=vector,
            filters=SearchFilters(recipient_email=recipient),
            limit=self._direct_limit,
            score_threshold=0.0,
        )
        direct_hits = await with_retry(
            lambda: self._index.search(direct_request),
            description="direct correspondence search",
            **self._retry_options,
        )
        direct_hits = sorted(direct_hits, key=lambda h: h.score, reverse=True)
        direct_selected = self._dedupe(direct_hits)[: min(max_direct, count)]

        remaining = count - len(direct_selected)

        # Phase 2: relationship category
        category_hits: list[SearchHit] = []
        category_selected: list[SearchHit] = []
        if remaining > 0:
            seen_ids = {hit.id for hit in direct_hits}
            category_request = SearchRequest(
                user_id=user_id,
                vector=vector,
                filters=SearchFilters(
                    relationship_type=relationship.type,
                    exclude_ids=sorted(seen_ids),
                ),
                limit=self._category_limit,
                score_threshold=0.0,
            )
            category_hits = await with_retry(
                lambda: self._index.search(category_request),
                description="relationship category search",
                **self._retry_options,
            )
            category_hits = sorted(category_hits, key=lambda h: h.score, reverse=True)
            # Replies to this same recipient belong to the direct quota
            eligible = [
                hit
                for hit in category_hits
                if hit.id not in seen_ids
                and (hit.payload.get("recipient_email") or "").lower() != recipient
            ]
            category_selected = self._dedupe(eligible)[:remaining]

        selected = direct_selected + category_selected
        examples = [_to_example(hit) for hit in selected]

        stats = SelectionStats(
            total_candidates=len(direct_hits) + len(category_hits),
            relationship_match=sum(
                1 for hit in selected if _hit_relationship(hit) == relationship.type
            ),
            direct_correspondence=len(direct_selected),
        )

        logger.info(
            "EXAMPLE_SELECTION: %d direct + %d %s examples (%d candidates)",
            len(direct_selected),
            len(category_selected),
            relationship.type,
            stats.total_candidates,
            extra={"user_id": user_id, "recipient_email": recipient},
        )

        return ExampleSelectionResult(relationship=relationship, examples=examples, stats=stats)

    @staticmethod
    def _dedupe(hits: list[SearchHit]) -> list[SearchHit]:
        seen: set[str] = set()
        unique: list[SearchHit] = []
        for hit in hits:
            if hit.id in seen:
                continue
            seen.add(hit.id)
            unique.append(hit)
        return unique
