"""Historical email ingestion.

Turns sent messages into indexed example records, one per
(message, recipient) pair:

    redact once → dedupe recipients → per recipient: features,
    relationship, embed (retried), upsert (retried)

Messages are processed in fixed-size chunks. Chunks run sequentially;
messages inside a chunk and recipients inside a message run concurrently.
The running error rate is checked after every chunk.
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Any

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import (
    IngestionAbortedError,
    RelationshipDetectionError,
    ValidationError,
)
from tonelearn.core.resilience import with_retry
from tonelearn.pipeline.features import extract_email_features
from tonelearn.pipeline.models import (
    EmailAddress,
    HistoricalMessage,
    IndexedExampleRecord,
    IngestionResult,
    RelationshipClassification,
    record_id,
)
from tonelearn.redaction.name_redactor import NameRedactor, RedactionResult
from tonelearn.relationships.detector import RelationshipDetector
from tonelearn.style.aggregation import StyleAggregationService
from tonelearn.vector.embeddings import EmbeddingProvider
from tonelearn.vector.index import SimilarityIndex

logger = logging.getLogger(__name__)

_PREVIEW_WORDS = 50


def _format_addresses(addresses: list[EmailAddress]) -> list[str]:
    return [f"{a.name} <{a.address}>" if a.name else a.address for a in addresses]


def message_context(
    email: HistoricalMessage,
    recipient: EmailAddress | None = None,
    preview_text: str | None = None,
) -> dict[str, Any]:
    """Identifying details of a message for error reports."""
    words = (preview_text if preview_text is not None else email.user_reply).split()
    preview = " ".join(words[:_PREVIEW_WORDS])
    if len(words) > _PREVIEW_WORDS:
        preview += "..."
    context: dict[str, Any] = {
        "message_id": email.message_id,
        "uid": email.uid,
        "in_reply_to": email.in_reply_to,
        "from": _format_addresses(email.from_),
        "to": _format_addresses(email.to),
        "cc": _format_addresses(email.cc),
        "bcc": _format_addresses(email.bcc),
        "subject": email.subject,
        "preview": preview,
    }
    if recipient is not None:
        context["recipient"] = recipient.address
    return context


class EmailIngestPipeline:
    """Indexes a user's sent mail for example retrieval."""

    def __init__(
        self,
        index: SimilarityIndex,
        embeddings: EmbeddingProvider,
        detector: RelationshipDetector,
        redactor: NameRedactor | None = None,
        style_aggregator: StyleAggregationService | None = None,
        config: Settings | None = None,
        *,
        batch_size: int | None = None,
        error_threshold: float | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            index: Where records are written.
            embeddings: Embedding provider for reply text.
            detector: Relationship detector used when a message carries no
                classification.
            redactor: Name redactor. A default instance is used if omitted.
            style_aggregator: Run once per relationship type after a run.
            config: Settings for batching, thresholds and retries.
            batch_size: Override for ``PIPELINE_BATCH_SIZE``.
            error_threshold: Override for ``PIPELINE_ERROR_THRESHOLD``.
        """
        config = config or get_settings()
        self._index = index
        self._embeddings = embeddings
        self._detector = detector
        self._redactor = redactor or NameRedactor()
        self._style_aggregator = style_aggregator
        self._batch_size = batch_size or config.PIPELINE_BATCH_SIZE
        self._error_threshold = (
            error_threshold if error_threshold is not None else config.PIPELINE_ERROR_THRESHOLD
        )
        self._retry_options: dict[str, Any] = {
            "max_attempts": config.PIPELINE_RETRY_ATTEMPTS,
            "initial_delay": config.PIPELINE_RETRY_INITIAL_DELAY,
            "backoff_factor": config.PIPELINE_RETRY_BACKOFF_FACTOR,
        }

    # ------------------------------------------------------------------
    # Run level
    # ------------------------------------------------------------------

    async def process_historical_emails(
        self, user_id: str, emails: list[HistoricalMessage]
    ) -> IngestionResult:
        """Index a batch of historical messages.

        Args:
            user_id: Account owner.
            emails: Sent messages to index.

        Returns:
            Processed/error counts, duration and records per relationship type.

        Raises:
            IngestionAbortedError: If the running error rate exceeds the
                threshold after any chunk.
        """
        start = time.monotonic()
        processed = 0
        errors = 0
        distribution: Counter[str] = Counter()
        total_chunks = (len(emails) + self._batch_size - 1) // self._batch_size

        logger.info(
            "EMAIL_INGEST: starting import of %d emails in %d chunks",
            len(emails),
            total_chunks,
            extra={"user_id": user_id},
        )

        for chunk_number, chunk_start in enumerate(range(0, len(emails), self._batch_size), 1):
            chunk = emails[chunk_start : chunk_start + self._batch_size]
            outcomes = await asyncio.gather(
                *(self.process_email(user_id, email) for email in chunk),
                return_exceptions=True,
            )

            # Fold after the join so the counters have a single writer
            for email, outcome in zip(chunk, outcomes, strict=True):
                if isinstance(outcome, Exception):
                    errors += 1
                    logger.warning(
                        "EMAIL_INGEST: failed to ingest %s: %s",
                        email.message_id,
                        outcome,
                        extra={"user_id": user_id},
                    )
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    processed += 1
                    distribution.update(outcome)

            logger.info(
                "EMAIL_INGEST: chunk %d/%d done (processed=%d, errors=%d)",
                chunk_number,
                total_chunks,
                processed,
                errors,
                extra={"user_id": user_id},
            )

            if self._error_rate_exceeded(processed, errors):
                logger.error(
                    "EMAIL_INGEST: aborting, error rate over %.2f (processed=%d, errors=%d)",
                    self._error_threshold,
                    processed,
                    errors,
                    extra={"user_id": user_id},
                )
                raise IngestionAbortedError(processed, errors, self._error_threshold)

        await self._aggregate_styles(user_id, list(distribution))

        duration = time.monotonic() - start
        logger.info(
            "EMAIL_INGEST: import finished in %.1fs (processed=%d, errors=%d)",
            duration,
            processed,
            errors,
            extra={"user_id": user_id, "relationships": dict(distribution)},
        )
        return IngestionResult(
            processed=processed,
            errors=errors,
            duration_seconds=duration,
            relationship_distribution=dict(distribution),
        )

    def _error_rate_exceeded(self, processed: int, errors: int) -> bool:
        if errors == 0:
            return False
        if processed == 0:
            return True
        return errors / processed > self._error_threshold

    async def _aggregate_styles(self, user_id: str, relationship_types: list[str]) -> None:
        if self._style_aggregator is None:
            return
        for relationship_type in relationship_types:
            try:
                await self._style_aggregator.refresh(user_id, relationship_type)
            except Exception as e:
                logger.warning(
                    "EMAIL_INGEST: style aggregation failed for %s: %s",
                    relationship_type,
                    e,
                    extra={"user_id": user_id},
                )

    # ------------------------------------------------------------------
    # Message level
    # ------------------------------------------------------------------

    async def process_email(self, user_id: str, email: HistoricalMessage) -> list[str]:
        """Index one message for every distinct recipient.

        Recipients are isolated: one failing does not undo the others. The
        message fails only if no recipient record could be written.

        Args:
            user_id: Account owner.
            email: The sent message.

        Returns:
            Relationship type of each record written.

        Raises:
            ValidationError: If the raw message is missing or there are no
                recipients.
        """
        if not email.raw_message:
            raise ValidationError(
                "Raw message is required for ingestion",
                field="raw_message",
                details=message_context(email),
            )

        redaction = self._redactor.redact(email.user_reply)

        recipients = email.unique_recipients()
        if not recipients:
            raise ValidationError(
                "Email has no recipients",
                field="to",
                details=message_context(email, preview_text=redaction.text),
            )

        outcomes = await asyncio.gather(
            *(self._process_recipient(user_id, email, redaction, r) for r in recipients),
            return_exceptions=True,
        )

        written: list[str] = []
        failures: list[Exception] = []
        for recipient, outcome in zip(recipients, outcomes, strict=True):
            if isinstance(outcome, Exception):
                failures.append(outcome)
                logger.warning(
                    "EMAIL_INGEST: recipient %s of %s failed: %s",
                    recipient.address,
                    email.message_id,
                    outcome,
                    extra={"user_id": user_id},
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                written.append(outcome)

        if not written:
            raise failures[0]
        return written

    async def _process_recipient(
        self,
        user_id: str,
        email: HistoricalMessage,
        redaction: RedactionResult,
        recipient: EmailAddress,
    ) -> str:
        features = extract_email_features(redaction.text, recipient.address)
        relationship = email.relationship or await self._detect_relationship(
            user_id, email, recipient, redaction.text, features.context_hints()
        )

        vector = await with_retry(
            lambda: self._embeddings.embed(redaction.text),
            description=f"embed {email.message_id}",
            **self._retry_options,
        )

        record = IndexedExampleRecord(
            id=record_id(email.message_id, recipient.address),
            email_id=email.message_id,
            user_id=user_id,
            user_reply=redaction.text,
            raw_text=email.text_content,
            responded_to=email.responded_to,
            redacted_names=redaction.names_found,
            redacted_emails=redaction.emails_found,
            recipient_email=recipient.normalized,
            subject=email.subject,
            sent_date=email.date,
            features=features.model_dump(mode="json"),
            relationship=relationship,
            frequency_score=1,
            word_count=features.stats.word_count,
            eml_file=email.eml_file_path,
        )

        await with_retry(
            lambda: self._index.upsert(record, vector),
            description=f"upsert {record.id}",
            **self._retry_options,
        )
        return relationship.type

    async def _detect_relationship(
        self,
        user_id: str,
        email: HistoricalMessage,
        recipient: EmailAddress,
        redacted_text: str,
        hints: dict[str, Any],
    ) -> RelationshipClassification:
        try:
            return await self._detector.detect(
                user_id=user_id,
                recipient_email=recipient.address,
                subject=email.subject,
                context_hints=hints,
            )
        except Exception as e:
            context = message_context(email, recipient, preview_text=redacted_text)
            context["error"] = str(e)
            logger.error(
                "EMAIL_INGEST: relationship detection failed for %s",
                email.message_id,
                extra={"user_id": user_id, "email_context": context},
            )
            raise RelationshipDetectionError(
                f"Relationship detection failed for {recipient.address} "
                f"on message {email.message_id}: {e}",
                context=context,
            ) from e
