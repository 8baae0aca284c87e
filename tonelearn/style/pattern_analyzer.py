"""Writing pattern analysis over a user's sent-mail corpus.

The corpus is split into batches small enough for one LLM call. Each
batch yields structured observations; the observations are merged into
one profile weighted by batch size, rounded, and stored.
"""

import asyncio
import enum
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import LLMResponseParseError, PatternAnalysisError
from tonelearn.core.llm import CompletionProvider, extract_json_object
from tonelearn.db.profile_store import (
    AGGREGATE_TARGET,
    PREFERENCE_AGGREGATE,
    PREFERENCE_CATEGORY,
    ProfileStore,
)
from tonelearn.redaction.name_redactor import NameRedactor
from tonelearn.style.merge import aggregate_patterns, round_patterns
from tonelearn.style.models import (
    AnalysisEmail,
    BatchAnalysisResult,
    DateRange,
    WritingPatterns,
)

logger = logging.getLogger(__name__)

_MAX_EMAIL_CHARS = 2000

_SYSTEM_PROMPT = """You are an expert linguist who studies how one specific person writes \
email. You report only patterns that are visible in the samples you are given, with \
numbers grounded in those samples. Names and addresses have been replaced with \
placeholders such as [firstname] and [email]; treat those as ordinary names."""

_PATTERN_ANALYSIS_PROMPT = """Analyze the writing patterns in these {email_count} emails \
written by the same person{relationship_clause}.

EMAILS:
{emails}

Return a JSON object with exactly these fields:
{{
    "sentencePatterns": {{
        "avgLength": <float: average words per sentence>,
        "minLength": <int: shortest sentence in words>,
        "maxLength": <int: longest sentence in words>,
        "stdDeviation": <float>,
        "distribution": {{"short": <0-1>, "medium": <0-1>, "long": <0-1>}},
        "examples": ["<verbatim sentences typical of this writer>"]
    }},
    "paragraphPatterns": [
        {{"type": "<single-line|short|multi-paragraph|...>", "percentage": <0-100>, \
"description": "<what it looks like>"}}
    ],
    "openingPatterns": [
        {{"pattern": "<how emails start>", "frequency": <0-1>, "notes": "<optional context>"}}
    ],
    "valediction": [{{"phrase": "<sign-off phrase>", "percentage": <0-100>}}],
    "typedName": [{{"phrase": "<name or initial typed at the end>", "percentage": <0-100>}}],
    "negativePatterns": [
        {{"description": "<something this writer never does>", "confidence": <0-1>, \
"examples": ["<evidence>"], "context": "<when it applies>"}}
    ],
    "responsePatterns": {{
        "immediate": <0-1: share of quick, short replies>,
        "contemplative": <0-1: share of considered, longer replies>,
        "questionHandling": "<how questions are answered>"
    }},
    "uniqueExpressions": [
        {{"phrase": "<idiom or phrase this writer favors>", "context": "<when it is used>", \
"frequency": <0-1>}}
    ]
}}

IMPORTANT:
- Base every number on the emails above, not on general email conventions
- Only list negative patterns that are specific to this writer
- Return ONLY the JSON object, no other text"""


class AnalysisStage(enum.Enum):
    """Stages of one analysis run."""

    PARTITIONED = "partitioned"
    PER_BATCH_ANALYZING = "per_batch_analyzing"
    AGGREGATING = "aggregating"
    ROUNDING = "rounding"
    PERSISTED = "persisted"
    FAILED = "failed"


def _timestamp(value: datetime) -> float:
    # Naive datetimes are treated as UTC so mixed inputs still compare
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.timestamp()


def profile_confidence(email_count: int) -> float:
    """Confidence recorded with a stored profile."""
    return 0.95 if email_count > 50 else 0.8


class WritingPatternAnalyzer:
    """Extracts, merges and stores writing pattern profiles."""

    def __init__(
        self,
        llm: CompletionProvider,
        profile_store: ProfileStore,
        redactor: NameRedactor | None = None,
        config: Settings | None = None,
    ) -> None:
        """Initialize the analyzer.

        Args:
            llm: Completion provider used for per-batch analysis.
            profile_store: Where merged profiles are stored.
            redactor: Name redactor applied before text reaches the LLM.
            config: Settings for batch size, limits and retries.
        """
        config = config or get_settings()
        self._llm = llm
        self._profiles = profile_store
        self._redactor = redactor or NameRedactor()
        self._batch_size = config.PATTERN_BATCH_SIZE
        self._max_tokens = config.PATTERN_ANALYSIS_MAX_TOKENS
        self._temperature = config.PATTERN_ANALYSIS_TEMPERATURE
        self._parse_retries = config.PATTERN_ANALYSIS_PARSE_RETRIES
        self._example_count = config.PATTERN_EXAMPLE_COUNT
        self._unique_expression_count = config.PATTERN_UNIQUE_EXPRESSIONS_COUNT
        self._negative_pattern_count = config.PATTERN_NEGATIVE_PATTERN_COUNT
        self._confidence_cap = config.PATTERN_CONFIDENCE_MAX

    # ------------------------------------------------------------------
    # LLM steps
    # ------------------------------------------------------------------

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> str:
        """Run a completion with the analyzer's provider and defaults.

        Collaborators that need a style-related LLM call use this instead
        of holding their own reference to the provider.
        """
        return await self._llm.complete(
            prompt,
            temperature=self._temperature if temperature is None else temperature,
            max_tokens=self._max_tokens if max_tokens is None else max_tokens,
            system_prompt=system_prompt,
        )

    def build_batch_prompt(
        self, emails: list[AnalysisEmail], relationship: str | None = None
    ) -> str:
        """Format one batch for the analysis prompt, redacting reply text."""
        blocks: list[str] = []
        names_redacted = 0
        for i, email in enumerate(emails, 1):
            redaction = self._redactor.redact(email.text)
            names_redacted += len(redaction.names_found)
            date = email.date.isoformat() if email.date else "unknown"
            blocks.append(
                f"--- Email {i} ---\n"
                f"Date: {date}\n"
                f"Subject: {self._redactor.redact(email.subject).text}\n"
                f"{redaction.text[:_MAX_EMAIL_CHARS]}"
            )
        if names_redacted:
            logger.debug("Redacted %d names from %d emails", names_redacted, len(emails))

        relationship_clause = f" to their {relationship} contacts" if relationship else ""
        return _PATTERN_ANALYSIS_PROMPT.format(
            email_count=len(emails),
            relationship_clause=relationship_clause,
            emails="\n\n".join(blocks),
        )

    async def analyze_batch(
        self, emails: list[AnalysisEmail], relationship: str | None = None
    ) -> BatchAnalysisResult:
        """Ask the LLM for pattern observations on one batch.

        Unparseable responses are retried up to
        ``PATTERN_ANALYSIS_PARSE_RETRIES`` extra times.

        Raises:
            LLMResponseParseError: If every attempt returned unusable JSON.
            ExternalServiceError: If the completion call itself fails.
        """
        prompt = self.build_batch_prompt(emails, relationship)
        dates = [e.date for e in emails if e.date is not None]
        date_range = DateRange(
            start=min(dates, key=_timestamp) if dates else None,
            end=max(dates, key=_timestamp) if dates else None,
        )

        last_error: LLMResponseParseError | None = None
        for attempt in range(1, self._parse_retries + 2):
            response = await self.complete(prompt, system_prompt=_SYSTEM_PROMPT)
            try:
                data = extract_json_object(response)
                patterns = WritingPatterns.model_validate(data)
            except LLMResponseParseError as e:
                last_error = e
            except PydanticValidationError as e:
                last_error = LLMResponseParseError(
                    f"LLM response did not match the pattern schema: {e.error_count()} errors",
                    raw_response=response,
                )
            else:
                return BatchAnalysisResult(
                    patterns=patterns, email_count=len(emails), date_range=date_range
                )
            logger.warning(
                "Pattern analysis response unparseable (attempt %d/%d): %s",
                attempt,
                self._parse_retries + 1,
                last_error,
            )

        raise last_error  # type: ignore[misc]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def partition(self, emails: list[AnalysisEmail]) -> list[list[AnalysisEmail]]:
        """Split the corpus into date-ordered batches of ``PATTERN_BATCH_SIZE``."""
        ordered = sorted(
            emails, key=lambda e: (e.date is None, _timestamp(e.date) if e.date else 0.0)
        )
        return [
            ordered[i : i + self._batch_size] for i in range(0, len(ordered), self._batch_size)
        ]

    async def analyze_writing_patterns(
        self,
        user_id: str,
        emails: list[AnalysisEmail],
        relationship: str | None = None,
    ) -> WritingPatterns:
        """Build a merged profile from a corpus. Does not persist it.

        Args:
            user_id: Account owner (for logging).
            emails: Sent emails to analyze.
            relationship: Relationship type the corpus is limited to, if any.

        Returns:
            The merged profile with every number rounded to 2 decimals.

        Raises:
            PatternAnalysisError: If the corpus is empty or every batch fails.
        """
        if not emails:
            raise PatternAnalysisError(
                "No emails to analyze", details={"relationship": relationship}
            )

        batches = self.partition(emails)
        self._log_stage(AnalysisStage.PARTITIONED, user_id, relationship, batches=len(batches))

        self._log_stage(AnalysisStage.PER_BATCH_ANALYZING, user_id, relationship)
        outcomes = await asyncio.gather(
            *(self.analyze_batch(batch, relationship) for batch in batches),
            return_exceptions=True,
        )

        results: list[BatchAnalysisResult] = []
        for number, outcome in enumerate(outcomes, 1):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Pattern analysis batch %d/%d failed, skipping: %s",
                    number,
                    len(batches),
                    outcome,
                    extra={"user_id": user_id},
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

        if not results:
            self._log_stage(AnalysisStage.FAILED, user_id, relationship)
            raise PatternAnalysisError(
                f"All {len(batches)} analysis batches failed",
                details={"relationship": relationship, "batches": len(batches)},
            )

        self._log_stage(
            AnalysisStage.AGGREGATING, user_id, relationship, successful_batches=len(results)
        )
        merged = aggregate_patterns(
            results,
            example_limit=self._example_count,
            unique_expression_limit=self._unique_expression_count,
            negative_pattern_limit=self._negative_pattern_count,
            confidence_cap=self._confidence_cap,
        )

        self._log_stage(AnalysisStage.ROUNDING, user_id, relationship)
        return round_patterns(merged)

    async def analyze_and_save(
        self,
        user_id: str,
        emails: list[AnalysisEmail],
        relationship: str | None = None,
    ) -> WritingPatterns:
        """Analyze a corpus and store the result under its key."""
        patterns = await self.analyze_writing_patterns(user_id, emails, relationship)
        await self.save_patterns(user_id, patterns, relationship, email_count=len(emails))
        return patterns

    @staticmethod
    def _log_stage(
        stage: AnalysisStage, user_id: str, relationship: str | None, **fields: Any
    ) -> None:
        logger.info(
            "PATTERN_ANALYSIS: %s",
            stage.value,
            extra={"user_id": user_id, "relationship": relationship or AGGREGATE_TARGET, **fields},
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _key(relationship: str | None) -> tuple[str, str]:
        if relationship:
            return PREFERENCE_CATEGORY, relationship
        return PREFERENCE_AGGREGATE, AGGREGATE_TARGET

    async def save_patterns(
        self,
        user_id: str,
        patterns: WritingPatterns,
        relationship: str | None = None,
        email_count: int = 0,
    ) -> None:
        """Replace the stored profile for (user, relationship or aggregate)."""
        preference_type, target = self._key(relationship)
        profile_data = {
            "meta": {
                "type": preference_type,
                "lastAnalyzed": datetime.now(UTC).isoformat(),
                "emailCount": email_count,
                "confidence": profile_confidence(email_count),
            },
            "writingPatterns": patterns.to_wire(),
        }
        await self._profiles.upsert_profile(
            user_id=user_id,
            preference_type=preference_type,
            target_identifier=target,
            profile_data=profile_data,
            emails_analyzed=email_count,
        )
        self._log_stage(AnalysisStage.PERSISTED, user_id, relationship, emails=email_count)

    async def load_patterns(
        self, user_id: str, relationship: str | None = None
    ) -> WritingPatterns | None:
        """Load a stored profile, or None if none exists."""
        preference_type, target = self._key(relationship)
        data = await self._profiles.load_profile(user_id, preference_type, target)
        if not data or "writingPatterns" not in data:
            return None
        return WritingPatterns.model_validate(data["writingPatterns"])

    async def clear_patterns(self, user_id: str) -> None:
        """Delete every aggregate and per-relationship profile for a user."""
        await self._profiles.delete_profiles(
            user_id, [PREFERENCE_AGGREGATE, PREFERENCE_CATEGORY]
        )
        logger.info("Cleared writing patterns", extra={"user_id": user_id})
