"""Weighted merge of per-batch writing pattern observations.

Every batch carries its email count as its weight. Scalars are weighted
means, list entries are merged by an identity key, and the result does
not depend on the order batches arrive in.
"""

import logging
import re
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from tonelearn.style.models import (
    BatchAnalysisResult,
    NegativePattern,
    OpeningPattern,
    ParagraphPattern,
    PhrasePercentage,
    ResponsePatterns,
    SentenceDistribution,
    SentencePatterns,
    UniqueExpression,
    WritingPatterns,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIDENCE_BOOST = 0.1
MAX_NEGATIVE_EXAMPLES = 3

# Observations the LLM reports regardless of the corpus
NEGATIVE_PATTERN_DENY_LIST = (
    "punctuation patterns like",
    "using all caps",
    "all caps",
    "corporate speak",
    "synergy",
    "circle back",
    "dear",
    "sincerely",
    "best regards",
    "formal greeting",
    "formal sign-off",
    "exclamation marks",
    "multiple exclamation",
    "bullet points",
    "numbered lists",
    "hello",
    "good morning",
    "good afternoon",
    "good evening",
    "regards",
    "kind regards",
    "warm regards",
    "yours truly",
    "respectfully",
    "cordially",
)
_DENY_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(term) for term in NEGATIVE_PATTERN_DENY_LIST) + r")\b"
)
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def weighted_mean(pairs: Iterable[tuple[float, float]]) -> float:
    """Σ(value·weight) / Σ(weight). Zero when there is no weight."""
    total = 0.0
    weighted = 0.0
    for value, weight in pairs:
        weighted += value * weight
        total += weight
    return weighted / total if total else 0.0


def text_key(text: str) -> tuple[str, str]:
    """Case-insensitive sort key with the exact text as final tie-break."""
    return text.lower(), text


def weighted_plurality(pairs: Iterable[tuple[str, float]]) -> str:
    """Value whose summed weight is highest. Ties go to the alphabetically first."""
    totals: dict[str, float] = {}
    for value, weight in pairs:
        if not value:
            continue
        totals[value] = totals.get(value, 0.0) + weight
    if not totals:
        return ""
    return min(totals, key=lambda v: (-totals[v], *text_key(v)))


def round_numbers(value: Any, digits: int = 2) -> Any:
    """Round every float leaf in a nested dict/list structure."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return round(value, digits)
    if isinstance(value, dict):
        return {k: round_numbers(v, digits) for k, v in value.items()}
    if isinstance(value, list):
        return [round_numbers(v, digits) for v in value]
    return value


def round_patterns(patterns: WritingPatterns, digits: int = 2) -> WritingPatterns:
    return WritingPatterns.model_validate(round_numbers(patterns.model_dump(), digits))


# ---------------------------------------------------------------------------
# Keyed list merges
# ---------------------------------------------------------------------------


@dataclass
class _Accumulator:
    weighted_total: float = 0.0
    weight: float = 0.0


def _merge_keyed(
    batches: list[BatchAnalysisResult],
    items_of: Callable[[BatchAnalysisResult], list[T]],
    key_of: Callable[[T], str],
    value_of: Callable[[T], float],
    share: bool,
) -> tuple[dict[str, _Accumulator], dict[str, list[tuple[T, float]]]]:
    """Group items across batches by key and sum weighted values.

    With ``share=True`` values are shares of a batch's emails, so the
    denominator is the weight of every batch that reported the category.
    Otherwise only the batches that reported the item count.
    """
    groups: dict[str, _Accumulator] = {}
    members: dict[str, list[tuple[T, float]]] = defaultdict(list)
    category_weight = 0.0

    for batch in batches:
        items = items_of(batch)
        if not items:
            continue
        weight = float(batch.email_count)
        category_weight += weight
        seen_in_batch: set[str] = set()
        for item in items:
            key = key_of(item)
            if not key or key in seen_in_batch:
                continue
            seen_in_batch.add(key)
            acc = groups.setdefault(key, _Accumulator())
            acc.weighted_total += value_of(item) * weight
            acc.weight += weight
            members[key].append((item, weight))

    if share:
        for acc in groups.values():
            acc.weight = category_weight
    return groups, members


def _heaviest(items: list[tuple[T, float]], label: Callable[[T], str]) -> T:
    """Item from the heaviest batch. Equal weights fall back to the label."""
    return min(items, key=lambda entry: (-entry[1], *text_key(label(entry[0]))))[0]


def merge_examples(batches: list[BatchAnalysisResult], limit: int) -> list[str]:
    """Pool example sentences, exact duplicates dropped.

    Heavier batches come first. Within a weight, examples interleave by their
    rank inside their own batch, then alphabetically.
    """
    pooled: list[tuple[str, float, int]] = []
    for batch in batches:
        for rank, example in enumerate(batch.patterns.sentence_patterns.examples):
            pooled.append((example, float(batch.email_count), rank))
    pooled.sort(key=lambda item: (-item[1], item[2], *text_key(item[0])))

    merged: list[str] = []
    seen: set[str] = set()
    for example, _, _ in pooled:
        text = example.strip()
        if not text or text in seen:
            continue
        seen.add(text)
        merged.append(text)
        if len(merged) >= limit:
            break
    return merged


def merge_sentence_patterns(
    batches: list[BatchAnalysisResult], example_limit: int
) -> SentencePatterns:
    def _mean(getter: Callable[[SentencePatterns], float]) -> float:
        return weighted_mean(
            (getter(b.patterns.sentence_patterns), b.email_count) for b in batches
        )

    mins = [b.patterns.sentence_patterns.min_length for b in batches]
    maxes = [b.patterns.sentence_patterns.max_length for b in batches]

    return SentencePatterns(
        avg_length=_mean(lambda s: s.avg_length),
        min_length=min(mins) if mins else 0.0,
        max_length=max(maxes) if maxes else 0.0,
        std_deviation=_mean(lambda s: s.std_deviation),
        distribution=SentenceDistribution(
            short=_mean(lambda s: s.distribution.short),
            medium=_mean(lambda s: s.distribution.medium),
            long=_mean(lambda s: s.distribution.long),
        ),
        examples=merge_examples(batches, example_limit),
    )


def merge_paragraph_patterns(batches: list[BatchAnalysisResult]) -> list[ParagraphPattern]:
    groups, members = _merge_keyed(
        batches,
        lambda b: b.patterns.paragraph_patterns,
        lambda p: p.type.strip().lower(),
        lambda p: p.percentage,
        share=True,
    )
    merged: list[ParagraphPattern] = []
    for key, acc in groups.items():
        top = _heaviest(members[key], lambda p: f"{p.type}\n{p.description or ''}")
        merged.append(
            ParagraphPattern(
                type=top.type.strip(),
                percentage=acc.weighted_total / acc.weight if acc.weight else 0.0,
                description=top.description,
            )
        )
    merged.sort(key=lambda p: (-p.percentage, *text_key(p.type)))
    return merged


def merge_opening_patterns(batches: list[BatchAnalysisResult]) -> list[OpeningPattern]:
    groups, members = _merge_keyed(
        batches,
        lambda b: b.patterns.opening_patterns,
        lambda p: p.pattern.strip().lower(),
        lambda p: p.frequency,
        share=True,
    )
    merged: list[OpeningPattern] = []
    for key, acc in groups.items():
        notes = list(dict.fromkeys(p.notes.strip() for p, _ in members[key] if p.notes))
        if len(notes) > 1:
            note: str | None = f"Used in {len(notes)} different contexts"
        else:
            note = notes[0] if notes else None
        merged.append(
            OpeningPattern(
                pattern=_heaviest(members[key], lambda p: p.pattern).pattern.strip(),
                frequency=acc.weighted_total / acc.weight if acc.weight else 0.0,
                notes=note,
            )
        )
    merged.sort(key=lambda p: (-p.frequency, *text_key(p.pattern)))
    return merged


def merge_percentage_patterns(
    batches: list[BatchAnalysisResult],
    items_of: Callable[[BatchAnalysisResult], list[PhrasePercentage]],
) -> list[PhrasePercentage]:
    """Merge valediction or typed-name phrases by weighted share."""
    groups, members = _merge_keyed(
        batches,
        items_of,
        lambda p: p.phrase.strip().lower(),
        lambda p: p.percentage,
        share=True,
    )
    merged = [
        PhrasePercentage(
            phrase=_heaviest(members[key], lambda p: p.phrase).phrase.strip(),
            percentage=acc.weighted_total / acc.weight if acc.weight else 0.0,
        )
        for key, acc in groups.items()
    ]
    merged.sort(key=lambda p: (-p.percentage, *text_key(p.phrase)))
    return merged


def normalize_pattern_key(description: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    stripped = _NON_ALNUM.sub("", description.lower())
    return _WHITESPACE.sub(" ", stripped).strip()


def is_boilerplate_negative(description: str) -> bool:
    """True for generic observations that are dropped from every profile."""
    return bool(_DENY_RE.search(description.lower()))


def boost_confidence(confidence: float, confirmations: int, cap: float = 0.99) -> float:
    """Raise confidence once per extra confirmation, never past ``cap``."""
    value = min(confidence, cap)
    for _ in range(confirmations):
        value = min(value + (1 - value) * CONFIDENCE_BOOST, cap)
    return value


def merge_negative_patterns(
    batches: list[BatchAnalysisResult],
    limit: int = 10,
    confidence_cap: float = 0.99,
) -> list[NegativePattern]:
    grouped: dict[str, list[tuple[NegativePattern, float]]] = defaultdict(list)
    for batch in batches:
        seen_in_batch: set[str] = set()
        for pattern in batch.patterns.negative_patterns:
            if is_boilerplate_negative(pattern.description):
                logger.debug("Dropping boilerplate negative pattern: %s", pattern.description)
                continue
            key = normalize_pattern_key(pattern.description)
            if not key or key in seen_in_batch:
                continue
            seen_in_batch.add(key)
            grouped[key].append((pattern, float(batch.email_count)))

    merged: list[NegativePattern] = []
    for entries in grouped.values():
        confirmations = len(entries)
        base = max(p.confidence for p, _ in entries)
        confidence = boost_confidence(base, confirmations - 1, confidence_cap)
        if confirmations <= 1 and confidence <= 0.8:
            continue

        ranked = sorted(
            entries,
            key=lambda e: (-e[1], *text_key(e[0].description), tuple(e[0].examples)),
        )
        examples = list(
            dict.fromkeys(ex for p, _ in ranked for ex in p.examples if ex)
        )[:MAX_NEGATIVE_EXAMPLES]
        contexts = list(dict.fromkeys(p.context for p, _ in ranked if p.context))
        if len(contexts) > 1:
            context: str | None = f"Applies across {len(contexts)} different contexts"
        else:
            context = contexts[0] if contexts else None

        merged.append(
            NegativePattern(
                description=ranked[0][0].description,
                confidence=confidence,
                examples=examples,
                context=context,
            )
        )

    merged.sort(key=lambda p: (-p.confidence, *text_key(p.description)))
    return merged[:limit]


def merge_unique_expressions(
    batches: list[BatchAnalysisResult], limit: int = 15
) -> list[UniqueExpression]:
    groups, members = _merge_keyed(
        batches,
        lambda b: b.patterns.unique_expressions,
        lambda e: e.phrase.strip().lower(),
        lambda e: e.frequency,
        share=False,
    )
    merged: list[UniqueExpression] = []
    for key, acc in groups.items():
        context_weight: dict[str, float] = {}
        for expression, weight in members[key]:
            if expression.context:
                context_weight[expression.context] = (
                    context_weight.get(expression.context, 0.0) + weight
                )
        primary = (
            min(context_weight, key=lambda c: (-context_weight[c], *text_key(c)))
            if context_weight
            else ""
        )
        # Annotate from two contexts up: "delay apology (used in 2 contexts)"
        if len(context_weight) >= 2:
            primary = f"{primary} (used in {len(context_weight)} contexts)"
        merged.append(
            UniqueExpression(
                phrase=_heaviest(members[key], lambda e: e.phrase).phrase.strip(),
                context=primary,
                frequency=acc.weighted_total / acc.weight if acc.weight else 0.0,
            )
        )
    merged.sort(key=lambda e: (-e.frequency, *text_key(e.phrase)))
    return merged[:limit]


def merge_response_patterns(batches: list[BatchAnalysisResult]) -> ResponsePatterns:
    return ResponsePatterns(
        immediate=weighted_mean(
            (b.patterns.response_patterns.immediate, b.email_count) for b in batches
        ),
        contemplative=weighted_mean(
            (b.patterns.response_patterns.contemplative, b.email_count) for b in batches
        ),
        question_handling=weighted_plurality(
            (b.patterns.response_patterns.question_handling, b.email_count) for b in batches
        ),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def aggregate_patterns(
    batches: list[BatchAnalysisResult],
    *,
    example_limit: int = 10,
    unique_expression_limit: int = 15,
    negative_pattern_limit: int = 10,
    confidence_cap: float = 0.99,
) -> WritingPatterns:
    """Merge batch results into one profile, weighting each by its email count.

    Args:
        batches: Successful batch results. Must not be empty.
        example_limit: Example sentences to keep.
        unique_expression_limit: Unique expressions to keep.
        negative_pattern_limit: Negative patterns to keep.
        confidence_cap: Upper bound for boosted negative-pattern confidence.

    Returns:
        The merged, unrounded profile.

    Raises:
        ValueError: If ``batches`` is empty.
    """
    if not batches:
        raise ValueError("Cannot aggregate zero batch results")

    if len(batches) == 1:
        logger.debug("Single batch, merge reduces to normalization")

    return WritingPatterns(
        sentence_patterns=merge_sentence_patterns(batches, example_limit),
        paragraph_patterns=merge_paragraph_patterns(batches),
        opening_patterns=merge_opening_patterns(batches),
        valediction=merge_percentage_patterns(batches, lambda b: b.patterns.valediction),
        typed_name=merge_percentage_patterns(batches, lambda b: b.patterns.typed_name),
        negative_patterns=merge_negative_patterns(
            batches, negative_pattern_limit, confidence_cap
        ),
        response_patterns=merge_response_patterns(batches),
        unique_expressions=merge_unique_expressions(batches, unique_expression_limit),
    )
