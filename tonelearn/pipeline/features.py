"""Lightweight NLP feature extraction for authored replies.

Pattern-based, no model calls. Produces the feature bag stored on every
indexed record and the formality/intimacy hints passed to the
relationship detector.
"""

import logging
import re
from typing import Literal

from pydantic import BaseModel, Field

from tonelearn.pipeline.models import FORWARDED_WITHOUT_COMMENT

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[A-Za-z0-9']+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n{2,}")
_CONTRACTION = re.compile(r"\b[A-Za-z]+'(?:s|re|ve|ll|d|m|t)\b", re.IGNORECASE)
_EMOJI = re.compile(
    "[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F000-\U0001F02F]"
)
_EMOTICON = re.compile(r"(?<!\w)(?::-?\)|:-?D|;-?\)|:-?\(|<3)(?!\w)")

_GREETINGS: dict[str, str] = {
    "good morning": "professional",
    "good afternoon": "professional",
    "good evening": "professional",
    "dear": "formal",
    "hello": "neutral",
    "hi": "casual",
    "hey": "casual",
    "yo": "casual",
}

_CLOSINGS = (
    "best regards",
    "kind regards",
    "warm regards",
    "regards",
    "sincerely",
    "best",
    "thanks",
    "thank you",
    "cheers",
    "love",
    "talk soon",
    "take care",
    "xoxo",
)

_INFORMAL_MARKERS = frozenset({
    "lol", "lmao", "omg", "btw", "fyi", "haha", "hehe", "dude", "bro",
    "gotta", "gonna", "wanna", "yeah", "yep", "nope", "cool", "awesome",
})
_ENDEARMENTS = frozenset({
    "honey", "babe", "baby", "sweetheart", "darling", "love", "hun", "sweetie",
})
_PROFESSIONAL_PHRASES = (
    "please find attached",
    "for your review",
    "kindly",
    "at your earliest convenience",
    "for your consideration",
    "per our conversation",
    "as discussed",
    "going forward",
    "action items",
    "follow up",
)
_POSITIVE_WORDS = frozenset({
    "thanks", "thank", "great", "glad", "happy", "love", "appreciate", "awesome",
    "excellent", "wonderful", "perfect", "congrats", "congratulations", "excited",
})
_NEGATIVE_WORDS = frozenset({
    "sorry", "unfortunately", "problem", "issue", "concerned", "disappointed",
    "frustrated", "delay", "unable", "can't", "cannot", "worried", "bad",
})
_URGENT_PHRASES = (
    "asap", "urgent", "immediately", "right away", "as soon as possible",
    "by end of day", "eod", "today", "deadline", "time-sensitive",
)

FamiliarityLevel = Literal["intimate", "very_familiar", "familiar", "professional", "formal"]


class TextStats(BaseModel):
    word_count: int = 0
    sentence_count: int = 0
    avg_sentence_length: float = 0.0
    formality_score: float = 0.5


class SentimentFeatures(BaseModel):
    dominant: Literal["positive", "neutral", "negative"] = "neutral"
    score: float = 0.0
    emojis: list[str] = Field(default_factory=list)


class UrgencyFeatures(BaseModel):
    level: Literal["low", "medium", "high"] = "low"
    score: float = 0.0


class RelationshipHints(BaseModel):
    """Signals the relationship detector can use as context."""

    familiarity_level: FamiliarityLevel = "familiar"
    intimacy_markers: list[str] = Field(default_factory=list)
    professional_markers: list[str] = Field(default_factory=list)
    informal_language: list[str] = Field(default_factory=list)
    greeting_style: str = "none"
    closing_style: str = "none"


class EmailFeatures(BaseModel):
    """Feature bag extracted from one authored reply."""

    stats: TextStats = Field(default_factory=TextStats)
    sentiment: SentimentFeatures = Field(default_factory=SentimentFeatures)
    urgency: UrgencyFeatures = Field(default_factory=UrgencyFeatures)
    warmth: float = 0.5
    greeting: str | None = None
    closing: str | None = None
    contractions: int = 0
    recipient_email: str = ""
    relationship_hints: RelationshipHints = Field(default_factory=RelationshipHints)

    def context_hints(self) -> dict[str, object]:
        """Hints forwarded to the relationship detector."""
        hints = self.relationship_hints
        return {
            "familiarity_level": hints.familiarity_level,
            "has_intimacy_markers": bool(hints.intimacy_markers),
            "has_professional_markers": bool(hints.professional_markers),
            "formality_score": self.stats.formality_score,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _detect_greeting(first_line: str) -> tuple[str | None, str]:
    lowered = first_line.strip().lower()
    for phrase, style in _GREETINGS.items():
        if lowered == phrase or re.match(rf"{re.escape(phrase)}\b", lowered):
            return phrase, style
    return None, "none"


def _detect_closing(lines: list[str]) -> str | None:
    # Sign-offs sit in the last few lines
    for line in reversed(lines[-4:]):
        lowered = line.strip().lower().rstrip(",.!")
        for closing in _CLOSINGS:
            if lowered == closing or lowered.startswith(closing + " "):
                return closing
    return None


def _formality(
    words: list[str],
    contractions: int,
    informal: list[str],
    professional: list[str],
    greeting_style: str,
    exclamations: int,
) -> float:
    if not words:
        return 0.5
    score = 0.5
    score -= min(0.25, contractions / len(words) * 2.5)
    score -= min(0.2, len(informal) * 0.07)
    score -= min(0.1, exclamations * 0.03)
    score += min(0.3, len(professional) * 0.1)
    if greeting_style in ("formal", "professional"):
        score += 0.15
    elif greeting_style == "casual":
        score -= 0.1
    return round(_clamp(score), 3)


def _familiarity(
    formality: float, intimacy: list[str], informal: list[str]
) -> FamiliarityLevel:
    if intimacy:
        return "intimate"
    if informal and formality < 0.35:
        return "very_familiar"
    if formality < 0.5:
        return "familiar"
    if formality < 0.7:
        return "professional"
    return "formal"


def extract_email_features(text: str, recipient_email: str = "") -> EmailFeatures:
    """Extract the feature bag for one (already redacted) reply.

    Args:
        text: Authored reply text. The forwarded sentinel yields empty stats.
        recipient_email: Address the reply was sent to.

    Returns:
        EmailFeatures for the reply.
    """
    if not text or text == FORWARDED_WITHOUT_COMMENT:
        return EmailFeatures(recipient_email=recipient_email)

    lowered = text.lower()
    words = _WORD.findall(text)
    lowered_words = [w.lower() for w in words]
    sentences = [s for s in _SENTENCE_SPLIT.split(text.strip()) if _WORD.search(s)]
    lines = [line for line in text.splitlines() if line.strip()]

    contractions = len(_CONTRACTION.findall(text))
    informal = sorted({w for w in lowered_words if w in _INFORMAL_MARKERS})
    intimacy = sorted({w for w in lowered_words if w in _ENDEARMENTS})
    professional = [p for p in _PROFESSIONAL_PHRASES if p in lowered]
    emojis = _EMOJI.findall(text) + _EMOTICON.findall(text)

    greeting, greeting_style = _detect_greeting(lines[0]) if lines else (None, "none")
    closing = _detect_closing(lines)
    # "love" as a sign-off is an intimacy signal, inside a sentence it is not
    if closing in ("love", "xoxo") and closing not in intimacy:
        intimacy = sorted({*intimacy, closing})

    formality = _formality(
        words, contractions, informal, professional, greeting_style, text.count("!")
    )

    positive = sum(1 for w in lowered_words if w in _POSITIVE_WORDS) + len(emojis)
    negative = sum(1 for w in lowered_words if w in _NEGATIVE_WORDS)
    sentiment_score = (positive - negative) / max(len(words), 1) * 10
    sentiment_score = max(-1.0, min(1.0, sentiment_score))
    if sentiment_score > 0.1:
        dominant = "positive"
    elif sentiment_score < -0.1:
        dominant = "negative"
    else:
        dominant = "neutral"

    urgent_hits = sum(1 for p in _URGENT_PHRASES if re.search(rf"\b{re.escape(p)}\b", lowered))
    urgency_score = _clamp(urgent_hits * 0.35)
    urgency_level = "high" if urgency_score >= 0.7 else "medium" if urgency_score >= 0.35 else "low"

    warmth = _clamp(0.5 + positive * 0.08 + len(intimacy) * 0.15 - negative * 0.05)

    return EmailFeatures(
        stats=TextStats(
            word_count=len(words),
            sentence_count=len(sentences),
            avg_sentence_length=round(len(words) / max(len(sentences), 1), 2),
            formality_score=formality,
        ),
        sentiment=SentimentFeatures(
            dominant=dominant, score=round(sentiment_score, 3), emojis=emojis
        ),
        urgency=UrgencyFeatures(level=urgency_level, score=round(urgency_score, 3)),
        warmth=round(warmth, 3),
        greeting=greeting,
        closing=closing,
        contractions=contractions,
        recipient_email=recipient_email,
        relationship_hints=RelationshipHints(
            familiarity_level=_familiarity(formality, intimacy, informal),
            intimacy_markers=intimacy,
            professional_markers=professional,
            informal_language=informal,
            greeting_style=greeting_style,
            closing_style=closing or "none",
        ),
    )
