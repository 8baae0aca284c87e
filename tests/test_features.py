"""Tests for heuristic feature extraction."""

from tonelearn.pipeline.features import extract_email_features
from tonelearn.pipeline.models import FORWARDED_WITHOUT_COMMENT


class TestEmptyInput:
    """Forwarded or empty replies produce neutral defaults."""

    def test_forwarded_sentinel(self) -> None:
        features = extract_email_features(FORWARDED_WITHOUT_COMMENT, "a@corp.com")
        assert features.stats.word_count == 0
        assert features.stats.formality_score == 0.5
        assert features.recipient_email == "a@corp.com"
        assert features.greeting is None

    def test_empty_text(self) -> None:
        assert extract_email_features("").stats.word_count == 0


class TestCasualReply:
    """Intimate, informal replies."""

    TEXT = "Hey babe,\n\nI'm gonna be late tonight lol. Can't wait to see you!\n\nLove"

    def test_greeting_and_closing(self) -> None:
        features = extract_email_features(self.TEXT)
        assert features.greeting == "hey"
        assert features.relationship_hints.greeting_style == "casual"
        assert features.closing == "love"

    def test_intimacy_and_contractions(self) -> None:
        features = extract_email_features(self.TEXT)
        assert "babe" in features.relationship_hints.intimacy_markers
        assert "love" in features.relationship_hints.intimacy_markers
        assert features.relationship_hints.familiarity_level == "intimate"
        assert features.contractions == 2
        assert features.stats.formality_score < 0.5

    def test_context_hints(self) -> None:
        hints = extract_email_features(self.TEXT).context_hints()
        assert hints["has_intimacy_markers"] is True
        assert hints["has_professional_markers"] is False
        assert hints["familiarity_level"] == "intimate"


class TestFormalReply:
    """Professional replies score high on formality."""

    TEXT = (
        "Dear Committee,\n\n"
        "Please find attached the report for your review. "
        "Kindly confirm receipt at your earliest convenience.\n\n"
        "Best regards"
    )

    def test_formality(self) -> None:
        features = extract_email_features(self.TEXT)
        assert features.greeting == "dear"
        assert features.closing == "best regards"
        assert features.stats.formality_score >= 0.7
        assert features.relationship_hints.familiarity_level == "formal"
        assert "kindly" in features.relationship_hints.professional_markers

    def test_sentence_stats(self) -> None:
        features = extract_email_features(self.TEXT)
        assert features.stats.sentence_count >= 2
        assert features.stats.avg_sentence_length > 0


class TestSentimentAndUrgency:
    """Sentiment, emoji and urgency signals."""

    def test_urgent_request(self) -> None:
        features = extract_email_features("Need this ASAP, it's urgent. Deadline is today.")
        assert features.urgency.level == "high"

    def test_emoji_counts_as_positive(self) -> None:
        features = extract_email_features("Great news 🎉")
        assert features.sentiment.emojis == ["🎉"]
        assert features.sentiment.dominant == "positive"

    def test_negative_message(self) -> None:
        features = extract_email_features(
            "Sorry, unfortunately there is a problem with the delay."
        )
        assert features.sentiment.dominant == "negative"
        assert features.urgency.level == "low"
