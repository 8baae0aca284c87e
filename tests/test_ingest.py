"""Tests for historical email ingestion.

Covers per-recipient fan-out, redaction before embedding, retry of
transient failures, per-recipient isolation and the run-level error-rate
abort.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.fakes import (
    FakeDetector,
    FakeEmbeddingProvider,
    InMemorySimilarityIndex,
    make_message,
)
from tonelearn.core.config import Settings
from tonelearn.core.exceptions import (
    IngestionAbortedError,
    RelationshipDetectionError,
    ValidationError,
)
from tonelearn.pipeline.ingest import EmailIngestPipeline, message_context
from tonelearn.pipeline.models import FORWARDED_WITHOUT_COMMENT


def _make_pipeline(
    index: InMemorySimilarityIndex,
    embeddings: FakeEmbeddingProvider,
    detector: FakeDetector,
    config: Settings,
    **kwargs,
) -> EmailIngestPipeline:
    return EmailIngestPipeline(index, embeddings, detector, config=config, **kwargs)


# ---------------------------------------------------------------------------
# Message level
# ---------------------------------------------------------------------------


class TestFanOut:
    """One record per distinct recipient."""

    @pytest.mark.asyncio
    async def test_three_recipients_three_records(
        self, index, embeddings, detector, config
    ) -> None:
        message = make_message(
            to=["alice@corp.com"],
            cc=["Bob@Corp.com", "ALICE@corp.com"],
            bcc=["carol@gmail.com"],
        )
        pipeline = _make_pipeline(index, embeddings, detector, config)

        types = await pipeline.process_email("user-1", message)

        assert types == ["colleague", "colleague", "colleague"]
        assert sorted(index.records) == [
            "msg-1:alice@corp.com",
            "msg-1:bob@corp.com",
            "msg-1:carol@gmail.com",
        ]
        payloads = [payload for payload, _ in index.records.values()]
        assert len({p["user_reply"] for p in payloads}) == 1
        assert {p["recipient_email"] for p in payloads} == {
            "alice@corp.com",
            "bob@corp.com",
            "carol@gmail.com",
        }
        assert all(p["email_id"] == "msg-1" for p in payloads)

    @pytest.mark.asyncio
    async def test_names_redacted_before_embedding(
        self, index, embeddings, detector, config
    ) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)

        await pipeline.process_email("user-1", make_message())

        assert embeddings.texts
        assert all("Alice" not in text for text in embeddings.texts)
        assert embeddings.texts[0].startswith("Hi [firstname],")
        payload, _ = index.records["msg-1:alice@corp.com"]
        assert payload["redacted_names"] == ["Alice"]
        assert payload["raw_text"] == "> original question"

    @pytest.mark.asyncio
    async def test_features_and_hints_passed_to_detector(
        self, index, embeddings, detector, config
    ) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)

        await pipeline.process_email("user-1", make_message())

        call = detector.calls[0]
        assert call["recipient_email"] == "alice@corp.com"
        assert call["subject"] == "Re: plan"
        assert "formality_score" in call["context_hints"]
        payload, _ = index.records["msg-1:alice@corp.com"]
        assert payload["features"]["recipient_email"] == "alice@corp.com"
        assert payload["word_count"] > 0

    @pytest.mark.asyncio
    async def test_supplied_relationship_is_kept(
        self, index, embeddings, detector, config
    ) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)

        types = await pipeline.process_email("user-1", make_message(relationship="spouse"))

        assert types == ["spouse"]
        assert detector.calls == []
        payload, _ = index.records["msg-1:alice@corp.com"]
        assert payload["relationship"]["detection_method"] == "supplied"

    @pytest.mark.asyncio
    async def test_empty_reply_stored_as_forward(
        self, index, embeddings, detector, config
    ) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)

        await pipeline.process_email("user-1", make_message(reply="   "))

        payload, _ = index.records["msg-1:alice@corp.com"]
        assert payload["user_reply"] == FORWARDED_WITHOUT_COMMENT


class TestMessageValidation:
    """Permanent per-message errors fail fast with context."""

    @pytest.mark.asyncio
    async def test_missing_raw_message(self, index, embeddings, detector, config) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)

        with pytest.raises(ValidationError) as exc_info:
            await pipeline.process_email("user-1", make_message(raw_message=None))

        assert exc_info.value.details["field"] == "raw_message"
        assert exc_info.value.details["message_id"] == "msg-1"
        assert index.records == {}

    @pytest.mark.asyncio
    async def test_no_recipients(self, index, embeddings, detector, config) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)

        with pytest.raises(ValidationError) as exc_info:
            await pipeline.process_email("user-1", make_message(to=["  "]))

        assert exc_info.value.details["subject"] == "Re: plan"
        assert "[firstname]" in exc_info.value.details["preview"]


class TestRecipientIsolation:
    """A failing recipient does not undo the others."""

    @pytest.mark.asyncio
    async def test_one_recipient_fails(self, index, embeddings, detector, config) -> None:
        index.fail_upsert_ids = {"msg-1:bob@corp.com"}
        pipeline = _make_pipeline(index, embeddings, detector, config)

        types = await pipeline.process_email(
            "user-1", make_message(to=["alice@corp.com", "bob@corp.com"])
        )

        assert types == ["colleague"]
        assert list(index.records) == ["msg-1:alice@corp.com"]

    @pytest.mark.asyncio
    async def test_all_recipients_fail(self, index, embeddings, detector, config) -> None:
        index.fail_upsert_ids = {"msg-1:alice@corp.com"}
        pipeline = _make_pipeline(index, embeddings, detector, config)

        with pytest.raises(Exception, match="write rejected"):
            await pipeline.process_email("user-1", make_message())

    @pytest.mark.asyncio
    async def test_upsert_retried_until_exhausted(
        self, index, embeddings, detector, config
    ) -> None:
        index.fail_upsert_ids = {"msg-1:alice@corp.com"}
        pipeline = _make_pipeline(index, embeddings, detector, config)

        with pytest.raises(Exception):
            await pipeline.process_email("user-1", make_message())

        assert index.upsert_calls == config.PIPELINE_RETRY_ATTEMPTS


class TestRetries:
    """Transient embedding failures are retried with backoff."""

    @pytest.mark.asyncio
    async def test_embedding_recovers(
        self, index, detector, config, no_backoff_sleep: AsyncMock
    ) -> None:
        embeddings = FakeEmbeddingProvider(fail_times=2)
        pipeline = _make_pipeline(index, embeddings, detector, config)

        await pipeline.process_email("user-1", make_message())

        assert "msg-1:alice@corp.com" in index.records
        assert [c.args[0] for c in no_backoff_sleep.await_args_list] == [1.0, 2.0]


class TestRelationshipDetectionFailure:
    """Detector failures carry the full message context."""

    @pytest.mark.asyncio
    async def test_error_context(self, index, embeddings, config) -> None:
        detector = FakeDetector(error=RuntimeError("detector offline"))
        pipeline = _make_pipeline(index, embeddings, detector, config)

        with pytest.raises(RelationshipDetectionError) as exc_info:
            await pipeline.process_email("user-1", make_message())

        context = exc_info.value.details
        assert context["message_id"] == "msg-1"
        assert context["recipient"] == "alice@corp.com"
        assert context["subject"] == "Re: plan"
        assert context["to"] == ["alice@corp.com"]
        assert context["from"] == ["Me <me@corp.com>"]
        assert "detector offline" in context["error"]
        assert "Alice" not in context["preview"]
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestMessageContext:
    """message_context previews at most 50 words."""

    def test_preview_truncated(self) -> None:
        message = make_message(reply=" ".join(f"w{i}" for i in range(80)))
        preview = message_context(message)["preview"]
        assert preview.endswith("...")
        assert len(preview.split()) == 50


# ---------------------------------------------------------------------------
# Run level
# ---------------------------------------------------------------------------


def _batch_with_failures(count: int, failing: set[int]) -> list:
    return [
        make_message(
            message_id=f"msg-{i}",
            to=[f"person{i}@corp.com"],
            raw_message=None if i in failing else "raw",
        )
        for i in range(count)
    ]


class TestHistoricalImport:
    """Chunked import with a running error-rate check."""

    @pytest.mark.asyncio
    async def test_counts_and_distribution(self, index, embeddings, detector, config) -> None:
        messages = [
            make_message(message_id=f"c{i}", to=[f"c{i}@corp.com"], relationship="colleague")
            for i in range(3)
        ] + [
            make_message(message_id=f"f{i}", to=[f"f{i}@gmail.com"], relationship="friend")
            for i in range(2)
        ]
        pipeline = _make_pipeline(index, embeddings, detector, config, batch_size=2)

        result = await pipeline.process_historical_emails("user-1", messages)

        assert result.processed == 5
        assert result.errors == 0
        assert result.relationship_distribution == {"colleague": 3, "friend": 2}
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_aborts_when_error_rate_exceeded(
        self, index, embeddings, detector, config
    ) -> None:
        # 12 of 100 messages fail: indexes 0, 9, ..., 99
        failing = set(range(0, 100, 9))
        assert len(failing) == 12
        pipeline = _make_pipeline(
            index, embeddings, detector, config, batch_size=25, error_threshold=0.1
        )

        with pytest.raises(IngestionAbortedError) as exc_info:
            await pipeline.process_historical_emails(
                "user-1", _batch_with_failures(100, failing)
            )

        # First chunk: 3 failures (0, 9, 18) against 22 successes
        assert exc_info.value.errors == 3
        assert exc_info.value.processed == 22
        assert len(index.records) == 22
        assert len(embeddings.texts) == 22

    @pytest.mark.asyncio
    async def test_single_chunk_abort(self, index, embeddings, detector, config) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config, error_threshold=0.1)

        with pytest.raises(IngestionAbortedError) as exc_info:
            await pipeline.process_historical_emails(
                "user-1", _batch_with_failures(100, set(range(0, 100, 9)))
            )

        assert exc_info.value.processed == 88
        assert exc_info.value.errors == 12

    @pytest.mark.asyncio
    async def test_errors_below_threshold_continue(
        self, index, embeddings, detector, config
    ) -> None:
        pipeline = _make_pipeline(
            index, embeddings, detector, config, batch_size=10, error_threshold=0.1
        )

        result = await pipeline.process_historical_emails(
            "user-1", _batch_with_failures(20, {15})
        )

        assert result.processed == 19
        assert result.errors == 1

    @pytest.mark.asyncio
    async def test_all_failures_abort_even_when_nothing_processed(
        self, index, embeddings, detector, config
    ) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config, error_threshold=0.5)

        with pytest.raises(IngestionAbortedError) as exc_info:
            await pipeline.process_historical_emails("user-1", _batch_with_failures(3, {0, 1, 2}))

        assert exc_info.value.processed == 0

    @pytest.mark.asyncio
    async def test_empty_import(self, index, embeddings, detector, config) -> None:
        pipeline = _make_pipeline(index, embeddings, detector, config)
        result = await pipeline.process_historical_emails("user-1", [])
        assert result.processed == 0
        assert result.relationship_distribution == {}

    @pytest.mark.asyncio
    async def test_style_aggregated_once_per_type(
        self, index, embeddings, detector, config
    ) -> None:
        aggregator = MagicMock()
        aggregator.refresh = AsyncMock()
        messages = [
            make_message(
                message_id=f"m{i}",
                to=[f"p{i}@corp.com", f"q{i}@corp.com"],
                relationship="colleague" if i % 2 else "friend",
            )
            for i in range(6)
        ]
        pipeline = _make_pipeline(
            index, embeddings, detector, config, style_aggregator=aggregator, batch_size=2
        )

        result = await pipeline.process_historical_emails("user-1", messages)

        assert result.relationship_distribution == {"friend": 6, "colleague": 6}
        refreshed = sorted(call.args for call in aggregator.refresh.await_args_list)
        assert refreshed == [("user-1", "colleague"), ("user-1", "friend")]

    @pytest.mark.asyncio
    async def test_style_aggregation_failure_does_not_fail_import(
        self, index, embeddings, detector, config
    ) -> None:
        aggregator = MagicMock()
        aggregator.refresh = AsyncMock(side_effect=RuntimeError("profile store down"))
        pipeline = _make_pipeline(
            index, embeddings, detector, config, style_aggregator=aggregator
        )

        result = await pipeline.process_historical_emails("user-1", [make_message()])

        assert result.processed == 1
