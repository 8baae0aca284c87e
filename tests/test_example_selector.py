"""Tests for two-phase example selection."""

import pytest

from tests.fakes import FakeDetector, InMemorySimilarityIndex, make_record
from tonelearn.core.config import Settings
from tonelearn.core.exceptions import DatabaseError, ValidationError
from tonelearn.pipeline.example_selector import ExampleSelector

INCOMING = "Hey, can you send over the numbers before Friday?"


def _seed_direct(index: InMemorySimilarityIndex, count: int, top: float = 0.9) -> None:
    for i in range(count):
        index.seed(
            make_record(f"bob-{i}:bob@corp.com", "bob@corp.com"),
            [round(top - i * 0.01, 4), 0.0],
        )


def _seed_category(
    index: InMemorySimilarityIndex, count: int, top: float = 0.8, relationship: str = "colleague"
) -> None:
    for i in range(count):
        index.seed(
            make_record(
                f"other-{i}:person{i}@corp.com", f"person{i}@corp.com", relationship=relationship
            ),
            [round(top - i * 0.01, 4), 0.0],
        )


class TestSelectExamples:
    """Direct correspondence first, relationship category second."""

    @pytest.mark.asyncio
    async def test_mixed_direct_and_category(self, index, embeddings, detector, config) -> None:
        _seed_direct(index, 50)
        _seed_category(index, 40)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples(
            "user-1", INCOMING, "bob@corp.com", desired_count=25, max_direct_fraction=0.6
        )

        assert len(result.examples) == 25
        direct = result.examples[:15]
        category = result.examples[15:]
        assert all(e.metadata["recipient_email"] == "bob@corp.com" for e in direct)
        assert all(e.metadata["recipient_email"] != "bob@corp.com" for e in category)
        assert [e.score for e in direct] == sorted((e.score for e in direct), reverse=True)
        assert [e.score for e in category] == sorted((e.score for e in category), reverse=True)
        assert direct[0].id == "bob-0:bob@corp.com"
        assert category[0].id == "other-0:person0@corp.com"
        assert len({e.id for e in result.examples}) == 25

        assert result.relationship.type == "colleague"
        assert result.stats.total_candidates == 90
        assert result.stats.direct_correspondence == 15
        assert result.stats.relationship_match == 25

    @pytest.mark.asyncio
    async def test_search_requests(self, index, embeddings, detector, config) -> None:
        _seed_direct(index, 5)
        _seed_category(index, 5)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        await selector.select_examples("user-1", INCOMING, "  Bob@Corp.com ")

        direct_request, category_request = index.searches
        assert direct_request.filters.recipient_email == "bob@corp.com"
        assert direct_request.filters.relationship_type is None
        assert direct_request.score_threshold == 0.0
        assert direct_request.limit == config.EXAMPLE_DIRECT_SEARCH_LIMIT
        assert category_request.filters.relationship_type == "colleague"
        assert category_request.filters.recipient_email is None
        assert sorted(category_request.filters.exclude_ids) == sorted(
            f"bob-{i}:bob@corp.com" for i in range(5)
        )
        assert category_request.limit == config.EXAMPLE_CATEGORY_SEARCH_LIMIT
        assert detector.calls[0]["recipient_email"] == "bob@corp.com"
        assert embeddings.texts == [INCOMING]

    @pytest.mark.asyncio
    async def test_few_direct_hits_filled_from_category(
        self, index, embeddings, detector, config
    ) -> None:
        _seed_direct(index, 3)
        _seed_category(index, 30)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples("user-1", INCOMING, "bob@corp.com")

        assert result.stats.direct_correspondence == 3
        assert len(result.examples) == 25
        assert [e.metadata["recipient_email"] for e in result.examples[:3]] == [
            "bob@corp.com"
        ] * 3

    @pytest.mark.asyncio
    async def test_zero_direct_fraction(self, index, embeddings, detector, config) -> None:
        _seed_direct(index, 10)
        _seed_category(index, 30)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples(
            "user-1", INCOMING, "bob@corp.com", max_direct_fraction=0.0
        )

        assert result.stats.direct_correspondence == 0
        assert len(result.examples) == 25
        assert all(e.metadata["recipient_email"] != "bob@corp.com" for e in result.examples)

    @pytest.mark.asyncio
    async def test_category_phase_skipped_when_full(
        self, index, embeddings, detector, config
    ) -> None:
        _seed_direct(index, 10)
        _seed_category(index, 10)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples(
            "user-1", INCOMING, "bob@corp.com", desired_count=5, max_direct_fraction=1.0
        )

        assert len(index.searches) == 1
        assert len(result.examples) == 5
        assert result.stats.total_candidates == 10

    @pytest.mark.asyncio
    async def test_same_recipient_never_fills_category_slots(
        self, index, embeddings, detector
    ) -> None:
        config = Settings(_env_file=None, EXAMPLE_DIRECT_SEARCH_LIMIT=2)  # type: ignore[call-arg]
        _seed_direct(index, 4)
        _seed_category(index, 5)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples(
            "user-1", INCOMING, "bob@corp.com", desired_count=10, max_direct_fraction=0.5
        )

        recipients = [e.metadata["recipient_email"] for e in result.examples]
        assert recipients.count("bob@corp.com") == 2
        assert recipients[:2] == ["bob@corp.com", "bob@corp.com"]
        assert len(result.examples) == 7

    @pytest.mark.asyncio
    async def test_other_relationships_excluded(
        self, index, embeddings, detector, config
    ) -> None:
        _seed_category(index, 5, relationship="colleague")
        for i in range(5):
            index.seed(
                make_record(
                    f"fam-{i}:fam{i}@gmail.com", f"fam{i}@gmail.com", relationship="family"
                ),
                [0.99, 0.0],
            )
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples("user-1", INCOMING, "bob@corp.com")

        assert len(result.examples) == 5
        assert all(e.metadata["relationship"]["type"] == "colleague" for e in result.examples)

    @pytest.mark.asyncio
    async def test_other_users_records_invisible(
        self, index, embeddings, detector, config
    ) -> None:
        index.seed(make_record("x:bob@corp.com", "bob@corp.com", user_id="user-2"), [0.9, 0.0])
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples("user-1", INCOMING, "bob@corp.com")

        assert result.examples == []
        assert result.stats.total_candidates == 0

    @pytest.mark.asyncio
    async def test_example_carries_text_and_metadata(
        self, index, embeddings, detector, config
    ) -> None:
        index.seed(
            make_record("m:bob@corp.com", "bob@corp.com", reply="Sure thing, on it."),
            [0.5, 0.0],
        )
        selector = ExampleSelector(index, embeddings, detector, config=config)

        result = await selector.select_examples("user-1", INCOMING, "bob@corp.com")

        example = result.examples[0]
        assert example.text == "Sure thing, on it."
        assert example.score == pytest.approx(0.5)
        assert example.metadata["email_id"] == "m"
        assert example.metadata["subject"] == "Subject m:bob@corp.com"


class TestSelectionFailures:
    """Failures propagate once retries are exhausted."""

    @pytest.mark.asyncio
    async def test_search_failure(self, index, embeddings, detector, config) -> None:
        index.search_error = DatabaseError("index offline")
        selector = ExampleSelector(index, embeddings, detector, config=config)

        with pytest.raises(DatabaseError, match="index offline"):
            await selector.select_examples("user-1", INCOMING, "bob@corp.com")

        assert len(index.searches) == config.PIPELINE_RETRY_ATTEMPTS

    @pytest.mark.asyncio
    async def test_detector_failure(self, index, embeddings, config) -> None:
        detector = FakeDetector(error=RuntimeError("no classifier"))
        selector = ExampleSelector(index, embeddings, detector, config=config)

        with pytest.raises(RuntimeError, match="no classifier"):
            await selector.select_examples("user-1", INCOMING, "bob@corp.com")

        assert len(detector.calls) == config.PIPELINE_RETRY_ATTEMPTS
        assert index.searches == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("desired_count", "fraction", "field"),
        [
            (-5, 0.6, "desired_count"),
            (10, -0.1, "max_direct_fraction"),
            (10, 1.5, "max_direct_fraction"),
        ],
    )
    async def test_invalid_arguments_rejected(
        self, index, embeddings, detector, config, desired_count, fraction, field
    ) -> None:
        _seed_direct(index, 50)
        selector = ExampleSelector(index, embeddings, detector, config=config)

        with pytest.raises(ValidationError) as exc_info:
            await selector.select_examples(
                "user-1",
                INCOMING,
                "bob@corp.com",
                desired_count=desired_count,
                max_direct_fraction=fraction,
            )

        assert exc_info.value.details["field"] == field
        assert detector.calls == []
        assert index.searches == []
