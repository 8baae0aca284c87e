"""Shared fixtures for tone-learning tests."""

from collections.abc import Iterator
from unittest.mock import AsyncMock, patch

import pytest

from tests.fakes import (
    FakeDetector,
    FakeEmbeddingProvider,
    InMemoryProfileStore,
    InMemorySimilarityIndex,
)
from tonelearn.core.config import Settings


@pytest.fixture(autouse=True)
def no_backoff_sleep() -> Iterator[AsyncMock]:
    """Retry backoff never actually sleeps in tests."""
    with patch("tonelearn.core.resilience.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def index() -> InMemorySimilarityIndex:
    return InMemorySimilarityIndex()


@pytest.fixture
def embeddings() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector()


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()
