"""Text embedding providers.

One variant per provider family, chosen once at startup by
:func:`build_embedding_provider`.
"""

import logging
from abc import ABC, abstractmethod

import litellm
from openai import AsyncOpenAI

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Turns text into fixed-length float vectors."""

    def __init__(self, model: str, dimensions: int, max_input_chars: int = 8000) -> None:
        self.model = model
        self.dimensions = dimensions
        self._max_input_chars = max_input_chars

    def _prepare(self, text: str) -> str:
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text", field="text")
        # Limit input to stay within token bounds
        return text[: self._max_input_chars]

    async def embed(self, text: str) -> list[float]:
        """Embed one text.

        Raises:
            ValidationError: If ``text`` is empty.
            ExternalServiceError: If the provider call fails.
        """
        vectors = await self._embed_many([self._prepare(text)])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts. Output order matches input order."""
        if not texts:
            return []
        return await self._embed_many([self._prepare(t) for t in texts])

    @abstractmethod
    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        """Provider call for already-validated input, order preserved."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings via the OpenAI SDK."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        max_input_chars: int = 8000,
    ) -> None:
        super().__init__(model, dimensions, max_input_chars)
        self._client = AsyncOpenAI(api_key=api_key)

    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self._client.embeddings.create(model=self.model, input=texts)
        except Exception as e:
            logger.warning("Embedding generation failed: %s", e)
            raise ExternalServiceError("openai", f"Embedding failed: {e}") from e
        # The API reports an index per item; do not rely on response order
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Embeddings via LiteLLM's provider-agnostic ``aembedding``."""

    def __init__(
        self,
        model: str,
        dimensions: int = 1536,
        api_key: str | None = None,
        max_input_chars: int = 8000,
    ) -> None:
        super().__init__(model, dimensions, max_input_chars)
        self._api_key = api_key or None

    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await litellm.aembedding(
                model=self.model, input=texts, api_key=self._api_key
            )
        except Exception as e:
            logger.warning("Embedding generation failed: %s", e)
            raise ExternalServiceError("litellm", f"Embedding failed: {e}") from e
        # Items arrive as dicts or Embedding objects depending on the backend
        items = [item if isinstance(item, dict) else item.model_dump() for item in response.data]
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        return [list(item["embedding"]) for item in ordered]


def build_embedding_provider(config: Settings | None = None) -> EmbeddingProvider:
    """Construct the configured embedding provider."""
    config = config or get_settings()
    if config.EMBEDDING_PROVIDER == "openai":
        return OpenAIEmbeddingProvider(
            api_key=config.OPENAI_API_KEY.get_secret_value(),
            model=config.EMBEDDING_MODEL,
            dimensions=config.EMBEDDING_DIMENSIONS,
            max_input_chars=config.EMBEDDING_MAX_INPUT_CHARS,
        )
    return LiteLLMEmbeddingProvider(
        model=config.EMBEDDING_MODEL,
        dimensions=config.EMBEDDING_DIMENSIONS,
        api_key=config.OPENAI_API_KEY.get_secret_value(),
        max_input_chars=config.EMBEDDING_MAX_INPUT_CHARS,
    )
