"""Embeddings and the similarity index over example records."""

from tonelearn.vector.embeddings import (
    EmbeddingProvider,
    LiteLLMEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_embedding_provider,
)
from tonelearn.vector.index import (
    SearchFilters,
    SearchHit,
    SearchRequest,
    SimilarityIndex,
    SupabaseVectorIndex,
)

__all__ = [
    "EmbeddingProvider",
    "LiteLLMEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SearchFilters",
    "SearchHit",
    "SearchRequest",
    "SimilarityIndex",
    "SupabaseVectorIndex",
    "build_embedding_provider",
]
