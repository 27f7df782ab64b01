"""Recall embeddings — provider adapters and the persistent embedding cache."""

from recall.embeddings.cache import EmbeddingCache, ResolveResult
from recall.embeddings.provider import (
    AzureEmbeddingProvider,
    EmbeddingProvider,
    LiteLLMEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)

__all__ = [
    "AzureEmbeddingProvider",
    "EmbeddingCache",
    "EmbeddingProvider",
    "LiteLLMEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "ResolveResult",
    "create_embedding_provider",
]
