"""Embedding providers — LiteLLM adapters for the supported backends.

The set of providers is closed: ``openai``, ``azure`` and ``ollama``. Each
adapter owns its retry loop (exponential backoff) and per-call timeout, so
callers only ever see a vector list or an ``EmbeddingError``.
"""

from __future__ import annotations

import asyncio
import math
import os
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import litellm
from loguru import logger

from recall.config import EmbeddingCfg
from recall.exceptions import ConfigError, EmbeddingError

_OLLAMA_DEFAULT_BASE = "http://localhost:11434"
_OLLAMA_DEFAULT_MODEL = "nomic-embed-text"


class EmbeddingProvider(ABC):
    """Text-to-vector backend with batching, retries and a per-call timeout.

    Args:
        model: Backend model name (e.g. ``text-embedding-3-small``).
        dimensions: Expected vector length; responses of another length are errors.
        max_batch_size: Upper bound on texts per backend call.
        max_retries: Attempts per call before giving up.
        timeout: Seconds allowed for one backend call.
        retry_backoff: Base delay in seconds; doubled after every failed attempt.
    """

    provider_id: str = ""

    def __init__(
        self,
        model: str,
        dimensions: int,
        *,
        max_batch_size: int = 64,
        max_retries: int = 3,
        timeout: float = 60.0,
        retry_backoff: float = 1.0,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.max_batch_size = max_batch_size
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    @property
    def model_key(self) -> str:
        """``provider/model`` tag stored on every embedded chunk."""
        return f"{self.provider_id}/{self.model}"

    @property
    def identity(self) -> str:
        """Stable ``provider:model:dims`` string used in logs and the index identity."""
        return f"{self.provider_id}:{self.model}:{self.dimensions}"

    def check_api_key(self) -> None:
        """Raise EmbeddingError if required credentials are missing (no-op by default)."""

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed *texts* in one backend call, retrying with exponential backoff.

        Raises:
            EmbeddingError: If every attempt fails or the response is malformed.
        """
        if not texts:
            return []
        if len(texts) > self.max_batch_size:
            raise ValueError(
                f"batch of {len(texts)} exceeds max_batch_size={self.max_batch_size}"
            )

        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                vectors = await asyncio.wait_for(self._embed(list(texts)), self.timeout)
                self._validate(vectors, len(texts))
                return vectors
            except EmbeddingError:
                raise
            except Exception as exc:  # noqa: BLE001 - any backend failure is retried
                last_exc = exc
                logger.warning(
                    "Embedding call to {} failed (attempt {}/{}): {}",
                    self.identity,
                    attempt + 1,
                    self.max_retries,
                    exc,
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_backoff * (2**attempt))

        raise EmbeddingError(
            f"Embedding failed after {self.max_retries} attempts: {last_exc}",
            provider=self.provider_id,
            model=self.model,
        ) from last_exc

    def _validate(self, vectors: list[list[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise ValueError(f"backend returned {len(vectors)} vectors for {expected} texts")
        for vec in vectors:
            if len(vec) != self.dimensions:
                raise ValueError(
                    f"backend returned a {len(vec)}-dim vector, expected {self.dimensions}"
                )
            if not all(math.isfinite(v) for v in vec):
                raise ValueError("backend returned a vector with NaN or infinite values")

    @abstractmethod
    async def _embed(self, texts: list[str]) -> list[list[float]]:
        """Single backend call without retries."""


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Calls ``litellm.aembedding()`` with a provider prefix and connection kwargs."""

    litellm_prefix: str = ""
    api_key_env: str | None = None

    def __init__(
        self,
        model: str,
        dimensions: int,
        *,
        api_base: str | None = None,
        api_version: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, dimensions, **kwargs)
        self.api_base = api_base
        self.api_version = api_version

    @property
    def litellm_model(self) -> str:
        if self.model.startswith(f"{self.litellm_prefix}/"):
            return self.model
        return f"{self.litellm_prefix}/{self.model}"

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_version:
            kwargs["api_version"] = self.api_version
        return kwargs

    def check_api_key(self) -> None:
        """Raise EmbeddingError if the provider's API key variable is unset."""
        if self.api_key_env and not os.environ.get(self.api_key_env):
            raise EmbeddingError(
                f"No API key found for provider '{self.provider_id}'. "
                f"Set the {self.api_key_env} environment variable.",
                provider=self.provider_id,
                model=self.model,
            )

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        self.check_api_key()
        response = await litellm.aembedding(
            model=self.litellm_model,
            input=texts,
            timeout=self.timeout,
            **self._request_kwargs(),
        )
        return [list(item["embedding"]) for item in response.data]


class OpenAIEmbeddingProvider(LiteLLMEmbeddingProvider):
    provider_id = "openai"
    litellm_prefix = "openai"
    api_key_env = "OPENAI_API_KEY"

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs = super()._request_kwargs()
        # Only the text-embedding-3 family accepts a requested dimension count.
        if "text-embedding-3" in self.model:
            kwargs["dimensions"] = self.dimensions
        return kwargs


class AzureEmbeddingProvider(LiteLLMEmbeddingProvider):
    provider_id = "azure"
    litellm_prefix = "azure"
    api_key_env = "AZURE_API_KEY"

    def __init__(self, model: str, dimensions: int, **kwargs: Any) -> None:
        super().__init__(model, dimensions, **kwargs)
        if not self.api_base:
            raise ConfigError(
                "embedding.api_base is required for the 'azure' provider "
                "(e.g. https://<resource>.openai.azure.com)"
            )


class OllamaEmbeddingProvider(LiteLLMEmbeddingProvider):
    provider_id = "ollama"
    litellm_prefix = "ollama"

    def __init__(self, model: str, dimensions: int, **kwargs: Any) -> None:
        super().__init__(model or _OLLAMA_DEFAULT_MODEL, dimensions, **kwargs)
        self.api_base = self.api_base or _OLLAMA_DEFAULT_BASE


_PROVIDERS: dict[str, type[LiteLLMEmbeddingProvider]] = {
    "openai": OpenAIEmbeddingProvider,
    "azure": AzureEmbeddingProvider,
    "azureopenai": AzureEmbeddingProvider,
    "ollama": OllamaEmbeddingProvider,
}


def create_embedding_provider(cfg: EmbeddingCfg) -> EmbeddingProvider:
    """Build the provider named by ``embedding.provider``.

    Raises:
        ConfigError: For an unknown provider name or missing Azure endpoint.
    """
    cls = _PROVIDERS.get(cfg.provider.lower())
    if cls is None:
        raise ConfigError(
            f"Unknown embedding provider '{cfg.provider}'. "
            f"Expected one of: openai, azure (alias: azureopenai), ollama."
        )
    return cls(
        cfg.model,
        cfg.dimensions,
        api_base=cfg.api_base,
        api_version=cfg.api_version,
        max_batch_size=cfg.batch_size,
        max_retries=cfg.max_retries,
        timeout=cfg.timeout,
    )
