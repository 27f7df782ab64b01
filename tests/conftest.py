"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re

import pytest

from recall.config import RecallConfig
from recall.db.connection import Database
from recall.db.repository import Repository
from recall.db.schema import initialize
from recall.embeddings.provider import EmbeddingProvider
from recall.ingest.base import ApproxTokenizer


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embeddings computed in-process.

    Texts sharing words get similar vectors. Every backend call is recorded
    in ``calls``; any text containing a string from ``fail_on`` makes the
    whole call raise, and one containing a string from ``nan_on`` comes back
    as a vector of NaNs.
    """

    provider_id = "fake"

    def __init__(
        self,
        dimensions: int = 64,
        *,
        fail_on: set[str] | None = None,
        nan_on: set[str] | None = None,
        delay: float = 0.0,
        max_batch_size: int = 16,
    ) -> None:
        super().__init__(
            "bag-of-words",
            dimensions,
            max_batch_size=max_batch_size,
            max_retries=1,
            timeout=5.0,
            retry_backoff=0.0,
        )
        self.fail_on = fail_on or set()
        self.nan_on = nan_on or set()
        self.delay = delay
        self.calls: list[list[str]] = []

    @property
    def texts_embedded(self) -> int:
        return sum(len(c) for c in self.calls)

    def vector_for(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        vec[0] = 0.01
        for word in re.findall(r"\w+", text.lower()):
            slot = int(hashlib.md5(word.encode()).hexdigest(), 16) % (self.dimensions - 1)
            vec[slot + 1] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec]

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        for text in texts:
            if any(marker in text for marker in self.fail_on):
                raise RuntimeError(f"backend rejected text: {text[:20]!r}")
        return [
            [math.nan] * self.dimensions
            if any(marker in t for marker in self.nan_on)
            else self.vector_for(t)
            for t in texts
        ]


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "recall.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def provider_factory():
    """The fake provider class, for tests that need failures or delays."""
    return FakeEmbeddingProvider


@pytest.fixture
def tokenizer():
    return ApproxTokenizer()


@pytest.fixture
def recall_config(tmp_path):
    """Config rooted in tmp_path with the approximate tokenizer and a short debounce."""
    cfg = RecallConfig()
    cfg.paths.data_dir = str(tmp_path / "data")
    cfg.chunking.tokenizer = "approx"
    cfg.chunking.max_tokens = 200
    cfg.chunking.overlap_tokens = 20
    cfg.chunking.min_tokens = 10
    cfg.watch.debounce_ms = 50
    return cfg
