"""Hybrid retrieval: exhaustive cosine similarity + FTS5 BM25, blended by weight.

  score(c) = vector_weight * cos(q, c) + text_weight * bm25(c) / max_bm25

- The query is embedded through the embedding cache with the same provider
  and model used at sync time; only chunks embedded with that model and
  dimension count take part in the vector term.
- Chunks without a stored vector (pending embedding) still score on text.
- If the query embedding fails, the search degrades to lexical-only.
- Ties are broken by the most recently updated chunk, then by chunk id, so
  identical inputs always produce identical rankings.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass

from loguru import logger

from recall.config import SearchCfg
from recall.db.models import MemorySource
from recall.db.repository import Repository
from recall.embeddings.cache import EmbeddingCache
from recall.exceptions import EmbeddingError, InvalidSearchOptions, OperationCancelled

_WEIGHT_TOLERANCE = 1e-6
_ELLIPSIS = "..."


@dataclass
class SearchOptions:
    """Per-query search options.

    Attributes:
        max_results: Maximum number of results returned (>= 1).
        min_score: Results scoring below this are dropped ([0, 1]).
        include_sessions: Search saved session transcripts.
        include_memory_files: Search memory notes.
        vector_weight: Weight of cosine similarity in the blended score.
        text_weight: Weight of normalised BM25 in the blended score.
    """

    max_results: int = 10
    min_score: float = 0.35
    include_sessions: bool = True
    include_memory_files: bool = True
    vector_weight: float = 0.7
    text_weight: float = 0.3

    @classmethod
    def from_config(cls, cfg: SearchCfg) -> SearchOptions:
        return cls(
            max_results=cfg.max_results,
            min_score=cfg.min_score,
            vector_weight=cfg.vector_weight,
            text_weight=cfg.text_weight,
        )

    @property
    def sources(self) -> tuple[MemorySource, ...]:
        selected: list[MemorySource] = []
        if self.include_memory_files:
            selected.append(MemorySource.MEMORY)
        if self.include_sessions:
            selected.append(MemorySource.SESSIONS)
        return tuple(selected)

    def validate(self) -> None:
        """Raise InvalidSearchOptions if any option is out of range."""
        if isinstance(self.max_results, bool) or not isinstance(self.max_results, int):
            raise InvalidSearchOptions("max_results must be an integer")
        if self.max_results < 1:
            raise InvalidSearchOptions(f"max_results must be >= 1, got {self.max_results}")
        if not 0.0 <= self.min_score <= 1.0:
            raise InvalidSearchOptions(f"min_score must be in [0, 1], got {self.min_score}")
        for name in ("vector_weight", "text_weight"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise InvalidSearchOptions(f"{name} must be a non-negative number, got {value}")
        total = self.vector_weight + self.text_weight
        if abs(total - 1.0) > _WEIGHT_TOLERANCE:
            raise InvalidSearchOptions(
                f"vector_weight + text_weight must equal 1.0, got {total}"
            )
        if not self.sources:
            raise InvalidSearchOptions(
                "at least one of include_sessions / include_memory_files must be true"
            )


@dataclass
class SearchResult:
    chunk_id: int
    path: str
    source: MemorySource
    start_line: int
    end_line: int
    snippet: str
    score: float
    vector_score: float
    text_score: float
    updated_at: str


def truncate_snippet(text: str, max_chars: int) -> str:
    """Cut *text* to at most *max_chars* at a word boundary, appending ``...``."""
    text = text.strip()
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    cut = text[: max_chars - len(_ELLIPSIS)]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut.rstrip() + _ELLIPSIS


class HybridSearch:
    """Read-only query side of the memory index.

    Args:
        repo: Repository over the index database.
        cache: Embedding cache used for the query vector.
        snippet_chars: Maximum snippet length in characters.
    """

    def __init__(
        self, repo: Repository, cache: EmbeddingCache, *, snippet_chars: int = 500
    ) -> None:
        self._repo = repo
        self._cache = cache
        self.snippet_chars = snippet_chars

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[SearchResult]:
        """Return the best chunks for *query*, best-first.

        Raises:
            InvalidSearchOptions: Before any I/O, for a blank query or bad options.
            OperationCancelled: If *cancel* is set while the search runs.
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidSearchOptions("query must be a non-empty string")
        options = options or SearchOptions()
        options.validate()
        sources = options.sources

        _check_cancel(cancel)
        vector_scores: dict[int, float] = {}
        if options.vector_weight > 0:
            vector_scores = await self._vector_scores(query, sources)

        _check_cancel(cancel)
        text_scores: dict[int, float] = {}
        if options.text_weight > 0:
            text_scores = _normalise(self._repo.search_fts(query, sources))

        scored: dict[int, tuple[float, float, float]] = {}
        for chunk_id in vector_scores.keys() | text_scores.keys():
            v = vector_scores.get(chunk_id, 0.0)
            t = text_scores.get(chunk_id, 0.0)
            score = options.vector_weight * v + options.text_weight * t
            if score >= options.min_score:
                scored[chunk_id] = (score, v, t)

        _check_cancel(cancel)
        chunks = self._repo.get_chunks(list(scored))
        results = [
            SearchResult(
                chunk_id=chunk_id,
                path=chunk.path,
                source=chunk.source,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                snippet=truncate_snippet(chunk.text, self.snippet_chars),
                score=scored[chunk_id][0],
                vector_score=scored[chunk_id][1],
                text_score=scored[chunk_id][2],
                updated_at=chunk.updated_at or "",
            )
            for chunk_id, chunk in chunks.items()
        ]
        # Stable sorts applied from the least to the most significant key.
        results.sort(key=lambda r: r.chunk_id)
        results.sort(key=lambda r: r.updated_at, reverse=True)
        results.sort(key=lambda r: r.score, reverse=True)
        return results[: options.max_results]

    async def _vector_scores(
        self, query: str, sources: tuple[MemorySource, ...]
    ) -> dict[int, float]:
        try:
            query_vector = await self._cache.resolve(query)
        except EmbeddingError as exc:
            logger.warning("Query embedding failed, falling back to text-only search: {}", exc)
            return {}
        return dict(
            self._repo.search_vec(query_vector, self._cache.provider.model_key, sources)
        )


def _normalise(raw: list[tuple[int, float]]) -> dict[int, float]:
    """Scale BM25 scores by the best score in the set into [0, 1]."""
    if not raw:
        return {}
    best = max(score for _, score in raw)
    if best <= 0:
        return {chunk_id: 0.0 for chunk_id, _ in raw}
    return {chunk_id: max(0.0, score) / best for chunk_id, score in raw}


def _check_cancel(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("search cancelled")
