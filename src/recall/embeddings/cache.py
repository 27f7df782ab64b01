"""Persistent embedding cache keyed by (provider, model, sha256(text)).

The provider is called at most once per key: hits come from the
``embedding_cache`` table, and concurrent resolves of a key that is already
being computed wait for that computation instead of issuing their own call.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from recall.db.repository import Repository
from recall.db.vectors import deserialize_vector, serialize_vector
from recall.embeddings.provider import EmbeddingProvider
from recall.ingest.base import content_hash


@dataclass
class ResolveResult:
    """Outcome of ``EmbeddingCache.resolve_many()``, indexed like its input.

    Attributes:
        vectors: Index → vector for every text that resolved.
        errors: Index → exception for every text whose embedding failed.
        hits: Number of distinct texts served from the cache.
        computed: Number of distinct texts embedded by the provider in this call.
    """

    vectors: dict[int, list[float]] = field(default_factory=dict)
    errors: dict[int, Exception] = field(default_factory=dict)
    hits: int = 0
    computed: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


class EmbeddingCache:
    """Resolve texts to vectors through the cache table, calling the provider on misses.

    Args:
        repo: Repository over the index database (owns the cache table).
        provider: Backend used for cache misses.
        concurrency: Maximum provider batches in flight at once.
    """

    def __init__(
        self, repo: Repository, provider: EmbeddingProvider, *, concurrency: int = 2
    ) -> None:
        self._repo = repo
        self.provider = provider
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        # Futures resolve to (vector, None) or (None, exception).
        self._inflight: dict[str, asyncio.Future[tuple[list[float] | None, Exception | None]]] = {}

    async def resolve(self, text: str) -> list[float]:
        """Return the vector for *text*, computing and storing it on a miss.

        Raises:
            EmbeddingError: (or the provider's exception) if the miss cannot be computed.
        """
        result = await self.resolve_many([text])
        if result.errors:
            raise result.errors[0]
        return result.vectors[0]

    async def resolve_many(self, texts: Sequence[str]) -> ResolveResult:
        """Resolve every text in *texts*; failures are reported per index, not raised.

        Duplicate texts are resolved once. Misses are sent to the provider in
        batches of ``provider.max_batch_size``; a failed batch is retried one
        item at a time so only the failing texts end up in ``errors``.
        """
        result = ResolveResult()
        if not texts:
            return result

        hashes = [content_hash(t) for t in texts]
        unique: dict[str, str] = dict(zip(hashes, texts))

        found = self._lookup(list(unique))
        result.hits = len(found)
        misses = [h for h in unique if h not in found]

        owned = [h for h in misses if h not in self._inflight]
        shared = {h: self._inflight[h] for h in misses if h not in owned}
        loop = asyncio.get_running_loop()
        for h in owned:
            self._inflight[h] = loop.create_future()

        computed: dict[str, list[float]] = {}
        failed: dict[str, Exception] = {}
        try:
            await self._compute([(h, unique[h]) for h in owned], computed, failed)
        finally:
            # Waiters in other resolve calls must never hang, even on cancellation.
            for h in owned:
                fut = self._inflight.pop(h)
                if h in computed:
                    fut.set_result((computed[h], None))
                else:
                    fut.set_result((None, failed.get(h)))
        found.update(computed)
        result.computed = len(computed)

        for h, fut in shared.items():
            vector, exc = await fut
            if vector is not None:
                found[h] = vector
            else:
                failed[h] = exc or RuntimeError("embedding computation was abandoned")

        for i, h in enumerate(hashes):
            if h in found:
                result.vectors[i] = found[h]
            else:
                result.errors[i] = failed[h]
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def count(self) -> int:
        return self._repo.count_cache_entries()

    def evict(self, max_entries: int = 0, max_age_days: int = 0) -> int:
        """Apply the age and size limits. Returns the number of evicted entries."""
        removed = self._repo.evict_cache(max_entries=max_entries, max_age_days=max_age_days)
        if removed:
            logger.info("Evicted {} embedding cache entries", removed)
        return removed

    def clear(self) -> None:
        self._repo.clear_cache()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, hashes: list[str]) -> dict[str, list[float]]:
        """Return cached vectors for *hashes*; corrupt rows are deleted and treated as misses."""
        rows = self._repo.get_cache_entries(self.provider.provider_id, self.provider.model, hashes)
        vectors: dict[str, list[float]] = {}
        corrupt: list[str] = []
        for h, (blob, dims) in rows.items():
            try:
                vector = deserialize_vector(blob, dims)
            except ValueError as exc:
                logger.warning("Discarding corrupt embedding cache entry {}: {}", h[:12], exc)
                corrupt.append(h)
                continue
            if dims != self.provider.dimensions:
                corrupt.append(h)
                continue
            vectors[h] = vector
        if corrupt:
            self._repo.delete_cache_entries(
                self.provider.provider_id, self.provider.model, corrupt
            )
        return vectors

    async def _compute(
        self,
        items: list[tuple[str, str]],
        computed: dict[str, list[float]],
        failed: dict[str, Exception],
    ) -> None:
        """Embed ``(hash, text)`` *items*, filling *computed* and *failed* as batches finish."""
        if not items:
            return

        size = self.provider.max_batch_size
        batches = [items[i : i + size] for i in range(0, len(items), size)]

        async def run(batch: list[tuple[str, str]]) -> None:
            async with self._semaphore:
                try:
                    vectors = await self.provider.embed_batch([t for _, t in batch])
                    done = dict(zip((h for h, _ in batch), vectors))
                except Exception as exc:  # noqa: BLE001 - isolate the failing items below
                    if len(batch) == 1:
                        failed[batch[0][0]] = exc
                        return
                    logger.warning(
                        "Embedding batch of {} failed ({}); retrying items individually",
                        len(batch),
                        exc,
                    )
                    done = {}
                    for h, text in batch:
                        try:
                            done[h] = (await self.provider.embed_batch([text]))[0]
                        except Exception as item_exc:  # noqa: BLE001
                            failed[h] = item_exc
                failed.update(self._store(done))
                computed.update((h, v) for h, v in done.items() if h not in failed)

        await asyncio.gather(*(run(b) for b in batches))

    def _store(self, vectors: dict[str, list[float]]) -> dict[str, Exception]:
        """Write *vectors* to the cache table. Returns the hashes that could not be stored."""
        rows = []
        errors: dict[str, Exception] = {}
        for h, v in vectors.items():
            try:
                rows.append((h, serialize_vector(v), len(v)))
            except ValueError as exc:
                errors[h] = exc
        if not rows:
            return errors
        try:
            self._repo.put_cache_entries(self.provider.provider_id, self.provider.model, rows)
        except sqlite3.Error as exc:
            logger.warning("Could not store {} embeddings in the cache: {}", len(rows), exc)
            errors.update((h, exc) for h, _, _ in rows)
        return errors
