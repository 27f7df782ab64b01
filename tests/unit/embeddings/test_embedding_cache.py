"""Tests for EmbeddingCache: persistence, at-most-once calls and failure isolation."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from recall.embeddings.cache import EmbeddingCache
from recall.exceptions import EmbeddingError
from recall.ingest.base import content_hash


@pytest.fixture
def cache(repo, fake_provider):
    return EmbeddingCache(repo, fake_provider)


# ------------------------------------------------------------------
# Hits and misses
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_miss_calls_provider_and_stores(cache, fake_provider, repo):
    vector = await cache.resolve("deploy key")
    assert vector == pytest.approx(fake_provider.vector_for("deploy key"), abs=1e-6)
    assert fake_provider.texts_embedded == 1
    assert repo.count_cache_entries() == 1


@pytest.mark.asyncio
async def test_hit_does_not_call_provider(cache, fake_provider):
    await cache.resolve("deploy key")
    result = await cache.resolve_many(["deploy key"])
    assert result.hits == 1
    assert result.computed == 0
    assert fake_provider.texts_embedded == 1


@pytest.mark.asyncio
async def test_cache_survives_new_instance(repo, provider_factory):
    first = provider_factory()
    await EmbeddingCache(repo, first).resolve("persisted text")
    second = provider_factory()
    await EmbeddingCache(repo, second).resolve("persisted text")
    assert second.calls == []


@pytest.mark.asyncio
async def test_duplicates_in_one_call_embedded_once(cache, fake_provider):
    result = await cache.resolve_many(["a b", "c d", "a b", "a b"])
    assert fake_provider.texts_embedded == 2
    assert result.vectors[0] == result.vectors[2] == result.vectors[3]
    assert result.computed == 2


@pytest.mark.asyncio
async def test_other_model_is_a_miss(repo, provider_factory):
    await EmbeddingCache(repo, provider_factory(dimensions=64)).resolve("text")
    other = provider_factory(dimensions=64)
    other.model = "other-model"
    await EmbeddingCache(repo, other).resolve("text")
    assert other.texts_embedded == 1


@pytest.mark.asyncio
async def test_misses_are_batched(repo, provider_factory):
    provider = provider_factory(max_batch_size=4)
    cache = EmbeddingCache(repo, provider)
    await cache.resolve_many([f"text {i}" for i in range(10)])
    assert [len(c) for c in provider.calls] == [4, 4, 2]


# ------------------------------------------------------------------
# Concurrency
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_call(repo, provider_factory):
    provider = provider_factory(delay=0.05)
    cache = EmbeddingCache(repo, provider)
    results = await asyncio.gather(*(cache.resolve("same text") for _ in range(5)))
    assert provider.texts_embedded == 1
    assert all(r == results[0] for r in results)


@pytest.mark.asyncio
async def test_concurrent_failure_reaches_every_waiter(repo, provider_factory):
    provider = provider_factory(delay=0.02, fail_on={"boom"})
    cache = EmbeddingCache(repo, provider)
    outcomes = await asyncio.gather(
        cache.resolve("boom"), cache.resolve("boom"), return_exceptions=True
    )
    assert all(isinstance(o, EmbeddingError) for o in outcomes)
    assert provider.texts_embedded == 1


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_failure_isolated_to_failing_item(repo, provider_factory):
    provider = provider_factory(fail_on={"bad"})
    cache = EmbeddingCache(repo, provider)
    result = await cache.resolve_many(["good one", "bad one", "good two"])
    assert set(result.vectors) == {0, 2}
    assert set(result.errors) == {1}
    assert isinstance(result.errors[1], EmbeddingError)
    assert not result.ok
    assert repo.count_cache_entries() == 2


@pytest.mark.asyncio
async def test_non_finite_vector_isolated_to_its_item(repo, provider_factory):
    provider = provider_factory(nan_on={"poison"})
    cache = EmbeddingCache(repo, provider)
    result = await cache.resolve_many(["first", "poison", "third"])
    assert set(result.vectors) == {0, 2}
    assert set(result.errors) == {1}
    assert repo.count_cache_entries() == 2


@pytest.mark.asyncio
async def test_cache_write_failure_reported_per_item(repo, provider_factory, monkeypatch):
    provider = provider_factory()
    cache = EmbeddingCache(repo, provider)

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(repo, "put_cache_entries", broken)
    result = await cache.resolve_many(["alpha", "beta"])
    assert result.vectors == {}
    assert set(result.errors) == {0, 1}
    assert isinstance(result.errors[0], sqlite3.OperationalError)


@pytest.mark.asyncio
async def test_failed_text_is_not_cached(repo, provider_factory):
    provider = provider_factory(fail_on={"bad"})
    cache = EmbeddingCache(repo, provider)
    with pytest.raises(EmbeddingError):
        await cache.resolve("bad text")
    provider.fail_on.clear()
    await cache.resolve("bad text")
    assert provider.texts_embedded == 2


@pytest.mark.asyncio
async def test_corrupt_entry_is_recomputed(repo, cache, fake_provider):
    await cache.resolve("fragile")
    repo.conn.execute("UPDATE embedding_cache SET embedding = x'0001'")
    repo.conn.commit()
    vector = await cache.resolve("fragile")
    assert len(vector) == fake_provider.dimensions
    assert fake_provider.texts_embedded == 2
    blob, dims = repo.get_cache_entries("fake", "bag-of-words", [content_hash("fragile")])[
        content_hash("fragile")
    ]
    assert dims == fake_provider.dimensions
    assert len(blob) == 4 * dims


# ------------------------------------------------------------------
# Maintenance
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_evict_and_clear(cache):
    await cache.resolve_many([f"t{i}" for i in range(5)])
    assert cache.evict(max_entries=3) == 2
    assert cache.count() == 3
    cache.clear()
    assert cache.count() == 0
