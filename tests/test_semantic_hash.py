import hashlib
from unittest.mock import Mock

from coach_memory.embedding_cache import EmbeddingCache
from coach_memory.embeddings import CachedEmbedder, MockEmbeddingProvider
from coach_memory.semantic_hash import SemanticHasher, content_hash
from conftest import CountingProvider, FakeClock


def _hasher(provider):
    cache = EmbeddingCache(ttl_seconds=300, db_path=None, clock=FakeClock())
    embedder = CachedEmbedder(provider, cache)
    return SemanticHasher(embedder), embedder


def test_hash_is_fixed_length_and_normalized(monkeypatch):
    monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
    hasher, _ = _hasher(CountingProvider(dim=64))

    h1 = hasher.generate("I'm allergic to peanuts")
    h2 = hasher.generate("  i'm ALLERGIC to peanuts ")

    assert len(h1) == 32
    assert all(c in "0123456789abcdef" for c in h1)
    assert h1 == h2
    assert h1 != hasher.generate("I love jazz")


def test_hash_comes_from_embedding_prefix(monkeypatch):
    monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
    provider = CountingProvider(dim=64)
    hasher, _ = _hasher(provider)

    emb = provider.embed("hello there")
    expected = hashlib.sha256(",".join(repr(float(v)) for v in emb[:50]).encode()).hexdigest()[:32]

    assert hasher.generate("Hello there") == expected


def test_memo_avoids_provider_even_after_embedding_cache_cleared(monkeypatch):
    monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
    provider = CountingProvider(dim=64)
    hasher, embedder = _hasher(provider)

    first = hasher.generate("my goal is to run a marathon")
    embedder.cache.clear()
    second = hasher.generate("My goal is to run a marathon")

    assert first == second
    assert provider.calls == 1
    assert len(hasher) == 1


def test_falls_back_to_content_hash_when_provider_fails(monkeypatch):
    monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
    provider = CountingProvider(dim=64)
    provider.fail = True
    hasher, _ = _hasher(provider)

    assert hasher.generate("I hate burpees") == content_hash("i hate burpees")


def test_never_raises_when_embedder_blows_up():
    embedder = Mock()
    embedder.embed.side_effect = RuntimeError("boom")
    hasher = SemanticHasher(embedder)

    assert hasher.generate("Some text") == content_hash("some text")


def test_fallback_is_not_memoized_once_provider_recovers(monkeypatch):
    monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
    provider = CountingProvider(dim=64)
    hasher, _ = _hasher(provider)

    provider.fail = True
    degraded = hasher.generate("I hate burpees")
    assert degraded == content_hash("I hate burpees")
    assert len(hasher) == 0

    provider.fail = False
    recovered = hasher.generate("I hate burpees")

    emb = MockEmbeddingProvider(dim=64).embed("i hate burpees")
    expected = hashlib.sha256(",".join(repr(float(v)) for v in emb[:50]).encode()).hexdigest()[:32]
    assert recovered == expected
    assert recovered != degraded
    assert len(hasher) == 1
