"""Tests for embedding providers, the embedding cache and the cached embedder."""

from unittest.mock import Mock, patch

import numpy as np
import pytest
import requests

from coach_memory.config import EngineConfig
from coach_memory.embedding_cache import EmbeddingCache
from coach_memory.embeddings import (
    CachedEmbedder,
    EmbeddingError,
    MockEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    get_embedding_provider,
)
from conftest import CountingProvider, FakeClock


class TestMockProvider:
    def test_deterministic_per_text(self):
        provider = MockEmbeddingProvider(dim=64)
        a = provider.embed("hello world")
        b = provider.embed("hello world")
        c = provider.embed("something else")

        assert a.dtype == np.float32
        assert a.shape == (64,)
        assert np.array_equal(a, b)
        assert not np.array_equal(a, c)


class TestEmbeddingCache:
    def test_warm_tier_only_by_default(self, monkeypatch):
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        cache = EmbeddingCache()
        cache.set("model", "  Hello World  ", np.ones(8, dtype=np.float32))

        assert np.allclose(cache.get("model", "hello world"), np.ones(8))
        assert cache.size() == (1, 0)
        assert cache.db_path is None

    def test_warm_entries_expire_with_ttl(self, monkeypatch):
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        clock = FakeClock()
        cache = EmbeddingCache(ttl_seconds=300, clock=clock)
        cache.set("model", "text", np.ones(4, dtype=np.float32))

        clock.advance(300)
        assert cache.get("model", "text") is None

    def test_persistent_tier_survives_new_instance(self, tmp_path):
        db = str(tmp_path / "emb_cache.db")
        first = EmbeddingCache(db_path=db)
        emb = np.random.randn(32).astype(np.float32)
        first.set("model", "persist me", emb)

        second = EmbeddingCache(db_path=db)
        result = second.get("model", "persist me")
        assert result is not None
        assert np.allclose(result, emb)
        assert second.size() == (1, 1)

    def test_models_are_separate_and_clear_empties_both_tiers(self, tmp_path):
        cache = EmbeddingCache(db_path=str(tmp_path / "emb_cache.db"))
        cache.set("model1", "text", np.ones(4, dtype=np.float32))
        cache.set("model2", "text", np.zeros(4, dtype=np.float32))

        assert np.allclose(cache.get("model1", "text"), np.ones(4))
        assert np.allclose(cache.get("model2", "text"), np.zeros(4))

        cache.clear()
        assert cache.get("model1", "text") is None
        assert cache.size() == (0, 0)


class TestCachedEmbedder:
    def _embedder(self, provider, clock=None, dim=None):
        cache = EmbeddingCache(ttl_seconds=300, db_path=None, clock=clock or FakeClock())
        return CachedEmbedder(provider, cache, dim=dim)

    def test_identical_normalized_text_calls_provider_once(self, monkeypatch):
        """Two lookups of the same normalized text within the TTL hit the provider once."""
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        provider = CountingProvider(dim=16)
        embedder = self._embedder(provider)

        first = embedder.embed("I like running")
        second = embedder.embed("  i LIKE   running ")

        assert provider.calls == 1
        assert embedder.provider_calls == 1
        assert np.array_equal(first, second)

    def test_provider_called_again_after_ttl(self, monkeypatch):
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        clock = FakeClock()
        provider = CountingProvider(dim=16)
        embedder = self._embedder(provider, clock=clock)

        embedder.embed("hello")
        clock.advance(301)
        embedder.embed("hello")

        assert provider.calls == 2

    def test_failure_returns_none_or_raises_when_strict(self, monkeypatch):
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        provider = CountingProvider(dim=16)
        provider.fail = True
        embedder = self._embedder(provider)

        assert embedder.embed("hello") is None
        with pytest.raises(EmbeddingError):
            embedder.embed("hello", strict=True)
        assert embedder.failures == 2

    def test_vectors_are_fit_to_dim(self, monkeypatch):
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        provider = Mock()
        provider.model_name = "fake"
        provider.embed.side_effect = [np.ones(10), np.ones(3)]
        embedder = self._embedder(provider, dim=5)

        assert embedder.embed("long").shape == (5,)
        short = embedder.embed("short")
        assert short.shape == (5,)
        assert np.allclose(short, [1, 1, 1, 0, 0])

    def test_empty_text_skips_provider(self, monkeypatch):
        monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
        provider = CountingProvider(dim=16)
        embedder = self._embedder(provider)
        assert embedder.embed("   ") is None
        assert provider.calls == 0


class TestRemoteProviders:
    def test_ollama_parses_embeddings_and_uses_timeout(self):
        resp = Mock()
        resp.json.return_value = {"embeddings": [[0.1, 0.2, 0.3]]}
        resp.raise_for_status = Mock()
        with patch("requests.post", return_value=resp) as mock_post:
            provider = OllamaEmbeddingProvider(model="m", base_url="http://ollama:11434/", timeout=45)
            vec = provider.embed("hello")

        assert np.allclose(vec, [0.1, 0.2, 0.3])
        args, kwargs = mock_post.call_args
        assert args[0] == "http://ollama:11434/api/embed"
        assert kwargs["timeout"] == 45
        assert kwargs["json"] == {"model": "m", "input": "hello"}

    def test_ollama_errors_become_embedding_error(self):
        with patch("requests.post", side_effect=requests.ConnectionError("down")):
            provider = OllamaEmbeddingProvider(model="m", base_url="http://ollama:11434")
            with pytest.raises(EmbeddingError):
                provider.embed("hello")

    def test_ollama_unexpected_payload(self):
        resp = Mock()
        resp.json.return_value = {"error": "model not found"}
        resp.raise_for_status = Mock()
        with patch("requests.post", return_value=resp):
            with pytest.raises(EmbeddingError):
                OllamaEmbeddingProvider(model="m", base_url="http://x").embed("hello")

    def test_openai_provider_uses_injected_client(self):
        client = Mock()
        client.embeddings.create.return_value = Mock(data=[Mock(embedding=[1.0, 0.0])])
        provider = OpenAIEmbeddingProvider(model="text-embedding-3-small", client=client)

        vec = provider.embed("hello")

        assert np.allclose(vec, [1.0, 0.0])
        client.embeddings.create.assert_called_once_with(model="text-embedding-3-small", input="hello")

    def test_get_embedding_provider_selects_backend(self, monkeypatch):
        config = EngineConfig(embedding_dim=32)

        monkeypatch.delenv("AI_EMBEDDING_BACKEND", raising=False)
        provider = get_embedding_provider(config)
        assert isinstance(provider, MockEmbeddingProvider)
        assert provider.dim == 32

        monkeypatch.setenv("AI_EMBEDDING_BACKEND", "ollama")
        assert isinstance(get_embedding_provider(config), OllamaEmbeddingProvider)

        monkeypatch.setenv("AI_EMBEDDING_BACKEND", "openai")
        assert isinstance(get_embedding_provider(config), OpenAIEmbeddingProvider)

        monkeypatch.setenv("AI_EMBEDDING_BACKEND", "nonsense")
        assert isinstance(get_embedding_provider(config), MockEmbeddingProvider)
