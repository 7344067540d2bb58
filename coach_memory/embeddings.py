"""Embedding providers and the cached embedder used throughout the engine.

By default we use a mock, hash-based embedding so tests and offline runs do
not depend on a real model. AI_EMBEDDING_BACKEND="ollama" calls an Ollama
embedding model; AI_EMBEDDING_BACKEND="openai" calls the OpenAI embeddings
API. Every outbound call is bounded by the configured provider timeout.
"""

import hashlib
import os
import threading
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import requests

from .config import EngineConfig
from .embedding_cache import EmbeddingCache
from .logging_config import get_logger
from .models import normalize_text

logger = get_logger(__name__)


class EmbeddingError(Exception):
    """Raised when an embedding provider fails or returns nothing usable."""
    pass


class EmbeddingProvider(ABC):
    """Contract every embedding backend satisfies: text in, float vector out."""

    model_name: str = "unknown"

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """Return an embedding for ``text`` or raise EmbeddingError."""


class MockEmbeddingProvider(EmbeddingProvider):
    """Deterministic hash-seeded vectors; identical text gives identical vectors."""

    model_name = "mock"

    def __init__(self, dim: int = 384):
        self.dim = dim

    def embed(self, text: str) -> np.ndarray:
        text_norm = text.lower()
        seed = int(hashlib.md5(text_norm.encode()).hexdigest(), 16) % (2**32)
        rng = np.random.default_rng(seed)
        return rng.standard_normal(self.dim).astype(np.float32)


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server."""

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None, timeout: float = 45.0):
        # Default to qwen3-embedding:0.6b for better efficiency
        self.model_name = model or os.getenv("OLLAMA_EMBED_MODEL", os.getenv("AI_EMBED_MODEL", "qwen3-embedding:0.6b"))
        self.base_url = (base_url or os.getenv("OLLAMA_URL", "http://localhost:11434")).rstrip("/")
        self.timeout = timeout

    def embed(self, text: str) -> np.ndarray:
        try:
            resp = requests.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model_name, "input": text},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise EmbeddingError(f"Ollama embedding request failed: {e}") from e

        # Ollama's /api/embed returns { "embeddings": [[...]] } or {"embedding": [...]}
        emb = None
        if isinstance(data.get("embeddings"), list) and data["embeddings"]:
            emb = data["embeddings"][0]
        elif isinstance(data.get("embedding"), list):
            emb = data["embedding"]

        if not emb:
            raise EmbeddingError(f"Unexpected Ollama embed response: {data}")
        return np.array(emb, dtype=np.float32)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API (text-embedding-3-small by default)."""

    def __init__(self, model: Optional[str] = None, client=None, timeout: float = 45.0):
        self.model_name = model or os.getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small")
        self._client = client
        self.timeout = timeout

    @property
    def client(self):
        # Lazily construct the OpenAI client so tests can run without a real API key.
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=os.getenv("OPENAI_API_KEY"), timeout=self.timeout)
        return self._client

    def embed(self, text: str) -> np.ndarray:
        try:
            response = self.client.embeddings.create(model=self.model_name, input=text)
            emb = response.data[0].embedding
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e
        if not emb:
            raise EmbeddingError("OpenAI returned an empty embedding")
        return np.array(emb, dtype=np.float32)


def get_embedding_provider(config: Optional[EngineConfig] = None) -> EmbeddingProvider:
    """Pick a provider from AI_EMBEDDING_BACKEND (mock, ollama or openai)."""
    config = config or EngineConfig()
    backend = os.getenv("AI_EMBEDDING_BACKEND", "mock").lower()
    if backend == "ollama":
        return OllamaEmbeddingProvider(timeout=config.provider_timeout_seconds)
    if backend == "openai":
        return OpenAIEmbeddingProvider(timeout=config.provider_timeout_seconds)
    if backend != "mock":
        logger.warning("Unknown embedding backend %r, using mock embeddings", backend)
    return MockEmbeddingProvider(dim=config.embedding_dim)


class CachedEmbedder:
    """Memoizes provider lookups through an EmbeddingCache.

    By default ``embed`` never raises: provider failures are logged and
    reported as None so callers can take their lexical or raw-hash fallback.
    With ``strict=True`` the failure is re-raised as EmbeddingError.
    """

    def __init__(self, provider: EmbeddingProvider, cache: EmbeddingCache, dim: Optional[int] = None):
        self.provider = provider
        self.cache = cache
        self.dim = dim
        self.provider_calls = 0
        self.failures = 0
        self._lock = threading.Lock()

    def _fit(self, vec: np.ndarray) -> np.ndarray:
        # Pad/trim to the configured dim to keep interfaces simple.
        if self.dim is None or vec.shape[0] == self.dim:
            return vec
        if vec.shape[0] > self.dim:
            return vec[: self.dim]
        return np.pad(vec, (0, self.dim - vec.shape[0]))

    def embed(self, text: str, strict: bool = False) -> Optional[np.ndarray]:
        text = normalize_text(text)
        if not text:
            return None

        cached = self.cache.get(self.provider.model_name, text)
        if cached is not None:
            return cached

        with self._lock:
            self.provider_calls += 1
        try:
            vec = np.asarray(self.provider.embed(text), dtype=np.float32)
        except Exception as e:
            with self._lock:
                self.failures += 1
            logger.warning("Embedding provider %s failed: %s", self.provider.model_name, e)
            if strict:
                raise EmbeddingError(str(e)) from e
            return None
        if vec.size == 0:
            if strict:
                raise EmbeddingError(f"{self.provider.model_name} returned an empty embedding")
            return None

        vec = self._fit(vec)
        self.cache.set(self.provider.model_name, text, vec)
        return vec
