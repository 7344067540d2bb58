"""Embedding cache with a TTL-scoped warm tier and an optional SQLite tier.

This module provides a two-tier caching strategy:
1. In-memory "warm" cache whose entries expire after the engine's cache TTL
2. Optional persistent SQLite cache across process restarts (only enabled
   when a database path is given or EMBEDDING_CACHE_DB is set)

The cache stores embeddings keyed by model name and normalized text content,
reducing redundant calls to the embedding provider.
"""

import hashlib
import os
import sqlite3
import time
from datetime import datetime
from typing import Callable, Optional

import numpy as np

from .models import normalize_text
from .ttl_cache import TTLCache


class EmbeddingCache:
    """Embedding cache with a TTL warm tier and optional SQLite backend."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        db_path: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the embedding cache.

        Args:
            ttl_seconds: Lifetime of warm-tier entries.
            db_path: Path to SQLite database file for the persistent tier.
                    If None, uses EMBEDDING_CACHE_DB env var; if that is
                    unset too, only the warm tier is used.
            clock: Monotonic time source (injectable for tests).
        """
        if db_path is None:
            db_path = os.getenv("EMBEDDING_CACHE_DB") or None

        # Ensure directory exists
        if db_path and not os.path.isabs(db_path):
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self.db_path = db_path
        self._warm_cache = TTLCache(ttl_seconds, clock=clock)
        if self.db_path:
            self._init_db()

    def _init_db(self):
        """Initialize SQLite schema for persistent cache."""
        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()

        c.execute("""
            CREATE TABLE IF NOT EXISTS embeddings (
                key TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                text_hash TEXT NOT NULL,
                embedding BLOB NOT NULL,
                dim INTEGER NOT NULL,
                dtype TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        conn.commit()
        conn.close()

    def _make_key(self, model: str, text: str) -> str:
        """Generate cache key from model and text.

        Returns:
            SHA256 hash of normalized "model::text"
        """
        normalized = f"{model}::{normalize_text(text)}"
        return hashlib.sha256(normalized.encode()).hexdigest()

    def get(self, model: str, text: str) -> Optional[np.ndarray]:
        """Retrieve embedding from cache.

        Checks warm cache first, then the persistent tier if enabled.

        Returns:
            Cached embedding as numpy array, or None if not found or expired
        """
        key = self._make_key(model, text)

        cached = self._warm_cache.get(key)
        if cached is not None:
            return cached

        if not self.db_path:
            return None

        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()

        c.execute(
            "SELECT embedding, dim, dtype FROM embeddings WHERE key = ?",
            (key,)
        )
        row = c.fetchone()
        conn.close()

        if row is None:
            return None

        # Reconstruct numpy array from stored bytes
        embedding_bytes, dim, dtype = row
        embedding = np.frombuffer(embedding_bytes, dtype=dtype).reshape(dim).copy()

        # Populate warm cache
        self._warm_cache.set(key, embedding)

        return embedding

    def set(self, model: str, text: str, embedding: np.ndarray):
        """Store embedding in the warm cache and, if enabled, the persistent tier."""
        key = self._make_key(model, text)
        embedding = np.asarray(embedding, dtype=np.float32)

        self._warm_cache.set(key, embedding)

        if not self.db_path:
            return

        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()

        text_hash = hashlib.sha256(normalize_text(text).encode()).hexdigest()

        # Replace if exists
        c.execute("""
            INSERT OR REPLACE INTO embeddings
            (key, model, text_hash, embedding, dim, dtype, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            key,
            model,
            text_hash,
            embedding.tobytes(),
            embedding.shape[0],
            str(embedding.dtype),
            datetime.now().isoformat()
        ))

        conn.commit()
        conn.close()

    def sweep(self) -> int:
        """Drop expired warm entries."""
        return self._warm_cache.sweep()

    def clear(self):
        """Clear both warm cache and persistent cache."""
        self._warm_cache.clear()

        if not self.db_path:
            return

        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()
        c.execute("DELETE FROM embeddings")
        conn.commit()
        conn.close()

    def size(self) -> tuple[int, int]:
        """Get cache sizes.

        Returns:
            Tuple of (warm_cache_size, persistent_cache_size)
        """
        warm_size = len(self._warm_cache)
        if not self.db_path:
            return (warm_size, 0)

        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()
        c.execute("SELECT COUNT(*) FROM embeddings")
        persistent_size = c.fetchone()[0]
        conn.close()

        return (warm_size, persistent_size)
