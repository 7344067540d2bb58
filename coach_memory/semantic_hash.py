"""Content fingerprints for fast duplicate short-circuiting."""

import hashlib
import threading
from typing import Dict

from .embeddings import CachedEmbedder
from .logging_config import get_logger
from .models import normalize_text

logger = get_logger(__name__)

HASH_LENGTH = 32
EMBEDDING_PREFIX = 50


def content_hash(text: str) -> str:
    """sha256 of normalized text, truncated to the fingerprint length."""
    return hashlib.sha256(normalize_text(text).encode()).hexdigest()[:HASH_LENGTH]


class SemanticHasher:
    """Fingerprints text from its embedding prefix, falling back to raw content.

    Embedding-derived results are memoized per normalized input for the life
    of the process, so repeated identical inputs never reach the embedding
    provider again. Content-hash fallbacks are recomputed on every call.
    """

    def __init__(self, embedder: CachedEmbedder):
        self.embedder = embedder
        self._memo: Dict[str, str] = {}
        self._lock = threading.Lock()

    def generate(self, text: str) -> str:
        normalized = normalize_text(text)
        memo_key = hashlib.md5(normalized.encode()).hexdigest()
        with self._lock:
            cached = self._memo.get(memo_key)
        if cached is not None:
            return cached

        try:
            embedding = self.embedder.embed(normalized)
        except Exception as e:
            logger.error("Semantic hash generation failed, using content hash: %s", e)
            embedding = None
        # fallback fingerprints are not memoized; the provider may recover
        if embedding is None or len(embedding) == 0:
            return content_hash(normalized)

        prefix = ",".join(repr(float(v)) for v in embedding[:EMBEDDING_PREFIX])
        fingerprint = hashlib.sha256(prefix.encode()).hexdigest()[:HASH_LENGTH]
        with self._lock:
            self._memo[memo_key] = fingerprint
        return fingerprint

    def __len__(self) -> int:
        return len(self._memo)
