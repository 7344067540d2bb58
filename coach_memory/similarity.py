"""Vector and lexical similarity.

Cosine similarity over embeddings is the primary signal. When a memory has
no embedding, or the best vector match is weak, a word-overlap score
(weighted Jaccard + overlap ratio) is used instead.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Set

import numpy as np

from .logging_config import get_logger
from .models import MemoryEntry
from .ttl_cache import TTLCache

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def cosine_similarity(a, b) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 for empty, mismatched or zero vectors."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.size == 0 or vb.size == 0 or va.shape != vb.shape:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def tokenize(text: str) -> Set[str]:
    """Lowercased, punctuation-stripped words longer than two characters."""
    normalized = _NON_ALNUM.sub("", (text or "").lower())
    return {w for w in normalized.split() if len(w) > 2}


def lexical_similarity(a: str, b: str) -> float:
    """0.6 * Jaccard + 0.4 * overlap / max(|A|, |B|) over word sets."""
    words_a = tokenize(a)
    words_b = tokenize(b)
    if not words_a or not words_b:
        return 0.0
    intersection = len(words_a & words_b)
    union = len(words_a | words_b)
    jaccard = intersection / union
    overlap = intersection / max(len(words_a), len(words_b))
    return jaccard * 0.6 + overlap * 0.4


def jaccard_similarity(a: str, b: str) -> float:
    words_a = tokenize(a)
    words_b = tokenize(b)
    union = words_a | words_b
    return len(words_a & words_b) / len(union) if union else 0.0


def similarity_cache_key(a: Sequence[float], b: Sequence[float]) -> str:
    """Key from the first 10 components (x1000, rounded) of both vectors."""
    hash_a = ",".join(str(int(round(float(v) * 1000))) for v in list(a)[:10])
    hash_b = ",".join(str(int(round(float(v) * 1000))) for v in list(b)[:10])
    return f"sim-{hash_a}-{hash_b}"


@dataclass
class SimilarMemory:
    memory: MemoryEntry
    similarity: float
    method: str  # "vector" or "lexical"


class SimilarityEngine:
    """Scores candidate text against memories, with a score cache.

    ``schedule_precompute`` is called with (vector_a, vector_b, cache_key) on a
    cache miss in ``cached_similarity``; the engine wires it to the background
    queue so the score is ready on a later tick. ``similarity`` computes and
    caches a missing score itself and never schedules.
    """

    def __init__(
        self,
        score_cache: TTLCache,
        schedule_precompute: Optional[Callable[[np.ndarray, np.ndarray, str], None]] = None,
        vector_low_confidence: float = 0.3,
        lexical_min_score: float = 0.2,
    ):
        self.score_cache = score_cache
        self.schedule_precompute = schedule_precompute
        self.vector_low_confidence = vector_low_confidence
        self.lexical_min_score = lexical_min_score

    def cached_similarity(self, a, b) -> Optional[float]:
        """Return a cached score, or None after scheduling its computation."""
        key = similarity_cache_key(a, b)
        score = self.score_cache.get(key)
        if score is not None:
            return score
        if self.schedule_precompute is not None:
            self.schedule_precompute(a, b, key)
        return None

    def store_score(self, key: str, a, b) -> float:
        score = cosine_similarity(a, b)
        self.score_cache.set(key, score)
        return score

    def similarity(self, a, b) -> float:
        """Cached score if present, else computed inline and cached.

        Never schedules a precompute: the score is already at hand.
        """
        key = similarity_cache_key(a, b)
        score = self.score_cache.get(key)
        if score is None:
            score = self.store_score(key, a, b)
        return score

    def best_lexical_match(self, text: str, memories: Iterable[MemoryEntry]) -> Optional[SimilarMemory]:
        best = None
        for memory in memories:
            score = lexical_similarity(text, memory.content)
            if score > self.lexical_min_score and (best is None or score > best.similarity):
                best = SimilarMemory(memory, score, "lexical")
        return best

    def best_match(
        self,
        text: str,
        embedding: Optional[np.ndarray],
        memories: Sequence[MemoryEntry],
    ) -> Optional[SimilarMemory]:
        """Find the closest memory to ``text``.

        Vector similarity first; lexical fallback when no memory could be
        compared by vector or the best vector score is below the
        low-confidence bound. The lexical match only wins if it scores higher.
        """
        if not memories:
            return None

        best = None
        if embedding is not None:
            for memory in memories:
                if memory.embedding is None:
                    continue
                score = self.similarity(embedding, memory.embedding)
                if score > 0 and (best is None or score > best.similarity):
                    best = SimilarMemory(memory, score, "vector")

        if best is None or best.similarity < self.vector_low_confidence:
            fuzzy = self.best_lexical_match(text, memories)
            if fuzzy is not None and (best is None or fuzzy.similarity > best.similarity):
                best = fuzzy
        return best
