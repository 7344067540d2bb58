"""Create / update / merge / skip decisions for candidate memories."""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .config import EngineConfig
from .embeddings import CachedEmbedder
from .logging_config import get_logger
from .models import DedupAction, DeduplicationResult, MemoryEntry
from .similarity import SimilarityEngine
from .store import MemoryStore
from .ttl_cache import TTLCache, owned_by

logger = get_logger(__name__)


def dedup_cache_key(owner_id: str, semantic_hash: str) -> Tuple[str, str]:
    return (owner_id, semantic_hash)


class Deduplicator:
    """Decides what to do with a candidate memory for one owner.

    Decision order (first match wins):
      1. dedup cache hit for (owner, hash)            -> skip
      2. active stored or pending entry with the hash -> skip
      3. nothing created in the trailing window       -> create
      4. best similarity match: > merge_threshold -> merge,
         > update_threshold -> update, else create
    Any unexpected error yields create with reduced confidence.

    Creates that are queued but not yet written are tracked as *pending*
    entries and take part in steps 2-4, so two quick submissions of the same
    fact cannot both produce a new entry.
    """

    def __init__(
        self,
        store: MemoryStore,
        similarity: SimilarityEngine,
        embedder: CachedEmbedder,
        cache: TTLCache,
        config: Optional[EngineConfig] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.similarity = similarity
        self.embedder = embedder
        self.cache = cache
        self.config = config or EngineConfig()
        self._now = now
        self._pending: Dict[str, Dict[str, MemoryEntry]] = {}
        self._pending_lock = threading.Lock()

    # Pending writes

    def add_pending(self, entry: MemoryEntry) -> None:
        with self._pending_lock:
            self._pending.setdefault(entry.owner_id, {})[entry.id] = entry
        self.remember_mapping(entry.owner_id, entry.semantic_hash, entry.id)

    def get_pending(self, owner_id: str, memory_id: str) -> Optional[MemoryEntry]:
        with self._pending_lock:
            return self._pending.get(owner_id, {}).get(memory_id)

    def pop_pending(self, owner_id: str, memory_id: str) -> Optional[MemoryEntry]:
        with self._pending_lock:
            owned = self._pending.get(owner_id)
            if not owned:
                return None
            entry = owned.pop(memory_id, None)
            if not owned:
                del self._pending[owner_id]
            return entry

    def pending_for(self, owner_id: str) -> List[MemoryEntry]:
        with self._pending_lock:
            return list(self._pending.get(owner_id, {}).values())

    def pending_count(self) -> int:
        with self._pending_lock:
            return sum(len(v) for v in self._pending.values())

    # Dedup cache

    def remember_mapping(self, owner_id: str, semantic_hash: str, memory_id: str) -> None:
        if semantic_hash:
            self.cache.set(dedup_cache_key(owner_id, semantic_hash), memory_id)

    def forget_owner(self, owner_id: str) -> int:
        return self.cache.delete_where(owned_by(owner_id))

    # Decision

    def decide(self, owner_id: str, candidate_text: str, semantic_hash: str) -> DeduplicationResult:
        try:
            return self._decide(owner_id, candidate_text, semantic_hash)
        except Exception as e:
            logger.error("Deduplication failed for owner %s: %s", owner_id, e)
            return DeduplicationResult(DedupAction.CREATE, 0.8, "Deduplication failed, defaulted due to error")

    def _decide(self, owner_id: str, candidate_text: str, semantic_hash: str) -> DeduplicationResult:
        key = dedup_cache_key(owner_id, semantic_hash)
        cached_id = self.cache.get(key)
        if cached_id is not None:
            logger.debug("Dedup cache hit for %s", key)
            return DeduplicationResult(DedupAction.SKIP, 1.0, "Exact semantic match found in cache", cached_id)

        pending = self.pending_for(owner_id)
        for entry in pending:
            if entry.semantic_hash == semantic_hash:
                self.cache.set(key, entry.id)
                return DeduplicationResult(DedupAction.SKIP, 1.0, "Identical memory already queued", entry.id)

        existing = self.store.find_by_semantic_hash(owner_id, semantic_hash)
        if existing is not None:
            self.cache.set(key, existing.id)
            return DeduplicationResult(DedupAction.SKIP, 1.0, "Exact semantic hash match found", existing.id)

        # normally a cache hit: the semantic hash already embedded this text
        embedding = self.embedder.embed(candidate_text, strict=True)

        since = self._now() - timedelta(hours=self.config.dedup_window_hours)
        recent = self.store.find_active_since(owner_id, since, limit=self.config.dedup_window_limit)
        candidates = pending + recent
        if not candidates:
            return DeduplicationResult(DedupAction.CREATE, 1.0, "No recent memories to compare against")

        best = self.similarity.best_match(candidate_text, embedding, candidates)
        if best is not None:
            if best.similarity > self.config.merge_threshold:
                self.cache.set(key, best.memory.id)
                return DeduplicationResult(
                    DedupAction.MERGE,
                    best.similarity,
                    f"High {best.method} similarity ({best.similarity:.2f}) to an existing memory",
                    best.memory.id,
                )
            if best.similarity > self.config.update_threshold:
                self.cache.set(key, best.memory.id)
                return DeduplicationResult(
                    DedupAction.UPDATE,
                    best.similarity,
                    f"Moderate {best.method} similarity ({best.similarity:.2f}), updating existing memory",
                    best.memory.id,
                )

        return DeduplicationResult(DedupAction.CREATE, 1.0, "No sufficiently similar memories found")
