"""Select which stored memories belong in the next conversation turn."""

import threading
from typing import Dict, List, Optional, Sequence

from .config import EngineConfig
from .embeddings import CachedEmbedder
from .logging_config import get_logger
from .models import RelevantMemory
from .similarity import SimilarityEngine
from .store import MemoryStore
from .ttl_cache import TTLCache, cache_key

logger = get_logger(__name__)

SEMANTIC_SIMILARITY = "semantic_similarity"
HIGH_IMPORTANCE = "high_importance"
DIRECT_MEMORY_QUERY = "direct_memory_query"

_DIRECT_QUERY_MARKERS = ("memor", "about me")


def _message_text(message) -> str:
    if isinstance(message, dict):
        return str(message.get("content") or "")
    return str(message or "")


def build_retrieval_context(history: Sequence, current_message: str, window: int = 3) -> str:
    """Last ``window`` history messages plus the current one, space-joined."""
    parts = [_message_text(m) for m in list(history or [])[-window:]] if window > 0 else []
    parts.append(current_message or "")
    return " ".join(parts)


def is_direct_memory_query(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _DIRECT_QUERY_MARKERS)


class ContextualRetriever:
    def __init__(
        self,
        store: MemoryStore,
        embedder: CachedEmbedder,
        similarity: SimilarityEngine,
        cache: TTLCache,
        config: Optional[EngineConfig] = None,
        background_usage_logging: bool = True,
    ):
        self.store = store
        self.embedder = embedder
        self.similarity = similarity
        self.cache = cache
        self.config = config or EngineConfig()
        self.background_usage_logging = background_usage_logging

    def retrieve(self, owner_id: str, conversation_context: Sequence, current_message: str) -> List[RelevantMemory]:
        """Rank the owner's memories for this turn; never raises."""
        try:
            return self._retrieve(owner_id, conversation_context, current_message)
        except Exception as e:
            logger.error("Contextual retrieval failed for owner %s: %s", owner_id, e)
            return []

    def _retrieve(self, owner_id, conversation_context, current_message) -> List[RelevantMemory]:
        cfg = self.config
        context = build_retrieval_context(conversation_context, current_message, cfg.history_window)
        key = cache_key(owner_id, context)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Retrieval cache hit for owner %s", owner_id)
            return list(cached)

        memories = self.store.find_all_active(owner_id)

        if is_direct_memory_query(current_message):
            results = [RelevantMemory(m, m.importance_score, DIRECT_MEMORY_QUERY) for m in memories]
            results.sort(key=lambda r: r.relevance_score, reverse=True)
            self.cache.set(key, results)
            self._log_usage(results)
            return list(results)

        selected: Dict[str, RelevantMemory] = {}
        context_embedding = self.embedder.embed(context)
        if context_embedding is not None:
            for memory in memories:
                if memory.embedding is None:
                    continue
                score = self.similarity.similarity(context_embedding, memory.embedding)
                if score > cfg.retrieval_similarity_threshold:
                    selected[memory.id] = RelevantMemory(
                        memory, score * memory.importance_score, SEMANTIC_SIMILARITY
                    )

        important = [m for m in memories if m.importance_score >= cfg.high_importance_threshold]
        important.sort(key=lambda m: m.created_at, reverse=True)
        for memory in important:
            if memory.id not in selected:
                selected[memory.id] = RelevantMemory(memory, memory.importance_score, HIGH_IMPORTANCE)

        results = sorted(selected.values(), key=lambda r: r.relevance_score, reverse=True)
        results = results[: cfg.retrieval_top_k]
        self.cache.set(key, results)
        self._log_usage(results)
        return list(results)

    def _touch(self, memory_ids: List[str]) -> None:
        try:
            self.store.touch_access(memory_ids)
        except Exception as e:
            logger.error("Failed to log memory usage: %s", e)

    def _log_usage(self, results: List[RelevantMemory]) -> None:
        ids = [r.memory.id for r in results]
        if not ids:
            return
        if not self.background_usage_logging:
            self._touch(ids)
            return
        threading.Thread(target=self._touch, args=(ids,), name="memory-usage-log", daemon=True).start()
