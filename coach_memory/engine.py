"""MemoryEngine: one object owning the store, caches, queue and timers.

Typical use::

    with MemoryEngine(EngineConfig.from_env()) as engine:
        engine.process_message("user-1", "I'm allergic to peanuts")
        prompt = engine.build_system_prompt("user-1", "what should I eat?")

The request path (``process_message``, ``retrieve``, ``build_system_prompt``)
never waits on background work; detection and writes happen on the queue's
ticker unless the user explicitly asked us to remember something.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .config import EngineConfig
from .detection import MemoryDetector, detect_explicit_trigger, extract_keywords, validate_memory_content
from .dedup import Deduplicator, dedup_cache_key
from .embedding_cache import EmbeddingCache
from .embeddings import CachedEmbedder, EmbeddingProvider, get_embedding_provider
from .invalidation import DebouncedInvalidator
from .logging_config import get_logger
from .models import (
    BackgroundTask,
    DedupAction,
    DeduplicationResult,
    MemoryCategory,
    MemoryDetection,
    MemoryEntry,
    RelevantMemory,
    TaskType,
)
from .prompt import DEFAULT_PERSONA
from .prompt import build_system_prompt as assemble_system_prompt
from .quality import memory_quality_metrics
from .retrieval import ContextualRetriever
from .semantic_hash import SemanticHasher
from .similarity import SimilarityEngine
from .store import MemoryStore, SQLiteMemoryStore
from .task_queue import BackgroundTaskQueue
from .ttl_cache import TTLCache, cache_key

logger = get_logger(__name__)

PRIORITY_MEMORY_WRITE = 3
PRIORITY_SIMILARITY = 2
PRIORITY_EMBEDDING = 1

EXPLICIT_IMPORTANCE = 0.9
MIN_UPDATE_IMPORTANCE = 0.1


@dataclass
class ProcessResult:
    explicit: Optional[DeduplicationResult] = None
    queued_task_id: Optional[str] = None


class MemoryEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[MemoryStore] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        detector: Optional[MemoryDetector] = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        background_usage_logging: bool = True,
        persona: str = DEFAULT_PERSONA,
    ):
        self.config = cfg = config or EngineConfig()
        self.persona = persona

        self.embedding_cache = EmbeddingCache(cfg.cache_ttl_seconds, db_path=cfg.embedding_cache_db, clock=clock)
        self.embedder = CachedEmbedder(
            embedding_provider or get_embedding_provider(cfg), self.embedding_cache, dim=cfg.embedding_dim
        )
        self.hasher = SemanticHasher(self.embedder)

        self.prompt_cache = TTLCache(cfg.cache_ttl_seconds, clock=clock)
        self.retrieval_cache = TTLCache(cfg.cache_ttl_seconds, clock=clock)
        self.dedup_cache = TTLCache(cfg.cache_ttl_seconds, clock=clock)
        self.similarity_cache = TTLCache(cfg.cache_ttl_seconds, clock=clock)

        self.queue = BackgroundTaskQueue(cfg, clock=clock)
        self.similarity = SimilarityEngine(
            self.similarity_cache,
            schedule_precompute=self._schedule_similarity,
            vector_low_confidence=cfg.vector_low_confidence,
            lexical_min_score=cfg.lexical_min_score,
        )
        self.store = store if store is not None else SQLiteMemoryStore(cfg.db_path)
        self.dedup = Deduplicator(self.store, self.similarity, self.embedder, self.dedup_cache, cfg)
        self.retriever = ContextualRetriever(
            self.store,
            self.embedder,
            self.similarity,
            self.retrieval_cache,
            cfg,
            background_usage_logging=background_usage_logging,
        )
        self.invalidator = DebouncedInvalidator(
            [self.retrieval_cache, self.prompt_cache], cfg.debounce_seconds, timer_factory=timer_factory
        )
        self.detector = detector or MemoryDetector(timeout=cfg.provider_timeout_seconds)

        self.queue.register_handler(TaskType.MEMORY_WRITE, self._handle_memory_write)
        self.queue.register_handler(TaskType.EMBEDDING_GENERATION, self._handle_embedding_generation)
        self.queue.register_handler(TaskType.SIMILARITY_PRECOMPUTE, self._handle_similarity_precompute)
        self.queue.add_drop_listener(self._release_dropped_writes)
        for sweeper in (
            self.embedding_cache.sweep,
            self.prompt_cache.sweep,
            self.retrieval_cache.sweep,
            self.dedup_cache.sweep,
            self.similarity_cache.sweep,
        ):
            self.queue.add_sweeper(sweeper)

    # Lifecycle

    def start(self) -> "MemoryEngine":
        self.queue.start()
        return self

    def stop(self) -> None:
        self.queue.stop(drain=True)
        self.invalidator.cancel_all()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    # Write path

    def process_message(self, owner_id: str, message: str, history: Sequence = ()) -> ProcessResult:
        """Handle one user message: explicit saves now, detection later."""
        result = ProcessResult()
        try:
            trigger = detect_explicit_trigger(message)
            if trigger:
                detection = MemoryDetection(
                    should_remember=True,
                    category=MemoryCategory.INSTRUCTIONS,
                    importance=EXPLICIT_IMPORTANCE,
                    extracted_info=trigger["content"],
                    keywords=extract_keywords(trigger["content"]),
                    reasoning="explicit save request",
                )
                result.explicit = self.remember(owner_id, detection, explicit=True)

            task = self.queue.enqueue(
                TaskType.MEMORY_WRITE,
                {"kind": "detect", "owner_id": owner_id, "message": message, "history": list(history or [])},
                priority=PRIORITY_MEMORY_WRITE,
            )
            result.queued_task_id = task.id
            self.queue.enqueue(TaskType.EMBEDDING_GENERATION, {"text": message}, priority=PRIORITY_EMBEDDING)
        except Exception as e:
            logger.error("Failed to process message for owner %s: %s", owner_id, e)
        return result

    def remember(self, owner_id: str, detection: MemoryDetection, explicit: bool = False) -> Optional[DeduplicationResult]:
        """Validate, fingerprint and dedupe a detected memory.

        Explicit requests are applied right away with the short invalidation
        delay; anything else is queued as a memory_write. Returns None when
        the detection is negative or fails validation.
        """
        if explicit:
            return self._remember(owner_id, detection, apply_now=True, delay=self.config.explicit_debounce_seconds)
        return self._remember(owner_id, detection, apply_now=False, delay=self.config.debounce_seconds)

    def _remember(self, owner_id, detection, apply_now, delay) -> Optional[DeduplicationResult]:
        if not detection.should_remember:
            return None
        content = detection.extracted_info.strip()
        ok, reason = validate_memory_content(content, detection.category)
        if not ok:
            if apply_now:
                logger.warning("Rejected memory for owner %s (%s): %r", owner_id, reason, content[:80])
            else:
                logger.info("Rejected memory for owner %s (%s)", owner_id, reason)
            return None

        semantic_hash = self.hasher.generate(content)
        decision = self.dedup.decide(owner_id, content, semantic_hash)
        if decision.action == DedupAction.SKIP:
            logger.debug("Skipping duplicate memory for owner %s: %s", owner_id, decision.reasoning)
            return decision

        if decision.action == DedupAction.CREATE:
            entry = self._new_entry(owner_id, detection, content, semantic_hash)
            decision.target_memory_id = entry.id
            if apply_now:
                self.store.insert(entry)
                self.dedup.remember_mapping(owner_id, semantic_hash, entry.id)
                self.invalidator.schedule(owner_id, delay)
            else:
                self.dedup.add_pending(entry)
                self.queue.enqueue(
                    TaskType.MEMORY_WRITE,
                    {"kind": "write", "owner_id": owner_id, "memory_id": entry.id},
                    priority=PRIORITY_MEMORY_WRITE,
                )
            return decision

        # update and merge both rewrite the target in place
        self._update_existing(owner_id, decision.target_memory_id, detection, content, semantic_hash)
        self.invalidator.schedule(owner_id, delay)
        return decision

    def _new_entry(self, owner_id, detection, content, semantic_hash) -> MemoryEntry:
        return MemoryEntry(
            owner_id=owner_id,
            content=content,
            category=detection.category,
            importance_score=detection.importance,
            keywords=detection.keywords,
            labels=detection.labels,
            embedding=self.embedder.embed(content),
            semantic_hash=semantic_hash,
        )

    def _update_existing(self, owner_id, target_id, detection, content, semantic_hash) -> None:
        importance = max(detection.importance, MIN_UPDATE_IMPORTANCE)
        embedding = self.embedder.embed(content)
        pending = self.dedup.get_pending(owner_id, target_id)
        if pending is not None:
            pending.content = content
            pending.importance_score = importance
            pending.keywords = sorted(set(detection.keywords))
            pending.labels = sorted(set(detection.labels))
            pending.update_count += 1
            pending.semantic_hash = semantic_hash
            if embedding is not None:
                pending.embedding = embedding
            self.dedup.remember_mapping(owner_id, semantic_hash, target_id)
            return
        self.store.update_content(
            target_id,
            content,
            importance,
            keywords=detection.keywords,
            embedding=embedding,
            semantic_hash=semantic_hash,
            labels=detection.labels,
        )

    # Background handlers

    def _handle_memory_write(self, task: BackgroundTask) -> None:
        payload = task.payload
        kind = payload.get("kind")
        owner_id = payload["owner_id"]
        if kind == "detect":
            message = payload["message"]
            trigger = detect_explicit_trigger(message)
            if trigger:
                message = trigger["content"]
            detection = self.detector.detect(message, payload.get("history") or [])
            self._remember(owner_id, detection, apply_now=True, delay=self.config.debounce_seconds)
        elif kind == "write":
            self._write_pending(owner_id, payload["memory_id"])
        else:
            raise ValueError(f"Unknown memory_write kind: {kind!r}")

    def _write_pending(self, owner_id: str, memory_id: str) -> None:
        entry = self.dedup.get_pending(owner_id, memory_id)
        if entry is None:
            return
        try:
            if self.store.find_by_semantic_hash(owner_id, entry.semantic_hash) is not None:
                logger.debug("Memory %s already stored, dropping queued write", memory_id)
                return
            self.store.insert(entry)
        except Exception:
            self.dedup_cache.delete(dedup_cache_key(owner_id, entry.semantic_hash))
            logger.error("Dropping memory write %s for owner %s", memory_id, owner_id)
            raise
        finally:
            self.dedup.pop_pending(owner_id, memory_id)
        self.invalidator.schedule(owner_id)

    def _release_dropped_writes(self, tasks: List[BackgroundTask]) -> None:
        """Forget pending entries whose write task the circuit breaker shed.

        A later resubmission of the same fact is then decided afresh.
        """
        for task in tasks:
            if task.type != TaskType.MEMORY_WRITE or task.payload.get("kind") != "write":
                continue
            owner_id = task.payload["owner_id"]
            entry = self.dedup.pop_pending(owner_id, task.payload["memory_id"])
            if entry is None:
                continue
            self.dedup_cache.delete(dedup_cache_key(owner_id, entry.semantic_hash))
            logger.warning("Memory write %s for owner %s dropped under load", entry.id, owner_id)

    def _handle_embedding_generation(self, task: BackgroundTask) -> None:
        self.embedder.embed(task.payload["text"])

    def _handle_similarity_precompute(self, task: BackgroundTask) -> None:
        payload = task.payload
        self.similarity.store_score(payload["key"], payload["a"], payload["b"])

    def _schedule_similarity(self, a, b, key: str) -> None:
        self.queue.enqueue(
            TaskType.SIMILARITY_PRECOMPUTE, {"a": a, "b": b, "key": key}, priority=PRIORITY_SIMILARITY
        )

    # Read path

    def decide(self, owner_id: str, candidate_text: str, semantic_hash: Optional[str] = None) -> DeduplicationResult:
        if semantic_hash is None:
            semantic_hash = self.hasher.generate(candidate_text)
        return self.dedup.decide(owner_id, candidate_text, semantic_hash)

    def retrieve(self, owner_id: str, message: str, history: Sequence = ()) -> List[RelevantMemory]:
        return self.retriever.retrieve(owner_id, history, message)

    def build_system_prompt(self, owner_id: str, message: str, history: Sequence = ()) -> str:
        """System prompt with the owner's relevant memories; default persona on error."""
        try:
            key = cache_key(owner_id, message)
            cached = self.prompt_cache.get(key)
            if cached is not None:
                return cached
            memories = self.retrieve(owner_id, message, history)
            prompt = assemble_system_prompt(
                memories,
                persona=self.persona,
                top_k=self.config.prompt_top_k,
                important_threshold=self.config.important_marker_threshold,
            )
            self.prompt_cache.set(key, prompt)
            return prompt
        except Exception as e:
            logger.error("Failed to build system prompt for owner %s: %s", owner_id, e)
            return self.persona

    # Management

    def list_memories(self, owner_id: str, category=None) -> List[MemoryEntry]:
        memories = self.store.find_all_active(owner_id)
        if category is None:
            return memories
        wanted = MemoryCategory.parse(category)
        return [m for m in memories if m.category == wanted]

    def delete_memory(self, owner_id: str, memory_id: str) -> bool:
        deleted = self.store.soft_delete(owner_id, memory_id)
        if deleted:
            self.dedup.forget_owner(owner_id)
            self.invalidator.flush(owner_id)
        return deleted

    def metrics(self) -> Dict:
        warm, persistent = self.embedding_cache.size()
        return {
            "queue_length": len(self.queue),
            "processing": self.queue.processing,
            "tasks_processed": self.queue.processed,
            "tasks_failed": self.queue.failed,
            "tasks_dropped": self.queue.dropped,
            "pending_writes": self.dedup.pending_count(),
            "pending_invalidations": self.invalidator.pending_count(),
            "cache_clears": self.invalidator.clear_count,
            "embedding_provider_calls": self.embedder.provider_calls,
            "cache_sizes": {
                "embedding": warm,
                "embedding_persistent": persistent,
                "prompt": len(self.prompt_cache),
                "retrieval": len(self.retrieval_cache),
                "dedup": len(self.dedup_cache),
                "similarity": len(self.similarity_cache),
                "semantic_hash": len(self.hasher),
            },
        }

    def quality_metrics(self, owner_id: str) -> Dict:
        return memory_quality_metrics(self.store.find_all_active(owner_id))
