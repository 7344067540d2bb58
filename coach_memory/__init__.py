from .config import EngineConfig
from .engine import MemoryEngine, ProcessResult
from .models import (
    DedupAction,
    DeduplicationResult,
    MemoryCategory,
    MemoryDetection,
    MemoryEntry,
    RelevantMemory,
    TaskType,
)
from .store import MemoryStore, SQLiteMemoryStore, StoreError
from .embeddings import EmbeddingError, EmbeddingProvider, MockEmbeddingProvider

__all__ = [
    "EngineConfig",
    "MemoryEngine",
    "ProcessResult",
    "DedupAction",
    "DeduplicationResult",
    "MemoryCategory",
    "MemoryDetection",
    "MemoryEntry",
    "RelevantMemory",
    "TaskType",
    "MemoryStore",
    "SQLiteMemoryStore",
    "StoreError",
    "EmbeddingError",
    "EmbeddingProvider",
    "MockEmbeddingProvider",
]
