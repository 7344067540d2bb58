"""Engine configuration: all thresholds and tunables in one place.

Values default to the reference design and can be overridden through
environment variables (``EngineConfig.from_env``). The CLI loads a ``.env``
file first so the same variables can live there.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class EngineConfig:
    """Tunables for the memory engine."""

    # Caches
    cache_ttl_seconds: float = 5 * 60
    sweep_interval_seconds: float = 30 * 60

    # Background queue
    drain_interval_seconds: float = 5.0
    queue_high_water: int = 20
    queue_hard_cap: int = 10
    stale_task_seconds: float = 60.0
    low_priority_max: int = 2

    # Deduplication
    dedup_window_hours: float = 72.0
    dedup_window_limit: int = 20
    merge_threshold: float = 0.6
    update_threshold: float = 0.4
    vector_low_confidence: float = 0.3
    lexical_min_score: float = 0.2

    # Retrieval
    retrieval_similarity_threshold: float = 0.5
    high_importance_threshold: float = 0.7
    retrieval_top_k: int = 8
    history_window: int = 3

    # Prompt assembly
    prompt_top_k: int = 4
    important_marker_threshold: float = 0.8

    # Debounced invalidation
    debounce_seconds: float = 2.0
    explicit_debounce_seconds: float = 0.5

    # Providers
    provider_timeout_seconds: float = 45.0
    embedding_dim: int = 384

    # Storage
    db_path: str = os.path.join("data", "coach_memory.db")
    embedding_cache_db: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            cache_ttl_seconds=_env_float("MEMORY_CACHE_TTL", defaults.cache_ttl_seconds),
            drain_interval_seconds=_env_float("MEMORY_DRAIN_INTERVAL", defaults.drain_interval_seconds),
            dedup_window_hours=_env_float("MEMORY_DEDUP_WINDOW_HOURS", defaults.dedup_window_hours),
            provider_timeout_seconds=_env_float("AI_PROVIDER_TIMEOUT", defaults.provider_timeout_seconds),
            embedding_dim=_env_int("MEMORY_EMBEDDING_DIM", defaults.embedding_dim),
            db_path=os.getenv("MEMORY_DB_PATH", defaults.db_path),
            embedding_cache_db=os.getenv("EMBEDDING_CACHE_DB") or None,
            log_level=os.getenv("MEMORY_LOG_LEVEL", defaults.log_level),
        )
