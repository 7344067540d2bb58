"""Core data types: memory entries, categories, decisions and background tasks."""

import json
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from .logging_config import get_logger

logger = get_logger(__name__)


class MemoryCategory(str, Enum):
    PREFERENCES = "preferences"
    PERSONAL_CONTEXT = "personal_context"
    INSTRUCTIONS = "instructions"
    FOOD_DIET = "food_diet"
    GOALS = "goals"

    @classmethod
    def parse(cls, value: Any) -> "MemoryCategory":
        """Map a raw category string (including legacy names) onto the enum.

        Unknown values fall back to PERSONAL_CONTEXT.
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            pass
        return _LEGACY_CATEGORIES.get(key, cls.PERSONAL_CONTEXT)


# Categories from the older 8-category scheme
_LEGACY_CATEGORIES = {
    "preference": MemoryCategory.PREFERENCES,
    "personal_info": MemoryCategory.PERSONAL_CONTEXT,
    "context": MemoryCategory.PERSONAL_CONTEXT,
    "background": MemoryCategory.PERSONAL_CONTEXT,
    "instruction": MemoryCategory.INSTRUCTIONS,
    "food_preferences": MemoryCategory.FOOD_DIET,
    "dietary_restrictions": MemoryCategory.FOOD_DIET,
    "meal_patterns": MemoryCategory.FOOD_DIET,
    "constraints": MemoryCategory.FOOD_DIET,
    "nutrition_goals": MemoryCategory.GOALS,
    "health": MemoryCategory.PERSONAL_CONTEXT,
}

CATEGORY_LABELS: Dict[MemoryCategory, frozenset] = {
    MemoryCategory.FOOD_DIET: frozenset(
        {"allergy", "preference", "restriction", "dangerous", "mild", "meal-timing"}
    ),
    MemoryCategory.PERSONAL_CONTEXT: frozenset(
        {"background", "health-history", "lifestyle", "medical", "physical-limitation"}
    ),
    MemoryCategory.GOALS: frozenset(
        {"weight-loss", "muscle-gain", "nutrition", "fitness", "target", "macro"}
    ),
    MemoryCategory.PREFERENCES: frozenset({"general", "workout", "environment"}),
    MemoryCategory.INSTRUCTIONS: frozenset({"behavior", "communication", "reminder"}),
}


def validate_labels(category: MemoryCategory, labels: Iterable[str]) -> List[str]:
    """Keep only labels allowed for the category, normalized and sorted."""
    allowed = CATEGORY_LABELS[category]
    kept = set()
    for label in labels or []:
        norm = str(label).strip().lower().replace("_", "-")
        if norm in allowed:
            kept.add(norm)
        else:
            logger.debug("Dropping label %r not allowed for %s", label, category.value)
    return sorted(kept)


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def new_memory_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MemoryEntry:
    """The durable unit of remembered knowledge."""

    owner_id: str
    content: str
    category: MemoryCategory = MemoryCategory.PERSONAL_CONTEXT
    importance_score: float = 0.5
    keywords: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    embedding: Optional[np.ndarray] = None
    semantic_hash: str = ""
    id: str = field(default_factory=new_memory_id)
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    update_count: int = 1
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.category = MemoryCategory.parse(self.category)
        self.importance_score = min(1.0, max(0.0, float(self.importance_score)))
        self.keywords = sorted(set(self.keywords or []))
        self.labels = sorted(set(self.labels or []))
        if self.embedding is not None:
            self.embedding = np.asarray(self.embedding, dtype=np.float32)


class DedupAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MERGE = "merge"
    SKIP = "skip"


@dataclass
class DeduplicationResult:
    action: DedupAction
    confidence: float
    reasoning: str
    target_memory_id: Optional[str] = None


class TaskType(str, Enum):
    MEMORY_WRITE = "memory_write"
    EMBEDDING_GENERATION = "embedding_generation"
    SIMILARITY_PRECOMPUTE = "similarity_precompute"


@dataclass
class BackgroundTask:
    type: TaskType
    payload: Dict[str, Any]
    priority: int = 1
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class RelevantMemory:
    memory: MemoryEntry
    relevance_score: float
    reason: str


@dataclass
class MemoryDetection:
    """Structured verdict from the memory-worthiness layer."""

    should_remember: bool
    category: MemoryCategory = MemoryCategory.PERSONAL_CONTEXT
    importance: float = 0.5
    extracted_info: str = ""
    labels: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    reasoning: str = ""

    def __post_init__(self):
        self.category = MemoryCategory.parse(self.category)
        self.importance = min(1.0, max(0.0, float(self.importance)))
        self.labels = validate_labels(self.category, self.labels)

    @classmethod
    def rejected(cls, reasoning: str) -> "MemoryDetection":
        return cls(should_remember=False, importance=0.0, reasoning=reasoning)

    @classmethod
    def from_llm_payload(cls, payload: Any) -> "MemoryDetection":
        """Parse a language model's JSON verdict.

        Accepts a dict or raw text that may be wrapped in markdown fences.
        Raises ValueError when no JSON object can be found.
        """
        if isinstance(payload, str):
            text = re.sub(r"```(?:json)?\s*", "", payload).strip()
            match = re.search(r"\{.*\}", text, re.DOTALL)
            if not match:
                raise ValueError(f"No JSON object in model output: {text[:200]}")
            payload = json.loads(match.group(0))
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected model output type: {type(payload).__name__}")

        return cls(
            should_remember=bool(payload.get("shouldRemember", False)),
            category=payload.get("category") or MemoryCategory.PERSONAL_CONTEXT,
            importance=payload.get("importance") or 0.5,
            extracted_info=str(payload.get("extractedInfo") or "").strip(),
            labels=list(payload.get("labels") or []),
            keywords=[str(k) for k in payload.get("keywords") or []],
            reasoning=str(payload.get("reasoning") or ""),
        )
