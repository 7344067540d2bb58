"""Memory quality report for one owner's active memories."""

from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

from .models import MemoryEntry
from .similarity import jaccard_similarity

DUPLICATE_JACCARD = 0.7


def count_potential_duplicates(memories: Sequence[MemoryEntry], threshold: float = DUPLICATE_JACCARD) -> int:
    """Count entries whose word-set Jaccard with an earlier entry exceeds ``threshold``."""
    duplicates = set()
    for i, memory in enumerate(memories):
        if memory.id in duplicates:
            continue
        for candidate in memories[i + 1:]:
            if candidate.id in duplicates:
                continue
            if jaccard_similarity(memory.content, candidate.content) > threshold:
                duplicates.add(candidate.id)
    return len(duplicates)


def category_balance(distribution: Dict[str, int]) -> float:
    """1.0 for a perfectly even spread across the categories present."""
    counts = list(distribution.values())
    if not counts:
        return 0.0
    expected = sum(counts) / len(counts)
    variance = sum((c - expected) ** 2 for c in counts) / len(counts)
    return max(0.0, 1 - variance / (expected * expected))


def memory_quality_metrics(memories: Sequence[MemoryEntry], now: Optional[datetime] = None) -> Dict:
    now = now or datetime.now()
    total = len(memories)
    if total == 0:
        return {
            "total_memories": 0,
            "average_importance": 0.0,
            "category_distribution": {},
            "potential_duplicates": 0,
            "duplicate_rate": 0.0,
            "age_distribution": {"last_week": 0, "last_month": 0, "last_year": 0, "older": 0},
            "quality_score": 0.0,
        }

    average_importance = sum(m.importance_score for m in memories) / total
    distribution = dict(Counter(m.category.value for m in memories))
    duplicates = count_potential_duplicates(memories)
    duplicate_rate = duplicates / total

    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)
    year_ago = now - timedelta(days=365)
    ages = {"last_week": 0, "last_month": 0, "last_year": 0, "older": 0}
    for m in memories:
        if m.created_at >= week_ago:
            ages["last_week"] += 1
        elif m.created_at >= month_ago:
            ages["last_month"] += 1
        elif m.created_at >= year_ago:
            ages["last_year"] += 1
        else:
            ages["older"] += 1

    avg_length = sum(len(m.content) for m in memories) / total
    length_score = min(1.0, max(0.0, 1 - abs(avg_length - 100) / 200))
    quality_score = (
        (1 - duplicate_rate) * 0.4
        + min(1.0, average_importance) * 0.3
        + category_balance(distribution) * 0.2
        + length_score * 0.1
    )

    return {
        "total_memories": total,
        "average_importance": average_importance,
        "category_distribution": distribution,
        "potential_duplicates": duplicates,
        "duplicate_rate": duplicate_rate,
        "age_distribution": ages,
        "quality_score": round(quality_score, 4),
    }
