import numpy as np

from coach_memory.config import EngineConfig
from coach_memory.models import MemoryCategory, MemoryDetection, MemoryEntry, normalize_text, validate_labels


def test_category_parse_handles_legacy_and_unknown_names():
    assert MemoryCategory.parse("food_diet") is MemoryCategory.FOOD_DIET
    assert MemoryCategory.parse("Food-Diet") is MemoryCategory.FOOD_DIET
    assert MemoryCategory.parse("dietary_restrictions") is MemoryCategory.FOOD_DIET
    assert MemoryCategory.parse("nutrition_goals") is MemoryCategory.GOALS
    assert MemoryCategory.parse("something else") is MemoryCategory.PERSONAL_CONTEXT
    assert MemoryCategory.parse(None) is MemoryCategory.PERSONAL_CONTEXT


def test_labels_are_restricted_to_the_category():
    assert validate_labels(MemoryCategory.FOOD_DIET, ["Allergy", "meal_timing", "weight-loss"]) == [
        "allergy",
        "meal-timing",
    ]
    assert MemoryDetection(True, "goals", labels=["fitness", "allergy"]).labels == ["fitness"]


def test_entry_normalizes_fields():
    entry = MemoryEntry("u1", "likes jazz", category="preferences", importance_score=1.7,
                        keywords=["jazz", "jazz"], embedding=[1, 2, 3])
    assert entry.category is MemoryCategory.PREFERENCES
    assert entry.importance_score == 1.0
    assert entry.keywords == ["jazz"]
    assert entry.embedding.dtype == np.float32
    assert entry.update_count == 1 and entry.is_active


def test_normalize_text():
    assert normalize_text("  Hello \n  World ") == "hello world"


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("MEMORY_CACHE_TTL", "60")
    monkeypatch.setenv("MEMORY_DEDUP_WINDOW_HOURS", "not-a-number")
    monkeypatch.setenv("MEMORY_DB_PATH", "/tmp/x.db")

    config = EngineConfig.from_env()

    assert config.cache_ttl_seconds == 60.0
    assert config.dedup_window_hours == 72.0
    assert config.db_path == "/tmp/x.db"
    assert config.merge_threshold == 0.6
    assert config.update_threshold == 0.4
