"""Tests for cosine/lexical similarity and the similarity engine."""

import numpy as np
import pytest

from coach_memory.models import MemoryEntry
from coach_memory.similarity import (
    SimilarityEngine,
    cosine_similarity,
    lexical_similarity,
    similarity_cache_key,
    tokenize,
)
from coach_memory.ttl_cache import TTLCache
from conftest import FakeClock


class TestCosine:
    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_degenerate_inputs_score_zero(self):
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([1.0, 2.0], [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity(None, [1.0]) == 0.0


class TestLexical:
    def test_tokenize_drops_short_words_and_punctuation(self):
        assert tokenize("I'm allergic to peanuts!") == {"allergic", "peanuts"}

    def test_peanut_paraphrase_scores_full_match(self):
        assert lexical_similarity("I'm allergic to peanuts", "I am allergic to peanuts") == pytest.approx(1.0)

    def test_partial_overlap(self):
        # A={loves, morning, runs}, B={morning, runs, daily}: 0.6*2/4 + 0.4*2/3
        score = lexical_similarity("loves morning runs", "morning runs daily")
        assert score == pytest.approx(0.6 * 0.5 + 0.4 * (2 / 3))

    def test_disjoint_or_empty(self):
        assert lexical_similarity("likes jazz music", "allergic to peanuts") == 0.0
        assert lexical_similarity("a b", "allergic to peanuts") == 0.0


def _engine(scheduled=None):
    cache = TTLCache(ttl_seconds=300, clock=FakeClock())

    def schedule(a, b, key):
        if scheduled is not None:
            scheduled.append(key)

    return SimilarityEngine(cache, schedule_precompute=schedule)


class TestSimilarityEngine:
    def test_cache_key_uses_first_ten_components(self):
        a = np.arange(20, dtype=np.float32) / 100
        b = a.copy()
        b[15] = 99.0  # beyond the first ten
        assert similarity_cache_key(a, a) == similarity_cache_key(b, a)
        assert similarity_cache_key(a, a).startswith("sim-0,10,20")

    def test_cached_similarity_miss_schedules_and_returns_none(self):
        scheduled = []
        engine = _engine(scheduled)
        a = np.array([1.0, 0.0], dtype=np.float32)
        b = np.array([1.0, 1.0], dtype=np.float32)

        assert engine.cached_similarity(a, b) is None
        assert scheduled == [similarity_cache_key(a, b)]

        engine.store_score(scheduled[0], a, b)
        assert engine.cached_similarity(a, b) == pytest.approx(1 / np.sqrt(2))
        assert len(scheduled) == 1

    def test_similarity_computes_inline_on_miss(self):
        engine = _engine()
        assert engine.similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)

    def test_best_match_prefers_vector_when_confident(self):
        engine = _engine()
        close = MemoryEntry("u1", "runs every morning", embedding=np.array([1.0, 0.1, 0.0]))
        far = MemoryEntry("u1", "likes jazz music", embedding=np.array([0.0, 0.0, 1.0]))

        best = engine.best_match("something", np.array([1.0, 0.0, 0.0]), [far, close])

        assert best.memory is close
        assert best.method == "vector"
        assert best.similarity > 0.9

    def test_best_match_falls_back_to_lexical(self):
        engine = _engine()
        peanuts = MemoryEntry("u1", "I'm allergic to peanuts", embedding=np.array([0.0, 1.0]))
        jazz = MemoryEntry("u1", "likes jazz music")

        best = engine.best_match("I am allergic to peanuts", np.array([1.0, 0.0]), [jazz, peanuts])

        assert best.memory is peanuts
        assert best.method == "lexical"
        assert best.similarity == pytest.approx(1.0)

    def test_lexical_requires_minimum_score(self):
        engine = _engine()
        memory = MemoryEntry("u1", "likes jazz music")
        assert engine.best_match("allergic to peanuts", None, [memory]) is None
        assert engine.best_match("anything", None, []) is None


def test_inline_similarity_caches_without_scheduling():
    scheduled = []
    engine = _engine(scheduled)
    a = np.array([1.0, 0.0], dtype=np.float32)
    b = np.array([1.0, 1.0], dtype=np.float32)

    assert engine.similarity(a, b) == pytest.approx(1 / np.sqrt(2))
    assert scheduled == []
    assert engine.cached_similarity(a, b) == pytest.approx(1 / np.sqrt(2))
    assert scheduled == []
