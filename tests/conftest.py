"""Test configuration and helpers.

Ensures the project root (where cli.py and the coach_memory package live) is on
sys.path so tests can reliably import them regardless of how pytest is invoked,
and provides deterministic clocks and timers for cache and debounce tests.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Project root is the parent of the tests/ directory.
PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Prepend to sys.path so it takes precedence over any installed packages.
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from coach_memory import EngineConfig, MemoryEngine, MockEmbeddingProvider  # noqa: E402
from coach_memory.detection import MemoryDetector  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        self.timers.append(timer)
        return timer

    def live(self):
        return [t for t in self.timers if t.started and not t.cancelled]

    def fire_all(self):
        for timer in self.live():
            timer.fire()


class CountingProvider(MockEmbeddingProvider):
    """Mock embeddings that count calls and can be switched to fail."""

    def __init__(self, dim: int = 384):
        super().__init__(dim)
        self.calls = 0
        self.fail = False

    def embed(self, text):
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        return super().embed(text)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def provider():
    return CountingProvider()


@pytest.fixture
def engine(tmp_path, clock, timers, provider, monkeypatch):
    monkeypatch.delenv("EMBEDDING_CACHE_DB", raising=False)
    config = EngineConfig(db_path=str(tmp_path / "memory_test.db"))
    eng = MemoryEngine(
        config,
        embedding_provider=provider,
        detector=MemoryDetector(backend="offline"),
        clock=clock,
        timer_factory=timers,
        background_usage_logging=False,
    )
    yield eng
    eng.invalidator.cancel_all()
