#!/usr/bin/env python3
"""Walkthrough of the MemoryEngine write and read paths.

This script demonstrates:
- Deduplication of near-identical facts (create, then merge)
- Background detection through the task queue
- Contextual retrieval with importance-floor inclusion
- Embedding cache hits for repeated text
"""

import os
import sys
import tempfile
import time
from pathlib import Path

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Offline: pattern-based detection, mock embeddings
os.environ.setdefault("AI_MEMORY_OFFLINE", "1")

from coach_memory import EngineConfig, MemoryDetection, MemoryEngine
from coach_memory.logging_config import setup_logging


def demo_deduplication(engine: MemoryEngine, user_id: str):
    print("\n" + "=" * 60)
    print("1. DEDUPLICATION")
    print("=" * 60)

    for text in ["I'm allergic to peanuts", "I am allergic to peanuts", "I'm allergic to peanuts"]:
        detection = MemoryDetection(True, "food-diet", 0.8, text, labels=["allergy"])
        start = time.time()
        decision = engine.remember(user_id, detection, explicit=True)
        elapsed = time.time() - start
        print(f"\n'{text}'")
        print(f"  -> {decision.action.value} (confidence {decision.confidence:.2f}) in {elapsed*1000:.2f}ms")
        print(f"     {decision.reasoning}")

    print(f"\n✓ Active memories: {len(engine.list_memories(user_id))}")


def demo_background_detection(engine: MemoryEngine, user_id: str):
    print("\n" + "=" * 60)
    print("2. BACKGROUND DETECTION")
    print("=" * 60)

    messages = [
        "My goal is to lose weight before summer",
        "I really enjoy jazz music while cooking",
        "What's the weather today?",
    ]
    for message in messages:
        engine.process_message(user_id, message)
    print(f"\nQueued {len(engine.queue)} tasks; draining...")
    start = time.time()
    processed = engine.queue.drain_all()
    print(f"✓ Processed {processed} tasks in {(time.time() - start)*1000:.2f}ms")

    for m in engine.list_memories(user_id):
        print(f"  [{m.category.value}] {m.content} (importance {m.importance_score:.2f})")


def demo_retrieval(engine: MemoryEngine, user_id: str):
    print("\n" + "=" * 60)
    print("3. CONTEXTUAL RETRIEVAL")
    print("=" * 60)

    for query in ["what should I eat for dinner", "what do you remember about me?"]:
        start = time.time()
        results = engine.retrieve(user_id, query)
        elapsed = time.time() - start
        print(f"\nQuery: '{query}' ({elapsed*1000:.2f}ms)")
        for r in results:
            print(f"  - ({r.reason}, rel={r.relevance_score:.2f}) {r.memory.content}")

    print("\nSystem prompt:")
    print(engine.build_system_prompt(user_id, "what should I eat for dinner"))


def demo_embedding_cache(engine: MemoryEngine):
    print("\n" + "=" * 60)
    print("4. EMBEDDING CACHE")
    print("=" * 60)

    before = engine.embedder.provider_calls
    engine.embedder.embed("Plan a high protein breakfast")
    engine.embedder.embed("  plan a HIGH protein breakfast ")
    print(f"\n✓ Two lookups, {engine.embedder.provider_calls - before} provider call(s)")


def main():
    setup_logging("WARNING")
    with tempfile.TemporaryDirectory() as tmp:
        config = EngineConfig(db_path=os.path.join(tmp, "demo.db"))
        engine = MemoryEngine(config, background_usage_logging=False)
        user_id = "demo_user"
        try:
            demo_deduplication(engine, user_id)
            demo_background_detection(engine, user_id)
            demo_retrieval(engine, user_id)
            demo_embedding_cache(engine)
            print("\nMetrics:", engine.metrics())
        finally:
            engine.stop()


if __name__ == "__main__":
    main()
