from coach_memory import EngineConfig, MemoryEngine
from coach_memory.detection import detect_explicit_trigger
from coach_memory.logging_config import setup_logging
from coach_memory.models import DedupAction
import os
import shutil
from openai import OpenAI
from dotenv import load_dotenv

from datetime import datetime
from typing import Dict, List, Optional, Sequence

# Load API key from .env file (create this file with: OPENAI_API_KEY=your_key_here)
load_dotenv()

# Lazily construct the OpenAI client so tests can run without a real API key.
_client = None


def get_client() -> OpenAI:
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY")
        # When running in offline/test mode, allow the client to be omitted.
        if not api_key and not os.getenv("AI_MEMORY_OFFLINE"):
            raise RuntimeError("OPENAI_API_KEY must be set or AI_MEMORY_OFFLINE enabled")
        _client = OpenAI(api_key=api_key, timeout=EngineConfig.from_env().provider_timeout_seconds)
    return _client


def generate_response(query: str, system_prompt: str, history: Sequence[Dict] = ()) -> str:
    """Call the LLM with the memory-aware system prompt; offline mode for tests."""
    if os.getenv("AI_MEMORY_OFFLINE"):
        return f"[offline-test] Prompt of length {len(system_prompt)} for: {query[:50]}"

    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(list(history)[-6:])
    messages.append({"role": "user", "content": query})

    try:
        backend = os.getenv("AI_BACKEND", "openai").lower()

        if backend == "ollama":
            # Priority: explicit OLLAMA_MODEL, then AI_MODEL, then a sensible local default.
            model = os.getenv("OLLAMA_MODEL") or os.getenv("AI_MODEL") or "llama3.2:3b"
        else:
            model = os.getenv("AI_MODEL", "gpt-4o-mini")

        try:
            temperature = float(os.getenv("AI_TEMPERATURE", "0.2"))
        except ValueError:
            temperature = 0.2

        if backend == "ollama":
            import requests

            base_url = os.getenv("OLLAMA_URL", "http://localhost:11434").rstrip("/")
            resp = requests.post(
                f"{base_url}/api/chat",
                json={"model": model, "messages": messages, "stream": False},
                timeout=EngineConfig.from_env().provider_timeout_seconds,
            )
            resp.raise_for_status()
            # Ollama's /api/chat returns a single message object when stream=False.
            return resp.json().get("message", {}).get("content", "")

        response = get_client().chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=500,
        )
        return response.choices[0].message.content

    except Exception as e:
        return f"Error calling LLM: {str(e)}"


def print_memories(engine: MemoryEngine, user_id: str, category: Optional[str] = None):
    memories = engine.list_memories(user_id, category=category)
    print("\n📋 Memories:")
    if not memories:
        print("  (none)")
    for m in memories:
        print(f"  [{m.category.value}] {m.content} (importance: {m.importance_score:.2f}, id: {m.id[:8]})")


def forget_matching(engine: MemoryEngine, user_id: str, text: str) -> int:
    needle = text.lower()
    deleted = 0
    for m in engine.list_memories(user_id):
        if needle in m.content.lower() and engine.delete_memory(user_id, m.id):
            deleted += 1
    return deleted


def print_stats(engine: MemoryEngine, user_id: str):
    stats = engine.metrics()
    quality = engine.quality_metrics(user_id)

    print("\n📊 Stats")
    print(f"  Current user_id: {user_id}")
    print(f"  Active memories: {quality['total_memories']}")
    print(f"  Average importance: {quality['average_importance']:.2f}")
    print(f"  Potential duplicates: {quality['potential_duplicates']} (rate {quality['duplicate_rate']:.2f})")
    if quality["category_distribution"]:
        dist = ", ".join(f"{k}={v}" for k, v in sorted(quality["category_distribution"].items()))
        print(f"  Categories: {dist}")
    print(f"  Quality score: {quality['quality_score']:.2f}")
    print(f"  Queue: {stats['queue_length']} waiting, {stats['tasks_processed']} processed, "
          f"{stats['tasks_failed']} failed, {stats['tasks_dropped']} dropped")
    sizes = stats["cache_sizes"]
    print("  Caches: " + ", ".join(f"{k}={v}" for k, v in sizes.items()))
    print(f"  Embedding provider calls: {stats['embedding_provider_calls']}")


def print_explain(engine: MemoryEngine, user_id: str, query: str, history: Sequence[Dict]):
    results = engine.retrieve(user_id, query, history)

    print("\n🧭 Explain")
    print(f"  Query: {query}")
    print(f"  Embedding backend: {os.getenv('AI_EMBEDDING_BACKEND', 'mock')}")
    print("\n  Memories used:")
    if results:
        for r in results:
            print(f"    - ({r.reason}, rel={r.relevance_score:.3f}, imp={r.memory.importance_score:.2f}) "
                  f"{r.memory.content}")
    else:
        print("    - (none)")

    cfg = engine.config
    print("\n  Thresholds:")
    print(f"    - similarity_threshold: {cfg.retrieval_similarity_threshold}")
    print(f"    - high_importance_threshold: {cfg.high_importance_threshold}")
    print(f"    - retrieval_top_k: {cfg.retrieval_top_k}")
    print(f"    - prompt_top_k: {cfg.prompt_top_k}")


def interactive_chat():
    """Run an interactive coaching session with memory"""
    setup_logging(os.getenv("MEMORY_LOG_LEVEL", "WARNING"))

    print("🧠 Coach Memory - Interactive Mode")
    print("Commands: /help for a list of commands")
    print("-" * 50)

    config = EngineConfig.from_env()
    engine = MemoryEngine(config).start()

    # Simple user ID (in real app, this comes from auth)
    user_id = "interactive_user"
    history: List[Dict] = []

    while True:
        try:
            user_input = input("\nYou: ").strip()
        except EOFError:
            print("Saving session...")
            break
        except KeyboardInterrupt:
            print("\nUse /quit to exit properly")
            continue

        try:
            if not user_input:
                continue

            if user_input.lower() in {"/help", "help", "?", "/?"}:
                print("\nAvailable commands:")
                print("  /help              Show this help message")
                print("  /quit              Finish background work and exit")
                print("  /memories [cat]    Show active memories, optionally for one category")
                print("  /forget <text>     Forget memories whose content contains <text>")
                print("  /stats             Show memory quality and engine stats")
                print("  /explain <text>    Explain which memories would be used for a message")
                print("  /save              Snapshot the memory DB next to it with a timestamp")
                print("  /load <file>       Load a saved DB file into the active session")
                print("  (Anything else)    Is treated as a normal message to the coach")
                print("\nHow to teach me explicit memories:")
                print("  - 'remember that I'm allergic to peanuts'")
                print("  - 'don't forget that I train in the mornings'")
                print("  - 'keep in mind I want to lose 5kg'")
                print("Other facts (goals, preferences, constraints) are picked up in the background.")
                continue

            if user_input.lower() == "/quit":
                print("Saving session...")
                break

            elif user_input.lower().startswith("/memories"):
                category = user_input[len("/memories"):].strip() or None
                print_memories(engine, user_id, category)
                continue

            elif user_input.lower().startswith("/forget "):
                to_forget = user_input[8:].strip()
                deleted = forget_matching(engine, user_id, to_forget)
                print(f"Forgot {deleted} memory/ies matching '{to_forget}'")
                continue

            elif user_input.lower() == "/stats":
                print_stats(engine, user_id)
                continue

            elif user_input.lower().startswith("/explain"):
                query = user_input[len("/explain"):].strip()
                if not query:
                    print("Usage: /explain <text>")
                    continue
                print_explain(engine, user_id, query, history)
                continue

            elif user_input.lower() == "/save":
                base, ext = os.path.splitext(config.db_path)
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                filename = f"{base}_{timestamp}{ext or '.db'}"
                try:
                    shutil.copy(config.db_path, filename)
                    print(f"Saved memory database to {filename}")
                except Exception as e:
                    print(f"Error saving database: {e}")
                continue

            elif user_input.lower().startswith("/load"):
                parts = user_input.split(maxsplit=1)
                if len(parts) == 1:
                    print("Usage: /load <file>")
                    continue

                filename = parts[1].strip()
                # If a bare filename is given, look next to the active DB
                if not os.path.isabs(filename) and not os.path.dirname(filename):
                    filename = os.path.join(os.path.dirname(config.db_path), filename)

                if not os.path.exists(filename):
                    print(f"File not found: {filename}")
                    continue

                try:
                    engine.stop()
                    shutil.copy(filename, config.db_path)
                    # Fresh engine so no cached state from the old DB survives
                    engine = MemoryEngine(config).start()
                    print(f"Loaded memory database from {filename}")
                except Exception as e:
                    print(f"Error loading database: {e}")
                continue

            result = engine.process_message(user_id, user_input, history)

            # Pure "remember ..." commands are acknowledged directly without the LLM.
            trigger = detect_explicit_trigger(user_input)
            if trigger and "?" not in user_input:
                decision = result.explicit
                if decision is None:
                    response = "I couldn't save that, it doesn't look like something I can remember."
                elif decision.action == DedupAction.SKIP:
                    response = f"I already know that: {trigger['content']}"
                else:
                    response = f"Got it, I'll remember: {trigger['content']}"
                print(f"Assistant: {response}")
                history.append({"role": "user", "content": user_input})
                history.append({"role": "assistant", "content": response})
                continue

            system_prompt = engine.build_system_prompt(user_id, user_input, history)
            response = generate_response(user_input, system_prompt, history)
            history.append({"role": "user", "content": user_input})
            history.append({"role": "assistant", "content": response})

            print(f"Assistant: {response}")

        except KeyboardInterrupt:
            print("\nUse /quit to exit properly")
        except Exception as e:
            print(f"Error: {e}")

    engine.stop()


if __name__ == "__main__":
    interactive_chat()
