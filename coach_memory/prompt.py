"""Turn retrieved memories into system-prompt text."""

from typing import Sequence

from .models import RelevantMemory

DEFAULT_PERSONA = "You are a helpful AI wellness coach."

CONTEXT_WRAPPER = (
    "{persona} Consider this context about the user:\n\n"
    "{context}\n\n"
    "Use this information naturally in your responses to provide personalized guidance. "
    "Do not explicitly mention that you're referencing stored information."
)


def build_memory_context(memories: Sequence[RelevantMemory], top_k: int = 4, important_threshold: float = 0.8) -> str:
    """Bullet list of the ``top_k`` most relevant memories.

    Entries above ``important_threshold`` importance get an [Important] marker.
    """
    ranked = sorted(memories, key=lambda r: r.relevance_score, reverse=True)[:top_k]
    lines = []
    for rm in ranked:
        if rm.memory.importance_score > important_threshold:
            lines.append(f"- [Important] {rm.memory.content}")
        else:
            lines.append(f"- {rm.memory.content}")
    return "\n".join(lines)


def build_system_prompt(
    memories: Sequence[RelevantMemory],
    persona: str = DEFAULT_PERSONA,
    top_k: int = 4,
    important_threshold: float = 0.8,
) -> str:
    if not memories:
        return persona
    context = build_memory_context(memories, top_k=top_k, important_threshold=important_threshold)
    return CONTEXT_WRAPPER.format(persona=persona, context=context)
