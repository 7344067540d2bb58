"""Deciding whether a message holds something worth remembering.

Three layers, cheapest first:
  - explicit triggers ("remember that ...", "don't forget ...")
  - keyword patterns for goals, constraints, preferences and health
  - a language model asked for a structured JSON verdict

Every positive verdict goes through ``validate_memory_content`` before it can
reach deduplication.
"""

import os
import re
from typing import Dict, List, Optional, Sequence, Tuple

import requests

from .logging_config import get_logger
from .models import MemoryCategory, MemoryDetection

logger = get_logger(__name__)

EXPLICIT_TRIGGER_CONFIDENCE = 0.95

_EXPLICIT_TRIGGERS = [
    re.compile(r"make\s+sure\s+(?:you\s+)?remember\s+(.+)", re.IGNORECASE),
    re.compile(r"remember\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"save\s+(?:this\s+)?(?:to\s+memory\s*:?\s*)?(.+)", re.IGNORECASE),
    re.compile(r"don'?t\s+forget\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"keep\s+in\s+mind\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"note\s+(?:that\s+)?(.+)", re.IGNORECASE),
]

_PLACEHOLDER = re.compile(r"\b(?:undefined|null)\b|N/A")

_NONSENSICAL = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"eating water",
        r"drinking food",
        r"sleeping exercise",
        r"running sleep",
        r"breathing exercise.*food",
        r"workout.*water.*drink",
    )
]

_FOOD_NONSENSICAL = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"enjoys eating (?:water|air|nothing)",
        r"likes drinking (?:solid|food)",
        r"prefers (?:impossible|contradictory)",
    )
]

# Checked in order; the first group with a hit decides the category.
_MEMORY_PATTERNS: Sequence[Tuple[str, Sequence[str], MemoryCategory, float]] = (
    ("goals", ("want to", "goal is", "trying to", "hope to", "plan to"), MemoryCategory.GOALS, 0.9),
    ("preferences", ("prefer", "like", "love", "hate", "dislike", "enjoy"), MemoryCategory.PREFERENCES, 0.6),
    ("constraints", ("cannot", "can't", "allergic", "avoid", "restrict"), MemoryCategory.FOOD_DIET, 0.8),
    ("health", ("weight", "exercise", "workout", "diet", "calories", "steps"), MemoryCategory.PERSONAL_CONTEXT, 0.6),
)

DETECTION_PROMPT = """Analyze this wellness coaching conversation message and determine if it contains information worth remembering for future coaching sessions.

Look for:
1. Food and diet information (allergies, restrictions, dietary preferences, meal timing) - category: "food_diet"
2. Goals (weight loss, muscle gain, nutrition or fitness targets) - category: "goals"
3. Personal context (health conditions, medical history, lifestyle, physical limitations) - category: "personal_context"
4. General and workout preferences - category: "preferences"
5. Instructions for how the coach should behave or communicate - category: "instructions"
6. Corrections to previous information

Message: "{message}"

Previous context: {history}

Allowed labels per category:
- food_diet: allergy, preference, restriction, dangerous, mild, meal-timing
- personal_context: background, health-history, lifestyle, medical, physical-limitation
- goals: weight-loss, muscle-gain, nutrition, fitness, target, macro
- preferences: general, workout, environment
- instructions: behavior, communication, reminder

Respond with JSON:
{{
    "shouldRemember": boolean,
    "category": "food_diet|goals|personal_context|preferences|instructions",
    "importance": 0.0-1.0,
    "extractedInfo": "clean version of the information to remember",
    "labels": ["label1", ...],
    "keywords": ["keyword1", "keyword2", ...],
    "reasoning": "why this should/shouldn't be remembered"
}}"""


def validate_memory_content(content: str, category=MemoryCategory.PERSONAL_CONTEXT) -> Tuple[bool, str]:
    """Reject content that is too short, a placeholder, nonsensical or repetitive."""
    if not content or len(content.strip()) < 5:
        return False, "content too short"

    if _PLACEHOLDER.search(content):
        return False, "placeholder content"

    category = MemoryCategory.parse(category)
    if category in (MemoryCategory.FOOD_DIET, MemoryCategory.PREFERENCES):
        if any(p.search(content) for p in _FOOD_NONSENSICAL):
            return False, "nonsensical food preference"

    if any(p.search(content) for p in _NONSENSICAL):
        return False, "nonsensical content"

    words = content.lower().split()
    if len(words) > 3 and len(set(words)) / len(words) < 0.5:
        return False, "overly repetitive content"

    return True, "ok"


def detect_explicit_trigger(message: str) -> Optional[Dict]:
    """Return {"type", "content", "confidence"} for an explicit save request."""
    for trigger in _EXPLICIT_TRIGGERS:
        match = trigger.search(message or "")
        if match:
            content = match.group(1).strip()
            if content:
                return {
                    "type": "explicit_save",
                    "content": content,
                    "confidence": EXPLICIT_TRIGGER_CONFIDENCE,
                }
    return None


def extract_keywords(message: str, limit: int = 5) -> List[str]:
    keywords = []
    for word in (message or "").split():
        if len(word) <= 3:
            continue
        cleaned = re.sub(r"[^\w]", "", word.lower())
        if cleaned and cleaned not in keywords:
            keywords.append(cleaned)
    return keywords[:limit]


def detect_memory_worthy_fast(message: str) -> MemoryDetection:
    """Keyword-pattern detection; no network."""
    text = (message or "").lower()
    for name, patterns, category, importance in _MEMORY_PATTERNS:
        if any(p in text for p in patterns):
            labels = []
            if name == "constraints":
                labels = ["allergy"] if "allerg" in text else ["restriction"]
            return MemoryDetection(
                should_remember=True,
                category=category,
                importance=importance,
                extracted_info=(message or "").strip(),
                labels=labels,
                keywords=extract_keywords(message),
                reasoning=f"matched {name} pattern",
            )
    return MemoryDetection(
        should_remember=False,
        importance=0.3,
        extracted_info=(message or "").strip(),
        keywords=extract_keywords(message),
        reasoning="no memory pattern matched",
    )


def _format_history(history: Sequence[Dict]) -> str:
    lines = []
    for m in list(history or [])[-3:]:
        if isinstance(m, dict):
            lines.append(f"{m.get('role', 'user')}: {m.get('content', '')}")
        else:
            lines.append(f"user: {m}")
    return "\n".join(lines)


class MemoryDetector:
    """Asks a language model whether a message is worth remembering.

    Backend comes from AI_BACKEND ("openai" by default, or "ollama"). When
    AI_MEMORY_OFFLINE is set the keyword detector is used instead so tests
    and offline runs make no network calls.
    """

    def __init__(self, backend: Optional[str] = None, model: Optional[str] = None, client=None, timeout: float = 45.0):
        if backend is None:
            backend = "offline" if os.getenv("AI_MEMORY_OFFLINE") else os.getenv("AI_BACKEND", "openai")
        self.backend = backend.lower()
        self.timeout = timeout
        self._client = client
        if self.backend == "ollama":
            self.model = model or os.getenv("MEMORY_DETECTION_MODEL") or os.getenv("OLLAMA_MODEL") or "llama3.2:3b"
        else:
            self.model = model or os.getenv("MEMORY_DETECTION_MODEL", "gpt-4o-mini")

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=os.getenv("OPENAI_API_KEY"), timeout=self.timeout)
        return self._client

    def _ask_openai(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.1,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or "{}"

    def _ask_ollama(self, prompt: str) -> str:
        base_url = os.getenv("OLLAMA_URL", "http://localhost:11434").rstrip("/")
        resp = requests.post(
            f"{base_url}/api/chat",
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": False,
                "format": "json",
                "options": {"temperature": 0.1},
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json().get("message", {}).get("content", "") or "{}"

    def detect(self, message: str, history: Sequence[Dict] = ()) -> MemoryDetection:
        """Return a validated verdict; any failure means "don't remember"."""
        try:
            if self.backend == "offline":
                detection = detect_memory_worthy_fast(message)
            else:
                prompt = DETECTION_PROMPT.format(message=message, history=_format_history(history))
                if self.backend == "ollama":
                    raw = self._ask_ollama(prompt)
                else:
                    raw = self._ask_openai(prompt)
                detection = MemoryDetection.from_llm_payload(raw)
        except Exception as e:
            logger.error("Memory detection failed (%s backend): %s", self.backend, e)
            return MemoryDetection.rejected("Error in AI processing")

        if not detection.should_remember:
            return detection

        ok, reason = validate_memory_content(detection.extracted_info, detection.category)
        if not ok:
            logger.info("Rejected detected memory (%s): %r", reason, detection.extracted_info[:80])
            return MemoryDetection.rejected(f"validation failed: {reason}")
        return detection
