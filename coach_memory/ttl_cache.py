"""Time-expiring key/value cache.

Entries carry their insertion time; freshness is checked lazily on read and
``sweep()`` drops everything that has expired.
"""

import hashlib
import threading
import time
from typing import Any, Callable, Dict, Hashable, Tuple

from .models import normalize_text


def cache_key(owner_id: str, text: str) -> Tuple[str, str]:
    """Derive an (owner, md5 of normalized text) cache key."""
    digest = hashlib.md5(normalize_text(text).encode()).hexdigest()
    return (owner_id, digest)


def owned_by(owner_id: str) -> Callable[[Hashable], bool]:
    """Predicate for ``delete_where`` matching one owner's tuple keys."""
    return lambda key: isinstance(key, tuple) and len(key) == 2 and key[0] == owner_id


class TTLCache:
    """Key -> (value, inserted_at) map with a uniform time-to-live."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _fresh(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at < self.ttl_seconds

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, inserted_at = entry
            if not self._fresh(inserted_at, self._clock()):
                del self._entries[key]
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Remove every entry whose key matches ``predicate``."""
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def sweep(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, ts) in self._entries.items() if not self._fresh(ts, now)]
            for k in expired:
                del self._entries[k]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def __len__(self) -> int:
        return len(self._entries)
