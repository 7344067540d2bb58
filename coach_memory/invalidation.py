"""Per-owner debounced cache invalidation.

A burst of writes for one owner collapses into a single clear of that
owner's retrieval and prompt cache entries once things go quiet.
"""

import threading
from typing import Callable, Dict, Iterable, Optional, Tuple

from .logging_config import get_logger
from .ttl_cache import TTLCache, owned_by

logger = get_logger(__name__)


class DebouncedInvalidator:
    def __init__(
        self,
        caches: Iterable[TTLCache],
        default_delay: float = 2.0,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.caches = list(caches)
        self.default_delay = default_delay
        self._timer_factory = timer_factory
        self._timers: Dict[str, Tuple[int, threading.Timer]] = {}
        self._generation = 0
        self._lock = threading.Lock()
        self.clear_count = 0

    def schedule(self, owner_id: str, delay: Optional[float] = None) -> None:
        """Cancel any pending clear for the owner and arm a new one."""
        delay = self.default_delay if delay is None else delay
        with self._lock:
            previous = self._timers.pop(owner_id, None)
            if previous is not None:
                previous[1].cancel()
            self._generation += 1
            timer = self._timer_factory(delay, self._fire, args=(owner_id, self._generation))
            timer.daemon = True
            self._timers[owner_id] = (self._generation, timer)
        timer.start()

    def _fire(self, owner_id: str, generation: int) -> None:
        with self._lock:
            current = self._timers.get(owner_id)
            # superseded by a later schedule()
            if current is None or current[0] != generation:
                return
            del self._timers[owner_id]
        self.clear_owner(owner_id)

    def clear_owner(self, owner_id: str) -> int:
        removed = 0
        for cache in self.caches:
            removed += cache.delete_where(owned_by(owner_id))
        with self._lock:
            self.clear_count += 1
        logger.debug("Cleared %d cached entries for owner %s", removed, owner_id)
        return removed

    def flush(self, owner_id: str) -> int:
        """Run the owner's clear now, cancelling any pending timer."""
        with self._lock:
            pending = self._timers.pop(owner_id, None)
        if pending is not None:
            pending[1].cancel()
        return self.clear_owner(owner_id)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            timers = [t for _, t in self._timers.values()]
            self._timers.clear()
        for timer in timers:
            timer.cancel()
