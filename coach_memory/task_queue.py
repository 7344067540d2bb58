"""Priority background queue with a circuit breaker and a periodic ticker.

The request path only ever calls ``enqueue``; all heavy lifting (memory
writes, embedding warm-up, similarity precompute) happens on the ticker.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .config import EngineConfig
from .logging_config import get_logger
from .models import BackgroundTask, TaskType

logger = get_logger(__name__)

TaskHandler = Callable[[BackgroundTask], None]
DropListener = Callable[[List[BackgroundTask]], None]


class BackgroundTaskQueue:
    def __init__(self, config: Optional[EngineConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or EngineConfig()
        self._clock = clock
        self._tasks: List[BackgroundTask] = []
        self._lock = threading.Lock()
        self._handlers: Dict[TaskType, TaskHandler] = {}
        self._sweepers: List[Callable[[], Any]] = []
        self._drop_listeners: List[DropListener] = []
        self._processing = False
        self._last_sweep = clock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.processed = 0
        self.failed = 0
        self.dropped = 0

    def register_handler(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[TaskType(task_type)] = handler

    def add_sweeper(self, sweeper: Callable[[], Any]) -> None:
        """Register a callable run on every cache sweep."""
        self._sweepers.append(sweeper)

    def add_drop_listener(self, listener: DropListener) -> None:
        """Register a callable told which tasks the circuit breaker shed."""
        self._drop_listeners.append(listener)

    @property
    def processing(self) -> bool:
        return self._processing

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def enqueue(self, task_type: TaskType, payload: Dict[str, Any], priority: int = 1) -> BackgroundTask:
        """Add a task; never blocks on processing and never raises."""
        task = BackgroundTask(type=TaskType(task_type), payload=payload, priority=priority, enqueued_at=self._clock())
        with self._lock:
            self._tasks.append(task)
        logger.debug("Enqueued %s task %s (priority %d)", task.type.value, task.id, priority)
        return task

    def apply_circuit_breaker(self) -> int:
        """Shed load when the queue is over its high-water mark.

        Keeps high-priority and fresh tasks, then caps to the highest-priority
        ``queue_hard_cap`` of those. Drop listeners receive the shed tasks
        outside the lock. Returns how many tasks were dropped.
        """
        cfg = self.config
        with self._lock:
            before = len(self._tasks)
            if before <= cfg.queue_high_water:
                return 0
            now = self._clock()
            kept = [
                t for t in self._tasks
                if t.priority > cfg.low_priority_max or now - t.enqueued_at < cfg.stale_task_seconds
            ]
            kept.sort(key=lambda t: t.priority, reverse=True)
            survivors = kept[: cfg.queue_hard_cap]
            survivor_ids = {t.id for t in survivors}
            shed = [t for t in self._tasks if t.id not in survivor_ids]
            self._tasks = survivors
            dropped = len(shed)
            self.dropped += dropped

        logger.warning("Background queue overloaded: dropped %d of %d tasks, %d remain", dropped, before, before - dropped)
        for listener in self._drop_listeners:
            try:
                listener(shed)
            except Exception as e:
                logger.error("Drop listener failed: %s", e)
        return dropped

    def _pop_next(self) -> Optional[BackgroundTask]:
        with self._lock:
            if not self._tasks:
                return None
            # stable sort keeps FIFO order within a priority
            self._tasks.sort(key=lambda t: t.priority, reverse=True)
            return self._tasks.pop(0)

    def drain_once(self) -> bool:
        """Process a single task. Returns False when idle or already draining."""
        with self._lock:
            if self._processing or not self._tasks:
                return False
            self._processing = True
        try:
            task = self._pop_next()
            if task is None:
                return False
            handler = self._handlers.get(task.type)
            if handler is None:
                logger.error("No handler registered for %s task %s", task.type.value, task.id)
                self.failed += 1
                return True
            try:
                handler(task)
                self.processed += 1
            except Exception as e:
                self.failed += 1
                logger.error("Background task %s (%s) failed: %s", task.id, task.type.value, e)
            return True
        finally:
            self._processing = False

    def drain_all(self, max_tasks: Optional[int] = None) -> int:
        """Process tasks until the queue is empty (or ``max_tasks`` ran)."""
        count = 0
        while max_tasks is None or count < max_tasks:
            if not self.drain_once():
                break
            count += 1
        return count

    def maybe_sweep(self, force: bool = False) -> bool:
        now = self._clock()
        if not force and now - self._last_sweep < self.config.sweep_interval_seconds:
            return False
        self._last_sweep = now
        for sweeper in self._sweepers:
            try:
                sweeper()
            except Exception as e:
                logger.error("Cache sweep failed: %s", e)
        return True

    def tick(self) -> None:
        """One scheduler step: breaker, then one task, then a sweep if due."""
        self.apply_circuit_breaker()
        self.drain_once()
        self.maybe_sweep()

    def _run(self) -> None:
        while not self._stop_event.wait(self.config.drain_interval_seconds):
            try:
                self.tick()
            except Exception as e:
                logger.error("Background tick failed: %s", e)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="memory-queue", daemon=True)
        self._thread.start()
        logger.info("Background queue started (tick every %.1fs)", self.config.drain_interval_seconds)

    def stop(self, drain: bool = True) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.config.drain_interval_seconds + 1)
            self._thread = None
        if drain:
            self.drain_all()
