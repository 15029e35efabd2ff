"""Bounded, prioritised request queue.

Each operation kind (export, import, generic API calls) gets its own
instance so a burst of one kind cannot starve the others.
"""
from __future__ import annotations
import heapq
import itertools
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


class QueueFullError(Exception):
    """Raised by ``enqueue`` when the pending queue is already at capacity."""

    status_code = 503

    def __init__(self, queue_name: str, max_queue_size: int):
        self.queue_name = queue_name
        self.max_queue_size = max_queue_size
        super().__init__(f"Queue '{queue_name}' is full ({max_queue_size} pending tasks)")


class RequestQueue:
    """Run callables with bounded concurrency, highest priority first.

    Pending tasks are ordered by descending priority, then insertion order.
    Every task runs on its own short-lived worker thread once a slot frees up.
    A failing task only fails its own future.
    """

    def __init__(self, name: str, max_concurrent: int = 5, max_queue_size: int = 100):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.name = name
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self._pending: List[Tuple[int, int, Callable[[], Any], Future]] = []
        self._sequence = itertools.count()
        self._running = 0
        self._lock = threading.Lock()

    def enqueue(self, task: Callable[[], Any], priority: int = 0) -> Future:
        """Queue ``task`` and return a future settled with its result.

        Raises:
            QueueFullError: If ``max_queue_size`` tasks are already pending.
        """
        future: Future = Future()
        with self._lock:
            if len(self._pending) >= self.max_queue_size:
                raise QueueFullError(self.name, self.max_queue_size)
            # heapq is a min-heap: negate priority so higher runs first
            heapq.heappush(self._pending, (-priority, next(self._sequence), task, future))
        self._dispatch()
        return future

    def _dispatch(self) -> None:
        while True:
            with self._lock:
                if self._running >= self.max_concurrent or not self._pending:
                    return
                _, _, task, future = heapq.heappop(self._pending)
                self._running += 1
            worker = threading.Thread(
                target=self._run,
                args=(task, future),
                name=f"{self.name}-queue-worker",
                daemon=True,
            )
            worker.start()

    def _run(self, task: Callable[[], Any], future: Future) -> None:
        try:
            if future.set_running_or_notify_cancel():
                try:
                    result = task()
                except BaseException as exc:  # settle only this task's future
                    logger.debug("Task on queue %s failed: %s", self.name, exc)
                    future.set_exception(exc)
                else:
                    future.set_result(result)
        finally:
            with self._lock:
                self._running -= 1
            self._dispatch()

    def stats(self) -> Dict[str, Any]:
        """Snapshot of queue occupancy for health endpoints."""
        with self._lock:
            return {
                "name": self.name,
                "queueLength": len(self._pending),
                "running": self._running,
                "maxConcurrent": self.max_concurrent,
                "maxQueueSize": self.max_queue_size,
            }
