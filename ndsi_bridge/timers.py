"""
Single-thread scheduler for delayed, cancelable tasks.

Used to debounce hardware writes. Cancelling is best-effort: a pending
task is discarded, a task that already started runs to completion.
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle returned by TimerService.schedule()."""

    def __init__(self, deadline: float, fn: Callable[[], None]):
        self.deadline = deadline
        self.fn = fn
        self._cancelled = False
        self._started = False
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """Discard the task if it has not started. Returns True if discarded."""
        with self._lock:
            if self._started:
                return False
            self._cancelled = True
            return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _claim(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._started = True
            return True


class TimerService:
    """Runs scheduled tasks in deadline order on one background thread."""

    def __init__(self, name: str = "ndsi-timers"):
        self._name = name
        self._queue: list[tuple[float, int, ScheduledTask]] = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self):
        with self._cond:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def schedule(self, delay: float, fn: Callable[[], None]) -> ScheduledTask:
        if not self._running:
            self.start()
        task = ScheduledTask(time.monotonic() + delay, fn)
        with self._cond:
            heapq.heappush(self._queue, (task.deadline, next(self._counter), task))
            self._cond.notify()
        return task

    def shutdown(self):
        with self._cond:
            self._running = False
            for _, _, task in self._queue:
                task.cancel()
            self._queue.clear()
            self._cond.notify()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _next_due(self) -> Optional[ScheduledTask]:
        with self._cond:
            while self._running:
                if not self._queue:
                    self._cond.wait()
                    continue
                deadline, _, task = self._queue[0]
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                heapq.heappop(self._queue)
                return task
            return None

    def _run(self):
        while True:
            task = self._next_due()
            if task is None:
                return
            if not task._claim():
                continue
            try:
                task.fn()
            except Exception:
                logger.exception("Scheduled task failed")
