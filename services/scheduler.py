"""Delayed task execution on a single timer thread."""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from threading import Condition, Thread
from typing import Any, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Cancellable handle for a callback registered with a scheduler."""

    def __init__(
        self,
        when: float,
        callback: Callable[..., Any],
        args: Tuple[Any, ...] = (),
        name: Optional[str] = None,
    ) -> None:
        self.when = when
        self.name = name or getattr(callback, "__name__", "task")
        self._callback = callback
        self._args = args
        self._cancelled = False
        self._done = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._done

    def cancel(self) -> bool:
        """Prevent the callback from running; False if it already ran."""
        if self._done:
            return False
        self._cancelled = True
        return True

    def run(self) -> None:
        if self._cancelled or self._done:
            return
        self._done = True
        self._callback(*self._args)


class Scheduler(Protocol):
    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any, name: Optional[str] = None
    ) -> ScheduledTask:
        ...

    def start(self) -> None:
        ...

    def shutdown(self, wait: bool = True) -> None:
        ...


class TaskScheduler:
    """Runs callbacks after a delay on one daemon thread.

    Callbacks must be short; anything that blocks on I/O should hand work to
    an executor.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, name: str = "scheduler") -> None:
        self._clock = clock
        self._name = name
        self._queue: List[Tuple[float, int, ScheduledTask]] = []
        self._counter = itertools.count()
        self._condition = Condition()
        self._thread: Optional[Thread] = None
        self._stopped = False

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any, name: Optional[str] = None
    ) -> ScheduledTask:
        task = ScheduledTask(self._clock() + max(delay, 0.0), callback, args, name)
        with self._condition:
            if self._stopped:
                raise RuntimeError("Scheduler has been shut down.")
            heapq.heappush(self._queue, (task.when, next(self._counter), task))
            self._condition.notify()
        return task

    def start(self) -> None:
        with self._condition:
            if self._thread is not None or self._stopped:
                return
            self._thread = Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def shutdown(self, wait: bool = True) -> None:
        with self._condition:
            self._stopped = True
            for _, _, task in self._queue:
                task.cancel()
            self._queue.clear()
            self._condition.notify_all()
            thread = self._thread
        if wait and thread is not None:
            thread.join(timeout=5)

    def pending(self) -> int:
        with self._condition:
            return sum(1 for _, _, task in self._queue if not task.cancelled)

    def _run(self) -> None:
        while True:
            with self._condition:
                while not self._stopped:
                    if self._queue:
                        remaining = self._queue[0][0] - self._clock()
                        if remaining <= 0:
                            break
                        self._condition.wait(remaining)
                    else:
                        self._condition.wait()
                if self._stopped:
                    return
                _, _, task = heapq.heappop(self._queue)

            try:
                task.run()
            except Exception:  # noqa: BLE001 - keep the timer thread alive
                logger.exception("Scheduled task %s failed", task.name)
