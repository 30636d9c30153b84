"""Cancellable periodic tasks backed by daemon threads."""

from __future__ import annotations

import logging
from threading import Event, Lock, Thread
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds until cancelled.

    The first run happens after ``initial_delay`` when given, otherwise after
    one full interval. A raising run is logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], object],
        initial_delay: Optional[float] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive.")
        self.name = name
        self.interval = interval
        self.func = func
        self.initial_delay = interval if initial_delay is None else initial_delay
        self.runs = 0
        self._cancelled = Event()
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Task {self.name!r} already started.")
        self._thread = Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the task thread; False if it is still running a job."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _loop(self) -> None:
        delay = self.initial_delay
        while not self._cancelled.wait(delay):
            self._run_once()
            delay = self.interval

    def _run_once(self) -> None:
        try:
            self.func()
        except Exception:
            logger.exception("Scheduled task %s failed", self.name)
        finally:
            self.runs += 1


class Scheduler:
    """Holds the process's periodic task handles with explicit start/stop."""

    def __init__(self) -> None:
        self._tasks: List[PeriodicTask] = []
        self._lock = Lock()
        self._running = False

    def schedule(
        self,
        name: str,
        interval: float,
        func: Callable[[], object],
        initial_delay: Optional[float] = None,
    ) -> PeriodicTask:
        task = PeriodicTask(name, interval, func, initial_delay=initial_delay)
        with self._lock:
            self._tasks.append(task)
            if self._running:
                task.start()
        return task

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            for task in self._tasks:
                task.start()
        logger.info("Scheduler started with %d task(s)", len(self._tasks))

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Cancel every task so no new run starts, then wait for running jobs."""
        with self._lock:
            tasks = list(self._tasks)
            self._tasks.clear()
            self._running = False
        for task in tasks:
            task.cancel()
        finished = all([task.join(timeout) for task in tasks])
        if not finished:
            logger.warning("Scheduler stopped with a task still running")
        return finished

    @property
    def running(self) -> bool:
        return self._running

    @property
    def tasks(self) -> List[PeriodicTask]:
        with self._lock:
            return list(self._tasks)
