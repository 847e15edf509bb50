"""
Synchronization helpers shared by the scheduler modes.

- JoinBarrier: counts in-flight runs so shutdown can wait for them to drain.
- FirstError: keeps the first task failure as the command result.
- SkipIfStillRunning: drops a trigger while the same task is still running.
"""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class JoinBarrier:
    """
    Counted join barrier.

    Every run registers before it starts and deregisters when it finishes.
    Once closed, the barrier refuses new registrations so a drain can never
    be overtaken by a late starter.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._count = 0
        self._closed = False

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def register(self) -> bool:
        """Count a new run. Returns False if the barrier is closed."""
        with self._cond:
            if self._closed:
                return False
            self._count += 1
            return True

    def deregister(self):
        with self._cond:
            if self._count == 0:
                raise RuntimeError("deregister called without a matching register")
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()

    def close(self):
        """Refuse further registrations."""
        with self._cond:
            self._closed = True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no runs are registered.

        Returns:
            True if the count reached zero, False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)


class FirstError:
    """Single-assignment slot for the first failure seen across all runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._error: Optional[BaseException] = None
        self._count = 0

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error

    @property
    def count(self) -> int:
        """Total failures recorded, including those that did not win the slot."""
        with self._lock:
            return self._count

    def record(self, error: BaseException) -> bool:
        """
        Record a failure.

        Returns:
            True if this failure became the command result.
        """
        with self._lock:
            self._count += 1
            if self._error is None:
                self._error = error
                return True
            return False


class SkipIfStillRunning:
    """
    Wrap a task callback so overlapping invocations are dropped.

    The guard is scoped to one task: two tasks never block each other. A
    dropped invocation is not queued or retried.
    """

    def __init__(self, name: str, func: Callable[[], Any]):
        self.name = name
        self.func = func
        self._lock = threading.Lock()
        self._skipped = 0
        self._skipped_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def skipped(self) -> int:
        """Invocations dropped because the previous one was still running."""
        with self._skipped_lock:
            return self._skipped

    def __call__(self) -> Any:
        if not self._lock.acquire(blocking=False):
            with self._skipped_lock:
                self._skipped += 1
            logger.info(f"Skipping '{self.name}', previous run still active")
            return None
        try:
            return self.func()
        finally:
            self._lock.release()
