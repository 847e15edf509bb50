"""
Process-wide concurrency gate.

A weighted counting limiter shared by every task run. It bounds the number of
expensive operations (registry calls) in flight across all tasks at once; it
does not limit how many tasks run.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Deque, Iterator, Optional

from regbot.context import Context

logger = logging.getLogger(__name__)


def _check_weight(weight: int):
    if weight < 1:
        raise ValueError(f"gate weight must be positive, got {weight}")


class ConcurrencyGate:
    """
    Weighted semaphore whose blocking acquire honors context cancellation.

    Waiters are admitted in arrival order, so a large request is not starved
    by a stream of small ones.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"gate capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._in_use = 0
        self._cond = threading.Condition()
        self._waiters: Deque[object] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._in_use

    def acquire(self, ctx: Optional[Context] = None, weight: int = 1):
        """
        Acquire weight units, blocking until they are available.

        Args:
            ctx: Context whose cancellation abandons the wait.
            weight: Number of units to take.

        Raises:
            Canceled, DeadlineExceeded: ctx ended before the units were granted.
            ValueError: weight exceeds capacity and there is no context to end the wait.
        """
        _check_weight(weight)
        if ctx is not None:
            ctx.raise_if_done()
        elif weight > self._capacity:
            raise ValueError(f"weight {weight} exceeds gate capacity {self._capacity}")

        with self._cond:
            if not self._waiters and self._capacity - self._in_use >= weight:
                self._in_use += weight
                return

            logger.debug(
                f"Waiting on gate for {weight} unit(s), {self._in_use}/{self._capacity} in use"
            )
            ticket = object()
            self._waiters.append(ticket)

            def wake():
                with self._cond:
                    self._cond.notify_all()

            if ctx is not None:
                ctx.add_done_callback(wake)
            try:
                while True:
                    if self._waiters[0] is ticket and self._capacity - self._in_use >= weight:
                        self._waiters.popleft()
                        self._in_use += weight
                        # the next waiter in line may fit as well
                        self._cond.notify_all()
                        return
                    if ctx is not None and ctx.is_done():
                        self._waiters.remove(ticket)
                        self._cond.notify_all()
                        ctx.raise_if_done()
                    self._cond.wait()
            finally:
                if ctx is not None:
                    ctx.remove_done_callback(wake)

    def try_acquire(self, weight: int = 1) -> bool:
        """Acquire weight units without blocking. Returns True on success."""
        _check_weight(weight)
        with self._cond:
            if not self._waiters and self._capacity - self._in_use >= weight:
                self._in_use += weight
                return True
            return False

    def release(self, weight: int = 1):
        _check_weight(weight)
        with self._cond:
            if weight > self._in_use:
                raise RuntimeError(f"released {weight} units but only {self._in_use} held")
            self._in_use -= weight
            self._cond.notify_all()

    @contextmanager
    def slot(self, ctx: Optional[Context] = None, weight: int = 1) -> Iterator[None]:
        """Hold weight units for the duration of a with block."""
        self.acquire(ctx, weight)
        try:
            yield
        finally:
            self.release(weight)

    def __repr__(self):
        return f"ConcurrencyGate(capacity={self._capacity}, in_use={self._in_use})"
