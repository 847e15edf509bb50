"""
Cancellation contexts.

A Context is a node in a cancellation tree. Cancelling a context cancels
every context derived from it, immediately and unconditionally. A context may
also carry a deadline, after which it cancels itself with DeadlineExceeded.

Typical use:

    root = background()
    with with_timeout(root, 30) as ctx:
        do_work(ctx)        # observes ctx.is_done() / ctx.err()
    root.cancel()           # cancels every descendant still alive
"""

import threading
import time
from typing import Callable, List, Optional, Set, Type

from regbot.errors import Canceled, ContextError, DeadlineExceeded


class Context:
    """Cancellable execution context with an optional deadline."""

    def __init__(self, parent: Optional["Context"] = None, deadline: Optional[float] = None):
        """
        Create a context.

        Args:
            parent: Context to derive from. Cancelling the parent cancels this one.
            deadline: Absolute time.monotonic() value after which the context
                cancels itself. A parent deadline that comes earlier wins.
        """
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._err_type: Optional[Type[ContextError]] = None
        self._children: Set["Context"] = set()
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        self._parent = parent

        if parent is not None and parent.deadline is not None:
            if deadline is None or parent.deadline < deadline:
                deadline = parent.deadline
        self._deadline = deadline

        if parent is not None:
            parent._attach(self)

        if self._deadline is not None:
            delay = self._deadline - time.monotonic()
            if delay <= 0:
                self._cancel(DeadlineExceeded)
                return
            with self._lock:
                if self._done.is_set():
                    return
                self._timer = threading.Timer(delay, self._cancel, args=(DeadlineExceeded,))
                self._timer.daemon = True
                self._timer.start()

    @property
    def deadline(self) -> Optional[float]:
        """Absolute monotonic deadline, or None if the context has none."""
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline (may be negative), or None."""
        if self._deadline is None:
            return None
        return self._deadline - time.monotonic()

    def is_done(self) -> bool:
        return self._done.is_set()

    def err(self) -> Optional[ContextError]:
        """
        Why the context ended.

        Returns:
            A fresh Canceled or DeadlineExceeded instance, or None while the
            context is still live.
        """
        with self._lock:
            err_type = self._err_type
        return err_type() if err_type is not None else None

    def raise_if_done(self):
        """Raise the context's error if it has ended."""
        err = self.err()
        if err is not None:
            raise err

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context ends. Returns True if it ended."""
        return self._done.wait(timeout)

    def cancel(self):
        """Cancel this context and all of its descendants. Idempotent."""
        self._cancel(Canceled)

    def add_done_callback(self, fn: Callable[[], None]):
        """Call fn once the context ends (immediately if it already has)."""
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(fn)
                return
        fn()

    def remove_done_callback(self, fn: Callable[[], None]):
        with self._lock:
            try:
                self._callbacks.remove(fn)
            except ValueError:
                pass

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False

    def __repr__(self):
        state = "live" if not self.is_done() else type(self.err()).__name__
        return f"Context(state={state}, deadline={self._deadline})"

    def _attach(self, child: "Context"):
        with self._lock:
            if not self._done.is_set():
                self._children.add(child)
                return
            err_type = self._err_type
        child._cancel(err_type)

    def _detach(self, child: "Context"):
        with self._lock:
            self._children.discard(child)

    def _cancel(self, err_type: Type[ContextError]):
        with self._lock:
            if self._done.is_set():
                return
            self._err_type = err_type
            self._done.set()
            children = list(self._children)
            self._children.clear()
            callbacks = self._callbacks
            self._callbacks = []
            timer = self._timer
            self._timer = None

        if timer is not None:
            timer.cancel()
        for child in children:
            child._cancel(err_type)
        for fn in callbacks:
            fn()
        if self._parent is not None:
            self._parent._detach(self)


def background() -> Context:
    """Create a root context that ends only when cancelled."""
    return Context()


def with_cancel(parent: Context) -> Context:
    """Derive a cancellable child context."""
    return Context(parent)


def with_deadline(parent: Context, deadline: float) -> Context:
    """Derive a child context that ends at the given monotonic time."""
    return Context(parent, deadline=deadline)


def with_timeout(parent: Context, timeout: float) -> Context:
    """Derive a child context that ends after timeout seconds."""
    return Context(parent, deadline=time.monotonic() + timeout)
