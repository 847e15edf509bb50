"""
Shared fixtures and fakes for the regbot tests.

FakeSandbox interprets a tiny step language instead of running a shell, so
scheduling tests are about timing and bookkeeping only:

    ok            do nothing
    sleep:<s>     sleep, ignoring cancellation
    wait[:<s>]    wait for the run context to end, then raise its error
    fail[:<msg>]  raise RuntimeError
    panic         raise an unexpected error
    record        remember the context error at this point

Steps are separated by ';'.
"""

import threading
import time
from collections import defaultdict

import pytest

from regbot.executor import Sandbox
from regbot.gate import ConcurrencyGate
from regbot.runner import Runtime


class SandboxRecorder:
    """Sandbox factory that keeps thread-safe statistics about every run."""

    def __init__(self):
        self.lock = threading.Lock()
        self.started = []
        self.finished = []
        self.closed = 0
        self.active = defaultdict(int)
        self.max_active = defaultdict(int)
        self.context_errors = []
        self.options = []

    def __call__(self, name, options):
        with self.lock:
            self.options.append(options)
        return FakeSandbox(self, name, options)

    def enter(self, name):
        with self.lock:
            self.started.append((name, time.monotonic()))
            self.active[name] += 1
            self.max_active[name] = max(self.max_active[name], self.active[name])

    def exit(self, name):
        with self.lock:
            self.active[name] -= 1
            self.finished.append((name, time.monotonic()))

    def runs(self, name):
        with self.lock:
            return sum(1 for n, _ in self.started if n == name)

    @property
    def total_active(self):
        with self.lock:
            return sum(self.active.values())


class FakeSandbox(Sandbox):

    def __init__(self, recorder, name, options):
        super().__init__(name, options)
        self.recorder = recorder

    def run_script(self, script):
        self.recorder.enter(self.name)
        try:
            for step in script.split(";"):
                cmd, _, arg = step.strip().partition(":")
                if cmd == "ok":
                    continue
                elif cmd == "sleep":
                    time.sleep(float(arg))
                elif cmd == "wait":
                    self.options.context.wait(float(arg) if arg else None)
                    self.options.context.raise_if_done()
                elif cmd == "fail":
                    raise RuntimeError(arg or "script failed")
                elif cmd == "panic":
                    {}["missing"]
                elif cmd == "record":
                    with self.recorder.lock:
                        self.recorder.context_errors.append(self.options.context.err())
                else:
                    raise ValueError(f"unknown step {cmd!r}")
        finally:
            self.recorder.exit(self.name)

    def close(self):
        with self.recorder.lock:
            self.recorder.closed += 1


@pytest.fixture()
def recorder() -> SandboxRecorder:
    return SandboxRecorder()


@pytest.fixture()
def runtime(recorder) -> Runtime:
    return Runtime(gate=ConcurrencyGate(4), sandbox_factory=recorder)
