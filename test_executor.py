import sys
import time

import pytest

from regbot.config import TaskDefinition
from regbot.context import background, with_timeout
from regbot.errors import Canceled, DeadlineExceeded, ScriptError
from regbot.executor import ShellSandbox
from regbot.gate import ConcurrencyGate
from regbot.runner import RunToken, Runtime
from regbot.service import SchedulerService

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires /bin/sh")


def _token(ctx=None, gate=None, dry_run=False):
    return RunToken(context=ctx or background(), gate=gate or ConcurrencyGate(1), dry_run=dry_run)


def test_runs_script_and_captures_output():
    token = _token()
    sandbox = ShellSandbox("hello", token)
    try:
        sandbox.run_script("echo hello; echo oops >&2")
    finally:
        sandbox.close()

    assert sandbox.returncode == 0
    assert sandbox.stdout_lines == ["hello"]
    assert sandbox.stderr_lines == ["oops"]
    assert token.gate.in_use == 0


def test_script_sees_task_environment():
    sandbox = ShellSandbox("env-check", _token(dry_run=False), env={"EXTRA": "42"})
    sandbox.run_script('echo "$REGBOT_TASK $REGBOT_DRY_RUN $EXTRA"')
    sandbox.close()
    assert sandbox.stdout_lines == ["env-check 0 42"]
    assert sandbox.run_id


def test_non_zero_exit_raises():
    sandbox = ShellSandbox("broken", _token())
    with pytest.raises(ScriptError) as excinfo:
        sandbox.run_script("echo bad input >&2; exit 3")
    sandbox.close()

    assert excinfo.value.returncode == 3
    assert "bad input" in str(excinfo.value)


def test_dry_run_skips_execution():
    sandbox = ShellSandbox("dry", _token(dry_run=True))
    sandbox.run_script("exit 1")
    sandbox.close()
    assert sandbox.returncode is None


def test_empty_script_is_a_no_op():
    sandbox = ShellSandbox("empty", _token())
    sandbox.run_script("   ")
    assert sandbox.returncode is None


def test_context_end_terminates_script():
    gate = ConcurrencyGate(1)
    ctx = with_timeout(background(), 0.2)
    sandbox = ShellSandbox("sleepy", _token(ctx=ctx, gate=gate))

    start = time.monotonic()
    with pytest.raises(DeadlineExceeded):
        sandbox.run_script("sleep 10")
    sandbox.close()

    assert time.monotonic() - start < 5
    assert sandbox._process.poll() is not None
    assert gate.in_use == 0


def test_does_not_take_the_gate():
    gate = ConcurrencyGate(1)
    gate.acquire()
    sandbox = ShellSandbox("ungated", _token(gate=gate))

    sandbox.run_script("echo ran")
    sandbox.close()

    assert sandbox.stdout_lines == ["ran"]
    assert gate.in_use == 1


def test_cancelled_context_never_starts_script():
    ctx = background()
    ctx.cancel()
    sandbox = ShellSandbox("cancelled", _token(ctx=ctx))

    with pytest.raises(Canceled):
        sandbox.run_script("echo never")
    sandbox.close()

    assert sandbox._process is None


def test_shell_tasks_run_concurrently_with_a_single_unit_gate():
    tasks = [TaskDefinition(f"sleeper-{i}", "sleep 0.5") for i in range(2)]
    runtime = Runtime(gate=ConcurrencyGate(1), sandbox_factory=ShellSandbox)
    service = SchedulerService(tasks, runtime, install_signal_handlers=False)

    start = time.monotonic()
    assert service.run_once() is None
    assert time.monotonic() - start < 0.9
