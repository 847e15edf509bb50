"""
Single task execution.

build_run_token() derives the per-run context and bundles the options handed
to the sandbox; process_task() runs one task to completion and normalizes
its outcome into either success or a TaskFailedError.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from regbot.config import TaskDefinition
from regbot.context import Context, with_timeout
from regbot.errors import TaskFailedError
from regbot.gate import ConcurrencyGate

if TYPE_CHECKING:
    from regbot.client import ServiceClient
    from regbot.executor import Sandbox

logger = logging.getLogger(__name__)


@dataclass
class RunToken:
    """
    Options for one task run, as seen by the sandbox.

    The context is either the shared root context or a child of it carrying
    the task's deadline. release() must be called once the run is over.
    """
    context: Context
    gate: ConcurrencyGate
    dry_run: bool = False
    logger: logging.Logger = field(default_factory=lambda: logger)
    client: Optional["ServiceClient"] = None
    owns_context: bool = False

    def release(self):
        """Cancel the derived context, stopping its deadline timer. Never touches the root."""
        if self.owns_context:
            self.context.cancel()


SandboxFactory = Callable[[str, RunToken], "Sandbox"]


@dataclass
class Runtime:
    """
    Everything a task run needs besides the task itself.

    One Runtime is built per command and passed to the scheduler, so no
    process-wide state is involved and tests can run independent instances.
    """
    gate: ConcurrencyGate
    sandbox_factory: SandboxFactory
    client: Optional["ServiceClient"] = None
    dry_run: bool = False
    logger: logging.Logger = field(default_factory=lambda: logger)


def build_run_token(
    task: TaskDefinition,
    root: Context,
    gate: ConcurrencyGate,
    dry_run: bool = False,
    log: Optional[logging.Logger] = None,
    client: Optional["ServiceClient"] = None,
) -> RunToken:
    """
    Build the options for one firing of a task.

    With a positive timeout the run gets a child of root with that deadline
    (cancelled already if root is); otherwise it shares root directly.
    """
    if task.timeout > 0:
        return RunToken(
            context=with_timeout(root, task.timeout),
            gate=gate,
            dry_run=dry_run,
            logger=log or logger,
            client=client,
            owns_context=True,
        )
    return RunToken(context=root, gate=gate, dry_run=dry_run, logger=log or logger, client=client)


def process_task(task: TaskDefinition, root: Context, runtime: Runtime):
    """
    Run one task to completion.

    The sandbox is closed and the run token released on every exit path.

    Args:
        task: Task to run
        root: Shared root context for the command
        runtime: Gate, sandbox factory, client and flags for the run

    Raises:
        TaskFailedError: The script failed for any reason. The cause is
            logged and chained, but callers should not rely on it.
    """
    logger.debug(f"Starting script '{task.name}'")
    token = build_run_token(
        task,
        root,
        gate=runtime.gate,
        dry_run=runtime.dry_run,
        log=runtime.logger,
        client=runtime.client,
    )
    try:
        sandbox = runtime.sandbox_factory(task.name, token)
        try:
            sandbox.run_script(task.script)
        finally:
            sandbox.close()
    except Exception as e:
        logger.warning(f"Error running script '{task.name}': {e}")
        raise TaskFailedError(task.name) from e
    finally:
        token.release()

    logger.debug(f"Finished script '{task.name}'")
