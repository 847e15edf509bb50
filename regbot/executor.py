"""
Script sandboxes.

The scheduler treats a script body as opaque: a Sandbox receives the body and
the run options and either returns (success) or raises (failure). Sandboxes
must observe the run context and stop promptly once it ends.

ShellSandbox is the default implementation. It runs the body with /bin/sh and
streams output into the log. It does not take the concurrency gate itself;
the gate is for the operations a run performs, such as registry calls made
through the run token's client with gate=options.gate.
"""

import logging
import os
import subprocess
import threading
import uuid
from typing import Dict, List, Optional

from regbot.errors import ScriptError
from regbot.runner import RunToken

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds between context checks while a script runs
TERMINATE_GRACE = 5  # seconds to wait after SIGTERM before SIGKILL


class Sandbox:
    """
    Base class for script sandboxes.

    Subclasses implement run_script(). close() releases whatever the sandbox
    holds; it is always called, even when run_script() raised.
    """

    def __init__(self, name: str, options: RunToken):
        self.name = name
        self.options = options
        self.run_id = str(uuid.uuid4())[:8]

    @property
    def log_prefix(self) -> str:
        return f"[{self.name}:{self.run_id}]"

    def run_script(self, script: str):
        raise NotImplementedError

    def close(self):
        pass


class ShellSandbox(Sandbox):
    """Run a script body as a shell command."""

    def __init__(
        self,
        name: str,
        options: RunToken,
        shell: str = "/bin/sh",
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        super().__init__(name, options)
        self.shell = shell
        self.working_dir = working_dir
        self.extra_env = env or {}
        self.returncode: Optional[int] = None
        self.stdout_lines: List[str] = []
        self.stderr_lines: List[str] = []
        self._process: Optional[subprocess.Popen] = None

    def _environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env["REGBOT_TASK"] = self.name
        env["REGBOT_RUN_ID"] = self.run_id
        env["REGBOT_DRY_RUN"] = "1" if self.options.dry_run else "0"
        return env

    def run_script(self, script: str):
        """
        Execute the script.

        Raises:
            Canceled, DeadlineExceeded: The run context ended first; the child
                process is terminated.
            ScriptError: The script exited with a non-zero status.
        """
        log = self.options.logger
        ctx = self.options.context

        if not script.strip():
            log.debug(f"{self.log_prefix} Empty script, nothing to run")
            return
        if self.options.dry_run:
            log.info(f"{self.log_prefix} Dry run, skipping script execution")
            return

        ctx.raise_if_done()
        log.info(f"{self.log_prefix} Executing script")
        self._process = subprocess.Popen(
            [self.shell, "-c", script],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=self.working_dir,
            env=self._environment(),
        )

        def read_stream(stream, output_list):
            for line in stream:
                line = line.rstrip('\n')
                output_list.append(line)
                log.info(f"{self.log_prefix} {line}")

        readers = [
            threading.Thread(target=read_stream, args=(self._process.stdout, self.stdout_lines), daemon=True),
            threading.Thread(target=read_stream, args=(self._process.stderr, self.stderr_lines), daemon=True),
        ]
        for reader in readers:
            reader.start()

        while True:
            try:
                self._process.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if ctx.is_done():
                    log.warning(f"{self.log_prefix} Context ended, terminating script")
                    self._terminate()
                    for reader in readers:
                        reader.join(TERMINATE_GRACE)
                    ctx.raise_if_done()

        for reader in readers:
            reader.join()

        self.returncode = self._process.returncode
        if self.returncode != 0:
            stderr = "\n".join(self.stderr_lines[-5:])
            raise ScriptError(
                f"Script failed with exit code {self.returncode}: {stderr}",
                returncode=self.returncode,
            )
        log.debug(f"{self.log_prefix} Script completed")

    def _terminate(self):
        process = self._process
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.log_prefix} Script did not exit after SIGTERM, sending SIGKILL")
            process.kill()
            process.wait()

    def close(self):
        """Make sure no child process outlives the run."""
        self._terminate()
        if self._process is not None:
            for stream in (self._process.stdout, self._process.stderr):
                if stream is not None:
                    stream.close()
