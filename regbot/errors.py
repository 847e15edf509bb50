"""
Exception hierarchy for regbot.

Configuration errors are fatal and abort the command before any task is
scheduled. Everything raised while a task runs is converted into a
TaskFailedError at the executor wrapper boundary.
"""


class RegbotError(Exception):
    """Base class for all regbot errors."""


class ConfigError(RegbotError):
    """Configuration could not be loaded or failed validation."""


class MissingInputError(ConfigError):
    """No configuration file was given."""

    def __init__(self, message: str = "missing input, a config file is required"):
        super().__init__(message)


class TaskFailedError(RegbotError):
    """A task run failed. The underlying cause is chained, not exposed."""

    def __init__(self, task_name: str):
        super().__init__(f"task failed: {task_name}")
        self.task_name = task_name


class ScriptError(RegbotError):
    """The shell sandbox saw a script exit with a non-zero status."""

    def __init__(self, message: str, returncode: int = None):
        super().__init__(message)
        self.returncode = returncode


class ContextError(RegbotError):
    """Raised when an operation is abandoned because its context ended."""


class Canceled(ContextError):
    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


class DeadlineExceeded(ContextError):
    def __init__(self, message: str = "context deadline exceeded"):
        super().__init__(message)
