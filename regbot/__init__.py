"""
regbot

Scheduled automation runner: runs named scripts on cron schedules or fixed
intervals, or all at once, with a shared concurrency gate, per-script
timeouts, skip-if-still-running triggers and graceful shutdown.

Main Components:
- SchedulerService: server (scheduled) and once modes
- ShutdownCoordinator: signal driven stop and drain
- ConcurrencyGate: process-wide weighted limiter
- Context: cancellation tree with deadlines
- RunnerConfig / TaskDefinition: configuration
"""

from regbot.config import RunnerConfig, TaskDefinition
from regbot.context import Context, background, with_cancel, with_timeout
from regbot.gate import ConcurrencyGate
from regbot.runner import Runtime, process_task
from regbot.service import SchedulerService, ShutdownCoordinator
from regbot.version import __version__

__all__ = [
    # Configuration
    "RunnerConfig",
    "TaskDefinition",
    # Execution
    "Context",
    "background",
    "with_cancel",
    "with_timeout",
    "ConcurrencyGate",
    "Runtime",
    "process_task",
    # Scheduling
    "SchedulerService",
    "ShutdownCoordinator",
]
