"""
Scheduler service.

Two modes share one execution path:
- server: every task is registered with an APScheduler BackgroundScheduler
  and fires on its cron schedule or interval until the process is
  interrupted. A firing that finds the previous run of the same task still
  active is dropped.
- once: every task is started immediately and concurrently, ignoring
  schedules, and the command returns when all of them have finished.

In both modes SIGINT/SIGTERM stop new firings, cancel the shared root
context, and wait for in-flight runs before returning. The command result is
the first task failure, or None.
"""

import logging
import re
import signal
import threading
import time
from enum import Enum
from typing import Dict, List, Optional, Sequence

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from regbot.config import TaskDefinition, parse_duration
from regbot.context import Context, background
from regbot.errors import ConfigError, TaskFailedError
from regbot.runner import Runtime, process_task
from regbot.sync import FirstError, JoinBarrier, SkipIfStillRunning

logger = logging.getLogger(__name__)

_DESCRIPTORS = {
    "@yearly": dict(month=1, day=1, hour=0, minute=0),
    "@annually": dict(month=1, day=1, hour=0, minute=0),
    "@monthly": dict(day=1, hour=0, minute=0),
    "@weekly": dict(day_of_week="sun", hour=0, minute=0),
    "@daily": dict(hour=0, minute=0),
    "@midnight": dict(hour=0, minute=0),
    "@hourly": dict(minute=0),
}
# crontab numbering, Sunday first; 7 is Sunday as well
_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_NUMERIC_FIELD = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")


def _weekday_number(value: str) -> int:
    number = int(value)
    if number > 7:
        raise ValueError(f"Invalid day of week: {value}")
    return number


def _crontab_day_of_week(field: str) -> str:
    """
    Translate a crontab weekday field into APScheduler's form.

    APScheduler numbers weekdays from Monday while crontab starts on Sunday,
    so numeric values, ranges and steps are expanded into day names. Names
    and a bare '*' pass through unchanged.
    """
    out = []
    for token in field.split(","):
        match = _NUMERIC_FIELD.match(token)
        if token == "*" or not match:
            out.append(token)
            continue
        start, end, step = match.groups()
        if start == "*":
            if end is not None:
                raise ValueError(f"Invalid day of week range: {token}")
            first, last = 0, 6
        else:
            first = _weekday_number(start)
            if end is not None:
                last = _weekday_number(end)
            elif step is not None:
                # 'N/step' runs to the end of the week
                last = 6
            else:
                last = first
        if first > last:
            raise ValueError(f"Invalid day of week range: {token}")
        days = {number % 7 for number in range(first, last + 1, int(step or 1))}
        if len(days) == 7:
            out.append("*")
        else:
            out.extend(_WEEKDAYS[number] for number in sorted(days))
    return ",".join(dict.fromkeys(out))


def _is_wildcard(field: str) -> bool:
    """True if a crontab day field is unrestricted ('*' or '?' without a step)."""
    for token in field.split(","):
        base, _, step = token.partition("/")
        if base in ("*", "?") and step in ("", "1"):
            return True
    return False


def build_trigger(expression: str, timezone=None):
    """
    Build an APScheduler trigger from a schedule expression.

    Supported forms: a standard 5-field crontab line, '@every <duration>',
    and the descriptors @yearly, @annually, @monthly, @weekly, @daily,
    @midnight and @hourly.

    As in crontab, when both day of month and day of week are restricted
    the task fires on days matching either field.

    Args:
        expression: Schedule expression
        timezone: Timezone for the trigger (default: the local timezone)

    Raises:
        ValueError: If the expression cannot be parsed
    """
    if not isinstance(expression, str):
        raise ValueError(f"Schedule must be a string, got {expression!r}")
    tz = {} if timezone is None else {"timezone": timezone}

    expr = expression.strip()
    if expr.startswith("@every"):
        try:
            seconds = parse_duration(expr[len("@every"):].strip())
        except ConfigError as e:
            raise ValueError(f"Invalid interval in '{expression}': {e}") from e
        if seconds <= 0:
            raise ValueError(f"Interval must be positive: '{expression}'")
        return IntervalTrigger(seconds=seconds, **tz)

    if expr.startswith("@"):
        if expr not in _DESCRIPTORS:
            raise ValueError(f"Unknown schedule descriptor: '{expression}'")
        return CronTrigger(**_DESCRIPTORS[expr], **tz)

    parts = expr.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: '{expression}'")
    minute, hour, day, month, day_of_week = parts

    if _is_wildcard(day) or _is_wildcard(day_of_week):
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day.replace("?", "*"),
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week.replace("?", "*")),
            **tz,
        )
    return OrTrigger([
        CronTrigger(minute=minute, hour=hour, day=day, month=month, **tz),
        CronTrigger(
            minute=minute,
            hour=hour,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            **tz,
        ),
    ])


class CoordinatorState(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    DRAINED = "drained"


class ShutdownCoordinator:
    """
    Turns an interruption into an orderly stop.

    RUNNING -> SHUTTING_DOWN: the triggering engine is stopped, the join
    barrier refuses new runs, and the root context is cancelled.
    SHUTTING_DOWN/RUNNING -> DRAINED: every registered run has finished.
    """

    POLL_INTERVAL = 0.25

    def __init__(self, root: Context, barrier: JoinBarrier, engine: Optional[BackgroundScheduler] = None):
        self.root = root
        self.barrier = barrier
        self.engine = engine
        self._state = CoordinatorState.RUNNING
        self._lock = threading.Lock()
        self._interrupted = threading.Event()
        self._previous_handlers: Dict[int, object] = {}

    @property
    def state(self) -> CoordinatorState:
        with self._lock:
            return self._state

    @property
    def interrupted(self) -> bool:
        return self._interrupted.is_set()

    def install_signal_handlers(self) -> bool:
        """
        Route SIGINT and SIGTERM to interrupt().

        Returns:
            False if not on the main thread, where Python cannot install handlers.
        """
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers not installed")
            return False
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)
        return True

    def restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        self.interrupt()

    def interrupt(self):
        """Record an interruption. Safe to call from a signal handler or any thread."""
        self._interrupted.set()

    def wait_for_interrupt(self, timeout: Optional[float] = None) -> bool:
        """Block until interrupt() is called. Returns False on timeout."""
        end = None if timeout is None else time.monotonic() + timeout
        while not self._interrupted.wait(self.POLL_INTERVAL):
            if end is not None and time.monotonic() >= end:
                return False
        return True

    def request_shutdown(self):
        """Stop new firings and cancel every live run. Idempotent."""
        with self._lock:
            if self._state is not CoordinatorState.RUNNING:
                return
            self._state = CoordinatorState.SHUTTING_DOWN

        logger.debug("Interrupt received, stopping")
        if self.engine is not None and self.engine.running:
            self.engine.shutdown(wait=False)
        self.barrier.close()
        self.root.cancel()
        logger.debug("Waiting on running tasks")

    def drain(self):
        """Wait for every registered run to finish, reacting to interrupts meanwhile."""
        while not self.barrier.wait(self.POLL_INTERVAL):
            if self._interrupted.is_set():
                self.request_shutdown()
        with self._lock:
            self._state = CoordinatorState.DRAINED
        logger.debug("All tasks finished")


class SchedulerService:
    """
    Runs a set of tasks in server or once mode.

    One instance serves one command: it owns the root context, the join
    barrier and the first-error slot for that command.
    """

    def __init__(
        self,
        tasks: Sequence[TaskDefinition],
        runtime: Runtime,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the service.

        Args:
            tasks: Task definitions, in configuration order
            runtime: Gate, sandbox factory, client and flags shared by all runs
            install_signal_handlers: Route SIGINT/SIGTERM to the shutdown coordinator
        """
        self.tasks: List[TaskDefinition] = list(tasks)
        self.runtime = runtime
        self.root = background()
        self.barrier = JoinBarrier()
        self.errors = FirstError()
        self.coordinator = ShutdownCoordinator(self.root, self.barrier)
        self.engine: Optional[BackgroundScheduler] = None
        self.guards: Dict[str, SkipIfStillRunning] = {}
        self.install_signal_handlers = install_signal_handlers

    def _execute(self, task: TaskDefinition):
        """Run a task that is already registered with the barrier."""
        try:
            process_task(task, self.root, self.runtime)
        except TaskFailedError as e:
            if self.errors.record(e):
                logger.debug(f"'{task.name}' holds the first failure")
        finally:
            self.barrier.deregister()

    def _fire(self, task: TaskDefinition):
        """Trigger callback. Never raises into the engine."""
        if not self.barrier.register():
            logger.debug(f"Shutting down, not starting '{task.name}'")
            return
        logger.debug(f"Running task '{task.name}'")
        self._execute(task)

    def create_engine(self) -> BackgroundScheduler:
        """
        Register every schedulable task with a new BackgroundScheduler.

        Tasks without a schedule or interval, or with one that cannot be
        parsed, are logged and left out.
        """
        jobs = []
        for index, task in enumerate(self.tasks):
            expression = task.trigger_expression
            if not expression:
                logger.error(f"No schedule or interval found for '{task.name}', ignoring")
                continue
            try:
                trigger = build_trigger(expression)
            except ValueError as e:
                logger.error(f"Invalid schedule for '{task.name}', ignoring: {e}")
                continue
            jobs.append((index, task, expression, trigger))

        engine = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max(1, len(jobs)))},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                # a firing more than a second late is dropped, not replayed
                'misfire_grace_time': 1,
            },
        )

        for index, task, expression, trigger in jobs:
            guard = SkipIfStillRunning(task.name, lambda task=task: self._fire(task))
            self.guards[task.name] = guard
            engine.add_job(guard, trigger, id=f"{index}-{task.name}", name=task.name)
            logger.debug(f"Scheduled task '{task.name}' with '{expression}'")

        return engine

    def _report(self) -> Optional[BaseException]:
        if self.errors.count:
            logger.error(f"{self.errors.count} task run(s) failed")
        return self.errors.error

    def run_server(self) -> Optional[BaseException]:
        """
        Run tasks on their schedules until interrupted.

        Returns:
            The first task failure, or None
        """
        self.engine = self.create_engine()
        self.coordinator.engine = self.engine
        if self.install_signal_handlers:
            self.coordinator.install_signal_handlers()
        try:
            self.engine.start()
            logger.info(f"Scheduler started with {len(self.engine.get_jobs())} task(s)")
            self.coordinator.wait_for_interrupt()
            self.coordinator.request_shutdown()
            self.coordinator.drain()
        finally:
            self.coordinator.restore_signal_handlers()
        logger.info("Scheduler stopped")
        return self._report()

    def run_once(self) -> Optional[BaseException]:
        """
        Run every task once, concurrently, ignoring schedules.

        Returns:
            The first task failure, or None
        """
        if self.install_signal_handlers:
            self.coordinator.install_signal_handlers()
        try:
            for task in self.tasks:
                if not self.barrier.register():
                    break
                thread = threading.Thread(
                    target=self._execute,
                    args=(task,),
                    name=f"regbot-{task.name}",
                    daemon=True,
                )
                try:
                    thread.start()
                except RuntimeError:
                    self.barrier.deregister()
                    raise
            self.barrier.close()
            self.coordinator.drain()
        finally:
            self.coordinator.restore_signal_handlers()
        return self._report()

    def stop(self):
        """Ask a running service to shut down, as SIGTERM would."""
        self.coordinator.interrupt()
