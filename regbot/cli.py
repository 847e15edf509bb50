"""
Command-line interface.

Commands:
- server: run every script on its schedule until interrupted
- once: run every script once, concurrently, then exit
- version: show version information

The exit status is non-zero when configuration fails to load or any script
run failed.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from regbot.client import ServiceClient
from regbot.config import RunnerConfig
from regbot.errors import ConfigError
from regbot.executor import ShellSandbox
from regbot.gate import ConcurrencyGate
from regbot.runner import Runtime
from regbot.service import SchedulerService
from regbot.version import version_info

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "panic": logging.CRITICAL,
}

_installed_handlers: List[logging.Handler] = []


class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, '%Y-%m-%dT%H:%M:%S'),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def parse_verbosity(value: str) -> int:
    """argparse type for --verbosity."""
    try:
        return LOG_LEVELS[value.lower()]
    except KeyError:
        raise argparse.ArgumentTypeError(
            f"invalid log level {value!r} (choose from {', '.join(LOG_LEVELS)})"
        )


def setup_logging(level: int = logging.INFO, logopts: Optional[List[str]] = None, log_file: str = None):
    """Setup logging configuration."""
    logopts = logopts or []
    if "json" in logopts:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
    _installed_handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter if "json" in logopts else logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)

    # APScheduler is chatty at info level; keep it one step quieter than us
    if level > logging.DEBUG:
        logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))
    else:
        logging.getLogger("apscheduler").setLevel(logging.DEBUG)


def build_service(args) -> Tuple[SchedulerService, ServiceClient]:
    """
    Load configuration and wire up a scheduler service.

    Raises:
        ConfigError: If the configuration cannot be loaded
    """
    config = RunnerConfig.load(args.config)

    logger.debug(f"Configuring parallel settings: parallel={config.defaults.parallel}")
    gate = ConcurrencyGate(config.defaults.parallel)
    client = ServiceClient.from_config(config)
    runtime = Runtime(
        gate=gate,
        sandbox_factory=ShellSandbox,
        client=client,
        dry_run=args.dry_run,
    )
    return SchedulerService(config.scripts, runtime), client


def _run(args, mode: str) -> int:
    try:
        service, client = build_service(args)
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    try:
        if mode == "server":
            error = service.run_server()
        else:
            error = service.run_once()
    finally:
        client.close()

    if error is not None:
        logger.error(f"Finished with errors: {error}")
        return 1
    return 0


def cmd_server(args) -> int:
    """Run scripts according to their schedule."""
    logger.info("Starting regbot server...")
    return _run(args, "server")


def cmd_once(args) -> int:
    """Run each script once, ignoring any scheduling."""
    return _run(args, "once")


def cmd_version(args) -> int:
    """Show the version."""
    info = version_info()
    if args.format == "text":
        for key, value in info.items():
            print(f"{key}: {value}")
    else:
        print(json.dumps(info, indent=2))
    return 0


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="regbot",
        description="Utility for automating repository actions",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Config file ("-" for stdin, default: $REGBOT_CONFIG)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Dry run, skip all external actions'
    )
    parser.add_argument(
        '-v', '--verbosity',
        type=parse_verbosity,
        default=logging.INFO,
        help='Log level (debug, info, warn, error, fatal, panic)'
    )
    parser.add_argument(
        '--logopt',
        action='append',
        default=[],
        help='Log options (json)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Also write logs to this file'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    server_parser = subparsers.add_parser('server', help='Run the regbot server')
    server_parser.set_defaults(func=cmd_server)

    once_parser = subparsers.add_parser('once', help='Run each script once')
    once_parser.set_defaults(func=cmd_once)

    version_parser = subparsers.add_parser('version', help='Show the version')
    version_parser.add_argument(
        '--format',
        choices=['json', 'text'],
        default='json',
        help='Output format (default: json)'
    )
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbosity, args.logopt, args.log_file)
    sys.exit(args.func(args))


if __name__ == '__main__':
    main()
