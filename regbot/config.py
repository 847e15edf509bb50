"""
Runner configuration management.

Loads and validates the JSON configuration that lists the scripts to run,
process-wide defaults, and registry credentials. Task definitions are
immutable once loaded; the scheduler only ever reads them.
"""

import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, IO, List, Optional, Union

from regbot.errors import ConfigError, MissingInputError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "REGBOT_CONFIG"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Union[str, int, float, None]) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) or Go style strings such as "1h30m",
    "45s" or "250ms".

    Args:
        value: Duration to parse. None and "" mean zero.

    Returns:
        Duration in seconds

    Raises:
        ConfigError: If the value is not a valid duration
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    sign = 1.0
    if text[:1] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return sign * total


def format_duration(seconds: float) -> str:
    """Render seconds as a Go style duration string, e.g. 5400 -> '1h30m0s'."""
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    if seconds < 1:
        millis = seconds * 1000
        return f"{sign}{millis:g}ms"

    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    out = sign
    if hours:
        out += f"{int(hours)}h"
    if hours or minutes:
        out += f"{int(minutes)}m"
    out += f"{round(secs, 9):g}s"
    return out


def _int_field(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{label} must be an integer: {e}") from e


@dataclass(frozen=True)
class TaskDefinition:
    """
    One scheduled script.

    A task fires on its cron `schedule` when set, otherwise every `interval`
    seconds. With neither it never fires in server mode but still runs in
    once mode. A `timeout` of zero means no deadline.
    """
    name: str
    script: str
    schedule: Optional[str] = None
    interval: float = 0.0
    timeout: float = 0.0

    @property
    def trigger_expression(self) -> Optional[str]:
        """Effective trigger: the schedule, '@every <interval>', or None."""
        if self.schedule:
            return self.schedule
        if self.interval:
            return f"@every {format_duration(self.interval)}"
        return None


@dataclass
class HostConfig:
    """Registry host settings used by the service client."""
    registry: str
    hostname: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    tls: str = "enabled"  # enabled, insecure, disabled
    reg_cert: Optional[str] = None
    path_prefix: Optional[str] = None
    mirrors: List[str] = field(default_factory=list)
    priority: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostConfig":
        registry = data.get("registry") or data.get("name")
        if not registry:
            raise ConfigError("creds entry is missing 'registry'")
        if data.get("scheme"):
            logger.warning(f"Scheme is deprecated for '{registry}', for http set tls to disabled")
        tls = data.get("tls", "enabled")
        if tls not in ("enabled", "insecure", "disabled"):
            raise ConfigError(f"creds for '{registry}': invalid tls value {tls!r}")
        return cls(
            registry=registry,
            hostname=data.get("hostname"),
            user=data.get("user"),
            password=data.get("pass", data.get("password")),
            token=data.get("token"),
            tls=tls,
            reg_cert=data.get("regcert", data.get("reg_cert")),
            path_prefix=data.get("path_prefix", data.get("pathPrefix")),
            mirrors=list(data.get("mirrors") or []),
            priority=_int_field(data.get("priority", 0), f"creds for '{registry}': priority"),
        )


@dataclass
class Defaults:
    """Process-wide defaults."""
    parallel: int = 1
    interval: float = 0.0
    timeout: float = 0.0
    skip_docker_config: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Defaults":
        return cls(
            parallel=_int_field(data.get("parallel", 1), "defaults.parallel"),
            interval=parse_duration(data.get("interval")),
            timeout=parse_duration(data.get("timeout")),
            skip_docker_config=bool(
                data.get("skip_docker_config", data.get("skipDockerConfig", False))
            ),
        )


class RunnerConfig:
    """
    Runner configuration.

    Config path priority:
    1. Explicit path argument ("-" reads stdin)
    2. REGBOT_CONFIG environment variable
    """

    def __init__(
        self,
        scripts: Optional[List[TaskDefinition]] = None,
        defaults: Optional[Defaults] = None,
        creds: Optional[List[HostConfig]] = None,
        version: int = 1,
    ):
        self.scripts: List[TaskDefinition] = list(scripts or [])
        self.defaults: Defaults = defaults or Defaults()
        self.creds: List[HostConfig] = list(creds or [])
        self.version = version
        self.source: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunnerConfig":
        """
        Build a configuration from parsed JSON.

        Per-script interval and timeout fall back to the defaults section.

        Raises:
            ConfigError: If the structure is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")

        defaults = Defaults.from_dict(data.get("defaults") or {})
        creds = [HostConfig.from_dict(c) for c in data.get("creds") or []]

        scripts = []
        for i, entry in enumerate(data.get("scripts") or []):
            if not isinstance(entry, dict):
                raise ConfigError(f"scripts[{i}] must be an object")
            schedule = entry.get("schedule") or None
            if schedule is not None and not isinstance(schedule, str):
                raise ConfigError(f"scripts[{i}]: 'schedule' must be a string, got {schedule!r}")
            interval = parse_duration(entry.get("interval"))
            timeout = parse_duration(entry.get("timeout"))
            scripts.append(TaskDefinition(
                name=str(entry.get("name") or ""),
                script=str(entry.get("script") or ""),
                schedule=schedule,
                interval=interval if interval else defaults.interval,
                timeout=timeout if timeout else defaults.timeout,
            ))

        return cls(
            scripts=scripts,
            defaults=defaults,
            creds=creds,
            version=_int_field(data.get("version", 1), "version"),
        )

    @classmethod
    def load_reader(cls, stream: IO[str]) -> "RunnerConfig":
        """Load and validate configuration from an open text stream."""
        try:
            data = json.load(stream)
        except json.JSONDecodeError as e:
            raise ConfigError(f"failed to parse configuration: {e}") from e

        config = cls.from_dict(data)
        errors = config.validate()
        if errors:
            logger.error("Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            raise ConfigError("invalid configuration: " + "; ".join(errors))
        return config

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "RunnerConfig":
        """
        Load configuration from a file, stdin ("-"), or REGBOT_CONFIG.

        Raises:
            MissingInputError: If no path was given at all
            ConfigError: If the file cannot be read or is invalid
        """
        config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
        if not config_path:
            raise MissingInputError()

        if config_path == "-":
            config = cls.load_reader(sys.stdin)
        else:
            path = Path(config_path).expanduser()
            try:
                with open(path, "r") as f:
                    config = cls.load_reader(f)
            except OSError as e:
                raise ConfigError(f"failed to read config {path}: {e}") from e

        config.source = config_path
        logger.info(f"Loaded {len(config.scripts)} script(s) from {config_path}")
        return config

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.defaults.parallel < 1:
            errors.append("defaults.parallel must be positive")

        seen = set()
        for i, task in enumerate(self.scripts):
            label = task.name or f"scripts[{i}]"
            if not task.name.strip():
                errors.append(f"{label}: 'name' cannot be empty")
            if not task.script.strip():
                errors.append(f"Script {label}: 'script' cannot be empty")
            if task.interval < 0:
                errors.append(f"Script {label}: 'interval' cannot be negative")
            if task.timeout < 0:
                errors.append(f"Script {label}: 'timeout' cannot be negative")
            if task.name in seen:
                logger.warning(f"Duplicate script name '{task.name}'")
            seen.add(task.name)

        return errors

    def __repr__(self):
        return f"RunnerConfig(scripts={len(self.scripts)}, source={self.source})"
