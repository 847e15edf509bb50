"""
Registry service client.

A thin wrapper over a requests.Session that knows each configured registry
host: its hostname, TLS mode, path prefix and credentials. Credentials come
from the config file and, unless disabled, from the Docker CLI config.

Every request holds one unit of the concurrency gate while it is in flight
and maps the caller's context deadline onto the HTTP timeout.
"""

import base64
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import requests

from regbot.config import HostConfig, RunnerConfig
from regbot.context import Context
from regbot.errors import DeadlineExceeded
from regbot.gate import ConcurrencyGate
from regbot.version import VCS_REF

logger = logging.getLogger(__name__)

USER_AGENT = "regclient/regbot"
DEFAULT_TIMEOUT = 30  # seconds, used when the context has no deadline
DOCKER_HUB = "docker.io"
DOCKER_HUB_HOSTNAME = "registry-1.docker.io"
_DOCKER_HUB_ALIASES = ("index.docker.io", "registry-1.docker.io", "registry.hub.docker.com")


def _docker_config_path() -> Path:
    """Get the Docker CLI config file path."""
    config_dir = os.environ.get("DOCKER_CONFIG")
    if config_dir:
        return Path(config_dir).expanduser() / "config.json"
    return Path.home() / ".docker" / "config.json"


def _normalize_registry(name: str) -> str:
    """Strip scheme and path from a Docker auths key, e.g. 'https://index.docker.io/v1/'."""
    name = name.strip()
    for prefix in ("https://", "http://"):
        if name.startswith(prefix):
            name = name[len(prefix):]
    name = name.split("/", 1)[0]
    if name in _DOCKER_HUB_ALIASES:
        return DOCKER_HUB
    return name


def load_docker_credentials(path: Optional[Path] = None) -> List[HostConfig]:
    """
    Read registry logins from the Docker CLI config.

    Args:
        path: Config file to read (default: $DOCKER_CONFIG/config.json or ~/.docker/config.json)

    Returns:
        One HostConfig per entry under 'auths'. A missing or unreadable file
        yields an empty list.
    """
    path = path or _docker_config_path()
    if not path.exists():
        logger.debug(f"No docker config at {path}")
        return []

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to read docker config {path}: {e}")
        return []

    hosts = []
    for key, entry in (data.get("auths") or {}).items():
        host = HostConfig(registry=_normalize_registry(key))
        auth = (entry or {}).get("auth")
        if auth:
            try:
                user, _, password = base64.b64decode(auth).decode("utf-8").partition(":")
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping docker credentials for '{key}': {e}")
                continue
            host.user, host.password = user, password
        if (entry or {}).get("identitytoken"):
            host.token = entry["identitytoken"]
        hosts.append(host)

    logger.debug(f"Loaded {len(hosts)} docker credential(s) from {path}")
    return hosts


class ServiceClient:
    """HTTP client for the configured registries."""

    def __init__(
        self,
        hosts: Optional[List[HostConfig]] = None,
        user_agent: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            hosts: Registry host settings. Later entries override earlier ones.
            user_agent: User-Agent header value
            session: Session to use (a new one is created if not given)
        """
        self.user_agent = user_agent or f"{USER_AGENT} ({VCS_REF})"
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = self.user_agent
        self.hosts: Dict[str, HostConfig] = {}
        for host in hosts or []:
            self.hosts[host.registry] = host

    @classmethod
    def from_config(cls, config: RunnerConfig, docker_config: Optional[Path] = None) -> "ServiceClient":
        """
        Build a client from the runner configuration.

        Docker CLI logins are loaded first, unless defaults.skip_docker_config
        is set, so that config file credentials take precedence.
        """
        hosts: List[HostConfig] = []
        if not config.defaults.skip_docker_config:
            hosts.extend(load_docker_credentials(docker_config))
        hosts.extend(config.creds)
        return cls(hosts=hosts)

    def host(self, registry: str) -> HostConfig:
        """Settings for a registry, defaults if it is not configured."""
        registry = _normalize_registry(registry)
        return self.hosts.get(registry) or HostConfig(registry=registry)

    def base_url(self, registry: str) -> str:
        host = self.host(registry)
        hostname = host.hostname or host.registry
        if hostname == DOCKER_HUB:
            hostname = DOCKER_HUB_HOSTNAME
        scheme = "http" if host.tls == "disabled" else "https"
        url = f"{scheme}://{hostname}"
        if host.path_prefix:
            url += "/" + host.path_prefix.strip("/")
        return url

    def request(
        self,
        ctx: Context,
        method: str,
        registry: str,
        path: str,
        gate: Optional[ConcurrencyGate] = None,
        **kwargs,
    ) -> requests.Response:
        """
        Send a request to a registry.

        Args:
            ctx: Context bounding the call; its deadline becomes the timeout
            method: HTTP method
            registry: Registry name as configured
            path: Request path, e.g. '/v2/'
            gate: Concurrency gate to hold a unit of while the call is in flight
            **kwargs: Passed through to requests

        Returns:
            The response (2xx only)

        Raises:
            Canceled, DeadlineExceeded: The context ended before the call
            requests.exceptions.RequestException: The call failed
        """
        ctx.raise_if_done()
        host = self.host(registry)
        url = self.base_url(registry) + "/" + path.lstrip("/")

        headers = dict(kwargs.pop("headers", None) or {})
        auth = None
        if host.token:
            headers["Authorization"] = f"Bearer {host.token}"
        elif host.user:
            auth = (host.user, host.password or "")
        verify = host.reg_cert or host.tls != "insecure"

        if gate is not None:
            gate.acquire(ctx)
        try:
            timeout = ctx.remaining()
            if timeout is None:
                timeout = DEFAULT_TIMEOUT
            elif timeout <= 0:
                raise DeadlineExceeded()

            logger.debug(f"{method} {url}")
            response = self.session.request(
                method,
                url,
                headers=headers,
                auth=auth,
                timeout=timeout,
                verify=verify,
                **kwargs,
            )
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed for {url}: {e}")
            raise
        finally:
            if gate is not None:
                gate.release()

    def close(self):
        self.session.close()
