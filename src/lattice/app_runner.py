"""Create, scale and remove applications on the orchestrator.

AppRunner turns CLI parameters into DesiredLRP requests. It never retries a
write: the orchestrator does not promise idempotent updates.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from lattice.errors import LatticeError, UsageError
from lattice.logs import LATTICE_DEBUG_APP_ID
from lattice.receptor import DesiredLRP, EnvironmentVariable, ReceptorClient, run_action

logger = logging.getLogger(__name__)

LRP_DOMAIN = "lattice"
HEALTHCHECK_PATH = "/tmp/healthcheck"
DEFAULT_PORT = 8080
DEFAULT_POLLING_TIMEOUT = 120.0
POLL_INTERVAL = 1.0

RESERVED_APP_NAME_MESSAGE = (
    f"{LATTICE_DEBUG_APP_ID} is a reserved app name. "
    "It is used internally to stream debug logs for lattice components."
)
INVALID_PORT_MESSAGE = "Invalid port specified. Ports must be a positive integer less than 65536."
MALFORMED_ROUTE_MESSAGE = "Malformed route. Routes must be of the format route:port"
MONITOR_PORT_NOT_EXPOSED_MESSAGE = "Must have an exposed port that matches the monitored port"

NO_MONITOR = "none"
PORT_MONITOR = "port"
URL_MONITOR = "url"

_REPO_COMPONENT = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")


class AppRunnerError(LatticeError):
    """An application could not be created, scaled or removed."""


# =============================================================================
# Parameters
# =============================================================================


@dataclass
class MonitorConfig:
    method: str = PORT_MONITOR
    port: int = 0
    uri: str = ""
    timeout: float = 0.0


@dataclass
class RouteOverride:
    hostname_prefix: str
    port: int


@dataclass
class AppEnvironmentParams:
    """Resource and routing settings shared by image and droplet apps."""

    environment_variables: dict[str, str] = field(default_factory=dict)
    privileged: bool = False
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    instances: int = 1
    cpu_weight: int = 100
    memory_mb: int = 128
    disk_mb: int = 0
    exposed_ports: list[int] = field(default_factory=lambda: [DEFAULT_PORT])
    working_dir: str = "/"
    route_overrides: list[RouteOverride] = field(default_factory=list)
    no_routes: bool = False


@dataclass
class CreateAppParams:
    name: str
    start_command: str
    root_fs: str
    app_args: list[str] = field(default_factory=list)
    annotation: str = ""
    setup: dict[str, Any] | None = None
    environment: AppEnvironmentParams = field(default_factory=AppEnvironmentParams)


# =============================================================================
# Argument parsing
# =============================================================================


def parse_port(value: str | int) -> int:
    """Parse a TCP port.

    Raises:
        UsageError: Unless 0 < port < 65536.
    """
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise UsageError(INVALID_PORT_MESSAGE)
    if port <= 0 or port > 65535:
        raise UsageError(INVALID_PORT_MESSAGE)
    return port


def parse_ports(value: str) -> list[int]:
    """Comma-separated port list; empty means the default port."""
    ports = [parse_port(p.strip()) for p in value.split(",") if p.strip()]
    return ports or [DEFAULT_PORT]


def parse_route_overrides(value: str) -> list[RouteOverride]:
    """Parse ``host:port[,host:port...]``."""
    overrides = []
    for route in value.split(","):
        route = route.strip()
        if not route:
            continue
        prefix, sep, port = route.partition(":")
        prefix = prefix.strip()
        if not sep or not prefix:
            raise UsageError(MALFORMED_ROUTE_MESSAGE)
        overrides.append(RouteOverride(hostname_prefix=prefix, port=parse_port(port)))
    return overrides


def parse_env_pair(pair: str) -> tuple[str, str]:
    name, _, value = pair.partition("=")
    return name, value


def build_environment(env_args: list[str], environ: Mapping[str, str]) -> dict[str, str]:
    """``KEY=VAL`` pairs; a bare ``KEY`` takes its value from ``environ``."""
    environment: dict[str, str] = {}
    for pair in env_args:
        name, value = parse_env_pair(pair)
        if value == "":
            value = environ.get(name, "")
        environment[name] = value
    return environment


def build_app_environment(env_args: list[str], app_name: str, environ: Mapping[str, str]) -> dict[str, str]:
    environment = build_environment(env_args, environ)
    environment.setdefault("PROCESS_GUID", app_name)
    return environment


def monitor_config(
    exposed_ports: list[int],
    monitor_port: int = 0,
    no_monitor: bool = False,
    monitor_url: str = "",
    monitor_timeout: float = 0.0,
) -> MonitorConfig:
    """Pick how instance health is checked.

    ``monitor_url`` is ``PORT:/path``. Without a port or URL the lowest
    exposed port is monitored.

    Raises:
        UsageError: If the monitored port is not exposed.
    """
    if no_monitor:
        return MonitorConfig(method=NO_MONITOR)

    if monitor_url:
        port_text, sep, uri = monitor_url.partition(":")
        if not sep:
            raise UsageError(INVALID_PORT_MESSAGE)
        port = parse_port(port_text)
        if port not in exposed_ports:
            raise UsageError(MONITOR_PORT_NOT_EXPOSED_MESSAGE)
        return MonitorConfig(method=URL_MONITOR, port=port, uri=uri, timeout=monitor_timeout)

    port = monitor_port or sorted(exposed_ports)[0]
    if port not in exposed_ports:
        raise UsageError(MONITOR_PORT_NOT_EXPOSED_MESSAGE)
    return MonitorConfig(method=PORT_MONITOR, port=port, timeout=monitor_timeout)


def format_docker_rootfs(image: str) -> str:
    """Turn ``[registry/]repo[:tag]`` into a ``docker://`` rootfs URL.

    Official images gain the ``library/`` namespace, the tag defaults to
    ``latest``.

    Raises:
        UsageError: For URLs with a scheme or invalid repository names.
    """
    if "://" in image:
        raise UsageError(f"docker URI [{image}] should not contain scheme")

    repository, tag = image, "latest"
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        repository, tag = image[:colon], image[colon + 1 :]
        if not _TAG.match(tag):
            raise UsageError(f"Invalid tag name ({tag})")

    registry = ""
    parts = repository.split("/")
    if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry, parts = parts[0], parts[1:]
    if registry == "docker.io" and len(parts) == 1:
        parts = ["library"] + parts
    if not registry and len(parts) == 1:
        parts = ["library"] + parts

    for part in parts:
        if not _REPO_COMPONENT.match(part):
            raise UsageError(f"Invalid repository name ({image}), only [a-z0-9-_.] are allowed")

    return f"docker://{registry}/{'/'.join(parts)}#{tag}"


def primary_port(params: AppEnvironmentParams) -> int:
    if params.monitor.port:
        return params.monitor.port
    if params.exposed_ports:
        return params.exposed_ports[0]
    return 0


def _user_for_privilege(privileged: bool) -> str:
    return "root" if privileged else "vcap"


# =============================================================================
# Runner
# =============================================================================


class AppRunner:
    """Writes desired state for applications."""

    def __init__(self, client: ReceptorClient, system_domain: str):
        self.client = client
        self.system_domain = system_domain

    async def desired_lrp_exists(self, name: str) -> bool:
        desired = await self.client.desired_lrps()
        return any(lrp.process_guid == name for lrp in desired)

    def build_routes(self, name: str, params: AppEnvironmentParams) -> list[str]:
        if params.no_routes:
            return []
        if params.route_overrides:
            return [f"{o.hostname_prefix}.{self.system_domain}" for o in params.route_overrides]
        routes = []
        primary = primary_port(params)
        for port in params.exposed_ports:
            if port == primary:
                routes.append(f"{name}.{self.system_domain}")
            routes.append(f"{name}-{port}.{self.system_domain}")
        return routes

    def build_desired_lrp(self, params: CreateAppParams) -> DesiredLRP:
        env = params.environment
        user = _user_for_privilege(env.privileged)
        port = primary_port(env)

        variables = [EnvironmentVariable(k, v) for k, v in env.environment_variables.items()]
        variables.append(EnvironmentVariable("PORT", str(port)))

        monitor = None
        if env.monitor.method in (PORT_MONITOR, URL_MONITOR):
            args = []
            if env.monitor.timeout:
                args += ["-timeout", f"{env.monitor.timeout:g}s"]
            args += ["-port", str(env.monitor.port)]
            if env.monitor.method == URL_MONITOR:
                args += ["-uri", env.monitor.uri]
            monitor = run_action(HEALTHCHECK_PATH, args, log_source="HEALTH", user=user)

        return DesiredLRP(
            process_guid=params.name,
            domain=LRP_DOMAIN,
            root_fs=params.root_fs,
            instances=env.instances,
            environment_variables=variables,
            disk_mb=env.disk_mb,
            memory_mb=env.memory_mb,
            cpu_weight=env.cpu_weight,
            privileged=env.privileged,
            ports=list(env.exposed_ports),
            routes=self.build_routes(params.name, env),
            log_guid=params.name,
            log_source="APP",
            metrics_guid=params.name,
            annotation=params.annotation,
            setup=params.setup,
            action=run_action(params.start_command, params.app_args, dir=env.working_dir, user=user),
            monitor=monitor,
        )

    async def create_app(self, params: CreateAppParams) -> None:
        """Desire a new application.

        Raises:
            AppRunnerError: For the reserved debug name or an existing app.
        """
        if params.name == LATTICE_DEBUG_APP_ID:
            raise AppRunnerError(RESERVED_APP_NAME_MESSAGE)
        if await self.desired_lrp_exists(params.name):
            raise AppRunnerError(f"{params.name} is already running")

        await self.client.upsert_domain(LRP_DOMAIN, 0)
        request = self.build_desired_lrp(params)
        logger.debug(f"Creating desired LRP {params.name} with rootfs {params.root_fs}")
        await self.client.create_desired_lrp(request)

    async def scale_app(self, name: str, instances: int) -> None:
        if not await self.desired_lrp_exists(name):
            raise AppRunnerError(f"{name} is not started.")
        await self.client.update_desired_lrp(name, instances)

    async def remove_app(self, name: str) -> None:
        if not await self.desired_lrp_exists(name):
            raise AppRunnerError(f"{name} is not started.")
        await self.client.delete_desired_lrp(name)


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float = POLL_INTERVAL,
    on_tick: Callable[[], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> bool:
    """Evaluate ``predicate`` every ``interval`` seconds until true or timeout.

    Returns:
        True if the predicate held before the deadline.
    """
    deadline = clock() + timeout
    while clock() < deadline:
        if await predicate():
            return True
        if on_tick is not None:
            on_tick()
        await sleep(interval)
    return False
