"""Orchestrator (receptor) API client.

Provides:
- Typed records for desired LRPs, actual LRPs, cells and tasks
- ReceptorClient: the narrow interface the rest of ltc consumes
- HttpReceptorClient: JSON-over-HTTP implementation with basic auth
- FakeReceptorClient: in-memory implementation for tests and dry runs
- Helpers that build the action documents used by LRPs and tasks
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

import aiohttp

from lattice.errors import (
    DESIRED_LRP_ALREADY_EXISTS,
    DESIRED_LRP_NOT_FOUND,
    INVALID_RESPONSE,
    ROUTER_ERROR,
    TASK_NOT_FOUND,
    UNAUTHORIZED,
    UNKNOWN_ERROR,
    NetworkError,
    NetworkTimeoutError,
    OrchestratorError,
)
from lattice.resilience import RetryPolicy
from lattice.urls import split_credentials

logger = logging.getLogger(__name__)

ROUTER_ERROR_HEADER = "X-Cf-Routererror"


def _segment(value: str) -> str:
    """Quote a guid or domain for use as a single URL path segment."""
    return quote(value, safe="")


# =============================================================================
# Records
# =============================================================================


class ActualLRPState(str, Enum):
    """Placement state of one instance."""

    INVALID = "INVALID"
    UNCLAIMED = "UNCLAIMED"
    CLAIMED = "CLAIMED"
    RUNNING = "RUNNING"
    CRASHED = "CRASHED"

    @classmethod
    def parse(cls, value: str | None) -> ActualLRPState:
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.INVALID


@dataclass
class EnvironmentVariable:
    name: str
    value: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "value": self.value}


@dataclass
class PortMapping:
    container_port: int
    host_port: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"container_port": self.container_port, "host_port": self.host_port}


def _routes_from_json(raw: Any) -> list[str]:
    """Accept a plain hostname list or a ``{"cf-router": [...]}`` mapping."""
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(r) for r in raw]
    hostnames: list[str] = []
    for route in raw.get("cf-router") or []:
        hostnames.extend(route.get("hostnames") or [])
    return hostnames


@dataclass
class DesiredLRP:
    """A user's intent for one long-running application.

    Also used as the create request body.
    """

    process_guid: str
    domain: str = ""
    root_fs: str = ""
    instances: int = 0
    stack: str = ""
    environment_variables: list[EnvironmentVariable] = field(default_factory=list)
    start_timeout: int = 0
    disk_mb: int = 0
    memory_mb: int = 0
    cpu_weight: int = 0
    privileged: bool = False
    ports: list[int] = field(default_factory=list)
    routes: list[str] = field(default_factory=list)
    log_guid: str = ""
    log_source: str = ""
    metrics_guid: str = ""
    annotation: str = ""
    setup: dict[str, Any] | None = None
    action: dict[str, Any] | None = None
    monitor: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DesiredLRP:
        return cls(
            process_guid=data.get("process_guid", ""),
            domain=data.get("domain", ""),
            root_fs=data.get("rootfs", ""),
            instances=data.get("instances") or 0,
            stack=data.get("stack", ""),
            environment_variables=[
                EnvironmentVariable(e.get("name", ""), e.get("value", ""))
                for e in data.get("env") or []
            ],
            start_timeout=data.get("start_timeout") or 0,
            disk_mb=data.get("disk_mb") or 0,
            memory_mb=data.get("memory_mb") or 0,
            cpu_weight=data.get("cpu_weight") or 0,
            privileged=bool(data.get("privileged")),
            ports=list(data.get("ports") or []),
            routes=_routes_from_json(data.get("routes")),
            log_guid=data.get("log_guid", ""),
            log_source=data.get("log_source", ""),
            metrics_guid=data.get("metrics_guid", ""),
            annotation=data.get("annotation", ""),
            setup=data.get("setup"),
            action=data.get("action"),
            monitor=data.get("monitor"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "process_guid": self.process_guid,
            "domain": self.domain,
            "rootfs": self.root_fs,
            "instances": self.instances,
            "stack": self.stack,
            "env": [e.to_dict() for e in self.environment_variables],
            "start_timeout": self.start_timeout,
            "disk_mb": self.disk_mb,
            "memory_mb": self.memory_mb,
            "cpu_weight": self.cpu_weight,
            "privileged": self.privileged,
            "ports": list(self.ports),
            "routes": list(self.routes),
            "log_guid": self.log_guid,
            "log_source": self.log_source,
            "metrics_guid": self.metrics_guid,
            "annotation": self.annotation,
        }
        for key in ("setup", "action", "monitor"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class ActualLRP:
    """The platform's record of one placed or running instance."""

    process_guid: str
    instance_guid: str = ""
    cell_id: str = ""
    domain: str = ""
    index: int = 0
    address: str = ""
    ports: list[PortMapping] = field(default_factory=list)
    state: ActualLRPState = ActualLRPState.UNCLAIMED
    crash_count: int = 0
    placement_error: str = ""
    since: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActualLRP:
        return cls(
            process_guid=data.get("process_guid", ""),
            instance_guid=data.get("instance_guid", ""),
            cell_id=data.get("cell_id", ""),
            domain=data.get("domain", ""),
            index=data.get("index") or 0,
            address=data.get("address", ""),
            ports=[
                PortMapping(p.get("container_port", 0), p.get("host_port", 0))
                for p in data.get("ports") or []
            ],
            state=ActualLRPState.parse(data.get("state")),
            crash_count=data.get("crash_count") or 0,
            placement_error=data.get("placement_error", ""),
            since=data.get("since") or 0,
        )


@dataclass
class CellCapacity:
    memory_mb: int = 0
    disk_mb: int = 0
    containers: int = 0


@dataclass
class Cell:
    """A worker node."""

    cell_id: str
    zone: str = ""
    capacity: CellCapacity = field(default_factory=CellCapacity)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Cell:
        capacity = data.get("capacity") or {}
        return cls(
            cell_id=data.get("cell_id", ""),
            zone=data.get("zone", ""),
            capacity=CellCapacity(
                memory_mb=capacity.get("memory_mb") or 0,
                disk_mb=capacity.get("disk_mb") or 0,
                containers=capacity.get("containers") or 0,
            ),
        )


@dataclass
class Task:
    """A one-off unit of work, such as a droplet build."""

    task_guid: str
    domain: str = ""
    root_fs: str = ""
    action: dict[str, Any] | None = None
    environment_variables: list[EnvironmentVariable] = field(default_factory=list)
    cpu_weight: int = 0
    disk_mb: int = 0
    memory_mb: int = 0
    log_guid: str = ""
    log_source: str = ""
    result_file: str = ""
    annotation: str = ""
    privileged: bool = False
    state: str = ""
    failed: bool = False
    failure_reason: str = ""
    result: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            task_guid=data.get("task_guid", ""),
            domain=data.get("domain", ""),
            root_fs=data.get("rootfs", ""),
            action=data.get("action"),
            environment_variables=[
                EnvironmentVariable(e.get("name", ""), e.get("value", ""))
                for e in data.get("env") or []
            ],
            cpu_weight=data.get("cpu_weight") or 0,
            disk_mb=data.get("disk_mb") or 0,
            memory_mb=data.get("memory_mb") or 0,
            log_guid=data.get("log_guid", ""),
            log_source=data.get("log_source", ""),
            result_file=data.get("result_file", ""),
            annotation=data.get("annotation", ""),
            privileged=bool(data.get("privileged")),
            state=data.get("state", ""),
            failed=bool(data.get("failed")),
            failure_reason=data.get("failure_reason", ""),
            result=data.get("result", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "task_guid": self.task_guid,
            "domain": self.domain,
            "rootfs": self.root_fs,
            "env": [e.to_dict() for e in self.environment_variables],
            "cpu_weight": self.cpu_weight,
            "disk_mb": self.disk_mb,
            "memory_mb": self.memory_mb,
            "log_guid": self.log_guid,
            "log_source": self.log_source,
            "result_file": self.result_file,
            "annotation": self.annotation,
            "privileged": self.privileged,
        }
        if self.action is not None:
            data["action"] = self.action
        return data


# =============================================================================
# Actions
# =============================================================================


def download_action(
    from_url: str,
    to: str,
    cache_key: str = "",
    user: str = "",
) -> dict[str, Any]:
    """Fetch and extract an archive into a container directory."""
    action: dict[str, Any] = {"from": from_url, "to": to, "cache_key": cache_key}
    if user:
        action["user"] = user
    return {"download": action}


def run_action(
    path: str,
    args: list[str] | None = None,
    dir: str = "",
    user: str = "",
    env: list[EnvironmentVariable] | None = None,
    log_source: str = "",
) -> dict[str, Any]:
    """Run a process inside the container."""
    action: dict[str, Any] = {"path": path, "args": list(args or [])}
    if dir:
        action["dir"] = dir
    if user:
        action["user"] = user
    if env:
        action["env"] = [e.to_dict() for e in env]
    if log_source:
        action["log_source"] = log_source
    return {"run": action}


def serial_action(actions: list[dict[str, Any]], log_source: str = "") -> dict[str, Any]:
    """Run actions one after another, stopping at the first failure."""
    action: dict[str, Any] = {"actions": list(actions)}
    if log_source:
        action["log_source"] = log_source
    return {"serial": action}


# =============================================================================
# Client interface
# =============================================================================


class ReceptorClient(ABC):
    """Operations ltc consumes from the orchestrator API."""

    @abstractmethod
    async def cells(self) -> list[Cell]:
        """List the live cells."""

    @abstractmethod
    async def desired_lrps(self) -> list[DesiredLRP]:
        """List every desired LRP."""

    @abstractmethod
    async def actual_lrps(self) -> list[ActualLRP]:
        """List every actual LRP."""

    @abstractmethod
    async def get_desired_lrp(self, process_guid: str) -> DesiredLRP:
        """Fetch one desired LRP.

        Raises:
            OrchestratorError: ``DesiredLRPNotFound`` if it does not exist.
        """

    @abstractmethod
    async def actual_lrps_by_process_guid(self, process_guid: str) -> list[ActualLRP]:
        """List the actual LRPs of one application."""

    @abstractmethod
    async def create_desired_lrp(self, request: DesiredLRP) -> None:
        """Desire a new LRP."""

    @abstractmethod
    async def update_desired_lrp(self, process_guid: str, instances: int) -> None:
        """Change the desired instance count."""

    @abstractmethod
    async def delete_desired_lrp(self, process_guid: str) -> None:
        """Remove a desired LRP."""

    @abstractmethod
    async def upsert_domain(self, domain: str, ttl_seconds: int = 0) -> None:
        """Create or refresh a domain; ttl 0 means it never expires."""

    @abstractmethod
    async def create_task(self, task: Task) -> None:
        """Submit a one-off task."""

    @abstractmethod
    async def get_task(self, task_guid: str) -> Task:
        """Fetch one task."""

    @abstractmethod
    async def tasks(self) -> list[Task]:
        """List every task."""


# =============================================================================
# HTTP implementation
# =============================================================================


class HttpReceptorClient(ReceptorClient):
    """JSON-over-HTTP receptor client.

    Reads are retried with ``read_policy``; writes are sent exactly once.
    Every call is bounded by ``timeout`` seconds when one is given, and a
    call that runs past it raises NetworkTimeoutError without a retry.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        read_policy: RetryPolicy | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, optionally with ``user:pass@`` credentials.
            timeout: Per-call deadline in seconds, None for no deadline.
            read_policy: Retry policy for idempotent reads.
        """
        url, auth = split_credentials(base_url.rstrip("/"))
        self.base_url = url
        self.auth = auth
        self.timeout = timeout
        self.read_policy = read_policy or RetryPolicy()

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.request(method, url, json=body, auth=self.auth) as response:
                    return await self._handle_response(response)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {url} failed: {str(e) or type(e).__name__}") from e

    async def _handle_response(self, response: aiohttp.ClientResponse) -> Any:
        router_error = response.headers.get(ROUTER_ERROR_HEADER)
        if router_error:
            raise OrchestratorError(ROUTER_ERROR, router_error)

        if response.status == 401:
            raise OrchestratorError(UNAUTHORIZED, "Unauthorized")

        if response.status > 299:
            if response.content_type == "application/json":
                try:
                    payload = await response.json()
                except ValueError:
                    payload = None
                if isinstance(payload, dict):
                    raise OrchestratorError(
                        payload.get("name") or UNKNOWN_ERROR,
                        payload.get("message") or f"status code {response.status}",
                    )
            raise OrchestratorError(
                INVALID_RESPONSE,
                f"Invalid Response with status code: {response.status}",
            )

        text = await response.text()
        if not text.strip():
            return None
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise OrchestratorError(INVALID_RESPONSE, f"Invalid JSON in response: {e}")

    async def _read(self, path: str) -> Any:
        return await self.read_policy.execute_or_raise_last(
            lambda: self._request("GET", path), description=f"GET {path}"
        )

    async def cells(self) -> list[Cell]:
        return [Cell.from_dict(c) for c in await self._read("/v1/cells") or []]

    async def desired_lrps(self) -> list[DesiredLRP]:
        return [DesiredLRP.from_dict(d) for d in await self._read("/v1/desired_lrps") or []]

    async def actual_lrps(self) -> list[ActualLRP]:
        return [ActualLRP.from_dict(a) for a in await self._read("/v1/actual_lrps") or []]

    async def get_desired_lrp(self, process_guid: str) -> DesiredLRP:
        data = await self._read(f"/v1/desired_lrps/{_segment(process_guid)}")
        if not data:
            raise OrchestratorError(DESIRED_LRP_NOT_FOUND, f"Desired LRP {process_guid} not found")
        return DesiredLRP.from_dict(data)

    async def actual_lrps_by_process_guid(self, process_guid: str) -> list[ActualLRP]:
        data = await self._read(f"/v1/actual_lrps/{_segment(process_guid)}")
        return [ActualLRP.from_dict(a) for a in data or []]

    async def create_desired_lrp(self, request: DesiredLRP) -> None:
        await self._request("POST", "/v1/desired_lrps", request.to_dict())

    async def update_desired_lrp(self, process_guid: str, instances: int) -> None:
        await self._request("PUT", f"/v1/desired_lrps/{_segment(process_guid)}", {"instances": instances})

    async def delete_desired_lrp(self, process_guid: str) -> None:
        await self._request("DELETE", f"/v1/desired_lrps/{_segment(process_guid)}")

    async def upsert_domain(self, domain: str, ttl_seconds: int = 0) -> None:
        # The receptor reads the TTL from Cache-Control; no body.
        url = f"{self.base_url}/v1/domains/{_segment(domain)}"
        headers = {"Cache-Control": f"max-age={ttl_seconds}"} if ttl_seconds else {}
        logger.debug(f"PUT {url}")
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.put(url, headers=headers, auth=self.auth) as response:
                    await self._handle_response(response)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(f"PUT {url} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"PUT {url} failed: {str(e) or type(e).__name__}") from e

    async def create_task(self, task: Task) -> None:
        await self._request("POST", "/v1/tasks", task.to_dict())

    async def get_task(self, task_guid: str) -> Task:
        data = await self._read(f"/v1/tasks/{_segment(task_guid)}")
        if not data:
            raise OrchestratorError(TASK_NOT_FOUND, f"Task {task_guid} not found")
        return Task.from_dict(data)

    async def tasks(self) -> list[Task]:
        return [Task.from_dict(t) for t in await self._read("/v1/tasks") or []]


# =============================================================================
# In-memory implementation
# =============================================================================


class FakeReceptorClient(ReceptorClient):
    """In-memory receptor for tests.

    Set ``errors[operation_name]`` to make the next and every later call of
    that operation raise. ``calls`` records (operation, args) in order.
    """

    def __init__(
        self,
        desired: list[DesiredLRP] | None = None,
        actual: list[ActualLRP] | None = None,
        cells: list[Cell] | None = None,
    ):
        self.desired: list[DesiredLRP] = list(desired or [])
        self.actual: list[ActualLRP] = list(actual or [])
        self.cell_list: list[Cell] = list(cells or [])
        self.domains: dict[str, int] = {}
        self.task_list: list[Task] = []
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        if operation in self.errors:
            raise self.errors[operation]

    def _find_desired(self, process_guid: str) -> DesiredLRP | None:
        for lrp in self.desired:
            if lrp.process_guid == process_guid:
                return lrp
        return None

    async def cells(self) -> list[Cell]:
        self._record("cells")
        return list(self.cell_list)

    async def desired_lrps(self) -> list[DesiredLRP]:
        self._record("desired_lrps")
        return list(self.desired)

    async def actual_lrps(self) -> list[ActualLRP]:
        self._record("actual_lrps")
        return list(self.actual)

    async def get_desired_lrp(self, process_guid: str) -> DesiredLRP:
        self._record("get_desired_lrp", process_guid)
        lrp = self._find_desired(process_guid)
        if lrp is None:
            raise OrchestratorError(DESIRED_LRP_NOT_FOUND, f"Desired LRP {process_guid} not found")
        return lrp

    async def actual_lrps_by_process_guid(self, process_guid: str) -> list[ActualLRP]:
        self._record("actual_lrps_by_process_guid", process_guid)
        return [a for a in self.actual if a.process_guid == process_guid]

    async def create_desired_lrp(self, request: DesiredLRP) -> None:
        self._record("create_desired_lrp", request)
        if self._find_desired(request.process_guid) is not None:
            raise OrchestratorError(
                DESIRED_LRP_ALREADY_EXISTS, f"Desired LRP {request.process_guid} already exists"
            )
        self.desired.append(request)

    async def update_desired_lrp(self, process_guid: str, instances: int) -> None:
        self._record("update_desired_lrp", process_guid, instances)
        lrp = self._find_desired(process_guid)
        if lrp is None:
            raise OrchestratorError(DESIRED_LRP_NOT_FOUND, f"Desired LRP {process_guid} not found")
        lrp.instances = instances

    async def delete_desired_lrp(self, process_guid: str) -> None:
        self._record("delete_desired_lrp", process_guid)
        lrp = self._find_desired(process_guid)
        if lrp is None:
            raise OrchestratorError(DESIRED_LRP_NOT_FOUND, f"Desired LRP {process_guid} not found")
        self.desired.remove(lrp)

    async def upsert_domain(self, domain: str, ttl_seconds: int = 0) -> None:
        self._record("upsert_domain", domain, ttl_seconds)
        self.domains[domain] = ttl_seconds

    async def create_task(self, task: Task) -> None:
        self._record("create_task", task)
        self.task_list.append(task)

    async def get_task(self, task_guid: str) -> Task:
        self._record("get_task", task_guid)
        for task in self.task_list:
            if task.task_guid == task_guid:
                return task
        raise OrchestratorError(TASK_NOT_FOUND, f"Task {task_guid} not found")

    async def tasks(self) -> list[Task]:
        self._record("tasks")
        return list(self.task_list)
