"""Application and cell views built from orchestrator listings.

The orchestrator reports desired intent and actual placements separately.
AppExaminer joins them into one record per application and one per cell,
tolerating listings that are not a consistent snapshot:
- actual instances whose desired record is gone (stopping apps)
- desired records with no instances yet
- instances on cells that have left the cell list (missing cells)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from lattice.errors import AppNotFoundError, OrchestratorError
from lattice.receptor import (
    ActualLRP,
    ActualLRPState,
    DesiredLRP,
    EnvironmentVariable,
    PortMapping,
    ReceptorClient,
)

logger = logging.getLogger(__name__)


@dataclass
class InstanceInfo:
    """One actual instance of an application."""

    instance_guid: str
    cell_id: str = ""
    index: int = 0
    ip: str = ""
    ports: list[PortMapping] = field(default_factory=list)
    state: ActualLRPState = ActualLRPState.UNCLAIMED
    since: int = 0
    placement_error: str = ""
    crash_count: int = 0


@dataclass
class AppInfo:
    """Merged view of one application.

    Fields copied from the desired record stay at their zero values when
    the application has no desired record.
    """

    process_guid: str
    desired_instances: int = 0
    actual_running_instances: int = 0
    stack: str = ""
    environment_variables: list[EnvironmentVariable] = field(default_factory=list)
    start_timeout: int = 0
    disk_mb: int = 0
    memory_mb: int = 0
    cpu_weight: int = 0
    ports: list[int] = field(default_factory=list)
    routes: list[str] = field(default_factory=list)
    log_guid: str = ""
    log_source: str = ""
    annotation: str = ""
    actual_instances: list[InstanceInfo] = field(default_factory=list)


@dataclass
class CellInfo:
    """Instance counts for one cell.

    ``missing`` is set when instances reference a cell that is absent from
    the cell list.
    """

    cell_id: str
    running_instances: int = 0
    claimed_instances: int = 0
    missing: bool = False
    zone: str = ""
    memory_mb: int = 0
    disk_mb: int = 0
    containers: int = 0


def _app_from_desired(desired: DesiredLRP) -> AppInfo:
    return AppInfo(
        process_guid=desired.process_guid,
        desired_instances=desired.instances,
        stack=desired.stack,
        environment_variables=[
            EnvironmentVariable(e.name, e.value) for e in desired.environment_variables
        ],
        start_timeout=desired.start_timeout,
        disk_mb=desired.disk_mb,
        memory_mb=desired.memory_mb,
        cpu_weight=desired.cpu_weight,
        ports=list(desired.ports),
        routes=list(desired.routes),
        log_guid=desired.log_guid,
        log_source=desired.log_source,
        annotation=desired.annotation,
    )


def _instance_from_actual(actual: ActualLRP) -> InstanceInfo:
    return InstanceInfo(
        instance_guid=actual.instance_guid,
        cell_id=actual.cell_id,
        index=actual.index,
        ip=actual.address,
        ports=[PortMapping(p.container_port, p.host_port) for p in actual.ports],
        state=actual.state,
        since=actual.since,
        placement_error=actual.placement_error,
        crash_count=actual.crash_count,
    )


def merge_desired_actual(
    desired_lrps: list[DesiredLRP],
    actual_lrps: list[ActualLRP],
) -> dict[str, AppInfo]:
    """Join desired and actual records by process guid.

    Returns:
        Mapping of process guid to AppInfo, instances sorted by
        (index, instance guid).
    """
    apps: dict[str, AppInfo] = {}

    for desired in desired_lrps:
        apps[desired.process_guid] = _app_from_desired(desired)

    for actual in actual_lrps:
        app = apps.get(actual.process_guid)
        if app is None:
            app = AppInfo(process_guid=actual.process_guid)
            apps[actual.process_guid] = app
        if actual.state == ActualLRPState.RUNNING:
            app.actual_running_instances += 1
        app.actual_instances.append(_instance_from_actual(actual))

    for app in apps.values():
        app.actual_instances.sort(key=lambda i: (i.index, i.instance_guid))

    return apps


class AppExaminer:
    """Read-only queries over the orchestrator.

    No call is retried here; the client's own read policy applies.
    """

    def __init__(self, client: ReceptorClient):
        self.client = client

    async def list_apps(self) -> list[AppInfo]:
        """One AppInfo per process guid, sorted by process guid.

        Raises:
            LatticeError: Whatever the desired or actual listing raised.
        """
        desired_lrps = await self.client.desired_lrps()
        actual_lrps = await self.client.actual_lrps()
        apps = merge_desired_actual(desired_lrps, actual_lrps)
        return [apps[guid] for guid in sorted(apps)]

    async def list_cells(self) -> list[CellInfo]:
        """One CellInfo per cell id, sorted by cell id.

        Unclaimed instances, and instances with no cell id, count toward no
        cell.
        """
        cells: dict[str, CellInfo] = {}
        for cell in await self.client.cells():
            cells[cell.cell_id] = CellInfo(
                cell_id=cell.cell_id,
                zone=cell.zone,
                memory_mb=cell.capacity.memory_mb,
                disk_mb=cell.capacity.disk_mb,
                containers=cell.capacity.containers,
            )

        for actual in await self.client.actual_lrps():
            if actual.state == ActualLRPState.UNCLAIMED:
                continue
            if not actual.cell_id:
                logger.debug(f"Skipping {actual.state.value} instance of {actual.process_guid} with no cell")
                continue

            cell_info = cells.get(actual.cell_id)
            if cell_info is None:
                logger.warning(f"Instance of {actual.process_guid} is on unknown cell {actual.cell_id}")
                cell_info = CellInfo(cell_id=actual.cell_id, missing=True)
                cells[actual.cell_id] = cell_info

            if actual.state == ActualLRPState.RUNNING:
                cell_info.running_instances += 1
            elif actual.state == ActualLRPState.CLAIMED:
                cell_info.claimed_instances += 1

        return [cells[cell_id] for cell_id in sorted(cells)]

    async def app_status(self, process_guid: str) -> AppInfo:
        """Detailed status of one application.

        A missing desired record is tolerated while instances still exist.

        Raises:
            AppNotFoundError: If there is neither a desired record nor any
                instance.
            LatticeError: Any other orchestrator failure, unchanged.
        """
        desired_lrps: list[DesiredLRP] = []
        try:
            desired_lrps.append(await self.client.get_desired_lrp(process_guid))
        except OrchestratorError as e:
            if not e.is_not_found:
                raise
            logger.debug(f"No desired LRP for {process_guid}")

        actual_lrps = await self.client.actual_lrps_by_process_guid(process_guid)
        apps = merge_desired_actual(desired_lrps, actual_lrps)
        if process_guid not in apps:
            raise AppNotFoundError()
        return apps[process_guid]

    async def app_exists(self, process_guid: str) -> bool:
        """True if any actual instance exists for the app."""
        for actual in await self.client.actual_lrps():
            if actual.process_guid == process_guid:
                return True
        return False

    async def running_instances_info(self, process_guid: str) -> tuple[int, bool]:
        """Count running instances and report whether any failed placement.

        Returns:
            Tuple of (running count, placement error seen).
        """
        running = 0
        placement_error = False
        for actual in await self.client.actual_lrps_by_process_guid(process_guid):
            if actual.state == ActualLRPState.RUNNING:
                running += 1
            if actual.placement_error:
                placement_error = True
        return running, placement_error
