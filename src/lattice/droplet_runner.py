"""Droplets: application bits built with a buildpack and stored as blobs.

Blob layout per droplet::

    <droplet>/bits.zip       uploaded source, deleted by the build
    <droplet>/droplet.tgz    build output
    <droplet>/result.json    build metadata (execution_metadata)
"""

from __future__ import annotations

import json
import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import aiofiles

from lattice.app_examiner import AppExaminer
from lattice.app_runner import LRP_DOMAIN, AppEnvironmentParams, AppRunner, CreateAppParams
from lattice.blob_store import BlobStore
from lattice.errors import LatticeError
from lattice.receptor import (
    EnvironmentVariable,
    ReceptorClient,
    Task,
    download_action,
    run_action,
    serial_action,
)

logger = logging.getLogger(__name__)

DROPLET_STACK = "cflinuxfs2"
DROPLET_ROOTFS = f"preloaded:{DROPLET_STACK}"

FILE_SERVER = "http://file-server.service.cf.internal:8080/v1/static"
CELL_HELPERS_URL = f"{FILE_SERVER}/cell-helpers/cell-helpers.tgz"
LIFECYCLE_URL = f"{FILE_SERVER}/buildpack_app_lifecycle/buildpack_app_lifecycle.tgz"

BITS_BLOB = "bits.zip"
DROPLET_BLOB = "droplet.tgz"
METADATA_BLOB = "result.json"


class DropletError(LatticeError):
    """A droplet operation was refused or found nothing to act on."""


@dataclass
class Droplet:
    name: str
    created: datetime | None = None
    size: int = 0


@dataclass
class BuildParams:
    task_name: str
    droplet_name: str
    buildpack_url: str
    environment: dict[str, str] = field(default_factory=dict)
    memory_mb: int = 128
    cpu_weight: int = 100
    disk_mb: int = 0


def builder_args(buildpack_url: str, skip_detect: bool = True, skip_cert_verify: bool = False) -> list[str]:
    """Arguments for the buildpack lifecycle builder, sorted by flag name."""
    flags = {
        "buildArtifactsCacheDir": "/tmp/cache",
        "buildDir": "/tmp/app",
        "buildpackOrder": buildpack_url,
        "buildpacksDir": "/tmp/buildpacks",
        "outputBuildArtifactsCache": "/tmp/output-cache",
        "outputDroplet": "/tmp/droplet",
        "outputMetadata": "/tmp/result.json",
        "skipCertVerify": str(skip_cert_verify).lower(),
        "skipDetect": str(skip_detect).lower(),
    }
    return [f"-{name}={value}" for name, value in sorted(flags.items())]


def droplet_annotation(droplet_name: str) -> str:
    return json.dumps({"droplet_source": {"droplet_name": droplet_name}})


def annotated_droplet(annotation: str) -> str | None:
    """Droplet name recorded in an app annotation, if any."""
    try:
        data = json.loads(annotation)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    source = data.get("droplet_source")
    if not isinstance(source, dict):
        return None
    return source.get("droplet_name")


class DropletRunner:
    """Upload, build, list, launch and remove droplets."""

    def __init__(
        self,
        app_runner: AppRunner,
        client: ReceptorClient,
        blob_store: BlobStore,
        app_examiner: AppExaminer,
    ):
        self.app_runner = app_runner
        self.client = client
        self.blob_store = blob_store
        self.app_examiner = app_examiner

    async def list_droplets(self) -> list[Droplet]:
        droplets = []
        for blob in await self.blob_store.list():
            components = blob.path.split("/")
            if len(components) == 2 and components[1] == DROPLET_BLOB:
                droplets.append(Droplet(name=components[0], created=blob.created, size=blob.size))
        return sorted(droplets, key=lambda d: d.name)

    async def upload_bits(self, droplet_name: str, upload_path: str) -> None:
        await self.blob_store.upload_file(posixpath.join(droplet_name, BITS_BLOB), upload_path)

    def build_action(self, droplet_name: str, buildpack_url: str) -> dict[str, Any]:
        store = self.blob_store
        bits = posixpath.join(droplet_name, BITS_BLOB)
        return serial_action(
            [
                download_action(CELL_HELPERS_URL, "/tmp", user="vcap"),
                download_action(LIFECYCLE_URL, "/tmp", user="vcap"),
                store.download_action(bits, "/tmp/app"),
                store.delete_action(bits),
                run_action("/bin/chmod", ["-R", "a+X", "."], dir="/tmp/app", user="vcap"),
                run_action("/tmp/builder", builder_args(buildpack_url), dir="/", user="vcap"),
                store.upload_action(posixpath.join(droplet_name, DROPLET_BLOB), "/tmp/droplet"),
                store.upload_action(posixpath.join(droplet_name, METADATA_BLOB), "/tmp/result.json"),
            ]
        )

    async def build_droplet(self, params: BuildParams) -> None:
        """Submit the staging task for a droplet."""
        environment = dict(params.environment)
        environment["CF_STACK"] = DROPLET_STACK
        environment["MEMORY_LIMIT"] = f"{params.memory_mb}M"

        task = Task(
            task_guid=params.task_name,
            domain=LRP_DOMAIN,
            root_fs=DROPLET_ROOTFS,
            action=self.build_action(params.droplet_name, params.buildpack_url),
            environment_variables=[EnvironmentVariable(k, v) for k, v in sorted(environment.items())],
            cpu_weight=params.cpu_weight,
            disk_mb=params.disk_mb,
            memory_mb=params.memory_mb,
            log_guid=params.task_name,
            log_source="BUILD",
            privileged=True,
        )
        logger.debug(f"Creating build task {params.task_name} for droplet {params.droplet_name}")
        await self.client.upsert_domain(LRP_DOMAIN, 0)
        await self.client.create_task(task)

    async def execution_metadata(self, droplet_name: str) -> str:
        async with await self.blob_store.download(posixpath.join(droplet_name, METADATA_BLOB)) as reader:
            body = await reader.read()
        try:
            result = json.loads(body)
        except ValueError as e:
            raise DropletError(f"invalid metadata for droplet {droplet_name}: {e}")
        return result.get("execution_metadata", "") if isinstance(result, dict) else ""

    async def launch_droplet(
        self,
        app_name: str,
        droplet_name: str,
        start_command: str,
        start_args: list[str],
        environment: AppEnvironmentParams,
    ) -> None:
        metadata = await self.execution_metadata(droplet_name)

        environment.environment_variables["PWD"] = "/home/vcap"
        environment.environment_variables["TMPDIR"] = "/home/vcap/tmp"
        environment.working_dir = "/home/vcap"

        params = CreateAppParams(
            name=app_name,
            start_command="/tmp/launcher",
            root_fs=DROPLET_ROOTFS,
            app_args=["/home/vcap/app", " ".join([start_command] + list(start_args)), metadata],
            annotation=droplet_annotation(droplet_name),
            setup=serial_action(
                [
                    download_action(CELL_HELPERS_URL, "/tmp", user="vcap"),
                    download_action(LIFECYCLE_URL, "/tmp", user="vcap"),
                    self.blob_store.download_action(posixpath.join(droplet_name, DROPLET_BLOB), "/home/vcap"),
                ],
                log_source=app_name,
            ),
            environment=environment,
        )
        await self.app_runner.create_app(params)

    async def remove_droplet(self, droplet_name: str) -> None:
        """Delete every blob of a droplet.

        Raises:
            DropletError: If an app was launched from it or nothing matched.
        """
        for app in await self.app_examiner.list_apps():
            if annotated_droplet(app.annotation) == droplet_name:
                raise DropletError(f"app {app.process_guid} was launched from droplet")

        found = False
        prefix = droplet_name + "/"
        for blob in await self.blob_store.list():
            if blob.path.startswith(prefix):
                await self.blob_store.delete(blob.path)
                found = True
        if not found:
            raise DropletError("droplet not found")

    async def export_droplet(self, droplet_name: str, droplet_path: str, metadata_path: str) -> None:
        """Download a droplet and its metadata to local files."""
        for blob, target in ((DROPLET_BLOB, droplet_path), (METADATA_BLOB, metadata_path)):
            async with await self.blob_store.download(posixpath.join(droplet_name, blob)) as reader:
                async with aiofiles.open(target, "wb") as f:
                    async for chunk in reader.iter_chunks():
                        await f.write(chunk)

    async def import_droplet(self, droplet_name: str, droplet_path: str, metadata_path: str) -> None:
        await self.blob_store.upload_file(posixpath.join(droplet_name, DROPLET_BLOB), droplet_path)
        await self.blob_store.upload_file(posixpath.join(droplet_name, METADATA_BLOB), metadata_path)
