"""Tests for the ltc command line.

Commands run against an in-memory receptor and blob store through click's
test runner.
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from lattice.cli import LtcContext, cli, suggest_command
from lattice.config import Config, ConfigStore
from lattice.envelope import LogMessage, MessageType
from lattice.errors import UNAUTHORIZED, NetworkError, OrchestratorError
from lattice.exit_handler import ExitHandler
from lattice.receptor import (
    ActualLRP,
    ActualLRPState,
    Cell,
    DesiredLRP,
    FakeReceptorClient,
    Task,
)
from test_droplet_runner import MemoryBlobStore

DOMAIN = "192.168.11.11.xip.io"


# =============================================================================
# Fixtures
# =============================================================================


class FakeLogReader:
    """LogReader stand-in that replays a fixed set of messages."""

    def __init__(self, messages: list[LogMessage] | None = None, error: Exception | None = None):
        self.messages = messages or []
        self.error = error
        self.tailed: list[str] = []
        self.stopped = False

    async def tail_logs(self, app_guid, on_log, on_error):
        self.tailed.append(app_guid)
        for message in self.messages:
            on_log(message)
        if self.error is not None:
            on_error(self.error)

    def stop(self):
        self.stopped = True


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.json"
    ConfigStore(path).save(Config(target=DOMAIN))
    return path


@pytest.fixture
def receptor():
    return FakeReceptorClient()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def make_context(config_path, receptor, blob_store):
    def _make(**kwargs) -> LtcContext:
        kwargs.setdefault("receptor", receptor)
        kwargs.setdefault("blob_store", blob_store)
        return LtcContext(
            config_path=str(config_path),
            exit_handler=ExitHandler(system_exit=lambda code: None),
            poll_interval=0,
            **kwargs,
        )

    return _make


@pytest.fixture
def invoke(runner, make_context):
    def _invoke(args, input=None, **kwargs):
        return runner.invoke(cli, args, obj=make_context(**kwargs), input=input)

    return _invoke


def running(process_guid: str, index: int = 0, cell_id: str = "cell-1") -> ActualLRP:
    return ActualLRP(
        process_guid=process_guid,
        instance_guid=f"{process_guid}-{index}",
        cell_id=cell_id,
        index=index,
        address="10.0.0.5",
        state=ActualLRPState.RUNNING,
    )


# =============================================================================
# Command dispatch
# =============================================================================


class TestDispatch:
    """Tests for command lookup and exit codes."""

    def test_unknown_command_exits_1(self, invoke):
        """Unknown commands MUST exit 1 with a registration hint."""
        result = invoke(["frobnicate"])

        assert result.exit_code == 1
        assert "'frobnicate' is not a registered command" in result.output

    def test_unknown_command_suggests_close_match(self, invoke):
        """A near miss MUST suggest the registered command."""
        result = invoke(["stauts"])

        assert result.exit_code == 1
        assert "Did you mean" in result.output
        assert "status" in result.output

    def test_unknown_flag_exits_1(self, invoke):
        result = invoke(["list", "--bogus"])

        assert result.exit_code == 1

    def test_suggest_command_without_match(self):
        assert suggest_command("zzzzzz", ["list", "status"]) is None

    @pytest.mark.parametrize("alias", ["ls", "list"])
    def test_list_alias(self, invoke, alias):
        """Aliases MUST resolve to the full command."""
        result = invoke([alias])

        assert result.exit_code == 0
        assert "No apps to display." in result.output

    def test_version(self, invoke):
        result = invoke(["--version"])

        assert result.exit_code == 0
        assert "ltc" in result.output


# =============================================================================
# Target commands
# =============================================================================


class TestTarget:
    """Tests for ltc target."""

    def test_show_target(self, invoke):
        result = invoke(["target"])

        assert result.exit_code == 0
        assert f"Target:\t\t{DOMAIN}" in result.output

    def test_show_unset_target(self, runner, tmp_path):
        ctx = LtcContext(config_path=str(tmp_path / "absent.json"), exit_handler=ExitHandler(lambda c: None))

        result = runner.invoke(cli, ["target"], obj=ctx)

        assert result.exit_code == 0
        assert "Target not set." in result.output

    def test_set_target_saves_config(self, invoke, config_path):
        """A reachable target MUST be saved with cleared credentials."""
        result = invoke(["target", "10.0.0.1.xip.io"])

        assert result.exit_code == 0
        assert "Api Location Set" in result.output
        saved = ConfigStore(config_path).read()
        assert saved.target == "10.0.0.1.xip.io"
        assert saved.username == ""

    def test_unauthorized_target_prompts_then_fails(self, invoke, receptor, config_path):
        """A target that refuses the prompted credentials MUST NOT be saved."""
        receptor.errors["desired_lrps"] = OrchestratorError(UNAUTHORIZED, "bad credentials")

        result = invoke(["target", "10.0.0.1.xip.io"], input="admin\nsecret\n")

        assert result.exit_code == 2
        assert "Username" in result.output
        assert "Could not authorize target." in result.output
        assert ConfigStore(config_path).read().target == DOMAIN

    def test_unreachable_target(self, invoke, receptor):
        receptor.errors["desired_lrps"] = NetworkError("connection refused")

        result = invoke(["target", "10.0.0.1.xip.io"])

        assert result.exit_code == 2
        assert "Error verifying target: connection refused" in result.output


class TestTargetBlob:
    """Tests for ltc target-blob."""

    def test_unset(self, invoke):
        result = invoke(["target-blob"])

        assert result.exit_code == 0
        assert "Blob store not set" in result.output

    @pytest.mark.parametrize(
        "endpoint, message",
        [
            ("nohost", "malformed target"),
            ("blob.example.com:http", "malformed port"),
            ("blob.example.com:70000", "malformed port"),
        ],
    )
    def test_malformed_endpoint_exits_1(self, invoke, endpoint, message):
        """Malformed endpoints MUST exit 1 without prompting."""
        result = invoke(["target-blob", endpoint])

        assert result.exit_code == 1
        assert message in result.output

    def test_dav_target_saved(self, invoke, config_path):
        result = invoke(["target-blob", "blob.example.com:8444"], input="user\npass\n")

        assert result.exit_code == 0
        assert "Blob Location Set" in result.output
        blob_target = ConfigStore(config_path).read().blob_target
        assert blob_target.host == "blob.example.com"
        assert blob_target.port == 8444
        assert blob_target.access_key == "user"
        assert blob_target.backend == "dav"

    def test_s3_target_saved(self, invoke, config_path):
        result = invoke(
            ["target-blob", "s3.example.com:443", "--bucket-name", "droplets"],
            input="AKID\nSECRET\n",
        )

        assert result.exit_code == 0
        assert "Access Key" in result.output
        blob_target = ConfigStore(config_path).read().blob_target
        assert blob_target.backend == "s3"
        assert blob_target.bucket_name == "droplets"
        assert blob_target.secret_key == "SECRET"


# =============================================================================
# App commands
# =============================================================================


class TestCreate:
    """Tests for ltc create."""

    def test_requires_separator_before_command(self, invoke):
        result = invoke(["create", "web", "nginx"])

        assert result.exit_code == 1
        assert "Incorrect Usage: '--' Required before start command" in result.output

    def test_requires_name_and_image(self, invoke):
        result = invoke(["create"])

        assert result.exit_code == 1
        assert "Incorrect Usage" in result.output

    def test_invalid_cpu_weight(self, invoke):
        result = invoke(["create", "web", "nginx", "--cpu-weight", "0", "--", "/run"])

        assert result.exit_code == 1
        assert "Invalid CPU Weight" in result.output

    def test_invalid_image(self, invoke):
        result = invoke(["create", "web", "docker://nginx", "--", "/run"])

        assert result.exit_code == 1
        assert "should not contain scheme" in result.output

    def test_create_and_wait(self, invoke, receptor):
        """A created app MUST be reported running with its routes."""
        receptor.actual = [running("web")]

        result = invoke(["create", "web", "nginx", "--", "/run", "-port", "8080"])

        assert result.exit_code == 0, result.output
        assert "Creating App: web" in result.output
        assert "web is now running." in result.output
        assert f"http://web.{DOMAIN}" in result.output
        lrp = receptor.desired[0]
        assert lrp.root_fs == "docker:///library/nginx#latest"
        assert lrp.action["run"]["path"] == "/run"
        assert lrp.action["run"]["args"] == ["-port", "8080"]

    def test_create_times_out(self, invoke):
        result = invoke(["create", "web", "nginx", "--timeout", "0", "--", "/run"])

        assert result.exit_code == 2
        assert "Timed out waiting for the container to come up." in result.output
        assert "ltc logs web" in result.output

    def test_placement_error(self, invoke, receptor):
        actual = running("web")
        actual.state = ActualLRPState.UNCLAIMED
        actual.placement_error = "insufficient resources"
        receptor.actual = [actual]

        result = invoke(["create", "web", "nginx", "--", "/run"])

        assert result.exit_code == 2
        assert "could not place all instances" in result.output

    def test_existing_app_rejected(self, invoke, receptor):
        receptor.desired = [DesiredLRP(process_guid="web")]

        result = invoke(["create", "web", "nginx", "--", "/run"])

        assert result.exit_code == 2
        assert "Error Creating App: web is already running" in result.output


class TestScale:
    """Tests for ltc scale."""

    def test_non_integer_count(self, invoke):
        result = invoke(["scale", "web", "many"])

        assert result.exit_code == 1
        assert "Number of Instances must be an integer" in result.output

    def test_missing_arguments(self, invoke):
        result = invoke(["scale", "web"])

        assert result.exit_code == 1

    def test_scale(self, invoke, receptor):
        receptor.desired = [DesiredLRP(process_guid="web", instances=1)]
        receptor.actual = [running("web", 0), running("web", 1)]

        result = invoke(["scale", "web", "2"])

        assert result.exit_code == 0, result.output
        assert "App Scaled Successfully" in result.output
        assert receptor.desired[0].instances == 2

    def test_scale_unknown_app(self, invoke):
        result = invoke(["scale", "web", "2"])

        assert result.exit_code == 2
        assert "web is not started." in result.output


class TestRemove:
    """Tests for ltc remove."""

    def test_requires_name(self, invoke):
        result = invoke(["remove"])

        assert result.exit_code == 1

    def test_removes_each_app(self, invoke, receptor):
        receptor.desired = [DesiredLRP(process_guid="web"), DesiredLRP(process_guid="worker")]

        result = invoke(["rm", "web", "worker"])

        assert result.exit_code == 0, result.output
        assert "Successfully Removed web." in result.output
        assert "Successfully Removed worker." in result.output
        assert receptor.desired == []

    def test_continues_after_failure(self, invoke, receptor):
        """One failed removal MUST NOT stop the others, and MUST exit 2."""
        receptor.desired = [DesiredLRP(process_guid="worker")]

        result = invoke(["remove", "web", "worker"])

        assert result.exit_code == 2
        assert "Error stopping web" in result.output
        assert "Successfully Removed worker." in result.output


class TestList:
    """Tests for ltc list."""

    def test_table(self, invoke, receptor):
        receptor.desired = [
            DesiredLRP(process_guid="web", instances=2, disk_mb=256, memory_mb=64, routes=[f"web.{DOMAIN}"])
        ]
        receptor.actual = [running("web")]

        result = invoke(["list"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].split() == ["App", "Name", "Instances", "DiskMB", "MemoryMB", "Routes"]
        assert lines[1].split() == ["web", "1/2", "256", "64", f"web.{DOMAIN}"]

    def test_listing_error(self, invoke, receptor):
        receptor.errors["desired_lrps"] = NetworkError("connection refused")

        result = invoke(["list"])

        assert result.exit_code == 2
        assert "Error listing apps: connection refused" in result.output


class TestStatus:
    """Tests for ltc status."""

    def test_requires_name(self, invoke):
        result = invoke(["status"])

        assert result.exit_code == 1
        assert "App Name required" in result.output

    def test_unknown_app(self, invoke):
        result = invoke(["st", "ghost"])

        assert result.exit_code == 2
        assert "App not found." in result.output

    def test_renders_instances(self, invoke, receptor):
        receptor.desired = [DesiredLRP(process_guid="web", instances=1, ports=[8080])]
        receptor.actual = [running("web")]

        result = invoke(["status", "web"])

        assert result.exit_code == 0, result.output
        assert "Instances" in result.output
        assert "Instance 0  [RUNNING]" in result.output
        assert "cell-1" in result.output


class TestCells:
    """Tests for ltc cells."""

    def test_distribution(self, invoke, receptor):
        receptor.cell_list = [Cell(cell_id="cell-1"), Cell(cell_id="cell-2")]
        claimed = running("web", 1, cell_id="cell-1")
        claimed.state = ActualLRPState.CLAIMED
        receptor.actual = [running("web", 0, cell_id="cell-1"), claimed, running("web", 2, cell_id="cell-9")]

        result = invoke(["cells"])

        assert result.exit_code == 0, result.output
        assert "cell-1: ••" in result.output
        assert "cell-2: empty" in result.output
        assert "cell-9[MISSING]: •" in result.output


# =============================================================================
# Log commands
# =============================================================================


class TestLogs:
    """Tests for ltc logs and debug-logs."""

    def message(self, text: bytes) -> LogMessage:
        return LogMessage(
            message=text,
            message_type=MessageType.OUT,
            timestamp=1_400_000_000_000_000_000,
            app_id="web",
            source_type="APP",
            source_instance="0",
        )

    def test_tails_missing_app(self, invoke):
        """Logs for an app with no instances MUST still be tailed."""
        reader = FakeLogReader([self.message(b"hello")])

        result = invoke(["logs", "web", "--raw"], log_reader=reader)

        assert result.exit_code == 0
        assert "Application web not found." in result.output
        assert "hello" in result.output
        assert reader.tailed == ["web"]

    def test_formatted_message(self, invoke, receptor):
        receptor.actual = [running("web")]
        reader = FakeLogReader([self.message(b"hello")])

        result = invoke(["logs", "web"], log_reader=reader)

        assert result.exit_code == 0
        assert "[APP|0] hello" in result.output
        assert "not found" not in result.output

    def test_stream_error_exits_2(self, invoke):
        reader = FakeLogReader(error=NetworkError("connection reset"))

        result = invoke(["debug-logs"], log_reader=reader)

        assert result.exit_code == 2
        assert "Error: connection reset" in result.output
        assert reader.tailed == ["lattice-debug"]


# =============================================================================
# Droplet commands
# =============================================================================


class TestDroplets:
    """Tests for the droplet commands."""

    def test_upload_bits(self, invoke, blob_store, tmp_path):
        bits = tmp_path / "app.zip"
        bits.write_bytes(b"PK")

        result = invoke(["upload-bits", "drop", str(bits)])

        assert result.exit_code == 0
        assert "Successfully uploaded drop" in result.output
        assert blob_store.blobs["drop/bits.zip"] == b"PK"

    def test_upload_missing_file(self, invoke, tmp_path):
        result = invoke(["upload-bits", "drop", str(tmp_path / "missing.zip")])

        assert result.exit_code == 2
        assert "Error opening" in result.output

    def test_list_droplets(self, invoke, blob_store):
        blob_store.blobs = {"drop/droplet.tgz": b"tgz", "drop/result.json": b"{}", "other/bits.zip": b""}

        result = invoke(["list-droplets"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].split() == ["Droplet", "Created", "At"]
        assert lines[1].startswith("drop ")
        assert "06/01" in lines[1]
        assert len(lines) == 2

    def test_build_droplet_completes(self, invoke, receptor):
        """build-droplet MUST wait for the task to complete."""

        async def completed_task(task_guid):
            receptor._record("get_task", task_guid)
            return Task(task_guid=task_guid, state="COMPLETED")

        receptor.get_task = completed_task

        result = invoke(["build-droplet", "drop", "https://github.com/cloudfoundry/go-buildpack.git"])

        assert result.exit_code == 0, result.output
        assert "Submitted build of drop" in result.output
        assert "Build completed" in result.output
        assert receptor.task_list[0].task_guid == "build-droplet-drop"

    def test_build_droplet_failed(self, invoke, receptor):
        async def failed_task(task_guid):
            return Task(task_guid=task_guid, state="COMPLETED", failed=True, failure_reason="no buildpack")

        receptor.get_task = failed_task

        result = invoke(["build-droplet", "drop", "https://example.com/bp.git"])

        assert result.exit_code == 2
        assert "Build failed: no buildpack" in result.output

    def test_remove_droplet(self, invoke, blob_store):
        blob_store.blobs = {"drop/droplet.tgz": b"tgz", "drop/result.json": b"{}"}

        result = invoke(["remove-droplet", "drop"])

        assert result.exit_code == 0
        assert "Droplet removed" in result.output
        assert blob_store.blobs == {}

    def test_remove_missing_droplet(self, invoke):
        result = invoke(["remove-droplet", "drop"])

        assert result.exit_code == 2
        assert "Error removing droplet drop: droplet not found" in result.output

    def test_export_and_import(self, runner, make_context, blob_store):
        blob_store.blobs = {
            "drop/droplet.tgz": b"droplet-bytes",
            "drop/result.json": json.dumps({"execution_metadata": "{}"}).encode(),
        }

        with runner.isolated_filesystem():
            exported = runner.invoke(cli, ["export-droplet", "drop"], obj=make_context())
            assert exported.exit_code == 0, exported.output
            assert "exported to drop.tgz and drop-metadata.json" in exported.output

            imported = runner.invoke(
                cli,
                ["import-droplet", "copy", "drop.tgz", "drop-metadata.json"],
                obj=make_context(),
            )

        assert imported.exit_code == 0, imported.output
        assert blob_store.blobs["copy/droplet.tgz"] == b"droplet-bytes"
        assert blob_store.blobs["copy/result.json"] == blob_store.blobs["drop/result.json"]

    def test_import_requires_all_arguments(self, invoke):
        result = invoke(["import-droplet", "drop"])

        assert result.exit_code == 1


# =============================================================================
# Cluster test command
# =============================================================================


class TestClusterTestCommand:
    """Tests for ltc test."""

    def test_cli_help(self, invoke, receptor):
        result = invoke(["test", "--cli-help"])

        assert result.exit_code == 0
        assert "ltc test [-v]" in result.output
        assert receptor.calls == []
