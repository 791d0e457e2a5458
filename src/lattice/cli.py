"""ltc: command line client for a lattice cluster.

Usage:
    ltc target HOST:PORT                 # Point ltc at a cluster
    ltc target-blob HOST:PORT            # Point ltc at a blob store
    ltc create NAME IMAGE -- CMD ARGS    # Run a docker image
    ltc scale NAME N                     # Set the instance count
    ltc remove NAME...                   # Stop and delete apps
    ltc list                             # One row per app
    ltc status NAME                      # Details of one app
    ltc cells                            # Instance distribution across cells
    ltc logs NAME                        # Tail app logs
    ltc debug-logs                       # Tail lattice component logs

    ltc upload-bits NAME FILE            # Store source bits for a droplet
    ltc build-droplet NAME BUILDPACK     # Stage the bits into a droplet
    ltc list-droplets                    # Droplets in the blob store
    ltc launch-droplet APP DROPLET       # Run a droplet
    ltc remove-droplet NAME              # Delete a droplet
    ltc export-droplet NAME              # Download a droplet
    ltc import-droplet NAME TGZ JSON     # Upload a droplet

    ltc test                             # Smoke test the cluster

Aliases:
    ls -> list    st -> status    c -> cells    t -> target    rm -> remove
"""

from __future__ import annotations

import asyncio
import difflib
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import click

from lattice import colors
from lattice.app_examiner import AppExaminer, AppInfo
from lattice.app_runner import (
    DEFAULT_POLLING_TIMEOUT,
    POLL_INTERVAL,
    AppEnvironmentParams,
    AppRunner,
    CreateAppParams,
    build_app_environment,
    format_docker_rootfs,
    monitor_config,
    parse_ports,
    parse_route_overrides,
    poll_until,
)
from lattice.blob_store import BlobStore, blob_store_for
from lattice.cluster_test import CLI_HELP, DEFAULT_TIMEOUT, ClusterTestRunner
from lattice.config import (
    BLOB_BACKEND_DAV,
    BLOB_BACKEND_S3,
    BlobTarget,
    Config,
    ConfigStore,
)
from lattice.droplet_runner import BuildParams, DropletRunner
from lattice.errors import (
    UNAUTHORIZED,
    ConfigMalformedError,
    ExitCode,
    LatticeError,
    OrchestratorError,
    UsageError,
)
from lattice.exit_handler import ExitHandler
from lattice.logs import LATTICE_DEBUG_APP_ID, LogReader, format_log_message, format_raw_message
from lattice.output import Output
from lattice.presentation import color_instance_state, color_instances
from lattice.receptor import HttpReceptorClient, ReceptorClient
from lattice.resilience import NO_RETRY

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

COMMAND_ALIASES: dict[str, str] = {
    "ls": "list",
    "st": "status",
    "c": "cells",
    "t": "target",
    "rm": "remove",
}

PLACEMENT_ERROR_MESSAGE = (
    "Error, could not place all instances: insufficient resources. "
    "Try requesting fewer instances or reducing the requested memory or disk capacity."
)

HORIZONTAL_RULE_WIDTH = 80
SINCE_FORMAT = "%Y-%m-%d %H:%M:%S (%Z)"
DROPLET_CREATED_FORMAT = "%m/%d %H:%M:%S"


# =============================================================================
# Fuzzy Matching
# =============================================================================


def get_close_matches_for_command(
    word: str,
    possibilities: list[str],
    n: int = 3,
    cutoff: float = 0.6,
) -> list[str]:
    """Find registered command names similar to ``word``."""
    return difflib.get_close_matches(word, possibilities, n=n, cutoff=cutoff)


def suggest_command(invalid_cmd: str, valid_commands: list[str]) -> str | None:
    """Generate a suggestion message for an invalid command.

    Returns:
        Suggestion message or None if no close matches.
    """
    matches = get_close_matches_for_command(invalid_cmd, valid_commands)
    if not matches:
        return None

    if len(matches) == 1:
        return f"Did you mean '{matches[0]}'?"
    else:
        suggestions = "\n".join(f"  - {m}" for m in matches)
        return f"Did you mean one of these?\n{suggestions}"


# =============================================================================
# Command group
# =============================================================================


class LtcGroup(click.Group):
    """Click group with command aliases and lattice exit codes.

    Unknown commands and flags exit 1. A LatticeError escaping a command
    is printed as one line and ends the process with its exit code.
    """

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, self.aliases.get(cmd_name, cmd_name))

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        cmd_name = args[0]
        if (
            not cmd_name.startswith("-")
            and self.get_command(ctx, cmd_name) is None
            and not ctx.resilient_parsing
        ):
            message = f"'{cmd_name}' is not a registered command. See 'ltc --help'"
            suggestion = suggest_command(cmd_name, list(self.list_commands(ctx)))
            if suggestion:
                message += f"\n{suggestion}"
            raise click.UsageError(message, ctx)

        _, cmd, args = super().resolve_command(ctx, args)
        return (cmd.name if cmd is not None else cmd_name), cmd, args

    def main(self, args=None, prog_name=None, complete_var=None, standalone_mode=True, **extra):
        try:
            result = super().main(
                args=args,
                prog_name=prog_name,
                complete_var=complete_var,
                standalone_mode=False,
                **extra,
            )
        except click.UsageError as e:
            e.show()
            code: int = ExitCode.INVALID_SYNTAX
        except click.ClickException as e:
            e.show()
            code = e.exit_code
        except click.Abort:
            click.echo("Aborted!", err=True)
            code = ExitCode.SIGNAL
        except LatticeError as e:
            Output().say_line(e.message)
            code = e.exit_code
        else:
            code = result if isinstance(result, int) else ExitCode.SUCCESS

        if not standalone_mode:
            return code
        sys.exit(int(code))


# =============================================================================
# CLI Context
# =============================================================================


class LtcContext:
    """Everything a command needs, built lazily from the config file.

    Tests pass ready-made collaborators (a fake receptor, a buffer-backed
    output) instead of letting them be built from config.
    """

    def __init__(
        self,
        config_path: str | None = None,
        verbose: bool = False,
        output: Output | None = None,
        receptor: ReceptorClient | None = None,
        blob_store: BlobStore | None = None,
        log_reader: LogReader | None = None,
        exit_handler: ExitHandler | None = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.verbose = verbose
        self.config_store = ConfigStore(config_path)
        self.output = output or Output()
        self.exit_handler = exit_handler or ExitHandler()
        self.poll_interval = poll_interval

        self._config: Config | None = None
        self._receptor = receptor
        self._blob_store = blob_store
        self._log_reader = log_reader
        self._app_examiner: AppExaminer | None = None
        self._app_runner: AppRunner | None = None
        self._droplet_runner: DropletRunner | None = None

    @property
    def config(self) -> Config:
        """Loaded config.

        Raises:
            ConfigMalformedError: If the config file cannot be used.
        """
        if self._config is None:
            self._config = self.config_store.load()
        return self._config

    @property
    def timeout(self) -> float | None:
        return self.config.timeout()

    def receptor_for(self, config: Config, read_policy=None) -> ReceptorClient:
        if self._receptor is not None:
            return self._receptor
        return HttpReceptorClient(config.receptor_url, timeout=config.timeout(), read_policy=read_policy)

    @property
    def receptor(self) -> ReceptorClient:
        if self._receptor is None:
            self._receptor = self.receptor_for(self.config)
        return self._receptor

    @property
    def app_examiner(self) -> AppExaminer:
        if self._app_examiner is None:
            self._app_examiner = AppExaminer(self.receptor)
        return self._app_examiner

    @property
    def app_runner(self) -> AppRunner:
        if self._app_runner is None:
            self._app_runner = AppRunner(self.receptor, self.config.target_host)
        return self._app_runner

    def blob_store_for(self, blob_target: BlobTarget) -> BlobStore:
        if self._blob_store is not None:
            return self._blob_store
        return blob_store_for(blob_target, timeout=self.timeout)

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = self.blob_store_for(self.config.blob_target)
        return self._blob_store

    @property
    def droplet_runner(self) -> DropletRunner:
        if self._droplet_runner is None:
            self._droplet_runner = DropletRunner(
                self.app_runner, self.receptor, self.blob_store, self.app_examiner
            )
        return self._droplet_runner

    @property
    def log_reader(self) -> LogReader:
        if self._log_reader is None:
            self._log_reader = LogReader(self.config.log_url)
        return self._log_reader

    def fail(self, message: str, code: int = ExitCode.COMMAND_FAILED) -> None:
        """Print one line and end the command with ``code``."""
        self.output.say_line(message)
        sys.exit(code)

    def fail_usage(self, message: str = "") -> None:
        self.output.say_incorrect_usage(message)
        sys.exit(ExitCode.INVALID_SYNTAX)


pass_context = click.make_pass_decorator(LtcContext)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group(cls=LtcGroup, aliases=COMMAND_ALIASES, invoke_without_command=True)
@click.option(
    "--config",
    type=click.Path(dir_okay=False),
    help="Path to config file (default ~/.lattice/config.json)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Log requests and other debug detail to stderr",
)
@click.version_option(version=VERSION, prog_name="ltc")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """ltc - Command line interface for Lattice."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.obj is None:
        ctx.obj = LtcContext(config_path=config, verbose=verbose)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    # Interrupts go through the exit handler from here on, so streaming
    # commands can stop cleanly.
    handler = ctx.obj.exit_handler
    if not handler.sealed:
        handler.start()
    ctx.call_on_close(handler.close)


# =============================================================================
# Shared helpers
# =============================================================================


def _horizontal_rule(char: str) -> str:
    return char * HORIZONTAL_RULE_WIDTH


def _add_app_environment_options(func):
    """Resource, routing and monitoring options shared by create and launch-droplet."""
    options = [
        click.option("--working-dir", "-w", default="/", help="Working directory for the start command"),
        click.option("--env", "-e", "env", multiple=True, help="KEY=VALUE, or KEY to copy it from your shell"),
        click.option("--memory-mb", "-m", default=128, type=int, help="Memory limit in MB (0 for unlimited)"),
        click.option("--disk-mb", "-d", default=0, type=int, help="Disk limit in MB (0 for unlimited)"),
        click.option("--cpu-weight", "-c", default=100, type=int, help="Relative CPU weight (1-100)"),
        click.option("--ports", "-p", default="", help="Comma separated ports to expose (default 8080)"),
        click.option("--routes", "-R", default="", help="Route overrides as HOST:PORT[,HOST:PORT...]"),
        click.option("--monitor-port", "-M", default=0, type=int, help="Port to health check"),
        click.option("--monitor-url", "-U", default="", help="PORT:/path to health check over HTTP"),
        click.option("--monitor-timeout", default=0.0, type=float, help="Health check timeout in seconds"),
        click.option("--no-monitor", is_flag=True, help="Disable health checking"),
        click.option("--no-routes", is_flag=True, help="Register no routes"),
        click.option("--instances", "-i", default=1, type=int, help="Number of instances"),
        click.option("--run-as-root", "-r", is_flag=True, help="Run the process as root"),
        click.option(
            "--timeout", "-t",
            default=DEFAULT_POLLING_TIMEOUT,
            type=float,
            help="Seconds to wait for the app to start",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _app_environment(lctx: LtcContext, name: str, options: dict) -> AppEnvironmentParams:
    """Build environment params from the shared options, exiting 1 on bad input."""
    if not 1 <= options["cpu_weight"] <= 100:
        lctx.fail_usage("Invalid CPU Weight")
    try:
        exposed_ports = parse_ports(options["ports"])
        environment = AppEnvironmentParams(
            environment_variables=build_app_environment(list(options["env"]), name, os.environ),
            privileged=options["run_as_root"],
            instances=options["instances"],
            cpu_weight=options["cpu_weight"],
            memory_mb=options["memory_mb"],
            disk_mb=options["disk_mb"],
            exposed_ports=exposed_ports,
            working_dir=options["working_dir"],
            route_overrides=parse_route_overrides(options["routes"]),
            no_routes=options["no_routes"],
        )
        environment.monitor = monitor_config(
            exposed_ports,
            monitor_port=options["monitor_port"],
            no_monitor=options["no_monitor"],
            monitor_url=options["monitor_url"],
            monitor_timeout=options["monitor_timeout"],
        )
    except UsageError as e:
        lctx.fail_usage(e.message)
    return environment


async def _wait_for_instances(lctx: LtcContext, name: str, instances: int, timeout: float) -> str:
    """Poll until ``instances`` run, printing a dot per tick.

    Returns:
        "running", "placement_error" or "timeout".
    """
    placement_error = False

    async def all_running() -> bool:
        nonlocal placement_error
        running, placement_error = await lctx.app_examiner.running_instances_info(name)
        return placement_error or running == instances

    ok = await poll_until(
        all_running,
        timeout,
        interval=lctx.poll_interval,
        on_tick=lambda: lctx.output.say("."),
    )
    lctx.output.new_line()
    if placement_error:
        return "placement_error"
    return "running" if ok else "timeout"


def _say_how_to_follow_up(lctx: LtcContext, name: str) -> None:
    lctx.output.say_line(f"To view logs:\n\tltc logs {name}")
    lctx.output.say_line(f"To view status:\n\tltc status {name}")
    lctx.output.new_line()


async def _wait_for_app_creation(
    lctx: LtcContext, name: str, environment: AppEnvironmentParams, timeout: float
) -> None:
    output = lctx.output
    routes = [f"http://{route}" for route in lctx.app_runner.build_routes(name, environment)]

    outcome = await _wait_for_instances(lctx, name, environment.instances, timeout)
    if outcome == "placement_error":
        output.say_line(colors.red(PLACEMENT_ERROR_MESSAGE))
        sys.exit(ExitCode.COMMAND_FAILED)

    if outcome == "timeout":
        output.say_line(colors.red("Timed out waiting for the container to come up."))
        output.say_line("This typically happens because docker layers can take time to download.")
        output.say_line("Lattice is still downloading your application in the background.")
        _say_how_to_follow_up(lctx, name)
        if routes:
            output.say_line("App will be reachable at:")
            for route in routes:
                output.say_line(colors.green(route))
        sys.exit(ExitCode.COMMAND_FAILED)

    output.say_line(colors.green(f"{name} is now running."))
    if routes:
        output.say_line("App is reachable at:")
        for route in routes:
            output.say_line(colors.green(route))


# =============================================================================
# Config Commands
# =============================================================================


def _load_config_for_target(lctx: LtcContext) -> Config:
    try:
        return lctx.config
    except ConfigMalformedError as e:
        logger.warning(f"Ignoring unusable config: {e}")
        lctx._config = Config()
        return lctx._config


async def _verify_target(lctx: LtcContext, config: Config) -> bool:
    """Check that the orchestrator answers with these credentials.

    Returns:
        False if it answered 401, True if the call succeeded.

    Raises:
        LatticeError: If the target is unreachable or answered with another error.
    """
    client = lctx.receptor_for(config, read_policy=NO_RETRY)
    try:
        await client.desired_lrps()
    except OrchestratorError as e:
        if e.error_type == UNAUTHORIZED:
            return False
        raise
    return True


def _print_target(lctx: LtcContext) -> None:
    config = lctx.config
    output = lctx.output
    if not config.target:
        output.say_line("Target not set.")
    else:
        output.say_line(f"Target:\t\t{config.target}")
        if config.username:
            output.say_line(f"Username:\t{config.username}")
    if config.blob_target.is_set:
        output.say_line(f"Blob Store:\t{config.blob_target.endpoint()}")


@cli.command()
@click.argument("target", required=False)
@pass_context
def target(ctx: LtcContext, target: str | None) -> None:
    """Set a target lattice location (e.g. 192.168.11.11.xip.io)."""
    if not target:
        _print_target(ctx)
        return

    config = _load_config_for_target(ctx)
    config.set_target(target)
    config.set_login("", "")

    async def _verify() -> bool:
        return await _verify_target(ctx, config)

    try:
        authorized = asyncio.run(_verify())
        if not authorized:
            username = click.prompt("Username")
            password = click.prompt("Password", hide_input=True)
            config.set_login(username, password)
            authorized = asyncio.run(_verify())
    except LatticeError as e:
        ctx.fail(f"Error verifying target: {e}")

    if not authorized:
        ctx.fail("Could not authorize target.")

    try:
        ctx.config_store.save(config)
    except OSError as e:
        ctx.fail(f"Error saving config: {e}")
    ctx.output.say_line("Api Location Set")


@cli.command("target-blob")
@click.argument("endpoint", required=False)
@click.option("--bucket-name", "-b", default="", help="S3 bucket; omit for a WebDAV blob store")
@pass_context
def target_blob(ctx: LtcContext, endpoint: str | None, bucket_name: str) -> None:
    """Set the blob store used for droplets (HOST:PORT)."""
    output = ctx.output
    if not endpoint:
        blob_target = ctx.config.blob_target
        if not blob_target.is_set:
            output.say_line("Blob store not set")
            return
        output.say_line(f"Blob Store:\t{blob_target.endpoint()}")
        output.say_line(f"Backend:\t{blob_target.backend}")
        if blob_target.bucket_name:
            output.say_line(f"Bucket:\t\t{blob_target.bucket_name}")
        return

    host, sep, port_text = endpoint.rpartition(":")
    if not sep or not host:
        ctx.fail("Error setting blob target: malformed target", ExitCode.INVALID_SYNTAX)
    try:
        port = int(port_text)
    except ValueError:
        port = -1
    if not 0 < port < 65536:
        ctx.fail("Error setting blob target: malformed port", ExitCode.INVALID_SYNTAX)

    if bucket_name:
        access_key = click.prompt("Access Key")
        secret_key = click.prompt("Secret Key", hide_input=True)
        kind = BLOB_BACKEND_S3
    else:
        access_key = click.prompt("Username")
        secret_key = click.prompt("Password", hide_input=True)
        kind = BLOB_BACKEND_DAV

    blob_target = BlobTarget(
        host=host,
        port=port,
        access_key=access_key,
        secret_key=secret_key,
        bucket_name=bucket_name,
        kind=kind,
    )
    config = _load_config_for_target(ctx)
    blob_target.extra = dict(config.blob_target.extra)

    async def _verify() -> None:
        await ctx.blob_store_for(blob_target).list()

    try:
        asyncio.run(_verify())
    except LatticeError as e:
        ctx.fail(f"Unable to verify blob store: {e}")

    config.blob_target = blob_target
    try:
        ctx.config_store.save(config)
    except OSError as e:
        ctx.fail(f"Error saving config: {e}")
    output.say_line("Blob Location Set")


# =============================================================================
# App Runner Commands
# =============================================================================


@cli.command()
@click.argument("name", required=False)
@click.argument("image", required=False)
@click.argument("start_command", nargs=-1, type=click.UNPROCESSED)
@_add_app_environment_options
@pass_context
def create(ctx: LtcContext, name: str | None, image: str | None, start_command: tuple[str, ...], **options) -> None:
    """Create a docker app on lattice.

    ltc create APP_NAME DOCKER_IMAGE -- START_COMMAND [ARGS...]
    """
    if not name or not image:
        ctx.fail_usage("APP_NAME and DOCKER_IMAGE are required")
    if not start_command:
        ctx.fail_usage("'--' Required before start command")

    environment = _app_environment(ctx, name, options)
    try:
        root_fs = format_docker_rootfs(image)
    except UsageError as e:
        ctx.fail_usage(e.message)

    params = CreateAppParams(
        name=name,
        start_command=start_command[0],
        root_fs=root_fs,
        app_args=list(start_command[1:]),
        environment=environment,
    )

    async def _create():
        ctx.output.say_line(f"Creating App: {name}")
        try:
            await ctx.app_runner.create_app(params)
        except LatticeError as e:
            ctx.fail(f"Error Creating App: {e}")
        await _wait_for_app_creation(ctx, name, environment, options["timeout"])

    asyncio.run(_create())


@cli.command()
@click.argument("name", required=False)
@click.argument("instances", required=False)
@click.option(
    "--timeout", "-t",
    default=DEFAULT_POLLING_TIMEOUT,
    type=float,
    help="Seconds to wait for the instances to run",
)
@pass_context
def scale(ctx: LtcContext, name: str | None, instances: str | None, timeout: float) -> None:
    """Scale a docker app on lattice.

    ltc scale APP_NAME NUMBER_OF_INSTANCES
    """
    if not name or instances is None:
        ctx.fail_usage("Please enter 'ltc scale APP_NAME NUMBER_OF_INSTANCES'")
    try:
        count = int(instances)
    except ValueError:
        ctx.fail_usage("Number of Instances must be an integer")

    async def _scale():
        output = ctx.output
        output.say_line(f"Scaling {name} to {count} instances")
        try:
            await ctx.app_runner.scale_app(name, count)
        except LatticeError as e:
            ctx.fail(f"Error Scaling App to {count} instances: {e}")

        outcome = await _wait_for_instances(ctx, name, count, timeout)
        if outcome == "placement_error":
            output.say_line(colors.red(PLACEMENT_ERROR_MESSAGE))
            sys.exit(ExitCode.COMMAND_FAILED)
        if outcome == "timeout":
            output.say_line(colors.red("Timed out waiting for the container to scale."))
            output.say_line("Lattice is still scaling your application in the background.")
            _say_how_to_follow_up(ctx, name)
            sys.exit(ExitCode.COMMAND_FAILED)
        output.say_line(colors.green("App Scaled Successfully"))

    asyncio.run(_scale())


@cli.command()
@click.argument("names", nargs=-1)
@click.option(
    "--timeout", "-t",
    default=DEFAULT_POLLING_TIMEOUT,
    type=float,
    help="Seconds to wait for the instances to stop",
)
@pass_context
def remove(ctx: LtcContext, names: tuple[str, ...], timeout: float) -> None:
    """Stop and remove docker apps from lattice.

    ltc remove APP_NAME [APP_NAME...]
    """
    if not names:
        ctx.fail_usage("App Name required")

    async def _remove():
        output = ctx.output
        failed = False
        for name in names:
            output.say_line(f"Removing {name}...")
            try:
                await ctx.app_runner.remove_app(name)
            except LatticeError as e:
                output.say_line(f"Error stopping {name}: {e}")
                failed = True
                continue

            async def stopped() -> bool:
                return not await ctx.app_examiner.app_exists(name)

            if await poll_until(stopped, timeout, interval=ctx.poll_interval):
                output.say_line(colors.green(f"Successfully Removed {name}."))
            else:
                output.say_line(colors.red(f"Timed out waiting for {name} to stop."))
                failed = True

        if failed:
            sys.exit(ExitCode.COMMAND_FAILED)

    asyncio.run(_remove())


# =============================================================================
# App Examiner Commands
# =============================================================================


@cli.command("list")
@pass_context
def list_apps(ctx: LtcContext) -> None:
    """List applications on lattice."""

    async def _list():
        try:
            apps = await ctx.app_examiner.list_apps()
        except LatticeError as e:
            ctx.fail(f"Error listing apps: {e}")

        if not apps:
            ctx.output.say_line("No apps to display.")
            return

        rows = [
            [
                colors.bold("App Name"),
                colors.bold("Instances"),
                colors.bold("DiskMB"),
                colors.bold("MemoryMB"),
                colors.bold("Routes"),
            ]
        ]
        for app in apps:
            rows.append(
                [
                    colors.bold(app.process_guid),
                    color_instances(app),
                    str(app.disk_mb),
                    str(app.memory_mb),
                    colors.cyan(", ".join(app.routes)),
                ]
            )
        ctx.output.say_table(rows)

    asyncio.run(_list())


def _format_since(since_ns: int) -> str:
    return datetime.fromtimestamp(since_ns / 1e9).astimezone().strftime(SINCE_FORMAT)


def render_app_status(output: Output, app: AppInfo) -> None:
    """Print the app summary, environment and one block per instance."""
    output.say_line(_horizontal_rule("="))
    output.say_line(f"  {colors.bold(app.process_guid)}")
    output.say_line(_horizontal_rule("-"))

    rows = [
        ["Instances", color_instances(app)],
        ["Stack", app.stack],
        ["Start Timeout", str(app.start_timeout)],
        ["DiskMB", str(app.disk_mb)],
        ["MemoryMB", str(app.memory_mb)],
        ["CPUWeight", str(app.cpu_weight)],
        ["Ports", ",".join(str(p) for p in app.ports)],
        ["Routes", colors.cyan(", ".join(app.routes))],
    ]
    if app.annotation:
        rows.append(["Annotation", app.annotation])
    output.say_table(rows)

    output.say_line(_horizontal_rule("-"))
    output.say_line("Environment")
    output.new_line()
    for variable in app.environment_variables:
        output.say_line(f'{variable.name}="{variable.value}"')
    output.new_line()

    output.say_line(_horizontal_rule("="))
    for instance in app.actual_instances:
        output.say_line(f"  Instance {instance.index}  [{color_instance_state(instance)}]")
        output.say_line(_horizontal_rule("-"))
        if instance.placement_error:
            rows = [["Placement Error", instance.placement_error]]
        else:
            port_mapping = ";".join(f"{p.host_port}:{p.container_port}" for p in instance.ports)
            rows = [
                ["InstanceGuid", instance.instance_guid],
                ["Cell ID", instance.cell_id],
                ["Ip", instance.ip],
                ["Port Mapping", port_mapping],
                ["Since", _format_since(instance.since)],
            ]
        rows.append(["Crash Count", str(instance.crash_count)])
        output.say_table(rows)
        output.say_line(_horizontal_rule("-"))


@cli.command()
@click.argument("name", required=False)
@pass_context
def status(ctx: LtcContext, name: str | None) -> None:
    """Show details about a running app on lattice."""
    if not name:
        ctx.fail_usage("App Name required")

    async def _status():
        try:
            app = await ctx.app_examiner.app_status(name)
        except LatticeError as e:
            ctx.fail(e.message)
        render_app_status(ctx.output, app)

    asyncio.run(_status())


@cli.command()
@pass_context
def cells(ctx: LtcContext) -> None:
    """Show how instances are distributed across cells.

    Each green dot is a running instance, each yellow dot a claimed one.
    """

    async def _cells():
        try:
            cell_list = await ctx.app_examiner.list_cells()
        except LatticeError as e:
            ctx.fail(f"Error listing cells: {e}")

        output = ctx.output
        output.say_line(colors.bold("Distribution"))
        for cell in cell_list:
            label = f"{cell.cell_id}[MISSING]: " if cell.missing else f"{cell.cell_id}: "
            if cell.running_instances == 0 and cell.claimed_instances == 0:
                output.say_line(label + colors.red("empty"))
            else:
                output.say_line(
                    label
                    + colors.green("•" * cell.running_instances)
                    + colors.yellow("•" * cell.claimed_instances)
                )

    asyncio.run(_cells())


# =============================================================================
# Log Commands
# =============================================================================


def _tail(ctx: LtcContext, app_guid: str, raw: bool) -> None:
    reader = ctx.log_reader
    ctx.exit_handler.on_exit(reader.stop)
    formatter = format_raw_message if raw else format_log_message
    errors: list[Exception] = []

    def on_error(error: Exception) -> None:
        errors.append(error)
        ctx.output.say_line(f"Error: {error}")

    asyncio.run(reader.tail_logs(app_guid, lambda m: ctx.output.say_line(formatter(m)), on_error))
    if errors:
        sys.exit(ExitCode.COMMAND_FAILED)


@cli.command()
@click.argument("name", required=False)
@click.option("--raw", is_flag=True, help="Print message text only")
@pass_context
def logs(ctx: LtcContext, name: str | None, raw: bool) -> None:
    """Stream logs from an app until interrupted."""
    if not name:
        ctx.fail_usage("App Name required")

    async def _exists() -> bool:
        return await ctx.app_examiner.app_exists(name)

    try:
        exists = asyncio.run(_exists())
    except LatticeError as e:
        ctx.fail(f"Error: {e}")

    if not exists:
        ctx.output.say_line(f"Application {name} not found.")
        ctx.output.say_line(f"Tailing logs and waiting for {name} to appear...")

    _tail(ctx, name, raw)


@cli.command("debug-logs")
@click.option("--raw", is_flag=True, help="Print message text only")
@pass_context
def debug_logs(ctx: LtcContext, raw: bool) -> None:
    """Stream logs from the lattice components until interrupted."""
    _tail(ctx, LATTICE_DEBUG_APP_ID, raw)


# =============================================================================
# Droplet Commands
# =============================================================================


@cli.command("upload-bits")
@click.argument("droplet_name", required=False)
@click.argument("file_path", required=False)
@pass_context
def upload_bits(ctx: LtcContext, droplet_name: str | None, file_path: str | None) -> None:
    """Upload a file as the source bits of a droplet."""
    if not droplet_name or not file_path:
        ctx.fail_usage("DROPLET_NAME and FILE_PATH are required")

    async def _upload():
        try:
            await ctx.droplet_runner.upload_bits(droplet_name, file_path)
        except OSError as e:
            ctx.fail(f"Error opening {file_path}: {e.strerror or e}")
        except LatticeError as e:
            ctx.fail(f"Error uploading to {droplet_name}: {e}")
        ctx.output.say_line(f"Successfully uploaded {droplet_name}")

    asyncio.run(_upload())


@cli.command("build-droplet")
@click.argument("droplet_name", required=False)
@click.argument("buildpack_url", required=False)
@click.option("--env", "-e", "env", multiple=True, help="KEY=VALUE, or KEY to copy it from your shell")
@click.option("--memory-mb", "-m", default=128, type=int, help="Memory limit of the build in MB")
@click.option("--disk-mb", "-d", default=0, type=int, help="Disk limit of the build in MB")
@click.option("--cpu-weight", "-c", default=100, type=int, help="Relative CPU weight (1-100)")
@click.option(
    "--timeout", "-t",
    default=DEFAULT_POLLING_TIMEOUT,
    type=float,
    help="Seconds to wait for the build",
)
@pass_context
def build_droplet(
    ctx: LtcContext,
    droplet_name: str | None,
    buildpack_url: str | None,
    env: tuple[str, ...],
    memory_mb: int,
    disk_mb: int,
    cpu_weight: int,
    timeout: float,
) -> None:
    """Stage uploaded bits into a droplet with a buildpack."""
    if not droplet_name or not buildpack_url:
        ctx.fail_usage("DROPLET_NAME and BUILDPACK_URL are required")
    if not 1 <= cpu_weight <= 100:
        ctx.fail_usage("Invalid CPU Weight")

    task_name = f"build-droplet-{droplet_name}"
    params = BuildParams(
        task_name=task_name,
        droplet_name=droplet_name,
        buildpack_url=buildpack_url,
        environment=build_app_environment(list(env), droplet_name, os.environ),
        memory_mb=memory_mb,
        cpu_weight=cpu_weight,
        disk_mb=disk_mb,
    )

    async def _build():
        output = ctx.output
        try:
            await ctx.droplet_runner.build_droplet(params)
        except LatticeError as e:
            ctx.fail(f"Error submitting build of {droplet_name}: {e}")
        output.say_line(f"Submitted build of {droplet_name}")

        task = None

        async def completed() -> bool:
            nonlocal task
            task = await ctx.receptor.get_task(task_name)
            return task.state == "COMPLETED"

        try:
            done = await poll_until(
                completed, timeout, interval=ctx.poll_interval, on_tick=lambda: output.say(".")
            )
        except LatticeError as e:
            ctx.fail(colors.red(f"Error requesting task status: {e}"))
        output.new_line()

        if not done:
            output.say_line(colors.red("Timed out waiting for the build to complete."))
            output.say_line("Lattice is still building your application in the background.")
            _say_how_to_follow_up(ctx, task_name)
            sys.exit(ExitCode.COMMAND_FAILED)
        if task.failed:
            ctx.fail(f"Build failed: {task.failure_reason}")
        output.say_line(colors.green("Build completed"))

    asyncio.run(_build())


@cli.command("list-droplets")
@pass_context
def list_droplets(ctx: LtcContext) -> None:
    """List the droplets in the blob store."""

    async def _list():
        try:
            droplets = await ctx.droplet_runner.list_droplets()
        except LatticeError as e:
            ctx.fail(f"Error listing droplets: {e}")

        rows = [["Droplet", "Created At"]]
        for droplet in droplets:
            if droplet.created is not None:
                created = droplet.created
                stamp = f"{created.strftime(DROPLET_CREATED_FORMAT)}.{created.microsecond // 10000:02d}"
                rows.append([droplet.name, stamp])
            else:
                rows.append([droplet.name])
        ctx.output.say_table(rows)

    asyncio.run(_list())


@cli.command("launch-droplet")
@click.argument("app_name", required=False)
@click.argument("droplet_name", required=False)
@click.argument("start_command", nargs=-1, type=click.UNPROCESSED)
@_add_app_environment_options
@pass_context
def launch_droplet(
    ctx: LtcContext,
    app_name: str | None,
    droplet_name: str | None,
    start_command: tuple[str, ...],
    **options,
) -> None:
    """Launch an app from a droplet.

    ltc launch-droplet APP_NAME DROPLET_NAME [-- START_COMMAND [ARGS...]]
    """
    if not app_name or not droplet_name:
        ctx.fail_usage("APP_NAME and DROPLET_NAME are required")

    environment = _app_environment(ctx, app_name, options)
    command = start_command[0] if start_command else ""
    args = list(start_command[1:])

    async def _launch():
        try:
            await ctx.droplet_runner.launch_droplet(app_name, droplet_name, command, args, environment)
        except LatticeError as e:
            ctx.fail(f"Error launching app {app_name} from droplet {droplet_name}: {e}")
        ctx.output.say_line(f"Creating App: {app_name}")
        await _wait_for_app_creation(ctx, app_name, environment, options["timeout"])

    asyncio.run(_launch())


@cli.command("remove-droplet")
@click.argument("droplet_name", required=False)
@pass_context
def remove_droplet(ctx: LtcContext, droplet_name: str | None) -> None:
    """Delete a droplet from the blob store."""
    if not droplet_name:
        ctx.fail_usage("DROPLET_NAME is required")

    async def _remove():
        try:
            await ctx.droplet_runner.remove_droplet(droplet_name)
        except LatticeError as e:
            ctx.fail(f"Error removing droplet {droplet_name}: {e}")
        ctx.output.say_line("Droplet removed")

    asyncio.run(_remove())


@cli.command("export-droplet")
@click.argument("droplet_name", required=False)
@pass_context
def export_droplet(ctx: LtcContext, droplet_name: str | None) -> None:
    """Download a droplet and its metadata into the current directory."""
    if not droplet_name:
        ctx.fail_usage("DROPLET_NAME is required")

    droplet_path = Path.cwd() / f"{droplet_name}.tgz"
    metadata_path = Path.cwd() / f"{droplet_name}-metadata.json"

    async def _export():
        try:
            await ctx.droplet_runner.export_droplet(droplet_name, str(droplet_path), str(metadata_path))
        except OSError as e:
            ctx.fail(f"Error exporting droplet {droplet_name}: {e.strerror or e}")
        except LatticeError as e:
            ctx.fail(f"Error exporting droplet {droplet_name}: {e}")
        ctx.output.say_line(
            f"Droplet '{droplet_name}' exported to {droplet_path.name} and {metadata_path.name}."
        )

    asyncio.run(_export())


@cli.command("import-droplet")
@click.argument("droplet_name", required=False)
@click.argument("droplet_file", required=False)
@click.argument("metadata_file", required=False)
@pass_context
def import_droplet(
    ctx: LtcContext,
    droplet_name: str | None,
    droplet_file: str | None,
    metadata_file: str | None,
) -> None:
    """Upload a droplet exported with export-droplet."""
    if not droplet_name or not droplet_file or not metadata_file:
        ctx.fail_usage("DROPLET_NAME, DROPLET_FILE and METADATA_FILE are required")

    async def _import():
        try:
            await ctx.droplet_runner.import_droplet(droplet_name, droplet_file, metadata_file)
        except OSError as e:
            ctx.fail(f"Error importing droplet {droplet_name}: {e.strerror or e}")
        except LatticeError as e:
            ctx.fail(f"Error importing droplet {droplet_name}: {e}")
        ctx.output.say_line(f"Imported {droplet_name}")

    asyncio.run(_import())


# =============================================================================
# Cluster Test Command
# =============================================================================


@cli.command("test")
@click.option("--timeout", default=DEFAULT_TIMEOUT, type=float, help="Seconds each step may wait")
@click.option("-v", "--verbose", is_flag=True, help="Print every step")
@click.option("--cli-help", is_flag=True, help="Describe what the test does")
@pass_context
def cluster_test(ctx: LtcContext, timeout: float, verbose: bool, cli_help: bool) -> None:
    """Run a smoke test against the targeted cluster."""
    if cli_help:
        ctx.output.say(CLI_HELP)
        return

    runner = ClusterTestRunner(
        ctx.app_runner, ctx.app_examiner, ctx.output, poll_interval=ctx.poll_interval
    )
    try:
        asyncio.run(runner.run(timeout=timeout, verbose=verbose))
    except LatticeError as e:
        ctx.fail(colors.red(f"Lattice cluster test failed: {e}"), e.exit_code)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
