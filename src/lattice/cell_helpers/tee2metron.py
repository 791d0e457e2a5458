"""tee2metron: run a command, passing its output through and to the log bus.

Usage::

    tee2metron -dropsondeDestination=127.0.0.1:3457 -sourceInstance=cell-21 COMMAND [ARGS...]

The child's stdout and stderr are copied unchanged to ours. Every non-blank
line is also sent to the agent at ``dropsondeDestination`` as a log message
for the ``lattice-debug`` app, with the command name as source type. The
helper exits 0 when the child does, 3 otherwise.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from typing import BinaryIO

import click
import psutil

from lattice.cell_helpers.console import HELPER_CONTEXT_SETTINGS, configure_logging, die
from lattice.dropsonde import LogSender, UdpEmitter, make_origin
from lattice.errors import CHILD_FAILED, ChildFailedError, ExitCode
from lattice.logs import LATTICE_DEBUG_APP_ID

logger = logging.getLogger(__name__)

USAGE = "Usage: tee2metron -dropsondeDestination=127.0.0.1:3457 -sourceInstance=cell-21 COMMAND"
TEE_CHUNK_SIZE = 32 * 1024


def exit_description(returncode: int) -> str:
    """Describe a non-zero child exit, naming the signal for killed children."""
    if returncode < 0:
        name = signal.strsignal(-returncode) or f"signal {-returncode}"
        return f"signal: {name.lower()}"
    return f"exit status {returncode}"


def tee(source: BinaryIO, sink: BinaryIO, pipe_fd: int) -> None:
    """Copy ``source`` to ``sink`` and to the write end ``pipe_fd`` until EOF.

    The pipe is closed on return so its reader sees EOF. If the reader goes
    away, copying to ``sink`` continues.
    """
    # Unbuffered, so a failed write leaves nothing for close() to flush.
    pipe: BinaryIO | None = os.fdopen(pipe_fd, "wb", buffering=0)
    try:
        while True:
            chunk = source.read1(TEE_CHUNK_SIZE)
            if not chunk:
                return
            sink.write(chunk)
            sink.flush()
            if pipe is None:
                continue
            try:
                pipe.write(chunk)
            except OSError as e:
                logger.warning(f"Log scanner stopped reading: {e}")
                pipe.close()
                pipe = None
    finally:
        if pipe is not None:
            pipe.close()


class Supervisor:
    """Runs one child and streams its output to a LogSender."""

    def __init__(self, sender: LogSender, source_instance: str):
        self.sender = sender
        self.source_instance = source_instance

    def _scanner(self, pipe_fd: int, source_type: str, errors: bool) -> threading.Thread:
        scan = self.sender.scan_error_log_stream if errors else self.sender.scan_log_stream

        def run() -> None:
            with os.fdopen(pipe_fd, "rb") as reader:
                scan(LATTICE_DEBUG_APP_ID, source_type, self.source_instance, reader)

        return threading.Thread(target=run, name=f"scan-{'stderr' if errors else 'stdout'}", daemon=True)

    def run(self, command: list[str], stdout: BinaryIO, stderr: BinaryIO) -> int:
        """Run ``command`` to completion.

        Returns:
            The child's exit status.

        Raises:
            ChildFailedError: If the child cannot be started.
        """
        source_type = command[0]
        try:
            child = psutil.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise ChildFailedError(str(e)) from e
        logger.debug(f"Started {source_type} as pid {child.pid}")

        threads = []
        for source, sink, errors in ((child.stdout, stdout, False), (child.stderr, stderr, True)):
            read_fd, write_fd = os.pipe()
            threads.append(self._scanner(read_fd, source_type, errors))
            threads.append(
                threading.Thread(target=tee, args=(source, sink, write_fd), name="tee", daemon=True)
            )
        for thread in threads:
            thread.start()

        returncode = child.wait()
        for thread in threads:
            thread.join()
        child.stdout.close()
        child.stderr.close()
        return returncode


@click.command(context_settings=HELPER_CONTEXT_SETTINGS)
@click.option("-dropsondeDestination", "dropsonde_destination", default="", help="host:port of the agent")
@click.option("-sourceInstance", "source_instance", default="", help="source instance tag for log messages")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def tee2metron(dropsonde_destination: str, source_instance: str, command: tuple[str, ...]) -> None:
    if not dropsonde_destination:
        die(ExitCode.INVALID_SYNTAX, "dropsondeDestination flag is required")
    if not source_instance:
        die(ExitCode.INVALID_SYNTAX, "sourceInstance flag is required")
    if not command:
        click.echo("Command not specified!")
        die(ExitCode.HELPER_ABORT, USAGE)

    argv0 = command[0]
    try:
        emitter = UdpEmitter(dropsonde_destination, make_origin(source_instance, argv0))
    except (ValueError, OSError) as e:
        die(CHILD_FAILED, f"Error initializing dropsonde: {e}")
    emitter.start_heartbeat_responder()
    sender = LogSender(emitter)
    sender.start()

    try:
        returncode = Supervisor(sender, source_instance).run(
            list(command), sys.stdout.buffer, sys.stderr.buffer
        )
    except ChildFailedError as e:
        die(e.exit_code, e.message)
    finally:
        sender.stop()
        emitter.close()

    if returncode != 0:
        die(CHILD_FAILED, f"{argv0} : {exit_description(returncode)}")


def main() -> None:
    configure_logging()
    tee2metron()


if __name__ == "__main__":
    main()
