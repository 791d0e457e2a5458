"""Console conventions shared by the cell helpers.

Helpers print every message, errors included, to stdout and exit with
``ExitCode.HELPER_ABORT`` on bad usage.
"""

from __future__ import annotations

import logging
import sys
from typing import NoReturn

import click

from lattice.errors import BlobStatusError

# Arguments are taken verbatim so that dash-prefixed values reach the helper.
HELPER_CONTEXT_SETTINGS = {
    "ignore_unknown_options": True,
    "allow_interspersed_args": False,
    "help_option_names": [],
}


def configure_logging() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(name)s: %(message)s")


def die(exit_code: int, message: str) -> NoReturn:
    """Print ``message`` and exit."""
    click.echo(message)
    sys.exit(int(exit_code))


def failure_reason(error: Exception) -> str:
    """The part of an error worth showing after ``<what failed>:``.

    Status errors show the status line, transport errors their underlying
    cause and file errors the OS description.
    """
    if isinstance(error, BlobStatusError):
        return error.status
    if isinstance(error, OSError):
        return error.strerror or str(error)
    return str(error.__cause__ or error)
