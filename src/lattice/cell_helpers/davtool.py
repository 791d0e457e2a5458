"""davtool: upload a file to, or delete a file from, a WebDAV server.

Usage::

    davtool put URL FILE
    davtool delete URL

Credentials may be embedded in URL; they are never printed.
"""

from __future__ import annotations

import asyncio
import logging

import aiofiles
import aiofiles.os
import click

from lattice.blob_store import DavClient, file_chunks
from lattice.cell_helpers.console import HELPER_CONTEXT_SETTINGS, configure_logging, die, failure_reason
from lattice.errors import FILE_SYSTEM_ERROR, BlobStatusError, ExitCode, NetworkError
from lattice.urls import sanitize_url

logger = logging.getLogger(__name__)

USAGE = "Usage: davtool [put|delete] arguments..."
PUT_USAGE = "Usage: davtool put url fileToUpload"
DELETE_USAGE = "Usage: davtool delete url"


async def put(client: DavClient, url: str, source_path: str) -> None:
    try:
        f = await aiofiles.open(source_path, "rb")
    except OSError as e:
        die(FILE_SYSTEM_ERROR, f"Error opening {source_path}: {failure_reason(e)}")

    try:
        size = (await aiofiles.os.stat(source_path)).st_size
        await client.put(url, file_chunks(f), size)
    except (OSError, BlobStatusError, NetworkError) as e:
        die(ExitCode.COMMAND_FAILED, f"Error uploading {source_path}: {failure_reason(e)}")
    finally:
        await f.close()

    click.echo(f"Uploaded {source_path} to {sanitize_url(url)}.")


async def delete(client: DavClient, url: str) -> None:
    try:
        await client.delete(url)
    except (BlobStatusError, NetworkError) as e:
        die(ExitCode.COMMAND_FAILED, f"Error deleting {sanitize_url(url)}: {failure_reason(e)}")

    click.echo(f"Deleted {sanitize_url(url)}.")


@click.command(context_settings=HELPER_CONTEXT_SETTINGS)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def davtool(args: tuple[str, ...]) -> None:
    action = args[0] if args else ""
    client = DavClient()

    if action == "put":
        if len(args) != 3:
            die(ExitCode.HELPER_ABORT, PUT_USAGE)
        asyncio.run(put(client, args[1], args[2]))
    elif action == "delete":
        if len(args) != 2:
            die(ExitCode.HELPER_ABORT, DELETE_USAGE)
        asyncio.run(delete(client, args[1]))
    else:
        die(ExitCode.HELPER_ABORT, USAGE)


def main() -> None:
    configure_logging()
    davtool()


if __name__ == "__main__":
    main()
