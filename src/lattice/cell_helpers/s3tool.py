"""s3uploader, s3downloader and s3deleter: single-object S3 transfers.

Every helper takes the credentials, an HTTP proxy (empty for none), the
bucket and the object path as positional arguments::

    s3uploader   ACCESS_KEY SECRET_KEY PROXY BUCKET PATH FILE_TO_UPLOAD
    s3downloader ACCESS_KEY SECRET_KEY PROXY BUCKET PATH DESTINATION
    s3deleter    ACCESS_KEY SECRET_KEY PROXY BUCKET PATH

Any 2xx response counts as success.
"""

from __future__ import annotations

import asyncio
import logging
import os

import aiofiles
import aiofiles.os
import aiohttp
import click

from lattice.blob_store import SUCCESS_2XX, S3BlobStore, file_chunks
from lattice.cell_helpers.console import HELPER_CONTEXT_SETTINGS, configure_logging, die, failure_reason
from lattice.errors import FILE_SYSTEM_ERROR, BlobStatusError, ExitCode, NetworkError

logger = logging.getLogger(__name__)

S3_ENDPOINT = "http://s3.amazonaws.com"
DESTINATION_MODE = 0o644

UPLOADER_USAGE = "Usage: s3uploader s3AccessKey s3SecretKey httpProxy s3Bucket s3Path fileToUpload"
DOWNLOADER_USAGE = (
    "Usage: s3downloader s3AccessKey s3SecretKey httpProxy s3Bucket s3Path destinationFilePath"
)
DELETER_USAGE = "Usage: s3deleter s3AccessKey s3SecretKey httpProxy s3Bucket s3Path"


def s3_store(access_key: str, secret_key: str, proxy: str, bucket: str) -> S3BlobStore:
    return S3BlobStore(
        access_key=access_key,
        secret_key=secret_key,
        bucket_name=bucket,
        endpoint=S3_ENDPOINT,
        proxy=proxy or None,
    )


# =============================================================================
# Transfers
# =============================================================================


async def upload(store: S3BlobStore, path: str, source_path: str) -> None:
    """Stream a local file to ``s3://<bucket>/<path>``."""
    location = f"s3://{store.bucket_name}/{path}"
    try:
        size = (await aiofiles.os.stat(source_path)).st_size
    except OSError as e:
        die(FILE_SYSTEM_ERROR, f"Error stat'ing {source_path}: {failure_reason(e)}")
    try:
        f = await aiofiles.open(source_path, "rb")
    except OSError as e:
        die(FILE_SYSTEM_ERROR, f"Error opening {source_path}: {failure_reason(e)}")

    try:
        await store.upload_stream(path, file_chunks(f), size, accept=SUCCESS_2XX)
    except (BlobStatusError, NetworkError) as e:
        die(ExitCode.COMMAND_FAILED, f"Error uploading {location}: {failure_reason(e)}")
    finally:
        await f.close()

    click.echo(f"Uploaded {source_path} to {location}.")


async def download(store: S3BlobStore, path: str, destination: str) -> None:
    """Write ``s3://<bucket>/<path>`` over ``destination``.

    The destination is created if needed and written from offset zero
    without truncation.
    """
    location = f"s3://{store.bucket_name}/{path}"
    try:
        reader = await store.download(path)
    except (BlobStatusError, NetworkError) as e:
        die(ExitCode.COMMAND_FAILED, f"Error downloading {location}: {failure_reason(e)}")

    async with reader:
        try:
            fd = os.open(destination, os.O_RDWR | os.O_CREAT, DESTINATION_MODE)
        except OSError as e:
            die(FILE_SYSTEM_ERROR, f"Error opening {destination}: {failure_reason(e)}")

        async with aiofiles.open(fd, "wb") as f:
            try:
                async for chunk in reader.iter_chunks():
                    await f.write(chunk)
            except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                die(FILE_SYSTEM_ERROR, f"Error writing {destination}: {e}")

    click.echo(f"Downloaded {location} to {destination}.")


async def delete(store: S3BlobStore, path: str) -> None:
    location = f"s3://{store.bucket_name}/{path}"
    try:
        await store.delete(path, accept=SUCCESS_2XX)
    except (BlobStatusError, NetworkError) as e:
        die(ExitCode.COMMAND_FAILED, f"Error deleting {location}: {failure_reason(e)}")

    click.echo(f"Deleted {location}.")


# =============================================================================
# Commands
# =============================================================================


@click.command(context_settings=HELPER_CONTEXT_SETTINGS)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def s3uploader(args: tuple[str, ...]) -> None:
    if len(args) != 6:
        die(ExitCode.HELPER_ABORT, UPLOADER_USAGE)
    access_key, secret_key, proxy, bucket, path, source_path = args
    asyncio.run(upload(s3_store(access_key, secret_key, proxy, bucket), path, source_path))


@click.command(context_settings=HELPER_CONTEXT_SETTINGS)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def s3downloader(args: tuple[str, ...]) -> None:
    if len(args) != 6:
        die(ExitCode.HELPER_ABORT, DOWNLOADER_USAGE)
    access_key, secret_key, proxy, bucket, path, destination = args
    asyncio.run(download(s3_store(access_key, secret_key, proxy, bucket), path, destination))


@click.command(context_settings=HELPER_CONTEXT_SETTINGS)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def s3deleter(args: tuple[str, ...]) -> None:
    if len(args) != 5:
        die(ExitCode.HELPER_ABORT, DELETER_USAGE)
    access_key, secret_key, proxy, bucket, path = args
    asyncio.run(delete(s3_store(access_key, secret_key, proxy, bucket), path))


def uploader_main() -> None:
    configure_logging()
    s3uploader()


def downloader_main() -> None:
    configure_logging()
    s3downloader()


def deleter_main() -> None:
    configure_logging()
    s3deleter()
