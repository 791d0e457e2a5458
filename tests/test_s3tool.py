"""Tests for the s3uploader, s3downloader and s3deleter cell helpers.

The recording server stands in for the HTTP proxy, so requests addressed
to s3.amazonaws.com arrive at it with the bucket as the first path segment.
"""

from __future__ import annotations

import asyncio

import pytest
from click.testing import CliRunner

from lattice.cell_helpers.s3tool import (
    DELETER_USAGE,
    DOWNLOADER_USAGE,
    UPLOADER_USAGE,
    s3deleter,
    s3downloader,
    s3uploader,
)


async def run_helper(command, *args: str):
    return await asyncio.to_thread(CliRunner().invoke, command, list(args))


class TestUsage:
    """Tests for argument counts."""

    @pytest.mark.parametrize(
        "command, args, usage",
        [
            (s3uploader, ["key", "secret", "", "bucket", "path"], UPLOADER_USAGE),
            (s3downloader, ["key", "secret", "", "bucket", "path", "dest", "extra"], DOWNLOADER_USAGE),
            (s3deleter, ["key", "secret", "", "bucket"], DELETER_USAGE),
        ],
    )
    def test_wrong_argument_count_exits_3(self, command, args, usage):
        result = CliRunner().invoke(command, args)

        assert result.exit_code == 3
        assert usage in result.output


class TestUploader:
    """Tests for s3uploader."""

    @pytest.mark.asyncio
    async def test_uploads_signed_request(self, blob_server, tmp_path):
        """Uploads MUST be signed PUTs through the proxy."""
        source = tmp_path / "droplet"
        source.write_bytes(b"droplet-bytes")

        async with blob_server as server:
            server.respond("PUT", "/droplets/drop/droplet.tgz", 200)
            result = await run_helper(
                s3uploader, "AKID", "SECRET", server.url, "droplets", "drop/droplet.tgz", str(source)
            )

        assert result.exit_code == 0, result.output
        assert result.output == f"Uploaded {source} to s3://droplets/drop/droplet.tgz.\n"
        request = server.requests[0]
        assert request.method == "PUT"
        assert request.body == b"droplet-bytes"
        assert request.headers["Host"] == "s3.amazonaws.com"
        assert request.headers["Authorization"].startswith("AWS AKID:")

    @pytest.mark.asyncio
    async def test_forbidden_exits_2(self, blob_server, tmp_path):
        source = tmp_path / "droplet"
        source.write_bytes(b"droplet-bytes")

        async with blob_server as server:
            server.respond("PUT", "/droplets/drop/droplet.tgz", 403)
            result = await run_helper(
                s3uploader, "AKID", "SECRET", server.url, "droplets", "drop/droplet.tgz", str(source)
            )

        assert result.exit_code == 2
        assert result.output == "Error uploading s3://droplets/drop/droplet.tgz: 403 Forbidden\n"

    @pytest.mark.asyncio
    async def test_missing_file_exits_2(self, tmp_path):
        missing = tmp_path / "missing"

        result = await run_helper(s3uploader, "AKID", "SECRET", "", "droplets", "drop", str(missing))

        assert result.exit_code == 2
        assert result.output.startswith(f"Error stat'ing {missing}: ")


class TestDownloader:
    """Tests for s3downloader."""

    @pytest.mark.asyncio
    async def test_downloads_to_destination(self, blob_server, tmp_path):
        destination = tmp_path / "bits.zip"

        async with blob_server as server:
            server.respond("GET", "/droplets/drop/bits.zip", 200, body=b"zip-bytes")
            result = await run_helper(
                s3downloader, "AKID", "SECRET", server.url, "droplets", "drop/bits.zip", str(destination)
            )

        assert result.exit_code == 0, result.output
        assert result.output == f"Downloaded s3://droplets/drop/bits.zip to {destination}.\n"
        assert destination.read_bytes() == b"zip-bytes"

    @pytest.mark.asyncio
    async def test_existing_destination_is_not_truncated(self, blob_server, tmp_path):
        """Download MUST overwrite from offset zero, leaving a longer tail."""
        destination = tmp_path / "bits.zip"
        destination.write_bytes(b"0123456789")

        async with blob_server as server:
            server.respond("GET", "/droplets/drop/bits.zip", 200, body=b"abc")
            result = await run_helper(
                s3downloader, "AKID", "SECRET", server.url, "droplets", "drop/bits.zip", str(destination)
            )

        assert result.exit_code == 0, result.output
        assert destination.read_bytes() == b"abc3456789"

    @pytest.mark.asyncio
    async def test_missing_object_exits_2(self, blob_server, tmp_path):
        destination = tmp_path / "bits.zip"

        async with blob_server as server:
            result = await run_helper(
                s3downloader, "AKID", "SECRET", server.url, "droplets", "drop/bits.zip", str(destination)
            )

        assert result.exit_code == 2
        assert result.output == "Error downloading s3://droplets/drop/bits.zip: 404 Not Found\n"
        assert not destination.exists()


class TestDeleter:
    """Tests for s3deleter."""

    @pytest.mark.parametrize("status", [200, 204])
    @pytest.mark.asyncio
    async def test_any_2xx_is_success(self, blob_server, status):
        async with blob_server as server:
            server.respond("DELETE", "/droplets/drop/bits.zip", status)
            result = await run_helper(s3deleter, "AKID", "SECRET", server.url, "droplets", "drop/bits.zip")

        assert result.exit_code == 0, result.output
        assert result.output == "Deleted s3://droplets/drop/bits.zip.\n"
        assert server.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_failure_exits_2(self, blob_server):
        async with blob_server as server:
            server.respond("DELETE", "/droplets/drop/bits.zip", 500)
            result = await run_helper(s3deleter, "AKID", "SECRET", server.url, "droplets", "drop/bits.zip")

        assert result.exit_code == 2
        assert result.output == "Error deleting s3://droplets/drop/bits.zip: 500 Internal Server Error\n"
