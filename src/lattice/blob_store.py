"""Object store clients for droplets and application bits.

Two interchangeable backends implement BlobStore:
- S3BlobStore: S3-compatible API, path-style URLs, v2-signed requests
- DavBlobStore: WebDAV collection under ``/blobs``

Credentials never appear in logs or error messages; every URL goes through
``sanitize_url`` first.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Collection
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote, unquote, urlsplit, urlunsplit

import aiofiles
import aiofiles.os
import aiohttp

from lattice.config import BLOB_BACKEND_S3, BlobTarget
from lattice.errors import BlobStatusError, NetworkError
from lattice.receptor import download_action, run_action, serial_action
from lattice.s3_signing import sign_v2
from lattice.urls import sanitize_url, split_credentials

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
OCTET_STREAM = "application/octet-stream"
SUCCESS_2XX = range(200, 300)

# Paths to the cell helpers inside the build container.
DAVTOOL_PATH = "/tmp/davtool"
S3_HELPER_DIR = "/tmp"


# =============================================================================
# URL helpers
# =============================================================================


def status_line(response: aiohttp.ClientResponse) -> str:
    """HTTP status as ``"404 Not Found"``."""
    reason = response.reason or ""
    return f"{response.status} {reason}".strip()


def _timeout(seconds: float | None) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=seconds)


async def file_chunks(f: Any) -> AsyncIterator[bytes]:
    while True:
        chunk = await f.read(CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


# =============================================================================
# Data types
# =============================================================================


@dataclass
class Blob:
    """One object in the store."""

    path: str
    size: int = 0
    created: datetime | None = None


class BlobReader:
    """Streaming body of a download. The caller must close it.

    Usable as an async context manager.
    """

    def __init__(self, session: aiohttp.ClientSession, response: aiohttp.ClientResponse):
        self._session = session
        self._response = response

    @property
    def content_length(self) -> int | None:
        return self._response.content_length

    async def read(self) -> bytes:
        return await self._response.read()

    async def iter_chunks(self, size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        async for chunk in self._response.content.iter_chunked(size):
            yield chunk

    async def close(self) -> None:
        self._response.release()
        await self._session.close()

    async def __aenter__(self) -> BlobReader:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False


# =============================================================================
# BlobStore interface
# =============================================================================


class BlobStore(ABC):
    """Common interface of the object store backends."""

    @abstractmethod
    async def list(self) -> list[Blob]:
        """List every blob in the store."""

    @abstractmethod
    async def upload(self, path: str, data: bytes) -> None:
        """Store ``data`` at ``path``."""

    @abstractmethod
    async def upload_file(self, path: str, file_path: str) -> None:
        """Stream a local file to ``path``.

        Raises:
            OSError: If the local file cannot be stat'ed or opened.
        """

    @abstractmethod
    async def download(self, path: str) -> BlobReader:
        """Open a streaming download of ``path``."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove ``path``."""

    # Actions run inside a build task to move droplet artifacts.

    @abstractmethod
    def download_action(self, path: str, to: str) -> dict[str, Any]:
        """Action that fetches ``path`` into the container directory ``to``."""

    @abstractmethod
    def upload_action(self, path: str, from_path: str) -> dict[str, Any]:
        """Action that uploads the container file ``from_path`` to ``path``."""

    @abstractmethod
    def delete_action(self, path: str) -> dict[str, Any]:
        """Action that deletes ``path`` from inside a container."""


# =============================================================================
# S3 backend
# =============================================================================


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_bucket_listing(body: bytes) -> list[Blob]:
    """Parse a ListBucketResult document into blobs."""
    root = ET.fromstring(body)
    blobs = []
    for element in root:
        if _local_name(element.tag) != "Contents":
            continue
        fields = {_local_name(child.tag): (child.text or "") for child in element}
        created = None
        if fields.get("LastModified"):
            created = datetime.fromisoformat(fields["LastModified"].replace("Z", "+00:00"))
        blobs.append(
            Blob(path=fields.get("Key", ""), size=int(fields.get("Size") or 0), created=created)
        )
    return blobs


class S3BlobStore(BlobStore):
    """S3-compatible store addressed path-style (``/bucket/key``).

    No retries beyond the transport: a non-accepted status raises
    BlobStatusError naming the operation and the object URL.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        endpoint: str,
        proxy: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the store.

        Args:
            access_key: Access key id.
            secret_key: Secret key used for signing.
            bucket_name: Bucket holding all blobs.
            endpoint: Base URL, e.g. ``http://10.0.0.2:8080``.
            proxy: Optional HTTP proxy URL all requests go through.
            timeout: Total per-request deadline in seconds.
        """
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket_name = bucket_name
        self.endpoint = endpoint.rstrip("/")
        self.proxy = proxy
        self.timeout = timeout

    def object_url(self, path: str = "") -> str:
        url = f"{self.endpoint}/{quote(self.bucket_name)}"
        if path:
            url += "/" + quote(path.lstrip("/"))
        return url

    def display_url(self, path: str) -> str:
        return f"s3://{self.bucket_name}/{path}"

    def _sign(self, method: str, url: str, headers: dict[str, str] | None = None):
        return sign_v2(self.access_key, self.secret_key, method, url, headers)

    async def list(self) -> list[Blob]:
        url = self.object_url()
        signed = self._sign("GET", url)
        logger.debug(f"S3 GET {sanitize_url(url)}")
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.get(signed.url, headers=signed.headers, proxy=self.proxy) as response:
                    if response.status != 200:
                        raise BlobStatusError("listing", sanitize_url(url), status_line(response))
                    body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error listing {sanitize_url(url)}: {e}") from e
        try:
            return parse_bucket_listing(body)
        except ET.ParseError as e:
            raise BlobStatusError("listing", sanitize_url(url), f"invalid listing: {e}")

    async def upload_stream(
        self,
        path: str,
        data: Any,
        content_length: int,
        accept: Collection[int],
    ) -> None:
        """PUT a body of known length.

        Raises:
            BlobStatusError: If the status is not in ``accept``.
            NetworkError: On transport failure.
        """
        url = self.object_url(path)
        signed = self._sign(
            "PUT",
            url,
            {"Content-Type": OCTET_STREAM, "x-amz-acl": "private"},
        )
        headers = dict(signed.headers)
        headers["Content-Length"] = str(content_length)
        logger.debug(f"S3 PUT {sanitize_url(url)} ({content_length} bytes)")
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.put(signed.url, data=data, headers=headers, proxy=self.proxy) as response:
                    if response.status not in accept:
                        raise BlobStatusError("uploading", sanitize_url(url), status_line(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error uploading {sanitize_url(url)}: {e}") from e

    async def upload(self, path: str, data: bytes, accept: Collection[int] = (200, 201)) -> None:
        await self.upload_stream(path, data, len(data), accept)

    async def upload_file(
        self, path: str, file_path: str, accept: Collection[int] = (200, 201)
    ) -> None:
        size = (await aiofiles.os.stat(file_path)).st_size
        async with aiofiles.open(file_path, "rb") as f:
            await self.upload_stream(path, file_chunks(f), size, accept)

    async def download(self, path: str) -> BlobReader:
        url = self.object_url(path)
        signed = self._sign("GET", url)
        logger.debug(f"S3 GET {sanitize_url(url)}")
        session = aiohttp.ClientSession(timeout=_timeout(self.timeout))
        try:
            response = await session.get(signed.url, headers=signed.headers, proxy=self.proxy)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await session.close()
            raise NetworkError(f"Error downloading {sanitize_url(url)}: {e}") from e
        if response.status != 200:
            status = status_line(response)
            response.release()
            await session.close()
            raise BlobStatusError("downloading", sanitize_url(url), status)
        return BlobReader(session, response)

    async def delete(self, path: str, accept: Collection[int] = (204,)) -> None:
        url = self.object_url(path)
        signed = self._sign("DELETE", url)
        logger.debug(f"S3 DELETE {sanitize_url(url)}")
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.delete(signed.url, headers=signed.headers, proxy=self.proxy) as response:
                    if response.status not in accept:
                        raise BlobStatusError("deleting", sanitize_url(url), status_line(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error deleting {sanitize_url(url)}: {e}") from e

    def _helper_args(self, path: str) -> list[str]:
        return [self.access_key, self.secret_key, self.endpoint, self.bucket_name, path]

    def download_action(self, path: str, to: str) -> dict[str, Any]:
        # The downloader writes a single file; stage it and unpack into ``to``.
        staged = posixpath.join(S3_HELPER_DIR, posixpath.basename(path))
        if staged.endswith(".zip"):
            extract = run_action("/usr/bin/unzip", ["-o", "-q", staged, "-d", to], user="vcap")
        else:
            extract = run_action("/bin/tar", ["-C", to, "-xzf", staged], user="vcap")
        return serial_action(
            [
                run_action(f"{S3_HELPER_DIR}/s3downloader", self._helper_args(path) + [staged], user="vcap"),
                run_action("/bin/mkdir", ["-p", to], user="vcap"),
                extract,
            ]
        )

    def upload_action(self, path: str, from_path: str) -> dict[str, Any]:
        return run_action(
            f"{S3_HELPER_DIR}/s3uploader",
            self._helper_args(path) + [from_path],
            user="vcap",
        )

    def delete_action(self, path: str) -> dict[str, Any]:
        return run_action(f"{S3_HELPER_DIR}/s3deleter", self._helper_args(path), user="vcap")


# =============================================================================
# WebDAV backend
# =============================================================================


def parse_multistatus(body: bytes) -> list[Blob]:
    """Parse a PROPFIND 207 body into (href-path, size, modified) blobs.

    Paths are returned decoded and without any trailing slash.
    """
    root = ET.fromstring(body)
    blobs = []
    for response in root.iter():
        if _local_name(response.tag) != "response":
            continue
        href = ""
        size = 0
        created = None
        for element in response.iter():
            name = _local_name(element.tag)
            text = (element.text or "").strip()
            if name == "href":
                href = text
            elif name == "getcontentlength" and text:
                size = int(text)
            elif name == "getlastmodified" and text:
                created = parsedate_to_datetime(text)
        path = unquote(urlsplit(href).path).rstrip("/")
        blobs.append(Blob(path=path, size=size, created=created))
    return blobs


class DavClient:
    """URL-addressed WebDAV operations.

    Credentials embedded in a URL are sent as basic auth and stripped from
    everything that is logged or raised.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    async def put(self, url: str, data: Any, content_length: int) -> None:
        """PUT a body; 200 and 201 are success.

        Raises:
            BlobStatusError: On any other status.
            NetworkError: On transport failure.
        """
        clean_url, auth = split_credentials(url)
        logger.debug(f"DAV PUT {clean_url} ({content_length} bytes)")
        headers = {"Content-Length": str(content_length)}
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.put(clean_url, data=data, headers=headers, auth=auth) as response:
                    if response.status not in (200, 201):
                        raise BlobStatusError("uploading", clean_url, status_line(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error uploading {clean_url}: {e}") from e

    async def put_file(self, url: str, file_path: str) -> None:
        """Stream a local file with PUT.

        Raises:
            OSError: If the file cannot be stat'ed or opened.
        """
        size = (await aiofiles.os.stat(file_path)).st_size
        async with aiofiles.open(file_path, "rb") as f:
            await self.put(url, file_chunks(f), size)

    async def delete(self, url: str) -> None:
        """DELETE a resource; only 204 is success."""
        clean_url, auth = split_credentials(url)
        logger.debug(f"DAV DELETE {clean_url}")
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.delete(clean_url, auth=auth) as response:
                    if response.status != 204:
                        raise BlobStatusError("deleting", clean_url, status_line(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error deleting {clean_url}: {e}") from e

    async def propfind(self, url: str) -> list[Blob]:
        """List one level of a collection (``Depth: 1``); expects 207."""
        clean_url, auth = split_credentials(url)
        logger.debug(f"DAV PROPFIND {clean_url}")
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.request(
                    "PROPFIND", clean_url, headers={"Depth": "1"}, auth=auth
                ) as response:
                    if response.status != 207:
                        raise BlobStatusError("listing", clean_url, status_line(response))
                    body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error listing {clean_url}: {e}") from e
        try:
            return parse_multistatus(body)
        except (ET.ParseError, ValueError) as e:
            raise BlobStatusError("listing", clean_url, f"invalid multistatus: {e}")

    async def mkcol(self, url: str) -> None:
        """Create a collection; expects 201."""
        clean_url, auth = split_credentials(url)
        logger.debug(f"DAV MKCOL {clean_url}")
        try:
            async with aiohttp.ClientSession(timeout=_timeout(self.timeout)) as session:
                async with session.request("MKCOL", clean_url, auth=auth) as response:
                    if response.status != 201:
                        raise BlobStatusError("creating", clean_url, status_line(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error creating {clean_url}: {e}") from e

    async def get(self, url: str) -> BlobReader:
        """Open a streaming GET; expects 200."""
        clean_url, auth = split_credentials(url)
        logger.debug(f"DAV GET {clean_url}")
        session = aiohttp.ClientSession(timeout=_timeout(self.timeout))
        try:
            response = await session.get(clean_url, auth=auth)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await session.close()
            raise NetworkError(f"Error downloading {clean_url}: {e}") from e
        if response.status != 200:
            status = status_line(response)
            response.release()
            await session.close()
            raise BlobStatusError("downloading", clean_url, status)
        return BlobReader(session, response)


class DavBlobStore(BlobStore):
    """Blobs stored in a WebDAV tree rooted at ``/blobs``.

    Blob paths are two levels deep (``<droplet>/<file>``).
    """

    BLOBS_ROOT = "/blobs"

    def __init__(
        self,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        timeout: float | None = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.client = DavClient(timeout=timeout)

    @property
    def base_url(self) -> str:
        """Root URL with credentials embedded, as handed to davtool."""
        netloc = f"{self.host}:{self.port}" if self.port else self.host
        if self.username or self.password:
            netloc = f"{quote(self.username, safe='')}:{quote(self.password, safe='')}@{netloc}"
        return urlunsplit(("http", netloc, "", "", ""))

    def blob_url(self, path: str = "") -> str:
        url = f"{self.base_url}{self.BLOBS_ROOT}/"
        if path:
            url += quote(path.lstrip("/"))
        return url

    def _relative(self, path: str) -> str:
        prefix = self.BLOBS_ROOT + "/"
        return path[len(prefix):] if path.startswith(prefix) else path.lstrip("/")

    async def list(self) -> list[Blob]:
        root = self.BLOBS_ROOT
        blobs: list[Blob] = []
        for entry in await self.client.propfind(self.blob_url()):
            if entry.path == root:
                continue
            collection = self._relative(entry.path)
            for child in await self.client.propfind(self.blob_url(collection) + "/"):
                if child.path == entry.path:
                    continue
                blobs.append(Blob(path=self._relative(child.path), size=child.size, created=child.created))
        return blobs

    async def _ensure_parent_collection(self, path: str) -> None:
        parent = path.rsplit("/", 1)[0] if "/" in path else ""
        if not parent:
            return
        parent_url = self.blob_url(parent) + "/"
        try:
            await self.client.propfind(parent_url)
            return
        except BlobStatusError as e:
            if not e.status.startswith("404"):
                raise
        await self.client.mkcol(parent_url)

    async def upload(self, path: str, data: bytes) -> None:
        await self._ensure_parent_collection(path)
        await self.client.put(self.blob_url(path), data, len(data))

    async def upload_file(self, path: str, file_path: str) -> None:
        size = (await aiofiles.os.stat(file_path)).st_size
        await self._ensure_parent_collection(path)
        async with aiofiles.open(file_path, "rb") as f:
            await self.client.put(self.blob_url(path), file_chunks(f), size)

    async def download(self, path: str) -> BlobReader:
        return await self.client.get(self.blob_url(path))

    async def delete(self, path: str) -> None:
        await self.client.delete(self.blob_url(path))

    def download_action(self, path: str, to: str) -> dict[str, Any]:
        return download_action(self.blob_url(path), to, user="vcap")

    def upload_action(self, path: str, from_path: str) -> dict[str, Any]:
        return run_action(DAVTOOL_PATH, ["put", self.blob_url(path), from_path], dir="/", user="vcap")

    def delete_action(self, path: str) -> dict[str, Any]:
        return run_action(DAVTOOL_PATH, ["delete", self.blob_url(path)], dir="/", user="vcap")


def blob_store_for(blob_target: BlobTarget, timeout: float | None = None) -> BlobStore:
    """Build the backend selected by the blob target config."""
    if blob_target.backend == BLOB_BACKEND_S3:
        return S3BlobStore(
            access_key=blob_target.access_key,
            secret_key=blob_target.secret_key,
            bucket_name=blob_target.bucket_name,
            endpoint=f"http://{blob_target.endpoint()}",
            timeout=timeout,
        )
    return DavBlobStore(
        host=blob_target.host,
        port=blob_target.port,
        username=blob_target.access_key,
        password=blob_target.secret_key,
        timeout=timeout,
    )
