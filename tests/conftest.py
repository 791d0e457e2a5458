"""Shared fixtures: a recording HTTP server for blob and helper tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field

import pytest
from aiohttp import web


@dataclass
class RecordedRequest:
    method: str
    path: str
    raw_path: str
    query: str
    headers: Mapping[str, str]
    body: bytes


@dataclass
class CannedResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    delay: float = 0


class RecordingServer:
    """aiohttp server that records every request and answers from a table.

    Routes match the decoded path, then the raw one. Unrouted requests get
    404. Requests in proxy (absolute-URI) form are matched on their path,
    so the server also stands in for an HTTP proxy.
    """

    def __init__(self):
        self.requests: list[RecordedRequest] = []
        self.responses: dict[tuple[str, str], CannedResponse] = {}
        self.url = ""
        self._runner: web.AppRunner | None = None

    def respond(
        self, method: str, path: str, status: int, body: bytes = b"", headers=None, delay: float = 0
    ) -> None:
        self.responses[(method, path)] = CannedResponse(status, body, dict(headers or {}), delay)

    async def _handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append(
            RecordedRequest(
                method=request.method,
                path=request.path,
                raw_path=request.raw_path,
                query=request.query_string,
                headers=request.headers.copy(),
                body=body,
            )
        )
        canned = self.responses.get((request.method, request.path)) or self.responses.get(
            (request.method, request.raw_path), CannedResponse(404)
        )
        if canned.delay:
            await asyncio.sleep(canned.delay)
        return web.Response(status=canned.status, body=canned.body, headers=canned.headers)

    async def __aenter__(self) -> RecordingServer:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        host, port = self._runner.addresses[0][:2]
        self.url = f"http://{host}:{port}"
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self._runner is not None:
            await self._runner.cleanup()
        return False


@pytest.fixture
def blob_server() -> RecordingServer:
    return RecordingServer()
