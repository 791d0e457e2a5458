"""Tests for the orchestrator API client."""

from __future__ import annotations

import base64
import json

import pytest

from lattice.app_examiner import AppExaminer
from lattice.errors import (
    DESIRED_LRP_NOT_FOUND,
    INVALID_RESPONSE,
    ROUTER_ERROR,
    UNAUTHORIZED,
    NetworkError,
    NetworkTimeoutError,
    OrchestratorError,
)
from lattice.receptor import (
    ActualLRP,
    ActualLRPState,
    DesiredLRP,
    FakeReceptorClient,
    HttpReceptorClient,
    download_action,
    run_action,
    serial_action,
)
from lattice.resilience import NO_RETRY

JSON = {"Content-Type": "application/json"}


def _client(url: str, credentials: str = "") -> HttpReceptorClient:
    if credentials:
        url = url.replace("http://", f"http://{credentials}@")
    return HttpReceptorClient(url, timeout=5, read_policy=NO_RETRY)


class TestRecords:
    """Tests for JSON record conversion."""

    def test_actual_lrp_unknown_state_is_invalid(self):
        """Unknown states MUST parse as INVALID."""
        lrp = ActualLRP.from_dict({"process_guid": "p", "state": "EXPLODED"})

        assert lrp.state == ActualLRPState.INVALID

    def test_desired_lrp_accepts_router_routes(self):
        """Routes MUST accept the cf-router mapping as well as a plain list."""
        lrp = DesiredLRP.from_dict(
            {"process_guid": "p", "routes": {"cf-router": [{"hostnames": ["a.example.com", "b.example.com"], "port": 8080}]}}
        )

        assert lrp.routes == ["a.example.com", "b.example.com"]

    def test_desired_lrp_to_dict_omits_empty_actions(self):
        """to_dict MUST omit setup, action and monitor when unset."""
        data = DesiredLRP(process_guid="p", action=run_action("/bin/true")).to_dict()

        assert data["action"] == {"run": {"path": "/bin/true", "args": []}}
        assert "setup" not in data
        assert "monitor" not in data


class TestActions:
    """Tests for action document helpers."""

    def test_serial_action(self):
        """serial_action MUST wrap actions in order with an optional log source."""
        action = serial_action([download_action("http://x/a.tgz", "/tmp", user="vcap")], log_source="app")

        assert action == {
            "serial": {
                "actions": [{"download": {"from": "http://x/a.tgz", "to": "/tmp", "cache_key": "", "user": "vcap"}}],
                "log_source": "app",
            }
        }


class TestHttpReceptorClient:
    """Tests for HttpReceptorClient against a local server."""

    @pytest.mark.asyncio
    async def test_cells_with_basic_auth(self, blob_server):
        """Reads MUST send embedded credentials as basic auth and parse records."""
        blob_server.respond(
            "GET",
            "/v1/cells",
            200,
            json.dumps([{"cell_id": "cell-1", "zone": "z1", "capacity": {"memory_mb": 1024}}]).encode(),
            JSON,
        )

        async with blob_server as server:
            cells = await _client(server.url, "user:pass").cells()

        assert cells[0].cell_id == "cell-1"
        assert cells[0].capacity.memory_mb == 1024
        expected = "Basic " + base64.b64encode(b"user:pass").decode()
        assert blob_server.requests[0].headers["Authorization"] == expected

    @pytest.mark.asyncio
    async def test_typed_not_found(self, blob_server):
        """Error bodies MUST become OrchestratorError with the named type."""
        blob_server.respond(
            "GET",
            "/v1/desired_lrps/missing",
            404,
            json.dumps({"name": DESIRED_LRP_NOT_FOUND, "message": "not here"}).encode(),
            JSON,
        )

        async with blob_server as server:
            with pytest.raises(OrchestratorError) as exc_info:
                await _client(server.url).get_desired_lrp("missing")

        assert exc_info.value.is_not_found
        assert exc_info.value.message == "not here"

    @pytest.mark.asyncio
    async def test_unauthorized(self, blob_server):
        """401 MUST map to the Unauthorized error type."""
        blob_server.respond("GET", "/v1/desired_lrps", 401)

        async with blob_server as server:
            with pytest.raises(OrchestratorError) as exc_info:
                await _client(server.url).desired_lrps()

        assert exc_info.value.error_type == UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_router_error_header(self, blob_server):
        """A router error header MUST win over the status."""
        blob_server.respond("GET", "/v1/actual_lrps", 502, headers={"X-Cf-Routererror": "unknown_route"})

        async with blob_server as server:
            with pytest.raises(OrchestratorError) as exc_info:
                await _client(server.url).actual_lrps()

        assert exc_info.value.error_type == ROUTER_ERROR
        assert exc_info.value.message == "unknown_route"

    @pytest.mark.asyncio
    async def test_non_json_error(self, blob_server):
        """A non-JSON failure MUST be an InvalidResponse naming the status."""
        blob_server.respond("GET", "/v1/actual_lrps", 500, b"oops")

        async with blob_server as server:
            with pytest.raises(OrchestratorError) as exc_info:
                await _client(server.url).actual_lrps()

        assert exc_info.value.error_type == INVALID_RESPONSE
        assert "500" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_create_posts_once(self, blob_server):
        """Writes MUST be sent exactly once with a JSON body."""
        blob_server.respond("POST", "/v1/desired_lrps", 201)

        async with blob_server as server:
            await _client(server.url).create_desired_lrp(DesiredLRP(process_guid="app", instances=2))

        assert len(blob_server.requests) == 1
        body = json.loads(blob_server.requests[0].body)
        assert body["process_guid"] == "app"
        assert body["instances"] == 2

    @pytest.mark.asyncio
    async def test_upsert_domain_ttl_header(self, blob_server):
        """upsert_domain MUST carry a non-zero TTL in Cache-Control."""
        blob_server.respond("PUT", "/v1/domains/lattice", 204)

        async with blob_server as server:
            await _client(server.url).upsert_domain("lattice", 60)

        assert blob_server.requests[0].headers["Cache-Control"] == "max-age=60"

    @pytest.mark.asyncio
    async def test_transport_failure(self, blob_server):
        """Connection failures MUST raise NetworkError."""
        async with blob_server as server:
            url = server.url

        with pytest.raises(NetworkError):
            await _client(url).cells()

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, blob_server):
        """A read past its deadline MUST reach the server once and raise at once."""
        blob_server.respond("GET", "/v1/desired_lrps", 200, b"[]", JSON, delay=1)

        async with blob_server as server:
            client = HttpReceptorClient(server.url, timeout=0.3)
            with pytest.raises(NetworkTimeoutError):
                await AppExaminer(client).list_apps()

        assert len(blob_server.requests) == 1

    @pytest.mark.asyncio
    async def test_guids_are_single_path_segments(self, blob_server):
        """Guids MUST be quoted so slashes and query marks stay in the segment."""
        blob_server.respond("GET", "/v1/actual_lrps/web%2Fv2%3Fx", 200, b"[]", JSON)
        blob_server.respond("DELETE", "/v1/desired_lrps/web%2Fv2%3Fx", 204)
        blob_server.respond("PUT", "/v1/domains/lattice%2Fstaging", 204)

        async with blob_server as server:
            client = _client(server.url)
            assert await client.actual_lrps_by_process_guid("web/v2?x") == []
            await client.delete_desired_lrp("web/v2?x")
            await client.upsert_domain("lattice/staging")

        assert [r.raw_path for r in blob_server.requests] == [
            "/v1/actual_lrps/web%2Fv2%3Fx",
            "/v1/desired_lrps/web%2Fv2%3Fx",
            "/v1/domains/lattice%2Fstaging",
        ]
        assert all(r.query == "" for r in blob_server.requests)


class TestFakeReceptorClient:
    """Tests for the in-memory client."""

    @pytest.mark.asyncio
    async def test_records_calls_and_injects_errors(self):
        """The fake MUST record calls and raise injected errors."""
        client = FakeReceptorClient()
        client.errors["cells"] = NetworkError("down")

        with pytest.raises(NetworkError):
            await client.cells()
        await client.upsert_domain("lattice")

        assert client.calls == [("cells", ()), ("upsert_domain", ("lattice", 0))]

    @pytest.mark.asyncio
    async def test_desired_lifecycle(self):
        """Create, update and delete MUST act on the in-memory desired list."""
        client = FakeReceptorClient()

        await client.create_desired_lrp(DesiredLRP(process_guid="app", instances=1))
        await client.update_desired_lrp("app", 3)
        assert (await client.get_desired_lrp("app")).instances == 3

        await client.delete_desired_lrp("app")
        with pytest.raises(OrchestratorError) as exc_info:
            await client.get_desired_lrp("app")
        assert exc_info.value.is_not_found
