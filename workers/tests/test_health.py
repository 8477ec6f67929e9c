"""Health endpoint and the NDJSON notification stream."""

import asyncio
import json

import pytest

from plo_workers.health import health_payload, start_health_server
from plo_workers.notifications import PushHub


async def db_ok():
    return "ok"


async def db_down():
    return "error"


async def depth():
    return 7


async def _get(port: int, path: str) -> tuple[str, dict]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    raw = (await reader.read()).decode()
    writer.close()
    head, _, body = raw.partition("\r\n\r\n")
    return head.splitlines()[0], json.loads(body)


@pytest.fixture
async def server_factory():
    servers = []

    async def start(check_db, push=None):
        server = await start_health_server(0, check_db, depth, push, host="127.0.0.1")
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start
    for server in servers:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_payload_reports_db_and_queue():
    healthy, payload = await health_payload(db_ok, depth)
    assert healthy
    assert payload["status"] == "ok"
    assert payload["queue_depth"] == 7
    assert "events_ingested" in payload["metrics"]


@pytest.mark.asyncio
async def test_payload_survives_failing_depth_probe():
    async def broken():
        raise ConnectionError("pool closed")

    healthy, payload = await health_payload(db_down, broken)
    assert not healthy
    assert payload["status"] == "degraded"
    assert payload["queue_depth"] is None


@pytest.mark.asyncio
async def test_health_200(server_factory):
    port = await server_factory(db_ok)
    status, body = await _get(port, "/health")
    assert status == "HTTP/1.1 200 OK"
    assert body["db"] == "ok"


@pytest.mark.asyncio
async def test_health_503_when_db_down(server_factory):
    port = await server_factory(db_down)
    status, body = await _get(port, "/health")
    assert status.startswith("HTTP/1.1 503")
    assert body["status"] == "degraded"


@pytest.mark.asyncio
async def test_unknown_path_404(server_factory):
    port = await server_factory(db_ok)
    status, body = await _get(port, "/metrics")
    assert status.startswith("HTTP/1.1 404")
    assert body == {"error": "not_found"}


@pytest.mark.asyncio
async def test_stream_relays_pushes(server_factory):
    hub = PushHub()
    port = await server_factory(db_ok, push=hub)
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET /stream HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()

    header = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=2)
    assert b"application/x-ndjson" in header
    for _ in range(100):
        if hub.client_count:
            break
        await asyncio.sleep(0.01)
    assert await hub.broadcast("notification", {"rule_id": "ANO-22"}) == 1

    line = await asyncio.wait_for(reader.readline(), timeout=2)
    assert json.loads(line) == {"event": "notification", "data": {"rule_id": "ANO-22"}}

    writer.close()
    await writer.wait_closed()
    for _ in range(100):
        if not hub.client_count:
            break
        await asyncio.sleep(0.01)
    assert hub.client_count == 0
