"""Minimal async HTTP health endpoint for container healthchecks.

Uses raw asyncio.start_server; ``/health`` reports DB status, queue depth
and the metrics snapshot, with 503 when the DB check fails. ``/stream``
keeps the connection open and relays notification pushes as NDJSON.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

import psycopg

from .metrics import get_metrics
from .notifications.push import PushHub, StreamWriterSink

logger = logging.getLogger(__name__)

_HTTP_200 = "HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
_HTTP_503 = "HTTP/1.1 503 Service Unavailable\r\nContent-Type: application/json\r\n"
_HTTP_404 = "HTTP/1.1 404 Not Found\r\nContent-Type: application/json\r\n"
_HTTP_STREAM = "HTTP/1.1 200 OK\r\nContent-Type: application/x-ndjson\r\nCache-Control: no-cache\r\n\r\n"

DbCheck = Callable[[], Awaitable[str]]
DepthProbe = Callable[[], Awaitable[int]]


def db_checker(db_url: str) -> DbCheck:
    async def check() -> str:
        """SELECT 1 within 2s; 'ok' or 'error'."""
        try:
            async with asyncio.timeout(2):
                async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                    await conn.execute("SELECT 1")
            return "ok"
        except Exception:
            return "error"

    return check


async def health_payload(check_db: DbCheck, queue_depth: DepthProbe | None = None) -> tuple[bool, dict]:
    db_status = await check_db()
    depth = None
    if queue_depth is not None:
        try:
            depth = await queue_depth()
        except Exception:
            logger.debug("Queue depth check failed", exc_info=True)
    metrics = get_metrics()
    healthy = db_status == "ok"
    return healthy, {
        "status": "ok" if healthy else "degraded",
        "uptime_seconds": metrics["uptime_seconds"],
        "db": db_status,
        "queue_depth": depth,
        "metrics": metrics,
    }


async def _stream(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, push: PushHub) -> None:
    """Hold the connection open as an NDJSON notification feed until the client leaves."""
    client_id = f"{writer.get_extra_info('peername')}-{id(writer)}"
    writer.write(_HTTP_STREAM.encode())
    await writer.drain()
    push.register(client_id, StreamWriterSink(writer))
    try:
        while await reader.read(1024):
            pass
    finally:
        push.unregister(client_id)


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    check_db: DbCheck,
    queue_depth: DepthProbe | None,
    push: PushHub | None = None,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        if path == "/stream" and push is not None:
            await _stream(reader, writer, push)
            return
        if path == "/health":
            healthy, payload = await health_payload(check_db, queue_depth)
            body = json.dumps(payload, default=str)
            status_line = _HTTP_200 if healthy else _HTTP_503
        else:
            body = json.dumps({"error": "not_found"})
            status_line = _HTTP_404
        response = f"{status_line}Content-Length: {len(body)}\r\n\r\n{body}"

        writer.write(response.encode())
        await writer.drain()
    except Exception:
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(
    port: int,
    check_db: DbCheck,
    queue_depth: DepthProbe | None = None,
    push: PushHub | None = None,
    host: str = "0.0.0.0",
) -> asyncio.Server:
    """Start the health HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, check_db, queue_depth, push)

    server = await asyncio.start_server(handler, host, port)
    logger.info("Health endpoint listening on port %d", port)
    return server
