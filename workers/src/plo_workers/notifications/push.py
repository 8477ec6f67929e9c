"""Fan-out of notification records to connected operator clients.

Each connected client is a ``PushSink`` receiving newline-delimited JSON.
A sink whose write fails is dropped so one dead client never blocks the rest.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class PushSink(Protocol):
    async def write(self, line: str) -> None: ...


class PushHub:
    def __init__(self) -> None:
        self._sinks: dict[str, PushSink] = {}

    def register(self, client_id: str, sink: PushSink) -> None:
        self._sinks[client_id] = sink
        logger.info("Push client connected: %s (%d total)", client_id, len(self._sinks))

    def unregister(self, client_id: str) -> None:
        if self._sinks.pop(client_id, None) is not None:
            logger.info("Push client disconnected: %s", client_id)

    @property
    def client_count(self) -> int:
        return len(self._sinks)

    async def broadcast(self, event: str, data: dict[str, Any]) -> int:
        """Send to every client; returns how many received it."""
        line = json.dumps({"event": event, "data": data}, default=str) + "\n"
        delivered = 0
        for client_id, sink in list(self._sinks.items()):
            try:
                await sink.write(line)
            except Exception as exc:
                logger.warning("Dropping push client %s: %s", client_id, exc)
                self.unregister(client_id)
                continue
            delivered += 1
        return delivered


class StreamWriterSink:
    """Adapts an ``asyncio.StreamWriter`` to a push sink."""

    def __init__(self, writer: Any) -> None:
        self.writer = writer

    async def write(self, line: str) -> None:
        self.writer.write(line.encode("utf-8"))
        await self.writer.drain()
