"""Downstream WebSocket channel for live subscribers.

A client connects to ``ws://host:port/ws/<client_id>`` and receives:

1. a ``{"type": "connection", ...}`` greeting,
2. one enriched event JSON per accepted event visible to that client,
3. a ``{"type": "heartbeat", ...}`` status message every
   ``heartbeat_interval_s``.

Each connection has a bounded outbound queue.  The fan-out sink only
enqueues, so a slow client never blocks ingestion; when its queue is full
further events for that client are dropped and counted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import orjson
import websockets
import websockets.exceptions

from reefer_telemetry_bridge.config import ServerConfig
from reefer_telemetry_bridge.engine import TelemetryEngine
from reefer_telemetry_bridge.models import TelemetryEvent

logger = logging.getLogger(__name__)

PATH_PREFIX = "/ws/"


def client_id_from_path(path: str) -> Optional[str]:
    """Extract ``<client_id>`` from ``/ws/<client_id>[?query]``."""
    path = path.split("?", 1)[0].rstrip("/")
    if not path.startswith(PATH_PREFIX):
        return None
    client_id = path[len(PATH_PREFIX):]
    return client_id if client_id and "/" not in client_id else None


class SubscriberSession:
    """One connected subscriber: queue, writer, heartbeat."""

    def __init__(
        self,
        ws: Any,
        client_id: str,
        engine: TelemetryEngine,
        queue_size: int,
        heartbeat_interval_s: float,
    ) -> None:
        self._ws = ws
        self.client_id = client_id
        self._engine = engine
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._heartbeat_interval_s = heartbeat_interval_s
        self.messages_sent = 0
        self.messages_dropped = 0

    def on_event(self, event: TelemetryEvent) -> None:
        """Fan-out sink: enrich and enqueue without waiting."""
        data = self._engine.registry.enrich(event)
        data["clientId"] = self.client_id
        self._offer(data)

    def greeting(self) -> dict[str, Any]:
        client = self._engine.visibility.client(self.client_id)
        return {
            "type": "connection",
            "clientId": self.client_id,
            "status": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "assetPatterns": list(client.asset_patterns) if client else [],
            "totalAssets": len(client.specific_assets) if client else 0,
        }

    async def run(self) -> None:
        """Serve the subscriber until either side closes."""
        await self._ws.send(orjson.dumps(self.greeting()).decode())
        unsubscribe = self._engine.subscribe_client(self.client_id, self.on_event)
        tasks = [
            asyncio.create_task(self._writer()),
            asyncio.create_task(self._heartbeat()),
            asyncio.create_task(self._reader()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            unsubscribe()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                "Subscriber %s disconnected (sent %d, dropped %d)",
                self.client_id,
                self.messages_sent,
                self.messages_dropped,
            )

    # ── internal ────────────────────────────────────────────────────

    def _offer(self, data: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            self.messages_dropped += 1
            if self.messages_dropped == 1 or self.messages_dropped % 100 == 0:
                logger.warning(
                    "Subscriber %s queue full; %d messages dropped",
                    self.client_id,
                    self.messages_dropped,
                )

    async def _writer(self) -> None:
        while True:
            data = await self._queue.get()
            try:
                await self._ws.send(orjson.dumps(data).decode())
            except websockets.exceptions.ConnectionClosed:
                return
            self.messages_sent += 1

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            self._offer(self._engine.heartbeat_message())

    async def _reader(self) -> None:
        """Drain inbound frames; returns when the client goes away."""
        try:
            async for _ in self._ws:
                pass
        except websockets.exceptions.ConnectionClosed:
            pass


class SubscriberServer:
    """WebSocket server that attaches each connection to the fan-out hub."""

    def __init__(self, engine: TelemetryEngine, config: ServerConfig) -> None:
        self._engine = engine
        self._config = config
        self._server = None
        self.sessions: set[SubscriberSession] = set()

    async def start(self) -> None:
        self._server = await websockets.serve(
            self.handle, self._config.host, self._config.port
        )
        logger.info("Subscriber server listening on %s:%d", self._config.host, self._config.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def handle(self, ws: Any) -> None:
        """Connection handler passed to :func:`websockets.serve`."""
        client_id = client_id_from_path(ws.request.path)
        if client_id is None or self._engine.visibility.client(client_id) is None:
            logger.warning("Rejected subscriber on path %s", ws.request.path)
            await ws.close(1008, "Unknown client")
            return

        session = SubscriberSession(
            ws,
            client_id,
            self._engine,
            queue_size=self._config.queue_size,
            heartbeat_interval_s=self._config.heartbeat_interval_s,
        )
        logger.info("Subscriber %s connected", client_id)
        self.sessions.add(session)
        try:
            await session.run()
        finally:
            self.sessions.discard(session)
