"""Ingestion engine: envelope → normalize → presence → fan-out → storage.

The engine is the single envelope handler registered on the
:class:`~reefer_telemetry_bridge.connection.ConnectionManager`.  Everything
it does for one envelope happens synchronously inside that handler, except
persistence, which is scheduled and never awaited.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from reefer_telemetry_bridge.connection import ConnectionManager
from reefer_telemetry_bridge.fanout import FanoutHub, Sink
from reefer_telemetry_bridge.models import TelemetryEvent
from reefer_telemetry_bridge.normalizer import normalize
from reefer_telemetry_bridge.presence import AssetRegistry
from reefer_telemetry_bridge.storage import Storage
from reefer_telemetry_bridge.visibility import VisibilityFilter

logger = logging.getLogger(__name__)


class TelemetryEngine:
    """Owns the per-envelope pipeline and the health surface.

    Parameters
    ----------
    registry:
        Presence/history store updated for every accepted event.
    hub:
        Fan-out hub that live subscribers register with.
    visibility:
        Client visibility rules, shared with subscribers and listings.
    storage:
        Optional best-effort persistence collaborator.
    ingest_client_id:
        When set, only assets visible to this client are accepted.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        hub: FanoutHub,
        visibility: VisibilityFilter,
        storage: Optional[Storage] = None,
        ingest_client_id: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.visibility = visibility
        self._storage = storage
        self._ingest_client_id = ingest_client_id
        self._connection: Optional[ConnectionManager] = None
        self._pending: set[asyncio.Task] = set()
        self.events_accepted = 0
        self.events_dropped = 0

    def attach(self, connection: ConnectionManager) -> Callable[[], None]:
        """Consume envelopes from *connection* and report its health."""
        self._connection = connection
        return connection.add_envelope_handler(self.handle_envelope)

    def handle_envelope(self, envelope: dict) -> Optional[TelemetryEvent]:
        """Run one envelope through the pipeline.

        Returns the accepted event, or ``None`` when it was dropped.
        """
        event = normalize(envelope)
        if event is None:
            self.events_dropped += 1
            return None

        if self._ingest_client_id and not self.visibility.is_visible(
            self._ingest_client_id, event.asset_id
        ):
            logger.debug("Asset %s outside ingest scope %s", event.asset_id, self._ingest_client_id)
            self.events_dropped += 1
            return None

        self.registry.update(event.asset_id, event.event_time, event)
        self.events_accepted += 1
        self.hub.publish(event)
        self._persist(event)
        return event

    def subscribe_client(self, client_id: str, sink: Sink) -> Callable[[], None]:
        """Subscribe *sink* to the events visible to *client_id*."""
        return self.hub.subscribe(self.visibility.predicate_for(client_id), sink)

    def health(self) -> dict[str, Any]:
        """``connected``, ``reconnectAttempts``, ``lastHeartbeat``, ``assetsTracked``."""
        conn = self._connection.status() if self._connection is not None else None
        return {
            "connected": conn.connected if conn else False,
            "state": conn.state if conn else "detached",
            "reconnectAttempts": conn.reconnect_attempts if conn else 0,
            "lastHeartbeat": conn.last_heartbeat if conn else None,
            "eventsTracked": conn.events_tracked if conn else 0,
            "assetsTracked": self.registry.assets_tracked,
            "eventsAccepted": self.events_accepted,
            "eventsDropped": self.events_dropped,
        }

    def heartbeat_message(self) -> dict[str, Any]:
        """Periodic status message pushed to live subscribers."""
        health = self.health()
        return {
            "type": "heartbeat",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connected": health["connected"],
            "assetsTracked": health["assetsTracked"],
            "reconnectAttempts": health["reconnectAttempts"],
        }

    async def drain(self) -> None:
        """Wait for scheduled storage writes and async subscriber sinks."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.hub.drain()

    # ── persistence ─────────────────────────────────────────────────

    def _persist(self, event: TelemetryEvent) -> None:
        if self._storage is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping storage for %s", event.asset_id)
            return
        task = loop.create_task(self._store(self.registry.enrich(event)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _store(self, data: dict[str, Any]) -> None:
        try:
            await self._storage.store(data)
        except Exception:
            logger.exception("Storage failed for asset %s (continuing)", data.get("assetId"))
