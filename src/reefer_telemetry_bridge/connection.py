"""WebSocket connection to the ORBCOMM CDH event feed.

Explicit reconnect state machine::

    DISCONNECTED → CONNECTING → (open) → CONNECTED → (close / error / heartbeat timeout) → RECONNECTING
    RECONNECTING → (backoff elapsed) → CONNECTING
    RECONNECTING → (attempts > max_attempts) → FAILED        (terminal until connect())
    any → disconnect() → DISCONNECTED

On open the manager sends a ``GetEvents`` request and then feeds every
envelope it receives, batched or single, to the registered handlers in
wire order.  The manager owns every timer it starts (receive task,
heartbeat, backoff); :meth:`ConnectionManager.disconnect` cancels them.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import orjson
import websockets
import websockets.exceptions

from reefer_telemetry_bridge import __version__
from reefer_telemetry_bridge.classifier import classify
from reefer_telemetry_bridge.config import ReconnectConfig, UpstreamConfig
from reefer_telemetry_bridge.models import MalformedMessage

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[dict], Any]


class ConnectionState(enum.Enum):
    """States in the reconnect state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ConnectionStatus:
    """Point-in-time health of the upstream connection."""

    state: str
    connected: bool
    reconnect_attempts: int
    last_heartbeat: Optional[str]
    events_tracked: int
    last_event_time: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "connected": self.connected,
            "reconnectAttempts": self.reconnect_attempts,
            "lastHeartbeat": self.last_heartbeat,
            "eventsTracked": self.events_tracked,
            "lastEventTime": self.last_event_time,
        }


def backoff_delay(attempt: int, reconnect: ReconnectConfig) -> float:
    """Seconds to wait before reconnect *attempt* (1-based), without jitter."""
    base = reconnect.initial_delay_ms / 1000.0
    return base * (reconnect.backoff_multiplier ** (attempt - 1))


def build_get_events(config: UpstreamConfig, preceding_event_id: str) -> dict[str, Any]:
    """The ``GetEvents`` subscribe/query command."""
    return {
        "GetEvents": {
            "EventType": config.event_type,
            "EventPartition": config.event_partition,
            "PrecedingEventID": preceding_event_id,
            "FollowingEventID": None,
            "MaxEventCount": config.max_event_count,
        }
    }


class ConnectionManager:
    """Manages the upstream WSS lifecycle.

    Parameters
    ----------
    config:
        Upstream settings (URL, subprotocol, authorization, heartbeat and
        reconnect parameters).
    connector:
        Callable with the signature of :func:`websockets.connect`; injectable
        for tests.
    """

    def __init__(
        self,
        config: UpstreamConfig,
        connector: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._config = config
        self._reconnect = config.reconnect
        self._connector = connector
        self._heartbeat_interval = config.heartbeat_interval_ms / 1000.0
        self._cursor = config.preceding_event_id

        self._state = ConnectionState.DISCONNECTED
        self._shutdown = asyncio.Event()
        self._handlers: list[EnvelopeHandler] = []
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        self._attempt = 0
        self._events_tracked = 0
        self._last_inbound = 0.0
        self._last_heartbeat: Optional[datetime] = None
        self._last_event_time: Optional[datetime] = None

    # ── public API ──────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempt

    def add_envelope_handler(self, handler: EnvelopeHandler) -> Callable[[], None]:
        """Register *handler* for every received envelope; returns a remover."""
        self._handlers.append(handler)

        def _remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _remove

    def connect(self) -> None:
        """Start connecting in the background.  No-op while already running.

        This is also the only way out of ``FAILED``.
        """
        if self._task is not None and not self._task.done():
            return
        if self._state is ConnectionState.FAILED:
            logger.info("Restarting after terminal failure")
        self._attempt = 0
        self._shutdown.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="upstream-connection"
        )

    def disconnect(self) -> None:
        """Stop the connection and cancel every pending timer.  Idempotent."""
        self._shutdown.set()
        for task in (self._heartbeat_task, self._task):
            if task is not None and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._task = None
        if self._state is not ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait until the background task ends (shutdown or ``FAILED``)."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def status(self) -> ConnectionStatus:
        """Health snapshot.  Only reads plain attributes, so it cannot fail."""
        return ConnectionStatus(
            state=self._state.value,
            connected=self._state is ConnectionState.CONNECTED,
            reconnect_attempts=self._attempt,
            last_heartbeat=self._last_heartbeat.isoformat() if self._last_heartbeat else None,
            events_tracked=self._events_tracked,
            last_event_time=self._last_event_time.isoformat() if self._last_event_time else None,
        )

    def resume_from(self, event_id: str) -> None:
        """Set the ``PrecedingEventID`` cursor used by the next subscribe."""
        self._cursor = event_id

    async def request_history(self, preceding_event_id: str = "") -> bool:
        """Re-issue ``GetEvents`` from *preceding_event_id* on the live socket.

        Returns ``False`` when not connected.
        """
        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            logger.warning("Cannot request history: not connected")
            return False
        await ws.send(orjson.dumps(build_get_events(self._config, preceding_event_id)).decode())
        logger.info("Sent historical GetEvents (preceding=%r)", preceding_event_id)
        return True

    def handle_message(self, raw: str | bytes) -> int:
        """Classify one upstream message and deliver its envelopes in order.

        Returns the number of envelopes delivered.  Malformed messages are
        logged and skipped.
        """
        now = datetime.now(timezone.utc)
        self._last_heartbeat = now
        self._last_event_time = now

        result = classify(raw)
        if isinstance(result, MalformedMessage):
            logger.warning(
                "Skipping malformed upstream message (%s): %s", result.code, result.message
            )
            return 0

        if len(result) > 1:
            logger.info("Processing batch of %d events", len(result))
        for envelope in result:
            self._events_tracked += 1
            for handler in tuple(self._handlers):
                try:
                    handler(envelope)
                except Exception:
                    logger.exception("Envelope handler %r failed", handler)
        return len(result)

    def next_backoff(self) -> Optional[float]:
        """Advance the attempt counter and return the delay before reconnecting.

        Returns ``None`` and enters ``FAILED`` once ``max_attempts`` is
        exceeded.
        """
        self._attempt += 1
        if self._attempt > self._reconnect.max_attempts:
            self._attempt = self._reconnect.max_attempts
            self._set_state(ConnectionState.FAILED)
            logger.error(
                "Max reconnection attempts (%d) reached; giving up",
                self._reconnect.max_attempts,
            )
            return None

        self._set_state(ConnectionState.RECONNECTING)
        delay = backoff_delay(self._attempt, self._reconnect)
        if self._reconnect.jitter_pct:
            jitter = delay * (self._reconnect.jitter_pct / 100.0) * (2 * random.random() - 1)
            delay = max(0.1, delay + jitter)
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._attempt)
        return delay

    # ── internal: run loop ──────────────────────────────────────────

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self._connect_and_receive()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Connection error: %s", exc)

            if self._shutdown.is_set():
                break

            delay = self.next_backoff()
            if delay is None:
                break
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass  # backoff elapsed normally

    async def _connect_and_receive(self) -> None:
        """Open WSS, subscribe, and pump messages until the socket closes."""
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s (protocol %s)", self._config.url, self._config.protocol)

        try:
            async with self._connector(
                self._config.url,
                subprotocols=[self._config.protocol],
                additional_headers={
                    "Authorization": self._config.authorization,
                    "User-Agent": f"{self._config.user_agent}/{__version__}",
                },
                open_timeout=self._config.open_timeout_s,
                ping_interval=None,
                compression=None,
                max_size=None,
            ) as ws:
                self._on_open(ws)
                try:
                    await ws.send(orjson.dumps(build_get_events(self._config, self._cursor)).decode())
                    logger.info(
                        "Sent GetEvents (max %d, preceding=%r)",
                        self._config.max_event_count,
                        self._cursor,
                    )
                    async for raw in ws:
                        self._last_inbound = asyncio.get_running_loop().time()
                        self.handle_message(raw)
                finally:
                    self._stop_heartbeat()
                    self._ws = None
                logger.warning("Upstream closed the connection")

        except asyncio.TimeoutError:
            logger.warning("Timeout opening upstream connection")
        except websockets.exceptions.ConnectionClosed as exc:
            logger.warning("WebSocket closed: %s", exc)
        except websockets.exceptions.WebSocketException as exc:
            logger.warning("WebSocket handshake/protocol error: %s", exc)
        except OSError as exc:
            logger.warning("Network error: %s", exc)

    def _on_open(self, ws: Any) -> None:
        self._ws = ws
        self._attempt = 0
        self._last_inbound = asyncio.get_running_loop().time()
        self._set_state(ConnectionState.CONNECTED)
        self._heartbeat_task = asyncio.get_running_loop().create_task(
            self._heartbeat(ws), name="upstream-heartbeat"
        )

    # ── heartbeat ───────────────────────────────────────────────────

    async def _heartbeat(self, ws: Any) -> None:
        """Ping every interval; close the socket after 2 silent intervals."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            silent_for = loop.time() - self._last_inbound
            if silent_for > 2 * self._heartbeat_interval:
                logger.warning("Heartbeat timeout (%.0fs without traffic); reconnecting", silent_for)
                await ws.close()
                return
            # pongs are not traffic; only received messages refresh _last_inbound
            try:
                await ws.ping()
            except websockets.exceptions.ConnectionClosed:
                return

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── helpers ─────────────────────────────────────────────────────

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        logger.info("Connection state: %s → %s", old.value, new.value)
