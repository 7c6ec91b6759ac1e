"""Fan-out hub for normalized telemetry events.

Multiplexes each published event to N subscribers, each gated by its own
asset predicate and each error-isolated.  One subscriber failing does not
affect the others or the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Callable

from reefer_telemetry_bridge.models import TelemetryEvent

logger = logging.getLogger(__name__)

Predicate = Callable[[str], bool]
Sink = Callable[[TelemetryEvent], Any]


class FanoutHub:
    """Delivers each published event to every matching subscriber.

    Sinks may be plain callables or coroutine functions.  Awaitables returned
    by a sink are scheduled as tasks on the running loop and never awaited by
    :meth:`publish`, so a slow subscriber cannot hold up ingestion.
    """

    def __init__(self) -> None:
        self._subscribers: dict[int, tuple[Predicate, Sink]] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, predicate: Predicate, sink: Sink) -> Callable[[], None]:
        """Register *sink* for events whose asset id satisfies *predicate*.

        Returns an idempotent unsubscribe handle.
        """
        sub_id = next(self._ids)
        self._subscribers[sub_id] = (predicate, sink)
        logger.debug("Subscriber %d registered (%d total)", sub_id, len(self._subscribers))

        def _unsubscribe() -> None:
            if self._subscribers.pop(sub_id, None) is not None:
                logger.debug("Subscriber %d removed (%d left)", sub_id, len(self._subscribers))

        return _unsubscribe

    def publish(self, event: TelemetryEvent) -> int:
        """Dispatch *event* to the subscribers registered right now.

        Iterates a snapshot, so subscribers added or removed by a sink take
        effect from the next publish.  Returns the number of sinks invoked.
        """
        delivered = 0
        for sub_id, (predicate, sink) in tuple(self._subscribers.items()):
            try:
                if not predicate(event.asset_id):
                    continue
                result = sink(event)
                delivered += 1
                if inspect.isawaitable(result):
                    self._track(sub_id, result)
            except Exception:
                logger.warning(
                    "Subscriber %d failed for asset %s", sub_id, event.asset_id, exc_info=True
                )
        return delivered

    async def drain(self) -> None:
        """Wait for in-flight async sink invocations (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _track(self, sub_id: int, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(
                    "Async subscriber %d failed", sub_id, exc_info=t.exception()
                )

        task.add_done_callback(_done)
