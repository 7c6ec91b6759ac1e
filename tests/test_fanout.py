"""Tests for the fanout module."""

import asyncio
from datetime import datetime, timezone

import pytest

from reefer_telemetry_bridge.fanout import FanoutHub
from reefer_telemetry_bridge.models import TelemetryEvent

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(asset_id: str = "KAGU3331339") -> TelemetryEvent:
    return TelemetryEvent(asset_id=asset_id, event_time=T0, received_time=T0)


def _all(_asset_id: str) -> bool:
    return True


def test_zero_subscribers() -> None:
    assert FanoutHub().publish(_event()) == 0


def test_failing_sink_is_isolated(caplog) -> None:
    """Subscriber #2 raising does not stop #1 or #3."""
    hub = FanoutHub()
    calls: list[str] = []

    def _boom(_event: TelemetryEvent) -> None:
        calls.append("2")
        raise RuntimeError("sink exploded")

    hub.subscribe(_all, lambda e: calls.append("1"))
    hub.subscribe(_all, _boom)
    hub.subscribe(_all, lambda e: calls.append("3"))

    delivered = hub.publish(_event())
    assert calls == ["1", "2", "3"]
    assert delivered == 2
    assert "sink exploded" in caplog.text


def test_failing_predicate_is_isolated() -> None:
    hub = FanoutHub()
    received: list[TelemetryEvent] = []

    def _bad_predicate(_asset_id: str) -> bool:
        raise ValueError("bad predicate")

    hub.subscribe(_bad_predicate, received.append)
    hub.subscribe(_all, received.append)
    assert hub.publish(_event()) == 1
    assert len(received) == 1


def test_predicate_filters() -> None:
    hub = FanoutHub()
    kagu: list[str] = []
    szlu: list[str] = []
    hub.subscribe(lambda a: a.startswith("KAGU"), lambda e: kagu.append(e.asset_id))
    hub.subscribe(lambda a: a.startswith("SZLU"), lambda e: szlu.append(e.asset_id))

    hub.publish(_event("KAGU1"))
    hub.publish(_event("SZLU1"))
    hub.publish(_event("ZZZZ1"))
    assert kagu == ["KAGU1"]
    assert szlu == ["SZLU1"]


def test_unsubscribe() -> None:
    hub = FanoutHub()
    received: list[TelemetryEvent] = []
    unsubscribe = hub.subscribe(_all, received.append)
    hub.publish(_event())
    unsubscribe()
    unsubscribe()
    hub.publish(_event())
    assert len(received) == 1
    assert hub.subscriber_count == 0


def test_unsubscribe_during_delivery_uses_snapshot() -> None:
    """Changes made by a sink apply from the next publish on."""
    hub = FanoutHub()
    calls: list[str] = []
    handles = {}

    def _first(_event: TelemetryEvent) -> None:
        calls.append("first")
        handles["second"]()
        hub.subscribe(_all, lambda e: calls.append("late"))

    hub.subscribe(_all, _first)
    handles["second"] = hub.subscribe(_all, lambda e: calls.append("second"))

    hub.publish(_event())
    assert calls == ["first", "second"]

    calls.clear()
    hub.publish(_event())
    assert calls == ["first", "late"]


@pytest.mark.asyncio
async def test_async_sink_is_scheduled() -> None:
    hub = FanoutHub()
    received: list[str] = []

    async def _sink(event: TelemetryEvent) -> None:
        await asyncio.sleep(0)
        received.append(event.asset_id)

    hub.subscribe(_all, _sink)
    assert hub.publish(_event("A1")) == 1
    assert received == []
    await hub.drain()
    assert received == ["A1"]


@pytest.mark.asyncio
async def test_async_sink_failure_is_logged(caplog) -> None:
    hub = FanoutHub()

    async def _sink(_event: TelemetryEvent) -> None:
        raise RuntimeError("async boom")

    hub.subscribe(_all, _sink)
    hub.publish(_event())
    await hub.drain()
    await asyncio.sleep(0)
    assert "Async subscriber" in caplog.text
