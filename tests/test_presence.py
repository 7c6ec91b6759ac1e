"""Tests for the presence module."""

from datetime import datetime, timedelta, timezone

import pytest

from reefer_telemetry_bridge.config import ClientConfig, PresenceConfig
from reefer_telemetry_bridge.models import AssetStatus, GpsData, TelemetryEvent
from reefer_telemetry_bridge.presence import AssetRegistry, humanize_offline
from reefer_telemetry_bridge.visibility import VisibilityFilter

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _event(
    asset_id: str = "KAGU3331339",
    event_time: datetime = T0,
    received_time: datetime | None = None,
    gps: GpsData | None = None,
    sequence: int | None = None,
) -> TelemetryEvent:
    return TelemetryEvent(
        asset_id=asset_id,
        event_time=event_time,
        received_time=received_time or event_time,
        sequence=sequence,
        gps=gps or GpsData(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> AssetRegistry:
    return AssetRegistry(clock=clock)


# ── status derivation ───────────────────────────────────────────────


def test_never_seen(registry: AssetRegistry) -> None:
    assert registry.status("SZLU9721417") is AssetStatus.NEVER_SEEN
    assert registry.record("SZLU9721417") is None
    assert registry.offline_duration("SZLU9721417") is None


def test_online_within_threshold(registry: AssetRegistry, clock: FakeClock) -> None:
    registry.update("A1", T0, _event("A1", T0))
    clock.now = T0 + timedelta(minutes=1)
    assert registry.status("A1") is AssetStatus.ONLINE
    assert registry.offline_duration("A1") is None


def test_offline_after_threshold_without_new_events(
    registry: AssetRegistry, clock: FakeClock
) -> None:
    """Status flips to offline purely from the passage of time."""
    registry.update("A1", T0, _event("A1", T0))
    clock.now = T0 + timedelta(minutes=16)
    assert registry.status("A1") is AssetStatus.OFFLINE
    assert registry.offline_duration("A1") == "16 minutes ago"


def test_threshold_boundary_is_online(registry: AssetRegistry, clock: FakeClock) -> None:
    registry.update("A1", T0, _event("A1", T0))
    clock.now = T0 + timedelta(minutes=15)
    assert registry.status("A1") is AssetStatus.ONLINE


def test_from_config_thresholds(clock: FakeClock) -> None:
    registry = AssetRegistry.from_config(
        PresenceConfig(offline_threshold_s=60, delay_threshold_s=10, history_size=3), clock=clock
    )
    registry.update("A1", T0, _event("A1", T0))
    clock.now = T0 + timedelta(seconds=61)
    assert registry.status("A1") is AssetStatus.OFFLINE
    for i in range(5):
        registry.update("A1", T0, _event("A1", T0, sequence=i))
    assert len(registry.history("A1")) == 3


# ── out-of-order delivery ───────────────────────────────────────────


@pytest.mark.parametrize("order", [(0, 1), (1, 0)])
def test_last_seen_is_max_regardless_of_order(registry: AssetRegistry, order) -> None:
    times = (T0, T0 + timedelta(minutes=2))
    for i in order:
        registry.update("A1", times[i], _event("A1", times[i]))
    record = registry.record("A1")
    assert record.last_seen_event_time == times[1]
    assert record.first_seen_event_time == times[0]
    assert record.event_count == 2


def test_late_event_still_refreshes_received_time(registry: AssetRegistry) -> None:
    newer = T0 + timedelta(minutes=5)
    registry.update("A1", newer, _event("A1", newer))
    late_received = newer + timedelta(minutes=1)
    registry.update("A1", T0, _event("A1", T0, received_time=late_received))
    record = registry.record("A1")
    assert record.last_seen_event_time == newer
    assert record.last_received_time == late_received


def test_latest_not_replaced_by_older_event(registry: AssetRegistry) -> None:
    newer = T0 + timedelta(minutes=5)
    registry.update("A1", newer, _event("A1", newer, sequence=2))
    registry.update("A1", T0, _event("A1", T0, sequence=1))
    assert registry.latest("A1").sequence == 2
    assert [e.sequence for e in registry.history("A1")] == [1, 2]


# ── history ─────────────────────────────────────────────────────────


def test_history_bounded_newest_first(registry: AssetRegistry) -> None:
    for i in range(1, 151):
        t = T0 + timedelta(seconds=i)
        registry.update("A1", t, _event("A1", t, sequence=i))
    history = registry.history("A1")
    assert len(history) == 100
    assert history[0].sequence == 150
    assert history[-1].sequence == 51


def test_history_unknown_asset_is_empty(registry: AssetRegistry) -> None:
    assert registry.history("nope") == []


def test_history_is_a_copy(registry: AssetRegistry) -> None:
    registry.update("A1", T0, _event("A1", T0))
    registry.history("A1").clear()
    assert len(registry.history("A1")) == 1


# ── delayed reports ─────────────────────────────────────────────────


def test_delayed_report_still_counts(registry: AssetRegistry, clock: FakeClock) -> None:
    """A 10-minute-old report is flagged but still advances presence."""
    clock.now = T0 + timedelta(minutes=10)
    event = _event("A1", T0, received_time=clock.now)
    record = registry.update("A1", T0, event)
    assert registry.is_delayed(event) is True
    assert record.has_delayed_reports is True
    assert record.last_delayed_report_received == clock.now
    assert record.last_seen_event_time == T0
    assert registry.history("A1") == [event]
    assert registry.status("A1") is AssetStatus.ONLINE


def test_delay_flag_is_sticky(registry: AssetRegistry) -> None:
    registry.update("A1", T0, _event("A1", T0, received_time=T0 + timedelta(minutes=10)))
    t = T0 + timedelta(minutes=11)
    registry.update("A1", t, _event("A1", t))
    assert registry.record("A1").has_delayed_reports is True


def test_prompt_report_not_delayed(registry: AssetRegistry) -> None:
    event = _event("A1", T0, received_time=T0 + timedelta(seconds=30))
    assert registry.is_delayed(event) is False


def test_update_uses_the_given_event_time(registry: AssetRegistry) -> None:
    """The event_time argument, not the event's own stamp, drives delay and latest."""
    received = T0 + timedelta(minutes=10)
    stale = _event("A1", T0, received_time=received, sequence=1)
    record = registry.update("A1", received - timedelta(seconds=30), stale)
    assert record.has_delayed_reports is False

    older = _event("A1", T0 + timedelta(minutes=9), received_time=received, sequence=2)
    registry.update("A1", T0, older)
    assert registry.latest("A1").sequence == 1
    assert registry.record("A1").has_delayed_reports is True


# ── location ────────────────────────────────────────────────────────


def test_location_only_moves_forward(registry: AssetRegistry) -> None:
    newer = T0 + timedelta(minutes=3)
    registry.update(
        "A1", newer, _event("A1", newer, gps=GpsData(latitude=1.0, longitude=2.0, has_gps=True))
    )
    registry.update(
        "A1", T0, _event("A1", T0, gps=GpsData(latitude=9.0, longitude=9.0, has_gps=True))
    )
    location = registry.record("A1").last_known_location
    assert (location.latitude, location.longitude) == (1.0, 2.0)
    assert location.timestamp == newer


def test_event_without_fix_keeps_location(registry: AssetRegistry) -> None:
    registry.update(
        "A1", T0, _event("A1", T0, gps=GpsData(latitude=0.0, longitude=0.0, has_gps=True))
    )
    t = T0 + timedelta(minutes=1)
    registry.update("A1", t, _event("A1", t))
    assert registry.record("A1").last_known_location.latitude == 0.0


# ── humanized offline duration ──────────────────────────────────────


@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [
        (timedelta(seconds=30), "Just now"),
        (timedelta(minutes=42), "42 minutes ago"),
        (timedelta(hours=5, minutes=59), "5 hours ago"),
        (timedelta(days=3, hours=2), "3 days ago"),
    ],
)
def test_humanize_offline(elapsed, expected) -> None:
    assert humanize_offline(elapsed) == expected


# ── enriched views ──────────────────────────────────────────────────


def test_enrich_adds_presence_fields(registry: AssetRegistry, clock: FakeClock) -> None:
    event = _event("A1", T0, gps=GpsData(latitude=51.9, longitude=4.4, has_gps=True))
    registry.update("A1", T0, event)
    clock.now = T0 + timedelta(hours=2)
    data = registry.enrich(event)
    assert data["assetId"] == "A1"
    assert data["status"] == "offline"
    assert data["offlineDuration"] == "2 hours ago"
    assert data["lastUpdate"] == T0.isoformat()
    assert data["isDelayedReport"] is False
    assert data["lastKnownLocation"]["latitude"] == 51.9
    assert set(data["timeLags"]) == {"eventToReceived", "deviceToReceived", "eventToDevice"}


def test_snapshot_unknown_asset(registry: AssetRegistry) -> None:
    assert registry.snapshot("A1") is None


def test_assets_for_client_includes_never_seen(registry: AssetRegistry, clock: FakeClock) -> None:
    visibility = VisibilityFilter([
        ClientConfig(
            id="KAGU",
            asset_patterns=["KAGU*"],
            specific_assets=["KAGU3330950", "KAGU3330820", "TRIU8784787"],
        )
    ])
    registry.update("KAGU3330950", T0, _event("KAGU3330950", T0))
    old = T0 - timedelta(hours=1)
    registry.update("TRIU8784787", old, _event("TRIU8784787", old))

    listing = registry.assets_for_client(visibility, "KAGU")
    assert [a["assetId"] for a in listing] == ["KAGU3330950", "KAGU3330820", "TRIU8784787"]
    assert [a["status"] for a in listing] == ["online", "never_seen", "offline"]

    online = registry.online_assets_for_client(visibility, "KAGU")
    assert [a["assetId"] for a in online] == ["KAGU3330950"]
    offline = registry.offline_assets_for_client(visibility, "KAGU")
    assert [a["assetId"] for a in offline] == ["KAGU3330820", "TRIU8784787"]


def test_assets_for_unknown_client(registry: AssetRegistry) -> None:
    assert registry.assets_for_client(VisibilityFilter([]), "ghost") == []


def test_debug_info(registry: AssetRegistry) -> None:
    registry.update("A1", T0, _event("A1", T0))
    registry.update("A2", T0, _event("A2", T0))
    info = registry.debug_info()
    assert info["recordCount"] == 2
    assert sorted(info["assetIds"]) == ["A1", "A2"]
    assert registry.assets_tracked == 2
