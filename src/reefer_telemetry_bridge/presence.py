"""Per-asset presence tracking and bounded event history.

:class:`AssetRegistry` owns three keyed stores:

* presence records (first/last seen, last location, counters, delay flag)
* the latest event per asset, by event time
* a newest-first history ring per asset

Status is never stored.  It is derived on every read from
``now - last_seen_event_time`` so it cannot go stale between events.

All mutation happens from the event loop that drives ingestion; each
:meth:`AssetRegistry.update` runs to completion without awaiting, so no
locking is needed.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from reefer_telemetry_bridge.config import PresenceConfig
from reefer_telemetry_bridge.models import (
    AssetPresenceRecord,
    AssetStatus,
    LastKnownLocation,
    TelemetryEvent,
)
from reefer_telemetry_bridge.normalizer import time_lags
from reefer_telemetry_bridge.visibility import VisibilityFilter

logger = logging.getLogger(__name__)

DEFAULT_OFFLINE_THRESHOLD = timedelta(minutes=15)
DEFAULT_DELAY_THRESHOLD = timedelta(minutes=5)
DEFAULT_HISTORY_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def humanize_offline(elapsed: timedelta) -> str:
    """Bucket an offline duration: just now / minutes / hours / days."""
    seconds = int(elapsed.total_seconds())
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


class AssetRegistry:
    """Presence, latest-event and history store for every tracked asset.

    Parameters
    ----------
    offline_threshold:
        An asset is ``online`` while ``now - last_seen`` is at most this.
    delay_threshold:
        A report whose ``received_time - event_time`` exceeds this is
        flagged as delayed.  Has no influence on status.
    history_size:
        Per-asset history cap.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        *,
        offline_threshold: timedelta = DEFAULT_OFFLINE_THRESHOLD,
        delay_threshold: timedelta = DEFAULT_DELAY_THRESHOLD,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._offline_threshold = offline_threshold
        self._delay_threshold = delay_threshold
        self._history_size = history_size
        self._clock = clock
        self._records: dict[str, AssetPresenceRecord] = {}
        self._latest: dict[str, TelemetryEvent] = {}
        self._latest_time: dict[str, datetime] = {}
        self._history: dict[str, deque[TelemetryEvent]] = {}

    @classmethod
    def from_config(
        cls,
        config: PresenceConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> AssetRegistry:
        return cls(
            offline_threshold=timedelta(seconds=config.offline_threshold_s),
            delay_threshold=timedelta(seconds=config.delay_threshold_s),
            history_size=config.history_size,
            clock=clock,
        )

    # ── mutation ────────────────────────────────────────────────────

    def update(
        self,
        asset_id: str,
        event_time: datetime,
        event: TelemetryEvent,
    ) -> AssetPresenceRecord:
        """Fold *event* into the asset's presence record and history.

        Safe under out-of-order delivery: ``last_seen_event_time`` only moves
        forward, but a late event still counts, still refreshes
        ``last_received_time`` and is still appended to history.
        """
        record = self._records.get(asset_id)
        if record is None:
            record = AssetPresenceRecord(
                asset_id=asset_id,
                first_seen_event_time=event_time,
                last_seen_event_time=event_time,
                last_received_time=event.received_time,
            )
            self._records[asset_id] = record
            logger.info("Tracking new asset %s", asset_id)

        if event_time > record.last_seen_event_time:
            record.last_seen_event_time = event_time
        if event_time < record.first_seen_event_time:
            record.first_seen_event_time = event_time
        record.last_received_time = event.received_time
        record.event_count += 1

        if event.gps.has_gps:
            location = record.last_known_location
            if location is None or event_time > location.timestamp:
                record.last_known_location = LastKnownLocation(
                    latitude=event.gps.latitude,
                    longitude=event.gps.longitude,
                    timestamp=event_time,
                )

        if self.is_delayed(event, event_time):
            record.has_delayed_reports = True
            record.last_delayed_report_received = event.received_time
            logger.debug(
                "Delayed report for %s: event %s received %s",
                asset_id,
                event_time.isoformat(),
                event.received_time.isoformat(),
            )

        latest_time = self._latest_time.get(asset_id)
        if latest_time is None or event_time >= latest_time:
            self._latest[asset_id] = event
            self._latest_time[asset_id] = event_time

        ring = self._history.get(asset_id)
        if ring is None:
            ring = self._history[asset_id] = deque(maxlen=self._history_size)
        ring.appendleft(event)

        return record

    # ── queries ─────────────────────────────────────────────────────

    def is_delayed(self, event: TelemetryEvent, event_time: Optional[datetime] = None) -> bool:
        """True when *event* arrived more than the delay threshold after *event_time*.

        *event_time* defaults to the event's own timestamp.
        """
        return event.received_time - (event_time or event.event_time) > self._delay_threshold

    def record(self, asset_id: str) -> Optional[AssetPresenceRecord]:
        return self._records.get(asset_id)

    def latest(self, asset_id: str) -> Optional[TelemetryEvent]:
        return self._latest.get(asset_id)

    def history(self, asset_id: str) -> list[TelemetryEvent]:
        """Newest-first copy of the asset's history ring."""
        return list(self._history.get(asset_id, ()))

    def status(self, asset_id: str) -> AssetStatus:
        record = self._records.get(asset_id)
        if record is None:
            return AssetStatus.NEVER_SEEN
        if self._clock() - record.last_seen_event_time <= self._offline_threshold:
            return AssetStatus.ONLINE
        return AssetStatus.OFFLINE

    def offline_duration(self, asset_id: str) -> Optional[str]:
        """Humanized time since last seen, or ``None`` when online or unknown."""
        if self.status(asset_id) is not AssetStatus.OFFLINE:
            return None
        return humanize_offline(self._clock() - self._records[asset_id].last_seen_event_time)

    @property
    def assets_tracked(self) -> int:
        return len(self._records)

    def asset_ids(self) -> list[str]:
        return list(self._records)

    # ── enriched views ──────────────────────────────────────────────

    def enrich(self, event: TelemetryEvent) -> dict[str, Any]:
        """Wire dict for *event* plus the asset's current derived presence."""
        record = self._records.get(event.asset_id)
        data = event.to_dict()
        data.update(
            receivedAt=event.received_time.isoformat(),
            status=self.status(event.asset_id).value,
            lastUpdate=record.last_seen_event_time.isoformat() if record else None,
            offlineDuration=self.offline_duration(event.asset_id),
            isDelayedReport=self.is_delayed(event),
            timeLags=time_lags(event),
            lastKnownLocation=(
                record.last_known_location.to_dict()
                if record and record.last_known_location
                else None
            ),
        )
        return data

    def snapshot(self, asset_id: str) -> Optional[dict[str, Any]]:
        """Enriched view of the asset's latest event, or ``None`` if never seen."""
        latest = self._latest.get(asset_id)
        return self.enrich(latest) if latest is not None else None

    def assets_for_client(
        self,
        visibility: VisibilityFilter,
        client_id: str,
    ) -> list[dict[str, Any]]:
        """One entry per expected asset of *client_id*, including never-seen ones."""
        result = []
        for asset_id in visibility.expected_assets(client_id):
            snapshot = self.snapshot(asset_id)
            if snapshot is None:
                snapshot = {
                    "assetId": asset_id,
                    "status": AssetStatus.NEVER_SEEN.value,
                    "lastUpdate": None,
                    "offlineDuration": None,
                    "lastKnownLocation": None,
                    "gpsData": {"hasGPS": False},
                    "deviceData": {"lastAssetId": asset_id},
                    "reeferData": {"hasReeferData": False},
                }
            result.append(snapshot)
        return result

    def online_assets_for_client(
        self, visibility: VisibilityFilter, client_id: str
    ) -> list[dict[str, Any]]:
        return [
            a for a in self.assets_for_client(visibility, client_id)
            if a["status"] == AssetStatus.ONLINE.value
        ]

    def offline_assets_for_client(
        self, visibility: VisibilityFilter, client_id: str
    ) -> list[dict[str, Any]]:
        """Offline and never-seen assets of *client_id*."""
        return [
            a for a in self.assets_for_client(visibility, client_id)
            if a["status"] != AssetStatus.ONLINE.value
        ]

    def debug_info(self) -> dict[str, Any]:
        return {
            "recordCount": len(self._records),
            "latestCount": len(self._latest),
            "historyCount": len(self._history),
            "assetIds": self.asset_ids(),
        }
