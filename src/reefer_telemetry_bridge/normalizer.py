"""Normalize ORBCOMM CDH envelopes into canonical :class:`TelemetryEvent` objects.

Normalization never raises on missing or oddly-typed input: absent vendor
fields map to ``None``.  The only reason to return ``None`` is an envelope
from which no asset identifier can be resolved.
"""

from __future__ import annotations

import logging
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from reefer_telemetry_bridge.models import (
    DeviceData,
    GeofenceData,
    GpsData,
    ReeferData,
    TelemetryEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_DELAY_THRESHOLD = timedelta(minutes=5)

EVENT_DESCRIPTIONS = {
    "PWR_ON": "Power on",
    "PWR_OFF": "Power off",
    "REF_ON": "Reefer switched on",
    "REF_OFF": "Reefer switched off",
    "SCHEDULED": "Scheduled update",
    "REPORTING_DELAY": "Reporting delay",
    "DELAYED_REPORT": "Reporting delay",
    "GPS_FIX": "GPS fix acquired",
    "GPS_LOST": "GPS fix lost",
    "GEOFENCE_ENTER": "Geofence entered",
    "GEOFENCE_EXIT": "Geofence exited",
    "TEMP_ALARM": "Temperature alarm",
    "DOOR_OPEN": "Door opened",
    "DOOR_CLOSE": "Door closed",
    "LOW_BATTERY": "Low battery",
    "HEARTBEAT": "Heartbeat",
    "MOTION_START": "Motion started",
    "MOTION_STOP": "Motion stopped",
}


def normalize(envelope: dict, now: Optional[datetime] = None) -> Optional[TelemetryEvent]:
    """Convert one validated envelope into a :class:`TelemetryEvent`.

    Parameters
    ----------
    envelope:
        A single envelope as produced by the classifier.
    now:
        Normalization wall-clock time; used as ``received_time`` and as the
        ``event_time`` fallback.  Defaults to the current UTC time.

    Returns
    -------
    TelemetryEvent or None
        ``None`` when neither ``ReeferData.AssetID`` nor
        ``DeviceData.LastAssetID`` is present.
    """
    now = now or datetime.now(timezone.utc)
    event = envelope.get("Event")
    if not isinstance(event, dict):
        return None

    device_raw = _section(event, "DeviceData")
    reefer_raw = _section(event, "ReeferData")
    message_raw = _section(event, "MessageData")
    geofence_raw = _section(event, "GeofenceData")

    asset_id = reefer_raw.get("AssetID") or device_raw.get("LastAssetID")
    if not asset_id:
        logger.debug("Dropping envelope without asset id (device %s)", device_raw.get("DeviceID"))
        return None

    event_class = event.get("EventClass")
    event_types = _event_types(message_raw) or ((event_class,) if event_class else ())

    # 0.0 is a valid coordinate
    gps = _extract(
        GpsData,
        device_raw,
        has_gps=(
            device_raw.get("GPSLatitude") is not None
            and device_raw.get("GPSLongitude") is not None
        ),
    )

    return TelemetryEvent(
        asset_id=str(asset_id),
        event_time=parse_timestamp(message_raw.get("EventDtm")) or now,
        received_time=now,
        device_id=device_raw.get("DeviceID"),
        event_class=event_class,
        event_types=event_types,
        device_time=parse_timestamp(device_raw.get("DeviceDataDtm")),
        sequence=envelope.get("Sequence"),
        message_id=message_raw.get("MsgID"),
        gps=gps,
        device=_extract(DeviceData, device_raw),
        reefer=_extract(
            ReeferData,
            reefer_raw,
            has_reefer_data=reefer_raw.get("AssetID") is not None,
        ),
        geofence=_extract(
            GeofenceData,
            geofence_raw,
            has_geofence_data=geofence_raw.get("GeofenceID") is not None,
        ),
    )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 wire timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC.  Unparseable input yields ``None``.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_time_lag(start: Optional[datetime], end: Optional[datetime]) -> Optional[str]:
    """Humanize the absolute gap between two instants (``850ms``, ``4.2s``, ``3m 5s``, ``2h 10m``)."""
    if start is None or end is None:
        return None
    ms = abs(end - start) // timedelta(milliseconds=1)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms // 60_000}m {(ms % 60_000) // 1000}s"
    return f"{ms // 3_600_000}h {(ms % 3_600_000) // 60_000}m"


def time_lags(event: TelemetryEvent) -> dict[str, Optional[str]]:
    """Lags between the three timestamps of *event*."""
    return {
        "eventToReceived": format_time_lag(event.event_time, event.received_time),
        "deviceToReceived": format_time_lag(event.device_time, event.received_time),
        "eventToDevice": format_time_lag(event.event_time, event.device_time),
    }


def describe_event(
    event: TelemetryEvent,
    delay_threshold: timedelta = DEFAULT_DELAY_THRESHOLD,
) -> str:
    """Human-readable description in the style of the ORBCOMM dashboard.

    Sub-event tags are translated when known.  Envelopes that only carry a
    coarse class are described from their timing, power and reefer fields.
    """
    if event.event_types and event.event_types != (event.event_class,):
        return ", ".join(EVENT_DESCRIPTIONS.get(t, t) for t in event.event_types)

    descriptions = []
    if event.received_time - event.event_time > delay_threshold:
        descriptions.append("Reporting delay")
    if event.device.ext_power is not None:
        descriptions.append("Power on" if event.device.ext_power else "Power off")
    if event.reefer.operating_mode is not None or event.reefer.compressor_status is not None:
        descriptions.append("Reefer update")

    if descriptions:
        return ", ".join(descriptions)
    if event.event_class == "DeviceMessage":
        return "Scheduled update"
    return event.event_class or "Device message"


# ── helpers ─────────────────────────────────────────────────────────


def _section(event: dict, key: str) -> dict:
    """Return ``event[key]`` when it is a dict, else an empty dict."""
    value = event.get(key)
    return value if isinstance(value, dict) else {}


def _event_types(message_raw: dict) -> tuple[str, ...]:
    sub_events = message_raw.get("Events")
    if not isinstance(sub_events, list):
        return ()
    return tuple(
        str(e["EventType"])
        for e in sub_events
        if isinstance(e, dict) and e.get("EventType")
    )


def _extract(cls: type, raw: dict, **derived: Any) -> Any:
    """Build a mapped block from the vendor dict using each field's ``vendor`` name."""
    values = {
        f.name: raw.get(f.metadata["vendor"])
        for f in fields(cls)
        if f.metadata.get("vendor")
    }
    values.update(derived)
    return cls(**values)
