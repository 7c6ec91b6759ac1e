"""Dataclass models for canonical telemetry events and asset presence.

Each sub-block of :class:`TelemetryEvent` declares, per field, the vendor
wire name it is read from (``vendor``) and the camelCase key it is written
under for downstream consumers (``wire``).  The normalizer and the wire
serializer both walk these declarations, so the vendor→canonical mapping
lives in exactly one place.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional


def _mapped(vendor: Optional[str], wire: str) -> Any:
    return field(default=None, metadata={"vendor": vendor, "wire": wire})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def block_to_dict(block: Any) -> dict[str, Any]:
    """Serialize a mapped sub-block using its ``wire`` names."""
    return {f.metadata["wire"]: getattr(block, f.name) for f in fields(block)}


class AssetStatus(str, enum.Enum):
    """Presence status derived on read from the last seen event time."""

    NEVER_SEEN = "never_seen"
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class GpsData:
    """GPS fix carried by ``DeviceData``."""

    latitude: Optional[float] = _mapped("GPSLatitude", "latitude")
    longitude: Optional[float] = _mapped("GPSLongitude", "longitude")
    has_gps: bool = field(default=False, metadata={"vendor": None, "wire": "hasGPS"})
    lock_state: Optional[str] = _mapped("GPSLockState", "lockState")
    satellite_count: Optional[int] = _mapped("GPSSatelliteCount", "satelliteCount")
    altitude: Optional[float] = _mapped("GPSAltitude", "altitude")
    speed: Optional[float] = _mapped("GPSSpeed", "speed")
    heading: Optional[float] = _mapped("GPSHeading", "heading")


@dataclass(frozen=True)
class DeviceData:
    """Power, signal, network, firmware and I/O fields of the reporting device."""

    ext_power: Optional[bool] = _mapped("ExtPower", "extPower")
    ext_power_voltage: Optional[float] = _mapped("ExtPowerVoltage", "extPowerVoltage")
    battery_voltage: Optional[float] = _mapped("BatteryVoltage", "batteryVoltage")
    device_temp: Optional[float] = _mapped("DeviceTemp", "deviceTemp")
    rssi: Optional[int] = _mapped("RSSI", "rssi")
    last_asset_id: Optional[str] = _mapped("LastAssetID", "lastAssetId")
    mcc: Optional[int] = _mapped("MCC", "mcc")
    mnc: Optional[int] = _mapped("MNC", "mnc")
    lac: Optional[int] = _mapped("LAC", "lac")
    cell_id: Optional[int] = _mapped("CellID", "cellId")
    firmware_version: Optional[str] = _mapped("VerFW", "firmwareVersion")
    hardware_version: Optional[str] = _mapped("VerHW", "hardwareVersion")
    device_model: Optional[str] = _mapped("DeviceModel", "deviceModel")
    accelerometer_x: Optional[float] = _mapped("AccelX", "accelerometerX")
    accelerometer_y: Optional[float] = _mapped("AccelY", "accelerometerY")
    accelerometer_z: Optional[float] = _mapped("AccelZ", "accelerometerZ")
    digital_inputs: Any = _mapped("DigitalInputs", "digitalInputs")
    digital_outputs: Any = _mapped("DigitalOutputs", "digitalOutputs")
    analog_inputs: Any = _mapped("AnalogInputs", "analogInputs")


@dataclass(frozen=True)
class ReeferData:
    """Refrigeration unit sensors, alarms and operating state."""

    asset_id: Optional[str] = _mapped("AssetID", "assetId")
    ambient_temp: Optional[float] = _mapped("TAmb", "ambientTemp")
    set_temp: Optional[float] = _mapped("TSet", "setTemp")
    supply_temp_1: Optional[float] = _mapped("TSup1", "supplyTemp1")
    supply_temp_2: Optional[float] = _mapped("TSup2", "supplyTemp2")
    return_temp_1: Optional[float] = _mapped("TRtn1", "returnTemp1")
    return_temp_2: Optional[float] = _mapped("TRtn2", "returnTemp2")
    evaporator_temp: Optional[float] = _mapped("TEvap", "evaporatorTemp")
    condenser_temp: Optional[float] = _mapped("TCond", "condenserTemp")
    compressor_temp: Optional[float] = _mapped("TComp", "compressorTemp")
    defrost_temp: Optional[float] = _mapped("TDefrost", "defrostTemp")
    alarm_code: Any = _mapped("AlarmCode", "alarmCode")
    alarm_status: Any = _mapped("AlarmStatus", "alarmStatus")
    operating_mode: Optional[str] = _mapped("OperatingMode", "operatingMode")
    defrost_status: Any = _mapped("DefrostStatus", "defrostStatus")
    compressor_status: Any = _mapped("CompressorStatus", "compressorStatus")
    engine_hours: Optional[float] = _mapped("EngineHours", "engineHours")
    compressor_hours: Optional[float] = _mapped("CompressorHours", "compressorHours")
    power_status: Any = _mapped("PowerStatus", "powerStatus")
    has_reefer_data: bool = field(
        default=False, metadata={"vendor": None, "wire": "hasReeferData"}
    )


@dataclass(frozen=True)
class GeofenceData:
    """Geofence transition attached to the envelope, if any."""

    geofence_id: Optional[str] = _mapped("GeofenceID", "geofenceId")
    geofence_name: Optional[str] = _mapped("GeofenceName", "geofenceName")
    geofence_type: Optional[str] = _mapped("GeofenceType", "geofenceType")
    geofence_event: Optional[str] = _mapped("GeofenceEvent", "geofenceEvent")
    has_geofence_data: bool = field(
        default=False, metadata={"vendor": None, "wire": "hasGeofenceData"}
    )


@dataclass(frozen=True)
class TelemetryEvent:
    """Canonical, immutable telemetry event for one asset.

    ``event_time`` is when the report occurred, ``device_time`` when the
    device sampled its sensors, and ``received_time`` when this process
    normalized it.
    """

    asset_id: str
    event_time: datetime
    received_time: datetime
    device_id: Optional[str] = None
    event_class: Optional[str] = None
    event_types: tuple[str, ...] = ()
    device_time: Optional[datetime] = None
    sequence: Optional[int] = None
    message_id: Optional[str] = None
    gps: GpsData = field(default_factory=GpsData)
    device: DeviceData = field(default_factory=DeviceData)
    reefer: ReeferData = field(default_factory=ReeferData)
    geofence: GeofenceData = field(default_factory=GeofenceData)

    @property
    def primary_event_type(self) -> Optional[str]:
        """First sub-event tag, falling back to the coarse event class."""
        return self.event_types[0] if self.event_types else self.event_class

    def to_dict(self) -> dict[str, Any]:
        """Camel-cased JSON-ready representation for subscribers and storage."""
        return {
            "sequence": self.sequence,
            "messageId": self.message_id,
            "assetId": self.asset_id,
            "deviceId": self.device_id,
            "eventClass": self.event_class,
            "eventTypes": list(self.event_types),
            "primaryEventType": self.primary_event_type,
            "eventTimestamp": _iso(self.event_time),
            "deviceTimestamp": _iso(self.device_time),
            "receivedTimestamp": _iso(self.received_time),
            "timestamp": _iso(self.event_time),
            "gpsData": block_to_dict(self.gps),
            "deviceData": block_to_dict(self.device),
            "reeferData": block_to_dict(self.reefer),
            "geofenceData": block_to_dict(self.geofence),
        }


@dataclass
class LastKnownLocation:
    """Most recent GPS fix for an asset, keyed by the fix's event time."""

    latitude: float
    longitude: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class AssetPresenceRecord:
    """Mutable presence bookkeeping for one asset.

    Status is intentionally absent: it is derived on every read from
    ``last_seen_event_time`` by the registry.
    """

    asset_id: str
    first_seen_event_time: datetime
    last_seen_event_time: datetime
    last_received_time: datetime
    last_known_location: Optional[LastKnownLocation] = None
    event_count: int = 0
    has_delayed_reports: bool = False
    last_delayed_report_received: Optional[datetime] = None


@dataclass
class MalformedMessage:
    """An upstream message that could not be turned into envelopes."""

    code: str = ""
    message: str = ""
    raw_payload: str = ""
    raw_payload_truncated: bool = False
    received_at: str = ""
