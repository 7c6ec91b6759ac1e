"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters.

    The delay before attempt *n* is
    ``initial_delay_ms * backoff_multiplier ** (n - 1)``, optionally jittered.
    """

    initial_delay_ms: int = 5000
    backoff_multiplier: int = 2
    max_attempts: int = 10
    jitter_pct: int = 0


@dataclass
class UpstreamConfig:
    """ORBCOMM CDH WebSocket settings."""

    url: str = "wss://wamc.wamcentral.net:44355/cdh"
    protocol: str = "cdh.orbcomm.com"
    authorization: str = ""
    user_agent: str = "reefer-telemetry-bridge"
    event_type: str = "all"
    event_partition: int = 1
    preceding_event_id: str = ""
    max_event_count: int = 5000
    heartbeat_interval_ms: int = 30000
    open_timeout_s: float = 10.0
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class PresenceConfig:
    """Presence and delayed-report thresholds.

    The two thresholds are independent: one decides online/offline, the
    other only flags late-arriving reports.
    """

    offline_threshold_s: int = 900
    delay_threshold_s: int = 300
    history_size: int = 100


@dataclass
class ClientConfig:
    """Assets visible to one logical client."""

    id: str = ""
    name: str = ""
    asset_patterns: list[str] = field(default_factory=list)
    specific_assets: list[str] = field(default_factory=list)


@dataclass
class IngestConfig:
    """Ingestion scope.

    When ``client_id`` is set, only assets visible to that client are
    tracked; otherwise every asset with a resolvable id is.
    """

    client_id: Optional[str] = None


@dataclass
class ServerConfig:
    """Downstream subscriber WebSocket server."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8765
    heartbeat_interval_s: int = 30
    queue_size: int = 1000


@dataclass
class RotationConfig:
    """File rotation thresholds."""

    interval_seconds: int = 600
    max_size_bytes: int = 52428800


@dataclass
class FlushConfig:
    """File flush settings."""

    interval_ms: int = 1000
    every_n_events: int = 50


@dataclass
class FileOutputConfig:
    """File-mode storage settings."""

    output_dir: str = "/var/lib/reefer-telemetry/events"
    file_prefix: str = "events"
    rotation: RotationConfig = field(default_factory=RotationConfig)
    flush: FlushConfig = field(default_factory=FlushConfig)


@dataclass
class OutputConfig:
    """Storage section wrapper. ``mode`` is one of file, stdout, none."""

    mode: str = "file"
    file: FileOutputConfig = field(default_factory=FileOutputConfig)


@dataclass
class LogFileConfig:
    """Optional rotating log file, written in addition to stderr."""

    enabled: bool = False
    path: str = "/var/log/reefer-telemetry-bridge/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*auth*", "*key*", "*token*", "*secret*", "*password*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    instance_id: str = "bridge-01"
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    clients: list[ClientConfig] = field(default_factory=list)
    server: ServerConfig = field(default_factory=ServerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _build(cls: type, raw: dict[str, Any]) -> Any:
    """Instantiate dataclass *cls* from *raw*, recursing into nested sections.

    Unknown keys are ignored; missing keys keep the dataclass default.
    """
    kwargs: dict[str, Any] = {}
    nested = {
        f.name: f.default_factory  # type: ignore[misc]
        for f in fields(cls)
        if callable(f.default_factory)  # type: ignore[arg-type]
    }
    for f in fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        factory = nested.get(f.name)
        if isinstance(value, dict) and factory is not None:
            value = _build(type(factory()), value)
        kwargs[f.name] = value
    return cls(**kwargs)


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    cfg: AppConfig = _build(AppConfig, {k: v for k, v in raw.items() if k != "clients"})
    cfg.clients = [_build(ClientConfig, c) for c in raw.get("clients", [])]
    return cfg


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s; skipping validation", sp)

    return _dict_to_config(interpolated)
