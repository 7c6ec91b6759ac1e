"""Classify raw upstream messages into validated envelopes or malformed records.

Classification pipeline::

    raw string
      │
      ├─ JSON parse failure           → MalformedMessage(code="parse_error")
      ├─ {"Events": [...]}            → [envelope, ...]  (invalid elements dropped)
      ├─ {"Event": ...} / {"Sequence"} → [envelope]
      │     └─ fails envelope schema  → MalformedMessage(code="schema_mismatch")
      └─ anything else                → []  (protocol / unknown message)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Union

import jsonschema
from jsonschema.exceptions import best_match
import orjson

from reefer_telemetry_bridge.models import MalformedMessage

logger = logging.getLogger(__name__)

# Maximum bytes of raw payload preserved in malformed records.
MAX_RAW_PAYLOAD_BYTES = 4096

_OPTIONAL_OBJECT = {"type": ["object", "null"]}

ENVELOPE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["Event"],
    "properties": {
        "Sequence": {"type": ["integer", "string", "null"]},
        "Event": {
            "type": "object",
            "properties": {
                "EventClass": {"type": ["string", "null"]},
                "DeviceData": _OPTIONAL_OBJECT,
                "ReeferData": _OPTIONAL_OBJECT,
                "GeofenceData": _OPTIONAL_OBJECT,
                "MessageData": {
                    "type": ["object", "null"],
                    "properties": {
                        "Events": {"type": ["array", "null"]},
                        "EventDtm": {"type": ["string", "null"]},
                    },
                },
            },
        },
    },
}

_validator = jsonschema.Draft7Validator(ENVELOPE_SCHEMA)


def classify(raw: str | bytes) -> Union[list[dict], MalformedMessage]:
    """Classify a single raw WebSocket message.

    Parameters
    ----------
    raw:
        The raw message string (or bytes) received from the WebSocket.

    Returns
    -------
    list[dict]
        The envelopes carried by the message, in wire order.  Empty for
        messages that carry no telemetry.
    MalformedMessage
        When the message cannot be parsed, or a single-envelope message
        fails the envelope schema.
    """
    try:
        msg = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        return _malformed("parse_error", str(exc), raw)

    if not isinstance(msg, dict):
        return _malformed("schema_mismatch", "Top-level JSON value is not an object", raw)

    events = msg.get("Events")
    if isinstance(events, list):
        return [env for index, env in enumerate(events) if _is_valid(env, index)]

    if "Event" in msg or "Sequence" in msg:
        error = _first_error(msg)
        if error is not None:
            return _malformed("schema_mismatch", error, raw)
        return [msg]

    logger.debug("Unhandled upstream message keys: %s", sorted(msg))
    return []


# ── helpers ─────────────────────────────────────────────────────────


def _first_error(envelope: Any) -> str | None:
    error = best_match(_validator.iter_errors(envelope))
    if error is None:
        return None
    path = "/".join(str(p) for p in error.absolute_path) or "<root>"
    return f"{path}: {error.message}"


def _is_valid(envelope: Any, index: int) -> bool:
    error = _first_error(envelope)
    if error is not None:
        logger.warning("Skipping batch element %d: %s", index, error)
        return False
    return True


def _malformed(code: str, message: str, raw: str | bytes) -> MalformedMessage:
    """Build a :class:`MalformedMessage` with truncation handling."""
    raw_str = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
    truncated = len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_str = raw_str[:MAX_RAW_PAYLOAD_BYTES]

    return MalformedMessage(
        code=code,
        message=message,
        raw_payload=raw_str,
        raw_payload_truncated=truncated,
        received_at=datetime.now(timezone.utc).isoformat(),
    )
