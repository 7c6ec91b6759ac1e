"""Root logger setup: single-line JSON records with secret redaction.

At startup the resolved configuration is scanned for values whose *keys*
match ``logging.redact_patterns`` (shell-style globs, case-insensitive),
e.g. the upstream ``authorization`` header.  A filter on every handler
replaces those values with ``[REDACTED]`` before a record is formatted.
"""

from __future__ import annotations

import fnmatch
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Optional

import orjson

from reefer_telemetry_bridge.config import LogFileConfig

REDACTED = "[REDACTED]"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


class RedactingFilter(logging.Filter):
    """Scrub known secret values from a record's message and args."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        # Longest first, so a secret containing another is replaced whole
        self._secrets: list[str] = sorted(
            {s for s in (secret_values or []) if s and len(s) > 1},
            key=len,
            reverse=True,
        )

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self._redact(record.msg)
            if isinstance(record.args, dict):
                record.args = {k: self._redact(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._redact(a) for a in record.args)
        return True

    def _redact(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        for secret in self._secrets:
            value = value.replace(secret, REDACTED)
        return value


def collect_secret_values(config: Any, patterns: list[str] | None = None) -> list[str]:
    """Collect string values in *config* whose keys match any of *patterns*."""
    found: list[str] = []
    if patterns:
        _walk(config, [p.lower() for p in patterns], found)
    return found


def _walk(obj: Any, patterns: list[str], out: list[str]) -> None:
    if isinstance(obj, dict):
        for key, val in obj.items():
            if isinstance(val, str) and any(fnmatch.fnmatch(str(key).lower(), p) for p in patterns):
                out.append(val)
            _walk(val, patterns, out)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _walk(item, patterns, out)


def setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file: Optional[LogFileConfig] = None,
    fmt: str = "json",
) -> None:
    """Configure the root logger: stderr, optional rotating file, redaction."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter: logging.Formatter = (
        JsonFormatter()
        if fmt == "json"
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    redactor = RedactingFilter(secret_values)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file and log_file.enabled:
        Path(log_file.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=log_file.path,
                maxBytes=log_file.max_size_bytes,
                backupCount=log_file.backup_count,
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        # handler-level so records from child loggers are redacted too
        handler.addFilter(redactor)
        root.addHandler(handler)
