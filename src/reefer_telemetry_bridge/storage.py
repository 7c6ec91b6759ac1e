"""Best-effort persistence collaborators for enriched events.

The engine hands each enriched event dict to :meth:`Storage.store` as a
scheduled task and never awaits it; whatever a storage raises is logged by
the engine and goes no further.

FileStorage
    ``store()`` only enqueues.  One writer task drains the queue in arrival
    order and runs every blocking file operation in a worker thread.  Lines
    go to ``{prefix}-{instance_id}-{timestamp}.ndjson.active``; a segment is
    sealed (flush, ``fsync``, rename to ``.ndjson``) once it is too old or
    too large.

StdoutStorage
    Writes NDJSON lines to ``sys.stdout.buffer``.  Useful for debugging and
    dry runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Optional, Protocol

import orjson

from reefer_telemetry_bridge.config import OutputConfig

logger = logging.getLogger(__name__)

_STOP = None


class Storage(Protocol):
    """Anything that can persist one enriched event."""

    async def store(self, event: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


def encode(event: dict[str, Any]) -> bytes:
    """Serialize *event* as one newline-terminated NDJSON line."""
    return orjson.dumps(event, option=orjson.OPT_APPEND_NEWLINE)


class StdoutStorage:
    """Write NDJSON lines directly to stdout."""

    async def store(self, event: dict[str, Any]) -> None:
        try:
            sys.stdout.buffer.write(encode(event))
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken; consumer likely exited")
            raise

    async def close(self) -> None:
        """No-op for stdout."""


class SegmentWriter:
    """Blocking half of :class:`FileStorage`: owns the open NDJSON segment.

    Not thread-safe; only the storage's writer task calls it, one batch at
    a time.
    """

    def __init__(
        self,
        output_dir: str | Path,
        name_prefix: str,
        max_age_s: float,
        max_bytes: int,
        flush_every_n: int,
        flush_interval_s: float,
    ) -> None:
        self.directory = Path(output_dir)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._name_prefix = name_prefix
        self._max_age_s = max_age_s
        self._max_bytes = max_bytes
        self._flush_every_n = flush_every_n
        self._flush_interval_s = flush_interval_s

        self._fh: Optional[BinaryIO] = None
        self.active_path: Optional[Path] = None
        self._size = 0
        self._opened_at = 0.0
        self._unflushed = 0
        self._flushed_at = 0.0
        self.sealed: list[Path] = []

    def write_lines(self, lines: list[bytes]) -> None:
        """Append *lines* in order, sealing segments as they fill up."""
        for line in lines:
            if self._fh is None:
                self._open()
            elif self._size >= self._max_bytes or self._age() >= self._max_age_s:
                self._seal()
                self._open()
            self._fh.write(line)
            self._size += len(line)
            self._unflushed += 1

        if self._fh is not None and (
            self._unflushed >= self._flush_every_n
            or time.monotonic() - self._flushed_at >= self._flush_interval_s
        ):
            self._fh.flush()
            self._unflushed = 0
            self._flushed_at = time.monotonic()

    def close(self) -> None:
        """Seal the active segment, if any."""
        if self._fh is not None:
            self._seal()

    def _age(self) -> float:
        return time.monotonic() - self._opened_at

    def _open(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self.active_path = self.directory / f"{self._name_prefix}-{stamp}.ndjson.active"
        self._fh = open(self.active_path, "ab")
        self._size = 0
        self._unflushed = 0
        self._opened_at = self._flushed_at = time.monotonic()
        logger.info("Opened segment %s", self.active_path.name)

    def _seal(self) -> None:
        fh, active = self._fh, self.active_path
        self._fh = None
        self.active_path = None
        fh.flush()
        os.fsync(fh.fileno())
        fh.close()
        final = active.with_suffix("")
        os.rename(active, final)
        self.sealed.append(final)
        logger.info("Sealed segment %s (%d bytes)", final.name, self._size)


class FileStorage:
    """Rotating NDJSON file storage that never blocks the event loop.

    Parameters
    ----------
    output_dir:
        Directory for segment files.
    prefix:
        Filename prefix (e.g. ``"events"``).
    instance_id:
        Unique instance identifier included in the filename.
    rotation_seconds:
        Seal a segment after this many seconds.
    rotation_bytes:
        Seal a segment once it reaches this size.
    flush_every_n:
        Flush the write buffer after this many lines.
    flush_interval_ms:
        Flush the write buffer after this many milliseconds.
    queue_size:
        Lines waiting for the writer; further events are dropped and counted.
    """

    def __init__(
        self,
        output_dir: str,
        prefix: str = "events",
        instance_id: str = "bridge-01",
        rotation_seconds: int = 600,
        rotation_bytes: int = 52428800,
        flush_every_n: int = 50,
        flush_interval_ms: int = 1000,
        queue_size: int = 10000,
    ) -> None:
        self.segments = SegmentWriter(
            output_dir,
            name_prefix=f"{prefix}-{instance_id}",
            max_age_s=rotation_seconds,
            max_bytes=rotation_bytes,
            flush_every_n=flush_every_n,
            flush_interval_s=flush_interval_ms / 1000.0,
        )
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue[Optional[bytes]]] = None
        self._writer: Optional[asyncio.Task] = None
        self.dropped = 0

    async def store(self, event: dict[str, Any]) -> None:
        """Enqueue *event* for the writer task and return immediately."""
        queue = self._ensure_writer()
        try:
            queue.put_nowait(encode(event))
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning("Storage queue full; %d events dropped", self.dropped)

    async def drain(self) -> None:
        """Wait until every queued line has been handed to the file."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Write out the queue, then seal the active segment."""
        if self._writer is not None:
            if not self._writer.done():
                await self._queue.put(_STOP)
            await self._writer
            self._writer = None
            self._queue = None
        await asyncio.to_thread(self.segments.close)

    def _ensure_writer(self) -> asyncio.Queue:
        if self._writer is None:
            self._queue = asyncio.Queue(maxsize=self._queue_size)
            self._writer = asyncio.get_running_loop().create_task(
                self._run_writer(self._queue), name="file-storage-writer"
            )
        return self._queue

    async def _run_writer(self, queue: asyncio.Queue) -> None:
        while True:
            batch = [await queue.get()]
            while not queue.empty():
                batch.append(queue.get_nowait())
            stop = _STOP in batch
            lines = [line for line in batch if line is not _STOP]
            try:
                if lines:
                    await asyncio.to_thread(self.segments.write_lines, lines)
            except Exception:
                logger.exception("Failed to write %d lines", len(lines))
            finally:
                for _ in batch:
                    queue.task_done()
            if stop:
                return


def build_storage(
    config: OutputConfig,
    instance_id: str,
    mode: Optional[str] = None,
) -> Optional[Storage]:
    """Create the storage selected by *mode* (or ``config.mode``).

    Returns ``None`` for mode ``none``.
    """
    mode = mode or config.mode
    if mode == "none":
        return None
    if mode == "stdout":
        return StdoutStorage()
    if mode == "file":
        fc = config.file
        return FileStorage(
            output_dir=fc.output_dir,
            prefix=fc.file_prefix,
            instance_id=instance_id,
            rotation_seconds=fc.rotation.interval_seconds,
            rotation_bytes=fc.rotation.max_size_bytes,
            flush_every_n=fc.flush.every_n_events,
            flush_interval_ms=fc.flush.interval_ms,
        )
    raise ValueError(f"Unknown output mode: {mode!r}")
