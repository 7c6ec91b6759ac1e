"""Tests for the storage module (StdoutStorage and FileStorage)."""

import asyncio
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import orjson
import pytest

from reefer_telemetry_bridge.config import FileOutputConfig, OutputConfig
from reefer_telemetry_bridge.engine import TelemetryEngine
from reefer_telemetry_bridge.fanout import FanoutHub
from reefer_telemetry_bridge.presence import AssetRegistry
from reefer_telemetry_bridge.storage import (
    FileStorage,
    StdoutStorage,
    build_storage,
    encode,
)
from reefer_telemetry_bridge.visibility import VisibilityFilter


def test_encode_is_one_line() -> None:
    line = encode({"assetId": "KAGU3331339", "status": "online"})
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1
    assert orjson.loads(line) == {"assetId": "KAGU3331339", "status": "online"}


class TestStdoutStorage:
    """Tests for :class:`StdoutStorage`."""

    @pytest.mark.asyncio
    async def test_stdout_storage_writes_ndjson(self) -> None:
        """StdoutStorage writes one NDJSON line to the stdout buffer."""
        storage = StdoutStorage()
        event = {"assetId": "KAGU3331339"}

        mock_stdout = MagicMock()
        with patch("reefer_telemetry_bridge.storage.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            await storage.store(event)
            mock_stdout.buffer.write.assert_called_once_with(encode(event))
            mock_stdout.buffer.flush.assert_called_once()


class TestFileStorage:
    """Tests for :class:`FileStorage`."""

    @pytest.mark.asyncio
    async def test_first_store_opens_active_segment(self, tmp_path: Path) -> None:
        """Nothing is created until the first event; then one ``.ndjson.active``."""
        storage = FileStorage(output_dir=str(tmp_path), prefix="test", instance_id="inst-01")
        assert list(tmp_path.iterdir()) == []
        try:
            await storage.store({"assetId": "A1"})
            await storage.drain()
            active_files = list(tmp_path.glob("*.ndjson.active"))
            assert len(active_files) == 1
            assert "test-inst-01" in active_files[0].name
        finally:
            await storage.close()

    @pytest.mark.asyncio
    async def test_rotation(self, tmp_path: Path) -> None:
        """Once a segment is over size, it is sealed and a new .active is opened."""
        storage = FileStorage(
            output_dir=str(tmp_path),
            prefix="test",
            instance_id="inst-01",
            rotation_seconds=3600,
            rotation_bytes=100,
        )
        try:
            await storage.store({"assetId": "A1", "pad": "x" * 120})
            await storage.store({"assetId": "A2"})
            await storage.drain()

            assert len(list(tmp_path.glob("*.ndjson"))) == 1
            assert len(list(tmp_path.glob("*.ndjson.active"))) == 1
        finally:
            await storage.close()

    @pytest.mark.asyncio
    async def test_store_and_close(self, tmp_path: Path) -> None:
        """Lines keep arrival order; close() seals ``.active`` into ``.ndjson``."""
        storage = FileStorage(output_dir=str(tmp_path), prefix="test", instance_id="inst-01")
        for sequence in range(1, 51):
            await storage.store({"assetId": "A1", "sequence": sequence})
        await storage.close()
        await storage.close()

        assert list(tmp_path.glob("*.ndjson.active")) == []
        [final] = list(tmp_path.glob("*.ndjson"))
        lines = final.read_bytes().splitlines()
        assert [orjson.loads(line)["sequence"] for line in lines] == list(range(1, 51))

    @pytest.mark.asyncio
    async def test_close_without_events(self, tmp_path: Path) -> None:
        storage = FileStorage(output_dir=str(tmp_path))
        await storage.close()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_slow_disk_does_not_block_ingestion(self, tmp_path: Path) -> None:
        """A stalled write leaves store(), the pipeline and the loop responsive."""
        storage = FileStorage(output_dir=str(tmp_path), prefix="test", instance_id="inst-01")
        gate = threading.Event()
        write_lines = storage.segments.write_lines

        def _stalled(lines: list[bytes]) -> None:
            gate.wait(5)
            write_lines(lines)

        storage.segments.write_lines = _stalled
        engine = TelemetryEngine(
            registry=AssetRegistry(),
            hub=FanoutHub(),
            visibility=VisibilityFilter([]),
            storage=storage,
        )
        seen: list[str] = []
        engine.hub.subscribe(lambda _asset_id: True, lambda e: seen.append(e.asset_id))

        try:
            for asset_id in ("KAGU1", "KAGU2", "KAGU3"):
                engine.handle_envelope({"Event": {"DeviceData": {"LastAssetID": asset_id}}})
                await asyncio.wait_for(asyncio.sleep(0.01), timeout=0.5)
            await asyncio.wait_for(engine.drain(), timeout=0.5)
            assert seen == ["KAGU1", "KAGU2", "KAGU3"]
            assert not gate.is_set()
        finally:
            gate.set()
            await storage.close()

        [final] = list(tmp_path.glob("*.ndjson"))
        lines = final.read_bytes().splitlines()
        assert [orjson.loads(line)["assetId"] for line in lines] == ["KAGU1", "KAGU2", "KAGU3"]

    @pytest.mark.asyncio
    async def test_full_queue_drops(self, tmp_path: Path, caplog) -> None:
        storage = FileStorage(output_dir=str(tmp_path), queue_size=2)
        gate = threading.Event()
        write_lines = storage.segments.write_lines

        def _stalled(lines: list[bytes]) -> None:
            gate.wait(5)
            write_lines(lines)

        storage.segments.write_lines = _stalled
        try:
            await storage.store({"n": 0})
            await asyncio.sleep(0.01)
            for n in range(1, 6):
                await storage.store({"n": n})
            assert storage.dropped == 3
            assert "queue full" in caplog.text
        finally:
            gate.set()
            await storage.close()


def test_build_storage_modes(tmp_path: Path) -> None:
    config = OutputConfig(mode="file", file=FileOutputConfig(output_dir=str(tmp_path / "out")))
    assert build_storage(config, "inst-01", "none") is None
    assert isinstance(build_storage(config, "inst-01", "stdout"), StdoutStorage)

    storage = build_storage(config, "inst-01")
    assert isinstance(storage, FileStorage)
    assert (tmp_path / "out").is_dir()


def test_build_storage_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unknown output mode"):
        build_storage(OutputConfig(), "inst-01", "kafka")
