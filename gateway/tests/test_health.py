"""
Unit tests for the gateway health writer.

Tests verify:
- The health file always carries devices, last_publish_ts and spool_count.
- Device states are keyed by device id and removed devices disappear.
- Unchanged state does not rewrite the file.

CHANGELOG:
- 2026-03-03: Cover per-device link state
- 2026-02-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path

from gateway.src.health import HealthWriter


def _read(path: Path) -> dict:
    return json.loads(path.read_text())


class TestHealthWriter:
    """HealthWriter file contents."""

    def test_spool_count_creates_file_with_all_fields(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        HealthWriter(path).set_spool_count(0)

        assert _read(path) == {"devices": {}, "last_publish_ts": None, "spool_count": 0}

    def test_device_states(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        writer = HealthWriter(path)

        writer.set_device_state(7, "connected")
        writer.set_device_state(3, "connecting")

        assert _read(path)["devices"] == {"3": "connecting", "7": "connected"}

    def test_remove_device(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        writer = HealthWriter(path)
        writer.set_device_state(7, "connected")

        writer.remove_device(7)
        writer.remove_device(99)

        assert _read(path)["devices"] == {}

    def test_record_publish(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        writer = HealthWriter(path)

        writer.record_publish("2026-03-01T12:00:00+00:00")
        writer.record_publish(None)

        assert _read(path)["last_publish_ts"] == "2026-03-01T12:00:00+00:00"

    def test_unchanged_state_not_rewritten(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        writer = HealthWriter(path)
        writer.set_device_state(1, "connected")
        path.unlink()

        writer.set_device_state(1, "connected")
        writer.record_publish(None)

        assert not path.exists()

    def test_spool_count_rewrites_missing_file(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        writer = HealthWriter(path)
        writer.set_spool_count(4)
        path.unlink()

        writer.set_spool_count(4)

        assert _read(path)["spool_count"] == 4

    def test_no_tmp_file_left(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        HealthWriter(path).set_spool_count(2)

        assert [p.name for p in tmp_path.iterdir()] == ["health.json"]
