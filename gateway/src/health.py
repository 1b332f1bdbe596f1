"""
Health file writer for the gateway.

Writes a JSON health file at a configurable path with three fields:
- devices: device id to link state (``connected``, ``connecting``,
  ``disconnected``).
- last_publish_ts: ISO timestamp of the most recent successful publish.
- spool_count: Number of messages waiting in the outbox.

The file is rewritten on every state change, providing a simple liveness
signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-03-05: List tracked devices so stale entries can be pruned
- 2026-03-03: Track per-device link state
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path


class HealthWriter:
    """Writes gateway health status to a JSON file.

    Each mutating method updates the in-memory state and rewrites the
    health file only when something changed, so it always reflects the
    latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._devices: dict[int, str] = {}
        self._last_publish_ts: str | None = None
        self._spool_count: int = 0

    def set_device_state(self, device_id: int, state: str) -> None:
        """Record a device's link state and write the health file."""
        if self._devices.get(device_id) == state:
            return
        self._devices[device_id] = state
        self._write()

    def device_ids(self) -> list[int]:
        return sorted(self._devices)

    def remove_device(self, device_id: int) -> None:
        """Forget a removed device and write the health file."""
        if self._devices.pop(device_id, None) is not None:
            self._write()

    def record_publish(self, ts: str | None) -> None:
        """Record the timestamp of the latest successful publish."""
        if ts is None or ts == self._last_publish_ts:
            return
        self._last_publish_ts = ts
        self._write()

    def set_spool_count(self, count: int) -> None:
        """Update the spool count and write the health file.

        Args:
            count: Current number of pending messages in the outbox.
        """
        if count == self._spool_count and self.path.exists():
            return
        self._spool_count = count
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "devices": {str(k): v for k, v in sorted(self._devices.items())},
            "last_publish_ts": self._last_publish_ts,
            "spool_count": self._spool_count,
        }
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data))
        tmp.replace(self.path)
