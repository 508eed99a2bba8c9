"""
Health file writer for the bridge daemon.

The health file is a small JSON object:
- last_update_ts: ISO timestamp of the most recent Signal K poll.
- last_history_save_ts: ISO timestamp of the most recent history save.
- device_count: Number of virtual devices currently registered.

The file is replaced atomically (temp file + rename) on every state change,
providing a simple liveness signal a Docker HEALTHCHECK can inspect.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes bridge health status to a JSON file.

    The file is rewritten on every recorded change, so a container
    healthcheck only ever sees a complete, current snapshot.

    Args:
        path: Where the health JSON is written.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_update_ts: str | None = None
        self._last_history_save_ts: str | None = None
        self._device_count: int = 0

    def record_update(self, device_count: int) -> None:
        """Record a poll cycle and the current device count."""
        self._last_update_ts = datetime.now(tz=UTC).isoformat()
        self._device_count = device_count
        self._write()

    def record_history_save(self, saved_ts: str) -> None:
        """Record the timestamp of the latest history save; no-op if unchanged."""
        if saved_ts == self._last_history_save_ts:
            return
        self._last_history_save_ts = saved_ts
        self._write()

    def _write(self) -> None:
        data = {
            "last_update_ts": self._last_update_ts,
            "last_history_save_ts": self._last_history_save_ts,
            "device_count": self._device_count,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data))
        os.replace(tmp, self.path)
