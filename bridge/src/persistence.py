"""
Durable JSON store for cumulative battery history.

One document per process holds every battery's history record, energy
accumulator and last update time:

    {
      "historyData":        {basePath: {minVoltage, maxVoltage, ...}},
      "energyAccumulators": {basePath: {lastCurrent, lastVoltage, lastTimestamp}},
      "lastUpdateTime":     {basePath: epoch-ms},
      "lastSaved":          ISO-8601
    }

Writes go to ``<path>.tmp``. The temp file is re-read and re-parsed before it
is renamed onto ``<path>``, so a truncated write never replaces a good file.
A file that fails to parse on load is renamed aside with a timestamp suffix
and the store starts empty.

Disk I/O is blocking and runs in a worker thread via ``asyncio.to_thread``;
``persist()`` serialises saves with an ``asyncio.Lock`` and throttles them
to one per second. A save requested while another is running replaces the
pending snapshot and is written as soon as the running one finishes.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import time
from datetime import UTC, datetime
from pathlib import Path

from bridge.src.exceptions import PersistenceError
from bridge.src.models import EnergyAccumulator, HistoryRecord, now_ms

logger = logging.getLogger(__name__)

REQUIRED_KEYS: tuple[str, ...] = (
    "historyData",
    "energyAccumulators",
    "lastUpdateTime",
    "lastSaved",
)
"""Top-level keys every history document must carry."""

INVALID_KEYS: frozenset[str] = frozenset({"", "undefined", "null"})
"""Base paths that can only come from upstream bugs; never persisted."""

MIN_DOCUMENT_LENGTH = 20
"""A verified document must be longer than this many bytes."""

HistoryMap = dict[str, HistoryRecord]
AccumulatorMap = dict[str, EnergyAccumulator]
TimesMap = dict[str, int]


def _valid_key(key: object) -> bool:
    return isinstance(key, str) and key.strip() not in INVALID_KEYS


def _check_structure(text: str) -> dict:
    """Parse *text* and apply the structural sanity checks.

    Raises:
        PersistenceError: If the document is too short, not JSON, not an
            object, or misses any required key.
    """
    if len(text) <= MIN_DOCUMENT_LENGTH:
        raise PersistenceError(f"History document too short ({len(text)} bytes)")
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"History document is not valid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise PersistenceError("History document is not a JSON object")
    missing = [key for key in REQUIRED_KEYS if key not in doc]
    if missing:
        raise PersistenceError(f"History document misses keys: {missing}")
    return doc


class HistoryStore:
    """Loads and saves the history document at *path*.

    Args:
        path: Location of the JSON document. Accepts str or Path.
        min_interval_s: Minimum spacing between two writes in ``persist()``.
    """

    def __init__(self, path: str | Path, *, min_interval_s: float = 1.0) -> None:
        self.path = Path(path)
        self._min_interval_s = min_interval_s
        self._lock = asyncio.Lock()
        self._pending: dict | None = None
        self._last_write_monotonic: float | None = None
        self.last_saved_ts: str | None = None

    @property
    def tmp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self) -> tuple[HistoryMap, AccumulatorMap, TimesMap]:
        """Read the history document.

        Returns:
            ``(history, accumulators, times)``. All three are empty when the
            file does not exist or was corrupt (in which case it has been
            renamed aside). Entries with invalid keys, accumulators or times
            without a history record, and non-object entries are dropped.
        """
        if not self.path.exists():
            logger.info("No history file at %s, starting empty", self.path)
            return {}, {}, {}

        try:
            doc = _check_structure(self.path.read_text(encoding="utf-8"))
            history_raw = doc["historyData"]
            acc_raw = doc["energyAccumulators"]
            times_raw = doc["lastUpdateTime"]
            if not all(isinstance(part, dict) for part in (history_raw, acc_raw, times_raw)):
                raise PersistenceError("History document sections must be objects")
        except (OSError, UnicodeDecodeError, PersistenceError):
            logger.warning("History file %s is unreadable or corrupt", self.path, exc_info=True)
            self._backup_corrupt()
            return {}, {}, {}

        history: HistoryMap = {}
        for key, value in history_raw.items():
            if not _valid_key(key):
                logger.warning("Dropping history entry with invalid key %r", key)
                continue
            if not isinstance(value, dict):
                logger.warning("Dropping malformed history entry for %s", key)
                continue
            history[key] = HistoryRecord.model_validate(value)

        accumulators: AccumulatorMap = {}
        for key, value in acc_raw.items():
            if key in history and isinstance(value, dict):
                accumulators[key] = EnergyAccumulator.model_validate(value)

        times: TimesMap = {}
        for key, value in times_raw.items():
            if key not in history:
                continue
            if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
                times[key] = int(value)
            else:
                times[key] = now_ms()

        logger.info("Loaded history for %d batteries from %s", len(history), self.path)
        return history, accumulators, times

    def _backup_corrupt(self) -> None:
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S")
        backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, backup)
            logger.warning("Corrupt history file moved to %s", backup)
        except OSError:
            logger.error("Could not move corrupt history file %s aside", self.path, exc_info=True)

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    @staticmethod
    def build_document(
        history: HistoryMap,
        accumulators: AccumulatorMap,
        times: TimesMap,
    ) -> dict:
        """Serialise the three maps into a history document.

        Records are re-validated on the way out so non-finite values never
        reach disk.
        """
        history_doc = {
            key: HistoryRecord.model_validate(record.model_dump()).model_dump(by_alias=True)
            for key, record in history.items()
            if _valid_key(key)
        }
        acc_doc = {
            key: EnergyAccumulator.model_validate(acc.model_dump()).model_dump(by_alias=True)
            for key, acc in accumulators.items()
            if key in history_doc
        }
        times_doc = {key: int(ts) for key, ts in times.items() if key in history_doc}
        return {
            "historyData": history_doc,
            "energyAccumulators": acc_doc,
            "lastUpdateTime": times_doc,
            "lastSaved": datetime.now(tz=UTC).isoformat(),
        }

    def write_document(self, doc: dict) -> None:
        """Atomically write *doc*: temp file, verify, rename.

        Raises:
            PersistenceError: On any I/O failure or if the temp file does
                not verify. The previous document is left untouched.
        """
        text = json.dumps(doc, indent=2)
        tmp = self.tmp_path
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            _check_structure(tmp.read_text(encoding="utf-8"))
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write history file {self.path}: {exc}") from exc
        self.last_saved_ts = doc["lastSaved"]

    def save(self, history: HistoryMap, accumulators: AccumulatorMap, times: TimesMap) -> None:
        """Synchronously build and write the history document."""
        self.write_document(self.build_document(history, accumulators, times))

    async def persist(
        self,
        history: HistoryMap,
        accumulators: AccumulatorMap,
        times: TimesMap,
    ) -> bool:
        """Queue a snapshot for writing and write it when allowed.

        The snapshot is taken immediately, so later mutations of the maps
        do not leak into it. If another ``persist()`` is running, the
        snapshot replaces its pending one and this call returns ``False``;
        the running call writes it after its own write.

        Returns:
            True if this call performed the write(s).

        Raises:
            PersistenceError: If a write fails.
        """
        self._pending = self.build_document(history, accumulators, times)
        if self._lock.locked():
            return False

        async with self._lock:
            while self._pending is not None:
                if self._last_write_monotonic is not None:
                    wait = self._min_interval_s - (time.monotonic() - self._last_write_monotonic)
                    if wait > 0:
                        await asyncio.sleep(wait)
                doc, self._pending = self._pending, None
                self._last_write_monotonic = time.monotonic()
                await asyncio.to_thread(self.write_document, doc)
                logger.debug("History saved to %s", self.path)
        return True
