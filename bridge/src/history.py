"""
History and energy accounting engine for virtual batteries.

Integrates instantaneous voltage/current/power readings into cumulative
figures the VRM portal shows for a battery monitor:

- min/max voltage ever seen,
- discharged and charged energy (kWh),
- total Ah drawn by loads.

Integration uses the elapsed time since the battery's last integrated sample.
The first sample of a battery only seeds its accumulator. A gap of an hour or
more (clock jump, long outage) re-bases the accumulator without integrating,
and a zero or negative gap changes nothing.

When a solar or charger current reading is known, Ah drawn follows the net
load ``(solar + charger) - battery current`` instead of the raw battery
current, so charge that flows straight from a charger to the loads counts as
consumption.

One engine is shared by every battery; its periodic saver is the only writer
of the history file.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math

from bridge.src.exceptions import PersistenceError
from bridge.src.models import DEFAULT_VOLTAGE, EnergyAccumulator, HistoryRecord, now_ms
from bridge.src.persistence import HistoryStore

logger = logging.getLogger(__name__)

MAX_INTEGRATION_GAP_MS = 3_600_000
"""Gaps of this length or longer are not integrated."""

MS_PER_HOUR = 3_600_000

FALLBACK_FULL_HOURS = 10.0
"""Time-to-go of a full battery when no usable current is known."""

MIN_TIME_TO_GO_S = 1800
"""Floor of the state-of-charge based time-to-go fallback."""

_CUMULATIVE_FIELDS = ("min_voltage", "max_voltage", "discharged_energy", "charged_energy", "total_ah_drawn")


def _finite(value: object) -> float | None:
    """Return *value* as a float if it is a finite real number, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class HistoryEngine:
    """Per-battery history and energy integration with periodic persistence.

    Args:
        store: Backing store for the history document.
        save_interval_s: Seconds between routine saves.
    """

    def __init__(self, store: HistoryStore, *, save_interval_s: float = 60.0) -> None:
        self.store = store
        self.history: dict[str, HistoryRecord] = {}
        self.accumulators: dict[str, EnergyAccumulator] = {}
        self.last_update: dict[str, int] = {}
        self._save_interval_s = save_interval_s
        self._save_requested = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def load(self) -> None:
        """Restore state from the store (empty when no valid file exists)."""
        self.history, self.accumulators, self.last_update = await asyncio.to_thread(self.store.load)

    def get(self, base_path: str) -> HistoryRecord | None:
        return self.history.get(base_path)

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def update(
        self,
        base_path: str,
        voltage: object,
        current: object,
        power: object,
        *,
        timestamp_ms: int | None = None,
        aux_currents: tuple[object, object] = (None, None),
    ) -> HistoryRecord:
        """Fold one battery reading into its history.

        Each input is sanitised on its own: a non-finite voltage does not
        stop the current from being integrated, and vice versa.

        Args:
            base_path: Base path of the battery.
            voltage: Battery voltage (V) or None.
            current: Battery current (A), negative when discharging, or None.
            power: Battery power (W) or None; ``voltage * current`` is used
                when absent.
            timestamp_ms: Sample time in epoch ms; defaults to now.
            aux_currents: Point-in-time solar and charger currents (A).

        Returns:
            The updated history record of the battery.
        """
        ts = now_ms() if timestamp_ms is None else int(timestamp_ms)
        volts = _finite(voltage)
        amps = _finite(current)
        watts = _finite(power)

        record = self.history.get(base_path)
        if record is None:
            record = HistoryRecord()
            if volts is not None:
                record.min_voltage = volts
                record.max_voltage = volts
            self.history[base_path] = record
            logger.info("Created history record for %s", base_path)
        elif volts is not None:
            record.min_voltage = min(record.min_voltage, volts)
            record.max_voltage = max(record.max_voltage, volts)

        acc = self.accumulators.get(base_path)
        if acc is None:
            self.accumulators[base_path] = EnergyAccumulator(
                last_current=amps if amps is not None else 0.0,
                last_voltage=volts if volts is not None else DEFAULT_VOLTAGE,
                last_timestamp=ts,
            )
        else:
            self._integrate(record, acc, ts, volts, amps, watts, aux_currents)

        self.last_update[base_path] = ts
        self._resanitize(record)
        return record

    def _integrate(
        self,
        record: HistoryRecord,
        acc: EnergyAccumulator,
        ts: int,
        volts: float | None,
        amps: float | None,
        watts: float | None,
        aux_currents: tuple[object, object],
    ) -> None:
        elapsed_ms = ts - acc.last_timestamp
        if elapsed_ms <= 0:
            return
        if elapsed_ms >= MAX_INTEGRATION_GAP_MS:
            logger.debug("Gap of %d ms exceeds integration bound, re-basing", elapsed_ms)
            acc.last_timestamp = ts
            return
        if amps is None and watts is None:
            return

        hours = elapsed_ms / MS_PER_HOUR
        if watts is not None:
            magnitude_w = abs(watts)
            direction = amps if amps is not None else watts
        else:
            magnitude_w = abs((volts if volts is not None else acc.last_voltage) * amps)
            direction = amps
        energy_kwh = magnitude_w * hours / 1000.0

        if direction < 0:
            record.discharged_energy = record.discharged_energy + energy_kwh
        elif direction > 0:
            record.charged_energy = record.charged_energy + energy_kwh

        if amps is not None:
            solar = _finite(aux_currents[0])
            charger = _finite(aux_currents[1])
            if solar is not None or charger is not None:
                net_load = (solar or 0.0) + (charger or 0.0) - amps
                record.total_ah_drawn = record.total_ah_drawn + max(0.0, net_load) * hours
            elif amps < 0:
                record.total_ah_drawn = record.total_ah_drawn + abs(amps) * hours
            acc.last_current = amps

        if volts is not None:
            acc.last_voltage = volts
        acc.last_timestamp = ts

    @staticmethod
    def _resanitize(record: HistoryRecord) -> None:
        # Assignment re-runs the sanitising validators.
        for name in _CUMULATIVE_FIELDS:
            setattr(record, name, getattr(record, name))

    # ------------------------------------------------------------------
    # Derived battery values
    # ------------------------------------------------------------------

    @staticmethod
    def time_to_go(
        explicit_s: object,
        capacity_ah: object,
        soc_pct: object,
        current: object,
    ) -> int | None:
        """Return the battery time-to-go in seconds.

        An explicit positive remaining time wins. Otherwise it is derived
        from capacity, state of charge and current direction, falling back
        to a state-of-charge share of ten hours (never below 30 minutes)
        when no usable current or capacity is known.

        Returns:
            Seconds, or None when the state of charge is unknown.
        """
        explicit = _finite(explicit_s)
        if explicit is not None and explicit > 0:
            return int(round(explicit))

        soc = _finite(soc_pct)
        if soc is None:
            return None
        capacity = _finite(capacity_ah)
        amps = _finite(current)

        if capacity is not None and capacity > 0 and amps:
            remaining_ah = capacity * soc / 100.0
            if amps < 0:
                hours = remaining_ah / abs(amps)
            else:
                hours = max(0.0, capacity - remaining_ah) / amps
            return int(round(hours * 3600))

        fallback_s = int(round(soc / 100.0 * FALLBACK_FULL_HOURS * 3600))
        return max(fallback_s, MIN_TIME_TO_GO_S)

    @staticmethod
    def consumed_amphours(capacity_ah: object, soc_pct: object) -> float | None:
        """Return consumed Ah (negative by Victron convention), or None."""
        capacity = _finite(capacity_ah)
        soc = _finite(soc_pct)
        if capacity is None or soc is None:
            return None
        return -(capacity * (1.0 - soc / 100.0))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self) -> bool:
        """Persist the current state; failures are logged, not raised."""
        try:
            return await self.store.persist(self.history, self.accumulators, self.last_update)
        except PersistenceError:
            logger.warning("History save failed, will retry next cycle", exc_info=True)
            return False

    def request_save(self) -> None:
        """Ask the saver task for an early (still throttled) save."""
        self._save_requested.set()

    def start(self) -> None:
        """Launch the periodic saver task."""
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self._run(), name="history-saver")

    async def _run(self) -> None:
        logger.info("History saver started (interval=%ss)", self._save_interval_s)
        while not self._stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._save_requested.wait(), timeout=self._save_interval_s)
            self._save_requested.clear()
            if self._stop_event.is_set():
                break
            await self.save()
        logger.info("History saver stopped")

    async def stop(self) -> None:
        """Stop the saver task and run the final save."""
        self._stop_event.set()
        self._save_requested.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.save()
        logger.info("Final history save complete")
