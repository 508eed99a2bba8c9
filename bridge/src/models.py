"""
Data models for devices and cumulative battery history.

HistoryRecord and EnergyAccumulator are Pydantic models whose validators
sanitise every field: any non-finite or non-numeric value is replaced by a
safe default (voltages -> 12.0, accumulators -> 0). Assignment is validated
too, so a NaN written by upstream code never survives in the model. Both
serialise with the camelCase keys of the persisted history file.

DeviceInstance is a plain dataclass describing one virtual device.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_VOLTAGE = 12.0
"""Fallback for min/max/last voltage when no valid reading is known."""


def finite_or(value: object, default: float) -> float:
    """Return *value* as a finite float, or *default* when it is not one."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class HistoryRecord(BaseModel):
    """Cumulative history of one battery.

    Attributes:
        min_voltage: Lowest valid voltage seen (V).
        max_voltage: Highest valid voltage seen (V).
        discharged_energy: Energy taken out of the battery (kWh).
        charged_energy: Energy put into the battery (kWh).
        total_ah_drawn: Charge consumed by loads (Ah).
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    min_voltage: float = Field(DEFAULT_VOLTAGE, alias="minVoltage")
    max_voltage: float = Field(DEFAULT_VOLTAGE, alias="maxVoltage")
    discharged_energy: float = Field(0.0, alias="dischargedEnergy")
    charged_energy: float = Field(0.0, alias="chargedEnergy")
    total_ah_drawn: float = Field(0.0, alias="totalAhDrawn")

    @field_validator("min_voltage", "max_voltage", mode="before")
    @classmethod
    def _sanitize_voltage(cls, v: object) -> float:
        return finite_or(v, DEFAULT_VOLTAGE)

    @field_validator("discharged_energy", "charged_energy", "total_ah_drawn", mode="before")
    @classmethod
    def _sanitize_accumulator(cls, v: object) -> float:
        return finite_or(v, 0.0)


class EnergyAccumulator(BaseModel):
    """Integration state of one battery between two samples.

    Attributes:
        last_current: Current of the last integrated sample (A).
        last_voltage: Voltage of the last integrated sample (V).
        last_timestamp: Time of the last integrated sample (epoch ms).
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    last_current: float = Field(0.0, alias="lastCurrent")
    last_voltage: float = Field(DEFAULT_VOLTAGE, alias="lastVoltage")
    last_timestamp: int = Field(default_factory=now_ms, alias="lastTimestamp")

    @field_validator("last_current", mode="before")
    @classmethod
    def _sanitize_current(cls, v: object) -> float:
        return finite_or(v, 0.0)

    @field_validator("last_voltage", mode="before")
    @classmethod
    def _sanitize_voltage(cls, v: object) -> float:
        return finite_or(v, DEFAULT_VOLTAGE)

    @field_validator("last_timestamp", mode="before")
    @classmethod
    def _sanitize_timestamp(cls, v: object) -> int:
        return int(finite_or(v, float(now_ms())))


@dataclass
class DeviceInstance:
    """One virtual device, keyed by its Signal K base path.

    Attributes:
        base_path: Path prefix shared by all readings of the device.
        device_type: ``battery``, ``tank``, ``switch`` or ``environment``.
        local_index: Hash-derived index in ``[0, 1000)``.
        vrm_instance_id: Instance number presented to the GX device;
            starts as ``local_index`` and is overwritten by the registrar.
        display_name: Name computed once at creation.
        serial: Stable serial number sent with every change signal.
    """

    base_path: str
    device_type: str
    local_index: int
    vrm_instance_id: int
    display_name: str
    serial: str
