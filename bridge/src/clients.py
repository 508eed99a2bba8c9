"""
Per-device-type handlers for Signal K updates.

A client decides whether a Signal K path belongs to its device type, derives
the device's base path by stripping the reading's leaf, converts the value to
Venus OS units and pushes it into the device's service:

    battery      electrical.batteries.<id>.{voltage,current,power,...}
    tank         tanks.<fluid>.<id>.{currentLevel,capacity,...}
    switch       electrical.switches.<id>.{state,dimmingLevel,...}
    environment  environment.<zone>.{temperature,humidity,relativeHumidity}
                 propulsion.<engine>.temperature

Unit conventions at this boundary:

- Temperatures above 200 are Kelvin and converted to Celsius.
- Ratios 0..1 (level, state of charge, humidity, dimming) become
  percentages. Values already above 1 are taken as percentages.
- Booleans become 0/1 integers.

Values of the wrong kind (None, non-numeric where a number is expected,
NaN/inf) are dropped without creating a device.

The battery client also derives power, time-to-go, consumed Ah and the
/History/* figures from the shared HistoryEngine after every reading.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from bridge.src.codec import TYPE_DOUBLE, TYPE_INT, TYPE_STRING
from bridge.src.naming import fluid_type

if TYPE_CHECKING:
    from bridge.src.history import HistoryEngine
    from bridge.src.registry import DeviceRegistry, Ready
    from bridge.src.service import VirtualDeviceService

logger = logging.getLogger(__name__)

KELVIN_THRESHOLD = 200.0
KELVIN_OFFSET = 273.15
JOULES_PER_WH = 3600.0
FALLBACK_VOLTAGE = 12.0

NUMBER = "number"
TEXT = "text"
FLAG = "flag"

Change = tuple[str, object, str]
"""(D-Bus path, value, type tag) to push into a service."""

AuxSource = Callable[[], tuple[object, object]]


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def as_number(value: object) -> float | None:
    """Return *value* as a finite float; booleans, strings and NaN give None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def as_flag(value: object) -> int | None:
    """Return 0/1 for booleans and numbers, None otherwise."""
    if isinstance(value, bool):
        return int(value)
    number = as_number(value)
    if number is None:
        return None
    return 1 if number else 0


def to_celsius(value: float) -> float:
    return value - KELVIN_OFFSET if value > KELVIN_THRESHOLD else value


def to_percent(value: float) -> float:
    # Values above 1 are assumed to be percentages already.
    return value if value > 1 else value * 100.0


# ---------------------------------------------------------------------------
# Base client
# ---------------------------------------------------------------------------


class DeviceClient:
    """Routes Signal K updates of one device type into virtual devices.

    Args:
        registry: Shared device registry.
        history: Shared history engine (used by batteries).
        aux_currents: Returns the latest solar and charger currents.
    """

    device_type = ""
    prefix = ""
    leaf_pattern: re.Pattern[str] = re.compile(r"$^")
    leaf_kinds: dict[str, str] = {}

    def __init__(
        self,
        registry: DeviceRegistry,
        *,
        history: HistoryEngine | None = None,
        aux_currents: AuxSource | None = None,
    ) -> None:
        self.registry = registry
        self.history = history
        self._aux_currents = aux_currents or (lambda: (None, None))
        self._seen: set[str] = set()

    def is_relevant(self, path: str) -> bool:
        return path.startswith(self.prefix) and self.leaf_pattern.search(path) is not None

    def base_path(self, path: str) -> str:
        return self.leaf_pattern.sub("", path)

    def leaf_of(self, path: str) -> str:
        return path[len(self.base_path(path)) + 1 :]

    def _kind_of(self, leaf: str) -> str | None:
        return self.leaf_kinds.get(leaf)

    def accepts(self, path: str, value: object) -> bool:
        """True if *path* is ours and *value* has the kind its leaf needs."""
        if value is None or not self.is_relevant(path):
            return False
        kind = self._kind_of(self.leaf_of(path))
        if kind == NUMBER:
            return as_number(value) is not None
        if kind == FLAG:
            return as_flag(value) is not None
        if kind == TEXT:
            return isinstance(value, str)
        return False

    async def handle_update(self, path: str, value: object) -> bool:
        """Apply one Signal K reading.

        Returns:
            True if the reading reached a device.

        Raises:
            ConcurrencyTimeoutError: If the device is still being created
                by another caller after the registry's timeout.
            TransportError: If creating the device failed.
        """
        if not self.accepts(path, value):
            return False

        base = self.base_path(path)
        ready = await self.registry.get_or_create(path, self.device_type, base)
        if ready is None:
            logger.debug("Dropped update %s: device creation failed elsewhere", path)
            return False
        if base not in self._seen:
            self._seen.add(base)
            self.on_created(ready)

        leaf = self.leaf_of(path)
        for dbus_path, converted, type_tag in self.convert(leaf, value, ready.service):
            ready.service.update_property(dbus_path, converted, type_tag)
        self.after_update(leaf, ready)
        return True

    def on_created(self, ready: Ready) -> None:
        """Hook run once per device, on its first handled update."""

    def convert(self, leaf: str, value: object, service: VirtualDeviceService) -> list[Change]:
        raise NotImplementedError

    def after_update(self, leaf: str, ready: Ready) -> None:
        """Hook run after the converted values were pushed."""

    def to_signalk(self, dbus_path: str, value: object) -> tuple[str, object] | None:
        """Map a value written by the GX device back to a Signal K leaf and value."""
        return None


# ---------------------------------------------------------------------------
# Battery
# ---------------------------------------------------------------------------


class BatteryClient(DeviceClient):
    device_type = "battery"
    prefix = "electrical.batteries."
    leaf_pattern = re.compile(
        r"\.(voltage|current|stateOfCharge|consumed|timeRemaining|relay|temperature|name|capacity\..*|power)$"
    )
    leaf_kinds = {
        "voltage": NUMBER,
        "current": NUMBER,
        "power": NUMBER,
        "temperature": NUMBER,
        "stateOfCharge": NUMBER,
        "capacity.stateOfCharge": NUMBER,
        "timeRemaining": NUMBER,
        "capacity.timeRemaining": NUMBER,
        "consumed": NUMBER,
        "capacity.consumed": NUMBER,
        "capacity.nominal": NUMBER,
        "relay": FLAG,
        "name": TEXT,
    }

    _ELECTRICAL_LEAVES = frozenset({"voltage", "current", "power"})

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._power_supplied: set[str] = set()
        self._consumed_supplied: set[str] = set()
        self._time_remaining: dict[str, float] = {}

    def on_created(self, ready: Ready) -> None:
        if self.history is not None:
            self.history.request_save()

    def convert(self, leaf: str, value: object, service: VirtualDeviceService) -> list[Change]:
        base = service.instance.base_path
        if leaf == "name":
            return [("/CustomName", value, TYPE_STRING)]
        if leaf == "relay":
            return [("/Relay/0/State", as_flag(value), TYPE_INT)]

        number = as_number(value)
        if leaf == "voltage":
            return [("/Dc/0/Voltage", number, TYPE_DOUBLE)]
        if leaf == "current":
            return [("/Dc/0/Current", number, TYPE_DOUBLE)]
        if leaf == "power":
            self._power_supplied.add(base)
            return [("/Dc/0/Power", number, TYPE_DOUBLE)]
        if leaf == "temperature":
            return [("/Dc/0/Temperature", to_celsius(number), TYPE_DOUBLE)]
        if leaf in ("stateOfCharge", "capacity.stateOfCharge"):
            return [("/Soc", to_percent(number), TYPE_DOUBLE)]
        if leaf in ("timeRemaining", "capacity.timeRemaining"):
            self._time_remaining[base] = number
            return []
        if leaf in ("consumed", "capacity.consumed"):
            self._consumed_supplied.add(base)
            return [("/ConsumedAmphours", -abs(number), TYPE_DOUBLE)]
        if leaf == "capacity.nominal":
            voltage = as_number(service.value_of("/Dc/0/Voltage")) or FALLBACK_VOLTAGE
            return [("/Capacity", number / JOULES_PER_WH / voltage, TYPE_DOUBLE)]
        return []

    def after_update(self, leaf: str, ready: Ready) -> None:
        service = ready.service
        base = ready.instance.base_path
        volts = as_number(service.value_of("/Dc/0/Voltage"))
        amps = as_number(service.value_of("/Dc/0/Current"))

        if leaf in self._ELECTRICAL_LEAVES and base not in self._power_supplied and volts is not None and amps is not None:
            service.update_property("/Dc/0/Power", volts * amps, TYPE_DOUBLE)

        if self.history is None:
            return
        capacity = service.value_of("/Capacity")
        soc = service.value_of("/Soc")

        time_to_go = self.history.time_to_go(self._time_remaining.get(base), capacity, soc, amps)
        if time_to_go is not None:
            service.update_property("/TimeToGo", time_to_go, TYPE_INT)
        if base not in self._consumed_supplied:
            consumed = self.history.consumed_amphours(capacity, soc)
            if consumed is not None:
                service.update_property("/ConsumedAmphours", consumed, TYPE_DOUBLE)

        if leaf not in self._ELECTRICAL_LEAVES:
            return
        record = self.history.update(
            base,
            volts,
            amps,
            service.value_of("/Dc/0/Power"),
            aux_currents=self._aux_currents(),
        )
        service.update_property("/History/MinimumVoltage", record.min_voltage, TYPE_DOUBLE)
        service.update_property("/History/MaximumVoltage", record.max_voltage, TYPE_DOUBLE)
        service.update_property("/History/DischargedEnergy", record.discharged_energy, TYPE_DOUBLE)
        service.update_property("/History/ChargedEnergy", record.charged_energy, TYPE_DOUBLE)
        service.update_property("/History/TotalAhDrawn", record.total_ah_drawn, TYPE_DOUBLE)

    def to_signalk(self, dbus_path: str, value: object) -> tuple[str, object] | None:
        if dbus_path == "/Relay/0/State":
            return "relay", bool(value)
        return None


# ---------------------------------------------------------------------------
# Tank
# ---------------------------------------------------------------------------


class TankClient(DeviceClient):
    device_type = "tank"
    prefix = "tanks."
    leaf_pattern = re.compile(r"\.(currentLevel|capacity|name|currentVolume|voltage)$")
    leaf_kinds = {
        "currentLevel": NUMBER,
        "capacity": NUMBER,
        "currentVolume": NUMBER,
        "voltage": NUMBER,
        "name": TEXT,
    }

    def on_created(self, ready: Ready) -> None:
        ready.service.update_property("/FluidType", fluid_type(ready.instance.base_path), TYPE_INT)

    def convert(self, leaf: str, value: object, service: VirtualDeviceService) -> list[Change]:
        if leaf == "name":
            return [("/Name", value, TYPE_STRING)]
        number = as_number(value)
        if leaf == "currentLevel":
            return [("/Level", to_percent(number), TYPE_DOUBLE)]
        if leaf == "capacity":
            return [("/Capacity", number, TYPE_DOUBLE)]
        if leaf == "currentVolume":
            return [("/Volume", number, TYPE_DOUBLE)]
        if leaf == "voltage":
            return [("/Voltage", number, TYPE_DOUBLE)]
        return []

    def after_update(self, leaf: str, ready: Ready) -> None:
        if leaf not in ("currentLevel", "capacity"):
            return
        capacity = as_number(ready.service.value_of("/Capacity"))
        level = as_number(ready.service.value_of("/Level"))
        if capacity is not None and level is not None:
            ready.service.update_property("/Remaining", capacity * level / 100.0, TYPE_DOUBLE)


# ---------------------------------------------------------------------------
# Switch
# ---------------------------------------------------------------------------


class SwitchClient(DeviceClient):
    device_type = "switch"
    prefix = "electrical.switches."
    leaf_pattern = re.compile(r"\.(state|dimmingLevel|position|name)$")
    leaf_kinds = {
        "state": FLAG,
        "dimmingLevel": NUMBER,
        "position": NUMBER,
        "name": TEXT,
    }

    def convert(self, leaf: str, value: object, service: VirtualDeviceService) -> list[Change]:
        if leaf == "state":
            state = as_flag(value)
            return [("/State", state, TYPE_INT), ("/Relay/0/State", state, TYPE_INT)]
        if leaf == "name":
            return [("/Name", value, TYPE_STRING)]
        number = as_number(value)
        if leaf == "dimmingLevel":
            return [("/DimmingLevel", int(round(to_percent(number))), TYPE_INT)]
        if leaf == "position":
            return [("/Position", int(round(number)), TYPE_INT)]
        return []

    def to_signalk(self, dbus_path: str, value: object) -> tuple[str, object] | None:
        if dbus_path in ("/State", "/Relay/0/State"):
            return "state", bool(value)
        if dbus_path == "/DimmingLevel":
            number = as_number(value)
            return ("dimmingLevel", number / 100.0) if number is not None else None
        return None


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


class EnvironmentClient(DeviceClient):
    device_type = "environment"
    prefix = "environment."
    engine_prefix = "propulsion."
    leaf_pattern = re.compile(r"\.(temperature|humidity|relativeHumidity)$")
    leaf_kinds = {
        "temperature": NUMBER,
        "humidity": NUMBER,
        "relativeHumidity": NUMBER,
    }

    def is_relevant(self, path: str) -> bool:
        # Only propulsion.<engine>.temperature is read from the engines.
        if path.startswith(self.engine_prefix):
            return path.endswith(".temperature") and path.count(".") == 2
        return super().is_relevant(path)

    def convert(self, leaf: str, value: object, service: VirtualDeviceService) -> list[Change]:
        number = as_number(value)
        if leaf == "temperature":
            return [("/Temperature", to_celsius(number), TYPE_DOUBLE)]
        return [("/Humidity", to_percent(number), TYPE_DOUBLE)]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

CLIENT_TYPES: dict[str, type[DeviceClient]] = {
    cls.device_type: cls for cls in (BatteryClient, TankClient, SwitchClient, EnvironmentClient)
}


def create_client(device_type: str, registry: DeviceRegistry, **kwargs) -> DeviceClient:
    """Build the client for *device_type*.

    Raises:
        ValueError: If the device type is unknown.
    """
    try:
        cls = CLIENT_TYPES[device_type]
    except KeyError:
        raise ValueError(f"Unsupported device type '{device_type}'") from None
    return cls(registry, **kwargs)
