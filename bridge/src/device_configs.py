"""
Static per-device-type property tables: the single source of truth.

Defines, for each emulated Victron device class, the D-Bus service type, the
product metadata the GX device shows, and the exported property set with
type tag, default value, label and unit. Paths not listed in a device's
property set fall back to the ``path_labels`` / ``path_types`` lookups.

These tables are plain data: no behaviour lives here.

References:
    - https://github.com/victronenergy/venus/wiki/dbus
    - NMEA 2000 PGN 127505 fluid type codes (tank /FluidType)

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field

from bridge.src.codec import TYPE_DOUBLE, TYPE_INT, TYPE_STRING

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PropertyDef:
    """Definition of a single exported BusItem path.

    Attributes:
        path: D-Bus object path, e.g. ``"/Dc/0/Voltage"``.
        type_tag: D-Bus signature of the value (``"s"``, ``"i"``, ``"d"``).
        default: Initial value; ``None`` exports the invalid sentinel.
        label: Human-readable text returned by GetText.
        unit: Engineering unit used when rendering text (may be empty).
    """

    path: str
    type_tag: str
    default: object
    label: str
    unit: str = ""


@dataclass(frozen=True, slots=True)
class DeviceConfig:
    """Static description of one emulated device class.

    Attributes:
        device_type: Bridge-side name (``battery``, ``tank``, ...).
        service_type: Victron service class used in the bus name and the
            ``ClassAndVrmInstance`` setting (``battery``, ``tank``,
            ``switch``, ``temperature``).
        product_name: Value of ``/ProductName``.
        service_description: Text returned by the root GetText.
        properties: Additional exported properties beyond management.
        path_labels: Label lookup for paths outside ``properties``.
        path_types: Type lookup for paths outside ``properties``.
    """

    device_type: str
    service_type: str
    product_name: str
    service_description: str
    properties: tuple[PropertyDef, ...]
    path_labels: dict[str, str] = field(default_factory=dict)
    path_types: dict[str, str] = field(default_factory=dict)

    def property_for(self, path: str) -> PropertyDef | None:
        """Return the static definition of *path*, if any."""
        for prop in self.properties:
            if prop.path == path:
                return prop
        return None

    def label_for(self, path: str) -> str:
        """Label of *path*, falling back to a generic service label."""
        prop = self.property_for(path)
        if prop is not None:
            return prop.label
        return self.path_labels.get(path, f"{self.service_type} property")

    def type_for(self, path: str) -> str:
        """Type tag of *path*, falling back to double."""
        prop = self.property_for(path)
        if prop is not None:
            return prop.type_tag
        return self.path_types.get(path, TYPE_DOUBLE)


# ---------------------------------------------------------------------------
# Management properties (common to every device)
# ---------------------------------------------------------------------------

PROCESS_NAME = "signalk-venus-bridge"
PROCESS_VERSION = "1.0.0"
PRODUCT_ID = 0xA3E0
"""Product id shown for every virtual device (Victron's 'unknown' range)."""

CONNECTION_TEXT = "Signal K"

MANAGEMENT_PATHS: frozenset[str] = frozenset(
    {
        "/Mgmt/ProcessName",
        "/Mgmt/ProcessVersion",
        "/Mgmt/Connection",
        "/DeviceInstance",
        "/ProductId",
        "/ProductName",
        "/Connected",
        "/Serial",
    }
)
"""Paths whose SetValue is rejected."""

CRITICAL_PATHS: frozenset[str] = frozenset(
    {
        "/Soc",
        "/Dc/0/Current",
        "/Dc/0/Voltage",
        "/ConsumedAmphours",
        "/TimeToGo",
        "/Dc/0/Power",
        "/Serial",
        "/DeviceInstance",
    }
)
"""Paths whose change signals are sent even when the value is unchanged."""

ALWAYS_PRESENT_PATHS: tuple[str, ...] = (
    "/Mgmt/ProcessName",
    "/Mgmt/ProcessVersion",
    "/Mgmt/Connection",
    "/DeviceInstance",
    "/ProductId",
    "/ProductName",
    "/FirmwareVersion",
    "/HardwareVersion",
    "/Connected",
    "/CustomName",
    "/Serial",
)


def management_properties(
    config: DeviceConfig,
    *,
    device_instance: int,
    custom_name: str,
    serial: str,
) -> tuple[PropertyDef, ...]:
    """Build the management property set for one device."""
    return (
        PropertyDef("/Mgmt/ProcessName", TYPE_STRING, PROCESS_NAME, "Process name"),
        PropertyDef("/Mgmt/ProcessVersion", TYPE_STRING, PROCESS_VERSION, "Process version"),
        PropertyDef("/Mgmt/Connection", TYPE_STRING, CONNECTION_TEXT, "Connection"),
        PropertyDef("/DeviceInstance", TYPE_INT, device_instance, "Device instance"),
        PropertyDef("/ProductId", TYPE_INT, PRODUCT_ID, "Product ID"),
        PropertyDef("/ProductName", TYPE_STRING, config.product_name, "Product name"),
        PropertyDef("/FirmwareVersion", TYPE_STRING, PROCESS_VERSION, "Firmware version"),
        PropertyDef("/HardwareVersion", TYPE_STRING, "virtual", "Hardware version"),
        PropertyDef("/Connected", TYPE_INT, 1, "Connected"),
        PropertyDef("/CustomName", TYPE_STRING, custom_name, "Custom name"),
        PropertyDef("/Serial", TYPE_STRING, serial, "Serial number"),
    )


# ---------------------------------------------------------------------------
# Battery
# ---------------------------------------------------------------------------

BATTERY = DeviceConfig(
    device_type="battery",
    service_type="battery",
    product_name="SignalK Virtual Battery",
    service_description="SignalK Virtual Battery Service",
    properties=(
        PropertyDef("/Dc/0/Voltage", TYPE_DOUBLE, 0.0, "Battery voltage", "V"),
        PropertyDef("/Dc/0/Current", TYPE_DOUBLE, 0.0, "Battery current", "A"),
        PropertyDef("/Dc/0/Power", TYPE_DOUBLE, 0.0, "Battery power", "W"),
        PropertyDef("/Dc/0/Temperature", TYPE_DOUBLE, None, "Battery temperature", "°C"),
        PropertyDef("/Soc", TYPE_DOUBLE, None, "State of charge", "%"),
        PropertyDef("/TimeToGo", TYPE_INT, None, "Time to go", "s"),
        PropertyDef("/ConsumedAmphours", TYPE_DOUBLE, None, "Consumed Ah", "Ah"),
        PropertyDef("/Capacity", TYPE_DOUBLE, None, "Battery capacity", "Ah"),
        PropertyDef("/System/HasBatteryMonitor", TYPE_INT, 1, "Has battery monitor"),
        PropertyDef("/Relay/0/State", TYPE_INT, 0, "Relay state"),
        PropertyDef("/History/MinimumVoltage", TYPE_DOUBLE, None, "Minimum voltage", "V"),
        PropertyDef("/History/MaximumVoltage", TYPE_DOUBLE, None, "Maximum voltage", "V"),
        PropertyDef("/History/DischargedEnergy", TYPE_DOUBLE, 0.0, "Discharged energy", "kWh"),
        PropertyDef("/History/ChargedEnergy", TYPE_DOUBLE, 0.0, "Charged energy", "kWh"),
        PropertyDef("/History/TotalAhDrawn", TYPE_DOUBLE, 0.0, "Total Ah drawn", "Ah"),
    ),
)

# ---------------------------------------------------------------------------
# Tank
# ---------------------------------------------------------------------------

TANK = DeviceConfig(
    device_type="tank",
    service_type="tank",
    product_name="SignalK Virtual Tank",
    service_description="SignalK Virtual Tank Service",
    properties=(
        PropertyDef("/Status", TYPE_INT, 0, "Tank status"),
        PropertyDef("/FluidType", TYPE_INT, 0, "Fluid type"),
        PropertyDef("/Level", TYPE_DOUBLE, None, "Tank level", "%"),
        PropertyDef("/Volume", TYPE_DOUBLE, None, "Tank volume", "m3"),
        PropertyDef("/Capacity", TYPE_DOUBLE, None, "Tank capacity", "m3"),
        PropertyDef("/Remaining", TYPE_DOUBLE, None, "Tank remaining", "m3"),
    ),
    path_labels={
        "/Name": "Tank name",
        "/Voltage": "Sender voltage",
        "/RawUnit": "Tank raw unit",
        "/RawValue": "Tank raw value",
    },
    path_types={
        "/Name": TYPE_STRING,
        "/Voltage": TYPE_DOUBLE,
        "/RawUnit": TYPE_STRING,
        "/RawValue": TYPE_DOUBLE,
    },
)

FLUID_TYPES: dict[str, int] = {
    "fuel": 0,
    "freshWater": 1,
    "wasteWater": 2,
    "liveWell": 3,
    "livewell": 3,
    "oil": 4,
    "lubrication": 4,
    "blackWater": 5,
    "gasoline": 6,
    "diesel": 7,
    "lpg": 8,
    "gas": 8,
    "lng": 9,
    "hydraulicOil": 10,
    "rawWater": 11,
}
"""Signal K tank subtype -> NMEA 2000 fluid type code."""

# ---------------------------------------------------------------------------
# Switch
# ---------------------------------------------------------------------------

SWITCH = DeviceConfig(
    device_type="switch",
    service_type="switch",
    product_name="SignalK Virtual Switch",
    service_description="SignalK Virtual Switch Service",
    properties=(
        PropertyDef("/State", TYPE_INT, 0, "Switch state"),
        PropertyDef("/Relay/0/State", TYPE_INT, 0, "Relay state"),
        PropertyDef("/DimmingLevel", TYPE_INT, None, "Dimming level", "%"),
        PropertyDef("/Position", TYPE_INT, None, "Switch position"),
    ),
    path_labels={"/Name": "Switch name"},
    path_types={"/Name": TYPE_STRING},
)

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

ENVIRONMENT = DeviceConfig(
    device_type="environment",
    service_type="temperature",
    product_name="SignalK Virtual Environment Sensor",
    service_description="SignalK Virtual Environment Service",
    properties=(
        PropertyDef("/Temperature", TYPE_DOUBLE, None, "Temperature", "°C"),
        PropertyDef("/Humidity", TYPE_DOUBLE, None, "Humidity", "%"),
        PropertyDef("/Status", TYPE_INT, 0, "Status"),
    ),
)

DEVICE_CONFIGS: dict[str, DeviceConfig] = {
    cfg.device_type: cfg for cfg in (BATTERY, TANK, SWITCH, ENVIRONMENT)
}
"""Lookup of device type -> static configuration."""
