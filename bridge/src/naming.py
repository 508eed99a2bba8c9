"""
Display names and unit classes derived from Signal K paths.

Pure functions: the device name shown on the GX device and in VRM is built
from the base path ``<domain>.<subtype>.<instance>`` with a per-type label
table. A generic instance id (``0``, ``main``, ``primary``, ``default``) is
left out of the name while it is the only device of its subtype.

Names are evaluated once, when a device is created. A device created while
it was the only one of its subtype keeps its short name after siblings show
up; already-created devices are never renamed.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import re

from bridge.src.device_configs import FLUID_TYPES

GENERIC_IDS: frozenset[str] = frozenset({"0", "main", "primary", "default"})
"""Instance ids that carry no information on their own."""

_SUBTYPE_LABELS: dict[str, dict[str, str]] = {
    "battery": {"batteries": "Battery"},
    "tank": {
        "fuel": "Fuel",
        "freshWater": "Freshwater",
        "wasteWater": "Wastewater",
        "blackWater": "Blackwater",
        "liveWell": "Livewell",
        "baitWell": "Baitwell",
        "lubrication": "Lubrication",
        "gas": "Gas",
        "ballast": "Ballast",
    },
    "switch": {"switches": "Switch"},
    "environment": {
        "outside": "Outside",
        "inside": "Inside",
        "water": "Water",
        "port": "Port",
        "starboard": "Starboard",
    },
}

_TITLE_CASE_TYPES = frozenset({"environment", "switch"})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _capitalize(word: str) -> str:
    return word[:1].upper() + word[1:]


def camel_to_title(identifier: str) -> str:
    """Convert ``cabinLights`` to ``Cabin Lights``."""
    return " ".join(_capitalize(part) for part in _CAMEL_BOUNDARY.split(identifier))


def subtype_label(device_type: str, subtype: str) -> str:
    """Look up the display label of *subtype*, capitalising unknown ones."""
    label = _SUBTYPE_LABELS.get(device_type, {}).get(subtype)
    if label is not None:
        return label
    if device_type in _TITLE_CASE_TYPES:
        return camel_to_title(subtype)
    return _capitalize(subtype)


def _display_id(instance_id: str, device_type: str) -> str:
    if instance_id.isdigit():
        return str(int(instance_id) + 1)
    if device_type in _TITLE_CASE_TYPES:
        return camel_to_title(instance_id)
    return _capitalize(instance_id)


def device_name(path: str, device_type: str, sibling_count: int) -> str:
    """Derive the display name of a device.

    Args:
        path: Base path of the device, e.g. ``"tanks.freshWater.0"``.
        device_type: ``battery``, ``tank``, ``switch`` or ``environment``.
        sibling_count: Number of known devices sharing the subtype,
            including this one.

    Returns:
        A human-readable name such as ``"Freshwater"``, ``"Fuel Starboard"``,
        ``"Battery House"`` or ``"Cabin Lights"``.
    """
    parts = path.split(".")
    if len(parts) < 2 or not parts[1]:
        return f"Unknown {_capitalize(device_type)}"

    subtype = parts[1]
    label = subtype_label(device_type, subtype)
    if len(parts) < 3 or not parts[2]:
        return label

    instance_id = parts[2]
    if instance_id in GENERIC_IDS and sibling_count <= 1:
        return label

    # Switches are named by their own id; the "Switch" label only shows
    # for a lone generic or numeric id.
    if device_type == "switch" and not instance_id.isdigit():
        return camel_to_title(instance_id)

    return f"{label} {_display_id(instance_id, device_type)}"


def fluid_type(path: str) -> int:
    """Return the NMEA 2000 fluid type code for a tank path (0 when unknown)."""
    parts = path.split(".")
    if len(parts) < 2:
        return 0
    return FLUID_TYPES.get(parts[1], 0)
