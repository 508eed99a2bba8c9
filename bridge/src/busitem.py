"""
Exported D-Bus object model of a virtual device.

Every exported path carries a ``com.victronenergy.BusItem`` interface. The
GX device reads values through GetValue/GetText and writes through SetValue;
its aggregator also goes through ``org.freedesktop.DBus.Properties``, so each
interface mirrors the same data as the ``Value`` and ``Text`` properties.

The interfaces hold no state of their own. They call back into an owner (the
VirtualDeviceService) that keeps the authoritative path -> value map. The
D-Bus methods delegate to plain methods so the same logic is callable
without a bus.

Note: this module must not use postponed annotations; dbus-fast reads the
D-Bus signatures ("v", "s", "i", ...) from the method annotations.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

import logging
from typing import Protocol

from dbus_fast import Variant
from dbus_fast.constants import ErrorType, PropertyAccess
from dbus_fast.errors import DBusError
from dbus_fast.service import ServiceInterface, dbus_property, method

logger = logging.getLogger(__name__)

BUSITEM_INTERFACE = "com.victronenergy.BusItem"

SET_ACCEPTED = 0
SET_REJECTED = 1
ROOT_SET_REJECTED = -1


class BusItemOwner(Protocol):
    """What a BusItem needs from the service that owns the data."""

    def variant_for(self, path: str) -> Variant: ...

    def text_for(self, path: str) -> str: ...

    def set_from_bus(self, path: str, value: Variant) -> int: ...

    def item_paths(self) -> list: ...


class BusItem(ServiceInterface):
    """BusItem interface exported at a single property path."""

    def __init__(self, path: str, owner: BusItemOwner) -> None:
        super().__init__(BUSITEM_INTERFACE)
        self.path = path
        self._owner = owner

    def get_value(self) -> Variant:
        return self._owner.variant_for(self.path)

    def get_text(self) -> str:
        return self._owner.text_for(self.path)

    def set_value(self, value: Variant) -> int:
        return self._owner.set_from_bus(self.path, value)

    def write_value(self, value: Variant) -> None:
        """Properties.Set counterpart of SetValue; a rejection becomes a D-Bus error."""
        if self.set_value(value) != SET_ACCEPTED:
            raise DBusError(ErrorType.ACCESS_DENIED, f"Write to {self.path} rejected")

    @method()
    def GetValue(self) -> "v":  # noqa: F821
        return self.get_value()

    @method()
    def SetValue(self, value: "v") -> "i":  # noqa: F821
        return self.set_value(value)

    @method()
    def GetText(self) -> "s":  # noqa: F821
        return self.get_text()

    @dbus_property()
    def Value(self) -> "v":  # noqa: F821
        return self.get_value()

    @Value.setter
    def Value_setter(self, value: "v"):  # noqa: F821
        self.write_value(value)

    @dbus_property(access=PropertyAccess.READ)
    def Text(self) -> "s":  # noqa: F821
        return self.get_text()


class RootBusItem(ServiceInterface):
    """BusItem interface exported at ``/``: read-only views over every path.

    Flattened maps are keyed by the path without its leading slash, the form
    the GX device's own services use.
    """

    def __init__(self, owner: BusItemOwner, description: str) -> None:
        super().__init__(BUSITEM_INTERFACE)
        self._owner = owner
        self.description = description

    def get_items(self) -> dict:
        return {
            path: {
                "Value": self._owner.variant_for(path),
                "Text": Variant("s", self._owner.text_for(path)),
            }
            for path in self._owner.item_paths()
        }

    def get_values(self) -> dict:
        return {path.lstrip("/"): self._owner.variant_for(path) for path in self._owner.item_paths()}

    def get_texts(self) -> dict:
        return {path.lstrip("/"): self._owner.text_for(path) for path in self._owner.item_paths()}

    @method()
    def GetItems(self) -> "a{sa{sv}}":  # noqa: F821
        return self.get_items()

    @method()
    def GetValue(self) -> "v":  # noqa: F821
        return Variant("a{sv}", self.get_values())

    @method()
    def GetText(self) -> "v":  # noqa: F821
        return Variant("a{ss}", self.get_texts())

    @method()
    def SetValue(self, value: "v") -> "i":  # noqa: F821
        logger.debug("Rejected SetValue on root")
        return ROOT_SET_REJECTED

    @dbus_property(access=PropertyAccess.READ)
    def Value(self) -> "v":  # noqa: F821
        return Variant("a{sv}", self.get_values())

    @dbus_property(access=PropertyAccess.READ)
    def Text(self) -> "v":  # noqa: F821
        return Variant("a{ss}", self.get_texts())
