"""
Virtual Venus OS device service.

One VirtualDeviceService per DeviceInstance. It owns its own D-Bus
connection, the authoritative path -> value map of the device, the exported
BusItem objects and the per-device connection supervisor.

Registration sequence (on first connect and on every reconnect):

1. Publish every known path (static properties were declared locally at
   construction, so reads never fail while registration is pending).
2. Propose ``<serviceType>:<localIndex>`` and the display name to
   com.victronenergy.settings (AddSettings); adopt the instance number the
   registrar hands back. Failure keeps the local index.
3. Request ``com.victronenergy.<serviceType>.signalk_<localIndex>``. This
   must succeed.
4. Broadcast a ServiceAnnouncement signal. Failure is logged only.

Change signals, in this order: root ItemsChanged, then for critical paths the
path-scoped BusItem PropertiesChanged and the standard
org.freedesktop.DBus.Properties PropertiesChanged (the "value changed"
signal). No signal leaves while the device has no serial or no connection.

Supervision: heartbeat (refresh /Connected, peer ping), connection check
(daemon ping) and registration check (GetItems on our own bus name) run on
one supervisor task. Heartbeat or connection failures start the reconnect
loop; a failed registration check re-runs the full registration sequence.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from dbus_fast import Variant

from bridge.src.busitem import BUSITEM_INTERFACE, SET_ACCEPTED, SET_REJECTED, BusItem, RootBusItem
from bridge.src.codec import TYPE_INT, TYPE_STRING, format_text, type_for, unwrap, wrap
from bridge.src.connection import (
    ConnectionState,
    ConnectionStateMachine,
    ConnectionSupervisor,
    PeriodicCheck,
    ReconnectPolicy,
)
from bridge.src.device_configs import (
    CONNECTION_TEXT,
    CRITICAL_PATHS,
    MANAGEMENT_PATHS,
    PRODUCT_ID,
    DeviceConfig,
    management_properties,
)
from bridge.src.exceptions import AnnouncementError, RegistrationError, TransportError, ValidationError

if TYPE_CHECKING:
    from bridge.src.config import BridgeSettings
    from bridge.src.models import DeviceInstance
    from bridge.src.transport import DbusTransport

logger = logging.getLogger(__name__)

SETTINGS_SERVICE = "com.victronenergy.settings"
SETTINGS_INTERFACE = "com.victronenergy.Settings"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

WriteCallback = Callable[[str, str, object], Awaitable[None] | None]
"""``on_write(base_path, dbus_path, value)`` for values written by the GX device."""


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Variant) else value


class VirtualDeviceService:
    """Emulates one Victron device on the GX device's D-Bus.

    Args:
        instance: Identity of the device.
        config: Static description of the device class.
        settings: Bridge settings (supervision intervals).
        transport_factory: Returns a fresh, unconnected transport.
        on_write: Called when the GX device writes a value.
    """

    def __init__(
        self,
        instance: DeviceInstance,
        config: DeviceConfig,
        settings: BridgeSettings,
        *,
        transport_factory: Callable[[], DbusTransport],
        on_write: WriteCallback | None = None,
    ) -> None:
        self.instance = instance
        self.config = config
        self.bus_name = f"com.victronenergy.{config.service_type}.signalk_{instance.local_index}"
        self.settings_prefix = f"/Settings/Devices/signalk_{instance.local_index}"
        self.transport: DbusTransport | None = None
        self.device_data: dict[str, object] = {}
        self.state = ConnectionStateMachine(self.bus_name)
        self.policy = ReconnectPolicy()
        self._transport_factory = transport_factory
        self._on_write = on_write
        self._types: dict[str, str] = {}
        self._labels: dict[str, str] = {}
        self._units: dict[str, str] = {}
        self._interfaces: dict[str, BusItem] = {}
        self._root = RootBusItem(self, config.service_description)
        self._published_on: DbusTransport | None = None
        self._write_tasks: set[asyncio.Task] = set()
        self._closed = False
        self._supervisor = ConnectionSupervisor(
            self.bus_name,
            (
                PeriodicCheck("heartbeat", settings.heartbeat_interval_s, self._heartbeat),
                PeriodicCheck("connection", settings.connection_check_interval_s, self._connection_check),
                PeriodicCheck("registration", settings.registration_check_interval_s, self._registration_check),
            ),
        )
        self._declare_static()

    # ------------------------------------------------------------------
    # Introspection helpers
    # ------------------------------------------------------------------

    @property
    def exported_paths(self) -> frozenset[str]:
        return frozenset(self._interfaces)

    @property
    def connection_state(self) -> ConnectionState:
        return self.state.state

    @property
    def serial(self) -> str | None:
        value = self.device_data.get("/Serial")
        return value if isinstance(value, str) and value else None

    def value_of(self, path: str) -> object:
        return self.device_data.get(path)

    # BusItemOwner

    def variant_for(self, path: str) -> Variant:
        return wrap(self._type_of(path), self.device_data.get(path))

    def text_for(self, path: str) -> str:
        return format_text(self.device_data.get(path), self._units.get(path, ""))

    def item_paths(self) -> list:
        return list(self._interfaces)

    def set_from_bus(self, path: str, value: Variant) -> int:
        """Handle SetValue / Properties.Set coming from the GX device."""
        if path in MANAGEMENT_PATHS:
            logger.info("%s: rejected write to management path %s", self.bus_name, path)
            return SET_REJECTED
        try:
            raw = unwrap(value) if isinstance(value, Variant) else value
            normalized = unwrap(wrap(self._type_of(path), raw))
        except ValidationError:
            logger.warning("%s: rejected invalid write %r to %s", self.bus_name, value, path)
            return SET_REJECTED
        if path in self.device_data and self.device_data[path] == normalized:
            return SET_ACCEPTED

        self.update_property(path, normalized)
        if self._on_write is not None:
            self._dispatch_write(path, normalized)
        return SET_ACCEPTED

    def _dispatch_write(self, path: str, value: object) -> None:
        try:
            result = self._on_write(self.instance.base_path, path, value)  # type: ignore[misc]
        except Exception:
            logger.error("%s: write-back handler failed for %s", self.bus_name, path, exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._write_tasks.add(task)
            task.add_done_callback(self._write_tasks.discard)

    def _type_of(self, path: str) -> str:
        return self._types.get(path) or self.config.type_for(path)

    # ------------------------------------------------------------------
    # Local property table
    # ------------------------------------------------------------------

    def _declare_static(self) -> None:
        props = management_properties(
            self.config,
            device_instance=self.instance.vrm_instance_id,
            custom_name=self.instance.display_name,
            serial=self.instance.serial,
        ) + self.config.properties
        for prop in props:
            self._declare(prop.path, prop.type_tag, prop.label, prop.unit, prop.default)

    def _declare(self, path: str, type_tag: str, label: str, unit: str, value: object) -> None:
        # The type tag of a path is fixed by its first declaration.
        self._types.setdefault(path, type_tag)
        self._labels[path] = label
        self._units[path] = unit
        self.device_data[path] = value
        item = BusItem(path, self)
        self._interfaces[path] = item
        if self.transport is not None and self._published_on is self.transport:
            try:
                self.transport.export(path, item)
            except TransportError:
                logger.debug("%s: export of %s deferred until reconnect", self.bus_name, path)

    def _publish_all(self) -> None:
        """Export every known path on the current connection, once per connection."""
        transport = self._require_transport()
        if self._published_on is transport:
            return
        transport.export("/", self._root)
        for path, item in self._interfaces.items():
            transport.export(path, item)
        self._published_on = transport
        logger.debug("%s: published %d paths", self.bus_name, len(self._interfaces))

    def _require_transport(self) -> DbusTransport:
        if self.transport is None or not self.transport.connected:
            raise TransportError(f"{self.bus_name}: no open connection")
        return self.transport

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Connect, register and start supervision.

        Raises:
            TransportError: If the connection cannot be opened or the bus
                name cannot be acquired. Registrar and announcement failures
                are logged and degrade instead.
        """
        self._closed = False
        self.state.transition(ConnectionState.CONNECTING)
        try:
            await self._connect()
            await self._register()
        except TransportError:
            self._drop_transport()
            self.state.transition(ConnectionState.DISCONNECTED)
            raise
        self.state.transition(ConnectionState.CONNECTED)
        self.policy.reset()
        self._supervisor.start()
        logger.info(
            "%s: registered '%s' as %s:%d",
            self.bus_name,
            self.instance.display_name,
            self.config.service_type,
            self.instance.vrm_instance_id,
        )

    async def disconnect(self) -> None:
        """Stop supervision, close the connection and clear state. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._supervisor.stop()
        self._drop_transport()
        self.state.transition(ConnectionState.DISCONNECTED)
        self.device_data.clear()
        self._interfaces.clear()
        logger.info("%s: disconnected", self.bus_name)

    async def _connect(self) -> None:
        transport = self._transport_factory()
        await transport.connect()
        self.transport = transport

    def _drop_transport(self) -> None:
        transport, self.transport = self.transport, None
        self._published_on = None
        if transport is not None:
            transport.disconnect()

    async def _register(self) -> None:
        self._publish_all()
        await self._register_settings()
        await self._require_transport().request_name(self.bus_name)
        try:
            self._announce()
        except AnnouncementError:
            logger.warning("%s: service announcement failed", self.bus_name, exc_info=True)

    # ------------------------------------------------------------------
    # Settings registrar
    # ------------------------------------------------------------------

    def _settings_entries(self) -> list[dict[str, Variant]]:
        proposal = f"{self.config.service_type}:{self.instance.local_index}"
        return [
            {
                "path": Variant("s", f"{self.settings_prefix}/ClassAndVrmInstance"),
                "default": Variant("s", proposal),
                "type": Variant("s", "s"),
                "description": Variant("s", "Class and VRM instance"),
            },
            {
                "path": Variant("s", f"{self.settings_prefix}/CustomName"),
                "default": Variant("s", self.instance.display_name),
                "type": Variant("s", "s"),
                "description": Variant("s", "Custom name"),
            },
        ]

    async def _register_settings(self) -> None:
        """Ask the registrar for our instance number; keep the local one on failure."""
        try:
            body = await self._require_transport().call(
                SETTINGS_SERVICE,
                "/",
                SETTINGS_INTERFACE,
                "AddSettings",
                "aa{sv}",
                [self._settings_entries()],
            )
            assigned = self.parse_assigned_instance(body)
        except (TransportError, RegistrationError):
            logger.warning(
                "%s: settings registration failed, keeping instance %d",
                self.bus_name,
                self.instance.vrm_instance_id,
                exc_info=True,
            )
            return

        if assigned != self.instance.vrm_instance_id:
            logger.info(
                "%s: registrar assigned instance %d (proposed %d)",
                self.bus_name,
                assigned,
                self.instance.local_index,
            )
        self.instance.vrm_instance_id = assigned
        self.update_property("/DeviceInstance", assigned, TYPE_INT)

    def parse_assigned_instance(self, body: list[Any]) -> int:
        """Extract the instance number from an AddSettings reply.

        Raises:
            RegistrationError: If the reply carries no well-formed
                ClassAndVrmInstance value for our service type.
        """
        results = body[0] if body else None
        if not isinstance(results, list):
            raise RegistrationError(f"Unexpected AddSettings reply: {body!r}")
        pattern = re.compile(rf"^{re.escape(self.config.service_type)}:(\d+)$")
        for item in results:
            if not isinstance(item, dict):
                continue
            path = _plain(item.get("path"))
            if not isinstance(path, str) or not path.endswith("/ClassAndVrmInstance"):
                continue
            value = _plain(item.get("value"))
            match = pattern.match(value) if isinstance(value, str) else None
            if match is None:
                raise RegistrationError(f"Malformed instance value {value!r}")
            return int(match.group(1))
        raise RegistrationError("AddSettings reply has no ClassAndVrmInstance entry")

    def _announce(self) -> None:
        try:
            self._require_transport().emit_signal(
                "/",
                BUSITEM_INTERFACE,
                "ServiceAnnouncement",
                "siiss",
                [
                    self.bus_name,
                    self.instance.vrm_instance_id,
                    PRODUCT_ID,
                    self.config.product_name,
                    CONNECTION_TEXT,
                ],
            )
        except TransportError as exc:
            raise AnnouncementError(f"{self.bus_name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Updates and signals
    # ------------------------------------------------------------------

    def _default_type(self, path: str, value: object) -> str:
        """Declared type of *path*, or one inferred from *value* for undeclared paths."""
        if value is None or self.config.property_for(path) is not None or path in self.config.path_types:
            return self.config.type_for(path)
        return type_for(value)

    def update_property(
        self,
        path: str,
        value: object,
        type_tag: str | None = None,
        label: str | None = None,
        unit: str | None = None,
    ) -> bool:
        """Store a value, exporting the path on first use, and signal the change.

        Signals go out when the value changed, or always for critical paths.

        Returns:
            True if change signals were emitted.
        """
        if self._closed:
            return False
        try:
            tag = self._types.get(path) or type_tag or self._default_type(path, value)
            normalized = unwrap(wrap(tag, value))
        except ValidationError:
            logger.debug("%s: dropped invalid value %r for %s", self.bus_name, value, path)
            return False

        if path not in self._interfaces:
            prop = self.config.property_for(path)
            self._declare(
                path,
                tag,
                label or self.config.label_for(path),
                unit if unit is not None else (prop.unit if prop is not None else ""),
                normalized,
            )
            changed = True
        else:
            changed = self.device_data.get(path) != normalized
            self.device_data[path] = normalized

        if not changed and path not in CRITICAL_PATHS:
            return False
        return self._emit_changes(path)

    def _check_can_signal(self) -> DbusTransport:
        if self.serial is None:
            raise ValidationError(f"{self.bus_name}: no serial registered")
        if self.transport is None or not self.transport.connected:
            raise ValidationError(f"{self.bus_name}: transport is down")
        return self.transport

    def _emit_changes(self, path: str) -> bool:
        try:
            transport = self._check_can_signal()
        except ValidationError as exc:
            logger.debug("Suppressing signals for %s: %s", path, exc)
            return False

        variant = self.variant_for(path)
        text = Variant(TYPE_STRING, self.text_for(path))
        try:
            transport.emit_signal(
                "/",
                BUSITEM_INTERFACE,
                "ItemsChanged",
                "a{sa{sv}}",
                [{path: {"Value": variant, "Text": text}}],
            )
            if path in CRITICAL_PATHS:
                transport.emit_signal(
                    path,
                    BUSITEM_INTERFACE,
                    "PropertiesChanged",
                    "a{sv}",
                    [{"Value": variant, "Text": text}],
                )
                transport.emit_signal(
                    path,
                    PROPERTIES_INTERFACE,
                    "PropertiesChanged",
                    "sa{sv}as",
                    [BUSITEM_INTERFACE, {"Value": variant}, []],
                )
        except TransportError:
            logger.warning("%s: failed to emit signals for %s", self.bus_name, path, exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def _heartbeat(self) -> None:
        if self.state.state is not ConnectionState.CONNECTED:
            return
        try:
            self.update_property("/Connected", 1, TYPE_INT)
            await self._require_transport().peer_ping()
        except TransportError:
            logger.warning("%s: heartbeat failed", self.bus_name, exc_info=True)
            await self._reconnect()

    async def _connection_check(self) -> None:
        if self.state.state is not ConnectionState.CONNECTED:
            return
        try:
            await self._require_transport().ping()
        except TransportError:
            logger.warning("%s: connection check failed", self.bus_name, exc_info=True)
            await self._reconnect()

    async def _registration_check(self) -> None:
        if self.state.state is not ConnectionState.CONNECTED:
            return
        try:
            await self._require_transport().call(self.bus_name, "/", BUSITEM_INTERFACE, "GetItems")
            return
        except TransportError:
            logger.warning("%s: bus name no longer resolves, re-registering", self.bus_name, exc_info=True)
        try:
            await self._register()
        except TransportError:
            logger.warning("%s: re-registration failed", self.bus_name, exc_info=True)
            await self._reconnect()

    async def _reconnect(self) -> None:
        """Reconnect with backoff; give up (DISCONNECTED) when retries run out."""
        if not self.state.transition(ConnectionState.RECONNECTING):
            return
        self._drop_transport()
        while True:
            delay_ms = self.policy.next_delay_ms()
            if delay_ms is None:
                logger.error(
                    "%s: giving up after %d reconnect attempts",
                    self.bus_name,
                    self.policy.max_attempts,
                )
                self.state.transition(ConnectionState.DISCONNECTED)
                self._supervisor.request_stop()
                return

            logger.info("%s: reconnecting in %d ms (attempt %d)", self.bus_name, delay_ms, self.policy.attempts)
            if not await self._supervisor.sleep(delay_ms / 1000):
                return
            self.state.transition(ConnectionState.CONNECTING)
            try:
                await self._connect()
                await self._register()
            except TransportError:
                logger.warning("%s: reconnect attempt failed", self.bus_name, exc_info=True)
                self._drop_transport()
                self.state.transition(ConnectionState.RECONNECTING)
                continue

            self.state.transition(ConnectionState.CONNECTED)
            self.policy.reset()
            logger.info("%s: reconnected", self.bus_name)
            return
