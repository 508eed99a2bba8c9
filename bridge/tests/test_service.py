"""
Unit tests for the virtual device service (service.py).

A FakeTransport (see conftest) records everything the service puts on the
bus, so registration, export and signal behaviour can be checked without a
D-Bus daemon.

Tests verify:
- init() publishes every path once, registers settings, takes the bus name
  and announces the service.
- Registrar replies set /DeviceInstance; failures keep the local index.
- update_property() exports new paths once and signals in a fixed order.
- Critical paths signal even when unchanged; others only on change.
- No signal leaves without a serial or a connection.
- SetValue from the GX device is validated and forwarded to the write hook.
- Heartbeat failure reconnects with backoff and gives up when exhausted.
- disconnect() is idempotent.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from dbus_fast import Variant
from dbus_fast.errors import DBusError

from bridge.src.busitem import BUSITEM_INTERFACE, SET_ACCEPTED, SET_REJECTED
from bridge.src.connection import ConnectionState
from bridge.src.device_configs import PRODUCT_ID
from bridge.src.exceptions import RegistrationError, TransportError
from bridge.src.service import PROPERTIES_INTERFACE, SETTINGS_INTERFACE, SETTINGS_SERVICE

HOUSE_INDEX = 305
FUEL_INDEX = 267


def _reply(value: str) -> list:
    return [
        [
            {
                "path": Variant("s", f"/Settings/Devices/signalk_{HOUSE_INDEX}/ClassAndVrmInstance"),
                "value": Variant("s", value),
            }
        ]
    ]


class TestIdentity:
    def test_bus_name_uses_local_index(self, make_service) -> None:
        service = make_service()
        assert service.bus_name == f"com.victronenergy.battery.signalk_{HOUSE_INDEX}"
        assert service.settings_prefix == f"/Settings/Devices/signalk_{HOUSE_INDEX}"

    def test_environment_uses_temperature_service(self, make_service) -> None:
        service = make_service("environment.outside", "environment", display_name="Outside")
        assert service.bus_name.startswith("com.victronenergy.temperature.signalk_")

    def test_static_paths_declared_before_connect(self, make_service) -> None:
        """Reads work while registration is still pending."""
        service = make_service()
        assert service.value_of("/ProductName") == "SignalK Virtual Battery"
        assert service.value_of("/CustomName") == "Battery House"
        assert service.value_of("/DeviceInstance") == HOUSE_INDEX
        assert service.text_for("/Soc") == "---"
        assert "/History/TotalAhDrawn" in service.exported_paths


class TestInit:
    @pytest.mark.asyncio
    async def test_registration_sequence(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        transport = transport_factory.last

        assert service.connection_state is ConnectionState.CONNECTED
        assert transport.export_count("/") == 1
        assert transport.export_count("/Dc/0/Voltage") == 1
        assert transport.requested_names == [service.bus_name]

        (add,) = transport.calls_to("AddSettings")
        assert add[:3] == (SETTINGS_SERVICE, "/", SETTINGS_INTERFACE)
        assert add[4] == "aa{sv}"
        entries = add[5][0]
        assert entries[0]["path"] == Variant(
            "s", f"/Settings/Devices/signalk_{HOUSE_INDEX}/ClassAndVrmInstance"
        )
        assert entries[0]["default"] == Variant("s", f"battery:{HOUSE_INDEX}")

        announcement = [s for s in transport.signals if s[2] == "ServiceAnnouncement"]
        assert announcement == [
            (
                "/",
                BUSITEM_INTERFACE,
                "ServiceAnnouncement",
                "siiss",
                [service.bus_name, HOUSE_INDEX, PRODUCT_ID, "SignalK Virtual Battery", "Signal K"],
            )
        ]
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_registrar_assigns_instance(self, make_service, transport_factory) -> None:
        transport_factory.configure = lambda t: setattr(t, "settings_reply", _reply("battery:7"))
        service = make_service()
        await service.init()

        assert service.instance.vrm_instance_id == 7
        assert service.value_of("/DeviceInstance") == 7
        # The bus name keeps the local index.
        assert service.bus_name.endswith(f"signalk_{HOUSE_INDEX}")
        await service.disconnect()

    @pytest.mark.parametrize("value", ["tank:7", "battery:", "battery:x", ""])
    @pytest.mark.asyncio
    async def test_malformed_reply_keeps_local_index(self, make_service, transport_factory, value: str) -> None:
        transport_factory.configure = lambda t: setattr(t, "settings_reply", _reply(value))
        service = make_service()
        await service.init()

        assert service.connection_state is ConnectionState.CONNECTED
        assert service.instance.vrm_instance_id == HOUSE_INDEX
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_unreachable_registrar_degrades(self, make_service, transport_factory) -> None:
        transport_factory.configure = lambda t: t.fail_members.add("AddSettings")
        service = make_service()
        await service.init()

        assert service.connection_state is ConnectionState.CONNECTED
        assert service.value_of("/DeviceInstance") == HOUSE_INDEX
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_announcement_failure_is_not_fatal(self, make_service, transport_factory) -> None:
        transport_factory.configure = lambda t: setattr(
            t, "emit_signal", MagicMock(side_effect=TransportError("no"))
        )
        service = make_service()
        await service.init()

        assert service.connection_state is ConnectionState.CONNECTED
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_name_request_failure_fails_init(self, make_service, transport_factory) -> None:
        transport_factory.configure = lambda t: setattr(t, "fail_request_name", True)
        service = make_service()

        with pytest.raises(TransportError):
            await service.init()

        assert service.connection_state is ConnectionState.DISCONNECTED
        assert service.transport is None
        assert transport_factory.last.disconnects == 1

    @pytest.mark.asyncio
    async def test_connect_failure_fails_init(self, make_service, transport_factory) -> None:
        transport_factory.configure = lambda t: setattr(t, "fail_connect", True)
        service = make_service()

        with pytest.raises(TransportError):
            await service.init()
        assert service.connection_state is ConnectionState.DISCONNECTED


class TestParseAssignedInstance:
    def test_plain_values_accepted(self, make_service) -> None:
        service = make_service()
        body = [[{"path": "/Settings/Devices/signalk_305/ClassAndVrmInstance", "value": "battery:12"}]]
        assert service.parse_assigned_instance(body) == 12

    def test_empty_reply(self, make_service) -> None:
        with pytest.raises(RegistrationError):
            make_service().parse_assigned_instance([])

    def test_no_instance_entry(self, make_service) -> None:
        body = [[{"path": Variant("s", "/Settings/Devices/signalk_305/CustomName"), "value": Variant("s", "x")}]]
        with pytest.raises(RegistrationError):
            make_service().parse_assigned_instance(body)


class TestUpdateProperty:
    @pytest.mark.asyncio
    async def test_new_path_exported_once(self, make_service, transport_factory) -> None:
        service = make_service("tanks.fuel.0", "tank", display_name="Fuel")
        await service.init()
        transport = transport_factory.last
        before = len(transport.signals)

        service.update_property("/Level", 50)
        service.update_property("/Level", 75)
        service.update_property("/Name", "Fuel", "s")

        assert transport.export_count("/Level") == 1
        assert transport.export_count("/Name") == 1
        assert service.value_of("/Level") == 75.0
        assert service.variant_for("/Level") == Variant("d", 75.0)
        assert service.text_for("/Level") == "75.00 %"
        level_changes = [s[4][0]["/Level"] for s in transport.signals[before:] if s[2] == "ItemsChanged" and "/Level" in s[4][0]]
        assert len(level_changes) == 2
        assert level_changes[-1]["Value"] == Variant("d", 75.0)
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_dynamic_path_exported_on_connect(self, make_service, transport_factory) -> None:
        """A path first seen before the connection is published with the rest."""
        service = make_service("tanks.fuel.0", "tank", display_name="Fuel")
        service.update_property("/RawValue", 1.2)
        await service.init()

        assert transport_factory.last.export_count("/RawValue") == 1
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_type_fixed_by_first_declaration(self, make_service) -> None:
        service = make_service()
        service.update_property("/TimeToGo", 3599.7)
        assert service.value_of("/TimeToGo") == 3600
        assert service.variant_for("/TimeToGo") == Variant("i", 3600)

    @pytest.mark.asyncio
    async def test_signal_order_for_critical_path(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        transport = transport_factory.last
        transport.signals.clear()

        assert service.update_property("/Soc", 80.0) is True

        assert [(s[0], s[1], s[2], s[3]) for s in transport.signals] == [
            ("/", BUSITEM_INTERFACE, "ItemsChanged", "a{sa{sv}}"),
            ("/Soc", BUSITEM_INTERFACE, "PropertiesChanged", "a{sv}"),
            ("/Soc", PROPERTIES_INTERFACE, "PropertiesChanged", "sa{sv}as"),
        ]
        items = transport.signals[0][4][0]
        assert items["/Soc"]["Value"] == Variant("d", 80.0)
        assert items["/Soc"]["Text"] == Variant("s", "80.00 %")
        assert transport.signals[2][4] == [BUSITEM_INTERFACE, {"Value": Variant("d", 80.0)}, []]
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_critical_path_signals_when_unchanged(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        service.update_property("/Soc", 80.0)
        transport = transport_factory.last
        transport.signals.clear()

        assert service.update_property("/Soc", 80.0) is True
        assert len(transport.signals) == 3
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_non_critical_path_only_signals_on_change(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        transport = transport_factory.last

        service.update_property("/Dc/0/Temperature", 21.5)
        transport.signals.clear()

        assert service.update_property("/Dc/0/Temperature", 21.5) is False
        assert transport.signals == []

        assert service.update_property("/Dc/0/Temperature", 22.0) is True
        assert transport.members() == ["ItemsChanged"]
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_no_signals_without_serial(self, make_service, transport_factory) -> None:
        service = make_service(serial="")
        await service.init()
        transport = transport_factory.last
        transport.signals.clear()

        assert service.update_property("/Soc", 50.0) is False
        assert transport.signals == []
        assert service.value_of("/Soc") == 50.0
        await service.disconnect()

    def test_no_signals_without_connection(self, make_service) -> None:
        service = make_service()
        assert service.update_property("/Soc", 50.0) is False
        assert service.value_of("/Soc") == 50.0

    def test_invalid_value_dropped(self, make_service) -> None:
        service = make_service()
        service.update_property("/Soc", 50.0)
        assert service.update_property("/Soc", float("nan")) is False
        assert service.value_of("/Soc") == 50.0

    def test_undeclared_path_type_inferred_from_value(self, make_service) -> None:
        service = make_service()
        service.update_property("/Extra/Label", "aft locker")
        assert service.variant_for("/Extra/Label") == Variant("s", "aft locker")

    def test_none_stores_invalid_sentinel(self, make_service) -> None:
        service = make_service()
        service.update_property("/Soc", 50.0)
        service.update_property("/Soc", None)
        assert service.value_of("/Soc") is None
        assert service.variant_for("/Soc") == Variant("ai", [])


class TestSetFromBus:
    def test_management_path_rejected(self, make_service) -> None:
        service = make_service()
        assert service.set_from_bus("/DeviceInstance", Variant("i", 1)) == SET_REJECTED
        assert service.value_of("/DeviceInstance") == HOUSE_INDEX

    def test_write_forwarded(self, make_service) -> None:
        on_write = MagicMock(return_value=None)
        service = make_service("electrical.switches.anchor", "switch", on_write=on_write, display_name="Anchor")

        assert service.set_from_bus("/State", Variant("i", 1)) == SET_ACCEPTED

        assert service.value_of("/State") == 1
        on_write.assert_called_once_with("electrical.switches.anchor", "/State", 1)

    def test_unchanged_write_not_forwarded(self, make_service) -> None:
        on_write = MagicMock(return_value=None)
        service = make_service("electrical.switches.anchor", "switch", on_write=on_write, display_name="Anchor")

        assert service.set_from_bus("/State", Variant("i", 0)) == SET_ACCEPTED
        on_write.assert_not_called()

    def test_wrong_type_rejected(self, make_service) -> None:
        service = make_service("electrical.switches.anchor", "switch", display_name="Anchor")
        assert service.set_from_bus("/State", Variant("s", "on")) == SET_REJECTED
        assert service.value_of("/State") == 0

    def test_invalid_sentinel_accepted(self, make_service) -> None:
        service = make_service("electrical.switches.anchor", "switch", display_name="Anchor")
        service.update_property("/DimmingLevel", 40)
        assert service.set_from_bus("/DimmingLevel", Variant("ai", [])) == SET_ACCEPTED
        assert service.value_of("/DimmingLevel") is None

    @pytest.mark.asyncio
    async def test_async_write_hook_scheduled(self, make_service) -> None:
        on_write = AsyncMock()
        service = make_service("electrical.switches.anchor", "switch", on_write=on_write, display_name="Anchor")

        service.set_from_bus("/DimmingLevel", Variant("i", 60))
        await asyncio.sleep(0)

        on_write.assert_awaited_once_with("electrical.switches.anchor", "/DimmingLevel", 60)

    def test_failing_write_hook_still_accepts(self, make_service) -> None:
        on_write = MagicMock(side_effect=RuntimeError("boom"))
        service = make_service("electrical.switches.anchor", "switch", on_write=on_write, display_name="Anchor")
        assert service.set_from_bus("/State", Variant("i", 1)) == SET_ACCEPTED

    @pytest.mark.asyncio
    async def test_exported_busitem_reads_service(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        service.update_property("/Soc", 64.0)

        item = dict(transport_factory.last.exports)["/Soc"]
        assert item.get_value() == Variant("d", 64.0)
        assert item.get_text() == "64.00 %"
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_properties_set_on_management_path_raises(self, make_service, transport_factory) -> None:
        """Properties.Set agrees with SetValue: a rejected write is a D-Bus error."""
        service = make_service()
        await service.init()
        item = dict(transport_factory.last.exports)["/DeviceInstance"]

        assert item.set_value(Variant("i", 999)) == SET_REJECTED
        with pytest.raises(DBusError):
            item.write_value(Variant("i", 999))
        assert service.value_of("/DeviceInstance") == HOUSE_INDEX
        await service.disconnect()


class TestSupervision:
    @pytest.mark.asyncio
    async def test_heartbeat_pings_peer(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()

        await service._heartbeat()

        assert transport_factory.last.calls_to("Ping")
        assert len(transport_factory.created) == 1
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_heartbeat_failure_reconnects(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        service._supervisor.sleep = AsyncMock(return_value=True)
        first = transport_factory.last
        first.connected = False

        await service._heartbeat()

        assert len(transport_factory.created) == 2
        second = transport_factory.last
        assert service.transport is second
        assert service.connection_state is ConnectionState.CONNECTED
        assert service.policy.attempts == 0
        assert second.export_count("/") == 1
        assert second.requested_names == [service.bus_name]
        assert first.disconnects == 1
        service._supervisor.sleep.assert_awaited_once_with(1.0)
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_max_attempts(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        service._supervisor.sleep = AsyncMock(return_value=True)
        transport_factory.configure = lambda t: setattr(t, "fail_connect", True)
        transport_factory.last.fail_members.add("GetId")

        await service._connection_check()

        assert service.connection_state is ConnectionState.DISCONNECTED
        assert len(transport_factory.created) == 1 + service.policy.max_attempts
        delays = [c.args[0] for c in service._supervisor.sleep.await_args_list]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0, 30.0, 30.0]
        assert service._supervisor.stopping
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_failed_registration_check_reregisters(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()
        transport = transport_factory.last
        transport.fail_members.add("GetItems")

        await service._registration_check()

        assert transport.requested_names == [service.bus_name, service.bus_name]
        assert len(transport.calls_to("AddSettings")) == 2
        assert transport.export_count("/") == 1
        assert len(transport_factory.created) == 1
        await service.disconnect()

    @pytest.mark.asyncio
    async def test_checks_skip_when_not_connected(self, make_service, transport_factory) -> None:
        service = make_service()
        await service._heartbeat()
        await service._connection_check()
        await service._registration_check()
        assert transport_factory.created == []


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_idempotent(self, make_service, transport_factory) -> None:
        service = make_service()
        await service.init()

        await service.disconnect()
        await service.disconnect()

        assert transport_factory.last.disconnects == 1
        assert service.connection_state is ConnectionState.DISCONNECTED
        assert service.exported_paths == frozenset()
        assert service.update_property("/Soc", 10.0) is False
