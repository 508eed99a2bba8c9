"""
Shared test fixtures for bridge daemon tests.

Provides:
- Environment isolation for BridgeSettings (all bridge env vars removed,
  working directory moved to tmp_path so no .env file is loaded).
- FakeTransport: an in-memory stand-in for DbusTransport that records
  exports, signals and calls and can be told to fail.
- Factories for settings, device instances and services.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
from dbus_fast import Variant

from bridge.src.config import BridgeSettings
from bridge.src.device_configs import DEVICE_CONFIGS
from bridge.src.exceptions import TransportError
from bridge.src.identity import derive_serial, stable_index
from bridge.src.models import DeviceInstance
from bridge.src.service import VirtualDeviceService

# All BridgeSettings environment variable names, used for cleanup.
_ALL_BRIDGE_ENV_VARS = (
    "VENUS_HOST",
    "VENUS_PORT",
    "SIGNALK_BASE_URL",
    "SIGNALK_TOKEN",
    "POLL_INTERVAL_S",
    "ENABLED_DEVICE_TYPES",
    "HISTORY_PATH",
    "HISTORY_SAVE_INTERVAL_S",
    "HEALTH_PATH",
    "HEARTBEAT_INTERVAL_S",
    "CONNECTION_CHECK_INTERVAL_S",
    "REGISTRATION_CHECK_INTERVAL_S",
    "CREATION_TIMEOUT_S",
    "SOLAR_CURRENT_PATH",
    "CHARGER_CURRENT_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_bridge_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all bridge env vars and isolate from .env files before each test."""
    for var in _ALL_BRIDGE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set every BridgeSettings environment variable."""
    env = {
        "VENUS_HOST": "192.168.1.50",
        "VENUS_PORT": "78",
        "SIGNALK_BASE_URL": "https://signalk.boat.lan:3443/",
        "SIGNALK_TOKEN": "sk-secret-token",
        "POLL_INTERVAL_S": "2",
        "ENABLED_DEVICE_TYPES": "battery,tank",
        "HISTORY_PATH": "/tmp/history.json",
        "HISTORY_SAVE_INTERVAL_S": "30",
        "HEALTH_PATH": "/tmp/health.json",
        "HEARTBEAT_INTERVAL_S": "15",
        "CONNECTION_CHECK_INTERVAL_S": "45",
        "REGISTRATION_CHECK_INTERVAL_S": "90",
        "CREATION_TIMEOUT_S": "3",
        "SOLAR_CURRENT_PATH": "electrical.solar.1.current",
        "CHARGER_CURRENT_PATH": "electrical.alternators.1.current",
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def settings(tmp_path: Path) -> BridgeSettings:
    """Settings with only the required host set and files under tmp_path."""
    return BridgeSettings(
        venus_host="venus.local",
        history_path=str(tmp_path / "history.json"),
        health_path=str(tmp_path / "health.json"),
    )


# ---------------------------------------------------------------------------
# Fake D-Bus transport
# ---------------------------------------------------------------------------


def _echo_add_settings(body: list) -> list:
    """Registrar reply that accepts every proposed default."""
    return [
        [
            {
                "path": entry["path"],
                "value": entry["default"],
                "error": Variant("i", 0),
            }
            for entry in body[0]
        ]
    ]


class FakeTransport:
    """In-memory DbusTransport double."""

    def __init__(self) -> None:
        self.connected = False
        self.connect_delay_s = 0.0
        self.fail_connect = False
        self.fail_request_name = False
        self.fail_members: set[str] = set()
        self.settings_reply: list | None = None
        self.exports: list[tuple[str, object]] = []
        self.signals: list[tuple[str, str, str, str, list]] = []
        self.calls: list[tuple[str, str, str, str, str, list]] = []
        self.requested_names: list[str] = []
        self.disconnects = 0

    async def connect(self) -> None:
        if self.connect_delay_s:
            await asyncio.sleep(self.connect_delay_s)
        if self.fail_connect:
            raise TransportError("connection refused")
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    async def request_name(self, name: str) -> None:
        if self.fail_request_name:
            raise TransportError(f"name {name} taken")
        self.requested_names.append(name)

    def export(self, path: str, interface: object) -> None:
        if not self.connected:
            raise TransportError("closed")
        self.exports.append((path, interface))

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list | tuple = (),
    ) -> list:
        self.calls.append((destination, path, interface, member, signature, list(body)))
        if not self.connected or member in self.fail_members:
            raise TransportError(f"{member} failed")
        if member == "AddSettings":
            return self.settings_reply if self.settings_reply is not None else _echo_add_settings(list(body))
        return []

    def emit_signal(self, path: str, interface: str, member: str, signature: str, body: list) -> None:
        if not self.connected:
            raise TransportError("closed")
        self.signals.append((path, interface, member, signature, list(body)))

    async def ping(self) -> None:
        await self.call("org.freedesktop.DBus", "/org/freedesktop/DBus", "org.freedesktop.DBus", "GetId")

    async def peer_ping(self, destination: str = "org.freedesktop.DBus") -> None:
        await self.call(destination, "/", "org.freedesktop.DBus.Peer", "Ping")

    # Test helpers

    def members(self, path: str | None = None) -> list[str]:
        """Names of the signals emitted (optionally only from *path*)."""
        return [s[2] for s in self.signals if path is None or s[0] == path]

    def calls_to(self, member: str) -> list[tuple]:
        return [c for c in self.calls if c[3] == member]

    def export_count(self, path: str) -> int:
        return sum(1 for p, _ in self.exports if p == path)


class FakeTransportFactory:
    """Callable handing out FakeTransports; remembers every one it built."""

    def __init__(self) -> None:
        self.created: list[FakeTransport] = []
        self.configure: Callable[[FakeTransport], None] | None = None

    def __call__(self) -> FakeTransport:
        transport = FakeTransport()
        if self.configure is not None:
            self.configure(transport)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture()
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_instance() -> Callable[..., DeviceInstance]:
    """Build a DeviceInstance the way the registry does."""

    def _make(
        base_path: str = "electrical.batteries.house",
        device_type: str = "battery",
        display_name: str = "Battery House",
        serial: str | None = None,
    ) -> DeviceInstance:
        index = stable_index(base_path)
        return DeviceInstance(
            base_path=base_path,
            device_type=device_type,
            local_index=index,
            vrm_instance_id=index,
            display_name=display_name,
            serial=derive_serial(base_path) if serial is None else serial,
        )

    return _make


@pytest.fixture()
def make_service(
    settings: BridgeSettings,
    transport_factory: FakeTransportFactory,
    make_instance: Callable[..., DeviceInstance],
) -> Callable[..., VirtualDeviceService]:
    """Build a VirtualDeviceService wired to FakeTransports (not initialised)."""

    def _make(
        base_path: str = "electrical.batteries.house",
        device_type: str = "battery",
        on_write=None,
        **instance_kwargs,
    ) -> VirtualDeviceService:
        instance = make_instance(base_path, device_type, **instance_kwargs)
        return VirtualDeviceService(
            instance,
            DEVICE_CONFIGS[device_type],
            settings,
            transport_factory=transport_factory,
            on_write=on_write,
        )

    return _make
