"""
Bridge daemon main loop: Signal K readings in, Venus OS virtual devices out.

Runs one poll loop and one background history saver:
1. **Poll loop**: fetches the Signal K ``vessels/self`` document, flattens it
   and routes every reading through the Bridge to the per-type clients,
   which create virtual devices on the GX device's D-Bus on first sight.
   Readings of different devices are applied concurrently.
2. **History saver**: persists battery history every
   ``history_save_interval_s`` (see HistoryEngine).

Each poll iteration is resilient: an exception is logged and does not end
the loop. SIGTERM/SIGINT set a shared asyncio.Event; the loop finishes its
current iteration, the history is saved one last time and every virtual
device is disconnected.

Values the GX device writes (switch state, dimming level, battery relay) are
mapped back to Signal K leaves by the owning client and PUT to the server.

Structured JSON logging is used for all events. A HealthWriter records the
last poll time, last history save and device count.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bridge.src.clients import DeviceClient, as_number, create_client
from bridge.src.device_configs import DEVICE_CONFIGS
from bridge.src.exceptions import ConcurrencyTimeoutError
from bridge.src.registry import DeviceRegistry
from bridge.src.service import VirtualDeviceService

if TYPE_CHECKING:
    from bridge.src.config import BridgeSettings
    from bridge.src.health import HealthWriter
    from bridge.src.history import HistoryEngine
    from bridge.src.models import DeviceInstance
    from bridge.src.signalk import SignalKPoller, SignalKWriter
    from bridge.src.transport import DbusTransport

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger, writing to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: BridgeSettings) -> None:
    """Log a config summary at startup; the Signal K token is masked."""
    logger.info(
        "Bridge starting with config: "
        "venus_host=%s, venus_port=%s, signalk_base_url=%s, "
        "poll_interval_s=%s, device_types=%s, history_path=%s, "
        "history_save_interval_s=%s, health_path=%s, "
        "heartbeat_interval_s=%s, connection_check_interval_s=%s, "
        "registration_check_interval_s=%s, signalk_token_masked=%s",
        settings.venus_host,
        settings.venus_port,
        settings.signalk_base_url,
        settings.poll_interval_s,
        ",".join(settings.device_types),
        settings.history_path,
        settings.history_save_interval_s,
        settings.health_path,
        settings.heartbeat_interval_s,
        settings.connection_check_interval_s,
        settings.registration_check_interval_s,
        _masked_token(settings.signalk_token),
    )


# ---------------------------------------------------------------------------
# Bridge router
# ---------------------------------------------------------------------------


class Bridge:
    """Routes Signal K readings to the device clients and writes back changes.

    Args:
        settings: Bridge settings.
        transport_factory: Returns a fresh transport for each new device.
        writer: Signal K writer for values set on the GX device, or None.
        history: Shared history engine for batteries, or None.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        transport_factory: Callable[[], DbusTransport],
        writer: SignalKWriter | None = None,
        history: HistoryEngine | None = None,
    ) -> None:
        self.settings = settings
        self.history = history
        self._transport_factory = transport_factory
        self._writer = writer
        self._aux: dict[str, float | None] = {
            settings.solar_current_path: None,
            settings.charger_current_path: None,
        }
        self.registry = DeviceRegistry(self._build_service, creation_timeout_s=settings.creation_timeout_s)
        self.clients: dict[str, DeviceClient] = {
            device_type: create_client(
                device_type,
                self.registry,
                history=history,
                aux_currents=self.aux_currents,
            )
            for device_type in settings.device_types
        }

    def aux_currents(self) -> tuple[float | None, float | None]:
        """Latest solar and charger currents (A), None when unknown."""
        return (
            self._aux[self.settings.solar_current_path],
            self._aux[self.settings.charger_current_path],
        )

    def _build_service(self, instance: DeviceInstance) -> VirtualDeviceService:
        return VirtualDeviceService(
            instance,
            DEVICE_CONFIGS[instance.device_type],
            self.settings,
            transport_factory=self._transport_factory,
            on_write=self.handle_write,
        )

    async def handle_update(self, path: str, value: Any) -> bool:
        """Route one reading. Never raises.

        Returns:
            True if a device consumed the reading.
        """
        try:
            if path in self._aux:
                self._aux[path] = as_number(value)
            for client in self.clients.values():
                if client.is_relevant(path):
                    return await client.handle_update(path, value)
            return False
        except ConcurrencyTimeoutError:
            logger.warning("Dropped update %s: device creation still in progress", path)
            return False
        except Exception:
            logger.error("Error handling update %s", path, exc_info=True)
            return False

    def device_key(self, path: str) -> str | None:
        """Base path of the device *path* belongs to, or None if no client wants it."""
        for client in self.clients.values():
            if client.is_relevant(path):
                return client.base_path(path)
        return None

    async def handle_readings(self, readings: Iterable[tuple[str, Any]]) -> int:
        """Route a batch of readings; auxiliary currents are taken first.

        Readings are grouped per device. Each group is applied in arrival
        order, and the groups run concurrently, so a device that is still
        being created (or cannot reach the GX device) does not hold up the
        updates of the others.

        Returns:
            Number of readings consumed by a device.
        """
        groups: dict[str, list[tuple[str, Any]]] = {}
        for path, value in readings:
            if path in self._aux:
                self._aux[path] = as_number(value)
            key = self.device_key(path)
            if key is not None:
                groups.setdefault(key, []).append((path, value))
        counts = await asyncio.gather(*(self._handle_device(group) for group in groups.values()))
        return sum(counts)

    async def _handle_device(self, readings: list[tuple[str, Any]]) -> int:
        handled = 0
        for path, value in readings:
            if await self.handle_update(path, value):
                handled += 1
        return handled

    async def handle_write(self, base_path: str, dbus_path: str, value: Any) -> None:
        """Forward a value written on the GX device back to Signal K."""
        entry = self.registry.get(base_path)
        if entry is None:
            return
        client = self.clients.get(entry.instance.device_type)
        mapped = client.to_signalk(dbus_path, value) if client is not None else None
        if mapped is None:
            logger.debug("No Signal K mapping for write to %s%s", base_path, dbus_path)
            return
        leaf, sk_value = mapped
        if self._writer is None:
            return
        try:
            await self._writer.put(f"{base_path}.{leaf}", sk_value)
        except Exception:
            logger.error("Write-back of %s.%s failed", base_path, leaf, exc_info=True)


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _poll_once(
    *,
    bridge: Bridge,
    poller: SignalKPoller,
    health: HealthWriter | None,
) -> None:
    """Execute a single poll-route cycle.

    Catches all exceptions so that the caller's loop is never broken.
    After each poll attempt the health writer is updated.
    """
    try:
        readings = await poller.poll()
        if readings is not None:
            handled = await bridge.handle_readings(readings)
            logger.debug("Poll success: %d of %d readings handled", handled, len(readings))
        else:
            logger.warning("Poller returned None, skipping updates")
    except Exception:
        logger.error("Poll cycle error", exc_info=True)

    if health is not None:
        try:
            health.record_update(len(bridge.registry))
            saved_ts = bridge.history.store.last_saved_ts if bridge.history is not None else None
            if saved_ts is not None:
                health.record_history_save(saved_ts)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


async def _poll_loop(
    *,
    bridge: Bridge,
    poller: SignalKPoller,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Run the poll loop until shutdown_event is set."""
    logger.info("Poll loop started (interval=%ss)", poll_interval_s)
    while not shutdown_event.is_set():
        await _poll_once(bridge=bridge, poller=poller, health=health)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_s)
    logger.info("Poll loop stopped")


async def run(
    *,
    bridge: Bridge,
    poller: SignalKPoller,
    poll_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run the bridge until shutdown, then save history and close every device."""
    history = bridge.history
    if history is not None:
        await history.load()
        history.start()
    try:
        await _poll_loop(
            bridge=bridge,
            poller=poller,
            poll_interval_s=poll_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        )
    finally:
        if history is not None:
            await history.stop()
        await bridge.registry.close()
        logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run until signalled."""
    from bridge.src.config import BridgeSettings
    from bridge.src.health import HealthWriter
    from bridge.src.history import HistoryEngine
    from bridge.src.persistence import HistoryStore
    from bridge.src.signalk import SignalKPoller, SignalKWriter
    from bridge.src.transport import DbusTransport

    settings = BridgeSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    history = HistoryEngine(
        HistoryStore(settings.history_path),
        save_interval_s=settings.history_save_interval_s,
    )
    bridge = Bridge(
        settings,
        transport_factory=lambda: DbusTransport(settings.venus_host, settings.venus_port),
        writer=SignalKWriter(settings.signalk_base_url, settings.signalk_token),
        history=history,
    )

    await run(
        bridge=bridge,
        poller=SignalKPoller(settings.signalk_base_url, settings.signalk_token),
        poll_interval_s=settings.poll_interval_s,
        shutdown_event=shutdown_event,
        health=HealthWriter(settings.health_path),
    )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the bridge daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
