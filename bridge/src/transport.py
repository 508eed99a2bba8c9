"""
D-Bus transport to the GX device over TCP.

Venus OS exposes its system bus on a TCP port (78 by default) with anonymous
authentication. Each virtual device owns one DbusTransport, and therefore one
connection, so a stalled or reconnecting device never blocks another.

The class is a thin asyncio wrapper around ``dbus_fast.aio.MessageBus`` that
turns every failure mode (refused connection, error reply, closed bus,
timeout) into a single :class:`TransportError`.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from dbus_fast import Message, MessageType, RequestNameReply
from dbus_fast.aio import MessageBus
from dbus_fast.auth import AuthAnnonymous
from dbus_fast.errors import AuthError, DBusError
from dbus_fast.service import ServiceInterface

from bridge.src.exceptions import TransportError

logger = logging.getLogger(__name__)

DBUS_DAEMON = "org.freedesktop.DBus"
DBUS_DAEMON_PATH = "/org/freedesktop/DBus"
DBUS_PEER_INTERFACE = "org.freedesktop.DBus.Peer"

_NAME_OWNED = (RequestNameReply.PRIMARY_OWNER, RequestNameReply.ALREADY_OWNER)


class DbusTransport:
    """One D-Bus connection to the GX device.

    Args:
        host: Hostname or IP of the GX device.
        port: TCP port of its D-Bus daemon.
        call_timeout_s: Upper bound for any single method call.
    """

    def __init__(self, host: str, port: int = 78, *, call_timeout_s: float = 10.0) -> None:
        self.host = host
        self.port = port
        self._call_timeout_s = call_timeout_s
        self._bus: MessageBus | None = None

    @property
    def address(self) -> str:
        return f"tcp:host={self.host},port={self.port}"

    @property
    def connected(self) -> bool:
        return self._bus is not None and bool(self._bus.connected)

    @property
    def unique_name(self) -> str | None:
        return self._bus.unique_name if self._bus is not None else None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and complete the D-Bus handshake.

        Raises:
            TransportError: If the daemon is unreachable or rejects us.
        """
        if self.connected:
            return
        bus = MessageBus(bus_address=self.address, auth=AuthAnnonymous())
        try:
            await asyncio.wait_for(bus.connect(), timeout=self._call_timeout_s)
        except (OSError, TimeoutError, AuthError, DBusError) as exc:
            raise TransportError(f"Cannot connect to D-Bus at {self.address}: {exc}") from exc
        self._bus = bus
        logger.debug("Connected to D-Bus at %s as %s", self.address, bus.unique_name)

    def disconnect(self) -> None:
        """Close the connection. Safe to call when already closed."""
        bus, self._bus = self._bus, None
        if bus is None:
            return
        try:
            bus.disconnect()
        except (OSError, DBusError):
            logger.debug("Error while closing D-Bus connection", exc_info=True)

    def _require_bus(self) -> MessageBus:
        if self._bus is None or not self._bus.connected:
            raise TransportError("D-Bus connection is not open")
        return self._bus

    # ------------------------------------------------------------------
    # Names and objects
    # ------------------------------------------------------------------

    async def request_name(self, name: str) -> None:
        """Take ownership of a well-known bus name.

        Raises:
            TransportError: If the request fails or another peer keeps the name.
        """
        bus = self._require_bus()
        try:
            reply = await asyncio.wait_for(bus.request_name(name), timeout=self._call_timeout_s)
        except (OSError, TimeoutError, DBusError) as exc:
            raise TransportError(f"RequestName {name} failed: {exc}") from exc
        if reply not in _NAME_OWNED:
            raise TransportError(f"RequestName {name} not granted: {reply}")

    def export(self, path: str, interface: ServiceInterface) -> None:
        self._require_bus().export(path, interface)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Sequence[Any] = (),
    ) -> list[Any]:
        """Invoke a remote method and return the reply body.

        Raises:
            TransportError: On a closed bus, timeout, or error reply.
        """
        bus = self._require_bus()
        message = Message(
            destination=destination,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=list(body),
        )
        try:
            reply = await asyncio.wait_for(bus.call(message), timeout=self._call_timeout_s)
        except (OSError, TimeoutError, DBusError) as exc:
            raise TransportError(f"{interface}.{member} on {destination}{path} failed: {exc}") from exc
        if reply is None:
            raise TransportError(f"{interface}.{member} on {destination}{path} returned no reply")
        if reply.message_type == MessageType.ERROR:
            raise TransportError(
                f"{interface}.{member} on {destination}{path} returned {reply.error_name}: {reply.body}"
            )
        return list(reply.body)

    def emit_signal(
        self,
        path: str,
        interface: str,
        member: str,
        signature: str,
        body: Sequence[Any],
    ) -> None:
        """Broadcast a signal from *path*.

        Raises:
            TransportError: If the bus is closed.
        """
        bus = self._require_bus()
        sent = bus.send(Message.new_signal(path, interface, member, signature, list(body)))
        sent.add_done_callback(self._log_send_failure)

    def _log_send_failure(self, sent: asyncio.Future) -> None:
        if sent.cancelled():
            return
        exc = sent.exception()
        if exc is not None:
            logger.warning("Signal send to %s failed: %s", self.address, exc)

    async def ping(self) -> None:
        """Round-trip to the bus daemon itself."""
        await self.call(DBUS_DAEMON, DBUS_DAEMON_PATH, DBUS_DAEMON, "GetId")

    async def peer_ping(self, destination: str = DBUS_DAEMON) -> None:
        """``org.freedesktop.DBus.Peer.Ping`` round-trip to *destination*."""
        await self.call(destination, "/", DBUS_PEER_INTERFACE, "Ping")
