"""
Registry of virtual devices keyed by Signal K base path.

Each entry is either ``Ready`` (device and running service) or ``Creating``
(a future the creator resolves when it is done). The creator inserts its
``Creating`` entry before its first suspension point, so concurrent updates
for the same base path never create a second device; they wait on the
future for at most ``creation_timeout_s`` and then give up on their update.

A failed creation removes the entry so the next update retries from scratch.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from bridge.src.exceptions import ConcurrencyTimeoutError
from bridge.src.identity import HashIdentityScheme, IdentityScheme
from bridge.src.models import DeviceInstance
from bridge.src.naming import device_name
from bridge.src.service import VirtualDeviceService

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[DeviceInstance], VirtualDeviceService]


@dataclass
class Ready:
    instance: DeviceInstance
    service: VirtualDeviceService


@dataclass
class Creating:
    device_type: str
    future: asyncio.Future


Entry = Ready | Creating


def _subtype(base_path: str) -> str:
    parts = base_path.split(".")
    return parts[1] if len(parts) > 1 else ""


class DeviceRegistry:
    """Owns every virtual device of the process.

    Args:
        factory: Builds the (not yet initialised) service for a new device.
        identity: Maps base paths to local index and serial.
        creation_timeout_s: How long a concurrent caller waits for a
            device another caller is creating.
    """

    def __init__(
        self,
        factory: ServiceFactory,
        *,
        identity: IdentityScheme | None = None,
        creation_timeout_s: float = 5.0,
    ) -> None:
        self._factory = factory
        self._identity = identity or HashIdentityScheme()
        self._creation_timeout_s = creation_timeout_s
        self._entries: dict[str, Entry] = {}

    def __len__(self) -> int:
        return sum(1 for entry in self._entries.values() if isinstance(entry, Ready))

    def get(self, base_path: str) -> Ready | None:
        entry = self._entries.get(base_path)
        return entry if isinstance(entry, Ready) else None

    def items(self) -> Iterator[tuple[str, Ready]]:
        """Iterate over finished devices."""
        for base_path, entry in list(self._entries.items()):
            if isinstance(entry, Ready):
                yield base_path, entry

    def count_subtype(self, device_type: str, base_path: str) -> int:
        """Number of devices (finished or in creation) sharing the subtype of *base_path*."""
        subtype = _subtype(base_path)
        count = 0
        for key, entry in self._entries.items():
            entry_type = entry.device_type if isinstance(entry, Creating) else entry.instance.device_type
            if entry_type == device_type and _subtype(key) == subtype:
                count += 1
        return count

    async def get_or_create(self, path: str, device_type: str, base_path: str) -> Ready | None:
        """Return the device for *base_path*, creating it on first use.

        Args:
            path: Full Signal K path of the triggering update (for logging).
            device_type: Device type of the base path.
            base_path: Base path of the device.

        Returns:
            The ready entry, or None if another caller's creation failed.

        Raises:
            ConcurrencyTimeoutError: If another caller's creation did not
                finish within the timeout.
            TransportError: If this caller's own creation failed.
        """
        entry = self._entries.get(base_path)
        if isinstance(entry, Ready):
            return entry
        if isinstance(entry, Creating):
            logger.debug("Waiting for %s to be created (update %s)", base_path, path)
            try:
                return await asyncio.wait_for(asyncio.shield(entry.future), timeout=self._creation_timeout_s)
            except TimeoutError as exc:
                raise ConcurrencyTimeoutError(
                    f"Creation of {base_path} did not finish within {self._creation_timeout_s}s"
                ) from exc

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._entries[base_path] = Creating(device_type, future)
        ready: Ready | None = None
        try:
            instance = self._build_instance(device_type, base_path)
            service = self._factory(instance)
            await service.init()
            ready = Ready(instance, service)
        finally:
            if ready is None:
                self._entries.pop(base_path, None)
                logger.warning("Creation of %s device %s failed", device_type, base_path)
            else:
                self._entries[base_path] = ready
            if not future.done():
                future.set_result(ready)

        logger.info(
            "Created %s device '%s' for %s (index %d)",
            device_type,
            ready.instance.display_name,
            base_path,
            ready.instance.local_index,
        )
        return ready

    def _build_instance(self, device_type: str, base_path: str) -> DeviceInstance:
        local_index = self._identity.index_for(base_path)
        return DeviceInstance(
            base_path=base_path,
            device_type=device_type,
            local_index=local_index,
            vrm_instance_id=local_index,
            display_name=device_name(base_path, device_type, self.count_subtype(device_type, base_path)),
            serial=self._identity.serial_for(base_path),
        )

    async def remove(self, base_path: str) -> None:
        """Forget a device and disconnect its service."""
        entry = self._entries.pop(base_path, None)
        if isinstance(entry, Ready):
            await entry.service.disconnect()

    async def close(self) -> None:
        """Disconnect every device."""
        ready = [entry for _, entry in self.items()]
        self._entries.clear()
        results = await asyncio.gather(*(entry.service.disconnect() for entry in ready), return_exceptions=True)
        for entry, result in zip(ready, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to disconnect %s",
                    entry.instance.base_path,
                    exc_info=(type(result), result, result.__traceback__),
                )
        logger.info("Closed %d devices", len(ready))
