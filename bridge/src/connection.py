"""
Connection state, reconnect backoff and health supervision per device.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED    -> RECONNECTING          (transport error, failed probe)
    RECONNECTING -> CONNECTING            (scheduled retry)
    any          -> DISCONNECTED          (retries exhausted, disconnect())

Backoff is ``min(1000 * 2**attempts, 30000)`` ms with at most 10 scheduled
retries; a successful connect resets the counter. When the retries run out
the device stays DISCONNECTED until the process restarts.

Each device runs a single ConnectionSupervisor task that waits for the
earliest of its periodic checks (heartbeat, connection health, registration
check) or its stop event, instead of juggling independent timer handles.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}),
    ConnectionState.RECONNECTING: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}


class ConnectionStateMachine:
    """Tracks the connection state of one device and rejects illegal moves.

    Args:
        name: Label used in log lines (usually the bus name).
    """

    def __init__(self, name: str, initial: ConnectionState = ConnectionState.DISCONNECTED) -> None:
        self.name = name
        self._state = initial

    @property
    def state(self) -> ConnectionState:
        return self._state

    def can(self, nxt: ConnectionState) -> bool:
        return nxt in _TRANSITIONS[self._state]

    def transition(self, nxt: ConnectionState) -> bool:
        """Move to *nxt* if allowed; return whether the move happened."""
        if nxt is self._state:
            return True
        if not self.can(nxt):
            logger.warning("%s: ignoring transition %s -> %s", self.name, self._state.value, nxt.value)
            return False
        logger.info("%s: %s -> %s", self.name, self._state.value, nxt.value)
        self._state = nxt
        return True


# ---------------------------------------------------------------------------
# Reconnect backoff
# ---------------------------------------------------------------------------


class ReconnectPolicy:
    """Exponential backoff with a cap and a bounded number of retries.

    Args:
        base_ms: Delay of the first retry.
        max_delay_ms: Upper bound of any delay.
        max_attempts: Number of retries scheduled before giving up.
    """

    def __init__(self, base_ms: int = 1000, max_delay_ms: int = 30000, max_attempts: int = 10) -> None:
        self.base_ms = base_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay_ms(self) -> int | None:
        """Schedule the next retry.

        Returns:
            The delay before the retry in ms, or None once ``max_attempts``
            retries have been scheduled.
        """
        if self.exhausted:
            return None
        delay = min(self.base_ms * 2**self.attempts, self.max_delay_ms)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PeriodicCheck:
    """A named coroutine the supervisor runs every ``interval_s`` seconds."""

    name: str
    interval_s: float
    action: Callable[[], Awaitable[None]]


class ConnectionSupervisor:
    """Single task multiplexing a device's periodic checks and its stop signal.

    Each check has its own deadline; the task sleeps until the earliest one
    (or until stopped), runs that check and re-arms its deadline. Checks run
    one at a time, so a check that is reconnecting holds the others back.

    Args:
        name: Label used for the task and in log lines.
        checks: The periodic checks to run.
    """

    def __init__(self, name: str, checks: Sequence[PeriodicCheck]) -> None:
        self.name = name
        self._checks = tuple(checks)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"supervisor:{self.name}")

    def request_stop(self) -> None:
        """Ask the task to exit without waiting for it."""
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop the task and wait for it, unless called from the task itself."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        await task

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return False if stopped meanwhile."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        return not self._stop_event.is_set()

    async def _run(self) -> None:
        if not self._checks:
            return
        loop = asyncio.get_running_loop()
        deadlines = {check.name: loop.time() + check.interval_s for check in self._checks}
        logger.debug("%s: supervisor started", self.name)

        while not self._stop_event.is_set():
            check = min(self._checks, key=lambda c: deadlines[c.name])
            if not await self.sleep(max(0.0, deadlines[check.name] - loop.time())):
                break
            deadlines[check.name] = loop.time() + check.interval_s
            try:
                await check.action()
            except Exception:
                logger.error("%s: %s check failed unexpectedly", self.name, check.name, exc_info=True)

        logger.debug("%s: supervisor stopped", self.name)
