"""
Signal K REST intake and write-back.

SignalKPoller GETs the full ``vessels/self`` document from the Signal K
server and flattens it into ``(dotted_path, value)`` pairs, one per node that
carries a ``value``. Consecutive failures back off exponentially
(1s -> 2s -> 4s -> ... capped at 60s) before the next request; a successful
poll resets the backoff.

SignalKWriter sends values written on the GX device (switch state, dimming
level, battery relay) back to Signal K with an HTTP PUT.

Both use httpx.AsyncClient; a bearer token is sent when configured.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VESSEL_SELF_PATH = "/signalk/v1/api/vessels/self"

BASE_BACKOFF_S: float = 1.0
"""Initial backoff delay in seconds after the first failed poll."""

MAX_BACKOFF_S: float = 60.0
"""Maximum backoff delay in seconds."""

REQUEST_TIMEOUT_S: float = 10.0

PUT_SOURCE = "venus-bridge"
"""Source label attached to every PUT."""

_METADATA_KEYS = frozenset({"meta", "$source", "timestamp", "values", "pgn", "sentence"})


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


# ---------------------------------------------------------------------------
# Document flattening
# ---------------------------------------------------------------------------


def flatten_vessel(doc: Any, prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield ``(path, value)`` for every leaf of a Signal K vessel document.

    A leaf is an object with a ``value`` key; its metadata siblings
    (``meta``, ``$source``, ``timestamp``, ...) are skipped and it is not
    descended into. Plain scalars outside leaves (``uuid``, ``name``) are
    ignored.
    """
    if not isinstance(doc, dict):
        return
    if "value" in doc and prefix:
        yield prefix, doc["value"]
        return
    for key, child in doc.items():
        if key in _METADATA_KEYS or not isinstance(child, dict):
            continue
        yield from flatten_vessel(child, f"{prefix}.{key}" if prefix else key)


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


class SignalKPoller:
    """Polls the Signal K REST API with exponential backoff on failure.

    Args:
        base_url: Signal K server base URL, e.g. ``http://localhost:3000``.
        token: Optional bearer token.
    """

    def __init__(self, base_url: str, token: str = "") -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._consecutive_failures: int = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def current_backoff(self) -> float:
        """Delay applied before the next poll (0 after a success)."""
        if self._consecutive_failures == 0:
            return 0.0
        return min(BASE_BACKOFF_S * (2 ** (self._consecutive_failures - 1)), MAX_BACKOFF_S)

    async def poll(self) -> list[tuple[str, Any]] | None:
        """Fetch and flatten ``vessels/self``.

        Returns:
            The flattened readings, or None on any error.
        """
        delay = self.current_backoff()
        if delay > 0:
            logger.warning(
                "Backoff: sleeping %.1fs before retry (consecutive failures: %d)",
                delay,
                self._consecutive_failures,
            )
            await asyncio.sleep(delay)

        url = f"{self._base_url}{VESSEL_SELF_PATH}"
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S) as client:
                response = await client.get(url, headers=_headers(self._token))
            if response.status_code != 200:
                logger.warning("Signal K poll failed (HTTP %d)", response.status_code)
                self._consecutive_failures += 1
                return None
            doc = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Signal K poll failed: %s", exc)
            self._consecutive_failures += 1
            return None

        self._consecutive_failures = 0
        readings = list(flatten_vessel(doc))
        logger.debug("Signal K poll returned %d readings", len(readings))
        return readings


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class SignalKWriter:
    """Writes values back to Signal K via HTTP PUT.

    Args:
        base_url: Signal K server base URL.
        token: Optional bearer token.
    """

    def __init__(self, base_url: str, token: str = "") -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token

    async def put(self, path: str, value: Any) -> bool:
        """PUT *value* to the dotted Signal K *path*.

        Returns:
            True if the server accepted the request (2xx).
        """
        url = f"{self._base_url}{VESSEL_SELF_PATH}/{path.replace('.', '/')}"
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S) as client:
                response = await client.put(
                    url,
                    json={"value": value, "source": PUT_SOURCE},
                    headers=_headers(self._token),
                )
        except httpx.HTTPError as exc:
            logger.warning("PUT %s failed: %s", path, exc)
            return False

        if 200 <= response.status_code < 300:
            logger.info("PUT %s = %r accepted", path, value)
            return True
        logger.warning("PUT %s rejected (HTTP %d)", path, response.status_code)
        return False
