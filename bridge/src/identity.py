"""
Stable device identity derived from a Signal K base path.

The local index is a 32-bit multiplicative string hash of the base path,
reduced modulo 1000. It needs no persisted state and is identical across
restarts, which the GX device relies on until the settings registrar hands
out an authoritative VRM instance.

Two distinct base paths can collide (birthday bound over 1000 slots). That
is accepted: changing the algorithm would move existing installations'
devices to different VRM instances. The scheme sits behind
:class:`IdentityScheme` so a persisted-identity scheme can replace it
without touching callers.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import hashlib
from typing import Protocol

INDEX_MODULUS = 1000
"""Local indexes fall in ``[0, INDEX_MODULUS)``."""


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value >= 0x80000000 else value


def stable_index(base_path: str) -> int:
    """Return the deterministic local index of *base_path*.

    Computes ``h = h * 31 + ord(c)`` over the characters with signed 32-bit
    wrap-around, then ``abs(h) % 1000``.
    """
    h = 0
    for char in base_path:
        h = _to_int32((h << 5) - h + ord(char))
    return abs(h) % INDEX_MODULUS


def derive_serial(base_path: str) -> str:
    """Return a stable, non-empty serial number for the device at *base_path*."""
    digest = hashlib.sha256(base_path.encode("utf-8")).hexdigest()[:10].upper()
    return f"SK{digest}"


class IdentityScheme(Protocol):
    """Maps a base path to the identity a virtual device presents."""

    def index_for(self, base_path: str) -> int: ...

    def serial_for(self, base_path: str) -> str: ...


class HashIdentityScheme:
    """Default identity scheme: path hash index, sha256-derived serial."""

    def index_for(self, base_path: str) -> int:
        return stable_index(base_path)

    def serial_for(self, base_path: str) -> str:
        return derive_serial(base_path)
