"""
Exception taxonomy for the bridge daemon.

Every failure inside the bridge ends in "log and continue in a degraded
state"; these classes let callers tell the failure classes apart:

- TransportError: D-Bus connection refused/reset, error replies, closed bus.
- RegistrationError: settings registrar unreachable or malformed reply.
- AnnouncementError: best-effort service announcement failed.
- ValidationError: non-finite number, wrong scalar type, missing serial.
- PersistenceError: history file I/O or verification failure.
- ConcurrencyTimeoutError: device creation wait exceeded its bound.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""


class BridgeError(Exception):
    """Base class for every custom exception raised by the bridge."""


class TransportError(BridgeError):
    """The D-Bus transport failed (connect, call, name request, closed bus)."""


class RegistrationError(BridgeError):
    """The settings registrar did not answer or answered something unusable."""


class AnnouncementError(BridgeError):
    """The service announcement broadcast could not be sent."""


class ValidationError(BridgeError):
    """A value or precondition was rejected; the update is dropped."""


class PersistenceError(BridgeError):
    """Reading or writing the history file failed."""


class ConcurrencyTimeoutError(BridgeError):
    """Waiting for another caller to finish creating a device timed out."""
