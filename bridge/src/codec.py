"""
Value codec between Python scalars and D-Bus variants.

The Venus OS BusItem interface carries every value as a D-Bus variant. A
value that is absent or invalid is not sent as a typed zero: it is sent as
an empty integer array (``Variant("ai", [])``), which the GX UI renders as
"no data". This module owns that convention.

This is a pure module: no side effects, no I/O.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math

from dbus_fast import Variant

from bridge.src.exceptions import ValidationError

# ---------------------------------------------------------------------------
# Type tags
# ---------------------------------------------------------------------------

TYPE_STRING = "s"
TYPE_INT = "i"
TYPE_DOUBLE = "d"
TYPE_BOOL = "b"

SUPPORTED_TYPES: frozenset[str] = frozenset({TYPE_STRING, TYPE_INT, TYPE_DOUBLE, TYPE_BOOL})
"""Scalar D-Bus signatures a BusItem value may carry."""

INVALID_SIGNATURE = "ai"
"""Signature of the invalid-value sentinel."""

INVALID_TEXT = "---"
"""GetText rendering of an invalid value."""


def invalid_value() -> Variant:
    """Return a fresh invalid-value sentinel variant."""
    return Variant(INVALID_SIGNATURE, [])


def is_invalid(variant: Variant) -> bool:
    """Return True if *variant* is the invalid-value sentinel."""
    return variant.signature == INVALID_SIGNATURE and not variant.value


# ---------------------------------------------------------------------------
# Wrap / unwrap
# ---------------------------------------------------------------------------


def wrap(type_tag: str, value: object) -> Variant:
    """Wrap a Python scalar into the variant form the BusItem protocol uses.

    Args:
        type_tag: One of ``"s"``, ``"i"``, ``"d"``, ``"b"``.
        value: The scalar to wrap, or ``None`` for "no data".

    Returns:
        A :class:`dbus_fast.Variant`. ``None`` maps to the invalid-value
        sentinel regardless of *type_tag*.

    Raises:
        ValidationError: If *type_tag* is unsupported or *value* cannot be
            represented with it (e.g. a non-finite float for ``"i"``).
    """
    if type_tag not in SUPPORTED_TYPES:
        raise ValidationError(f"Unsupported D-Bus type tag '{type_tag}'")
    if value is None:
        return invalid_value()

    try:
        if type_tag == TYPE_STRING:
            return Variant(TYPE_STRING, str(value))
        if type_tag == TYPE_BOOL:
            return Variant(TYPE_BOOL, bool(value))
        if isinstance(value, str):
            raise ValidationError(f"String '{value}' cannot be wrapped as '{type_tag}'")
        number = float(value)  # type: ignore[arg-type]
        if not math.isfinite(number):
            raise ValidationError(f"Non-finite value {value!r} cannot be wrapped")
        if type_tag == TYPE_INT:
            return Variant(TYPE_INT, int(round(number)))
        return Variant(TYPE_DOUBLE, number)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Cannot wrap {value!r} as '{type_tag}': {exc}") from exc


def unwrap(variant: Variant) -> object:
    """Return the Python value inside *variant*; the sentinel maps to ``None``."""
    if is_invalid(variant):
        return None
    return variant.value


def type_for(value: object) -> str:
    """Infer the type tag for a Python scalar.

    ``bool`` is checked before ``int`` because ``bool`` subclasses ``int``.

    Raises:
        ValidationError: For values that are not str/bool/int/float.
    """
    if isinstance(value, str):
        return TYPE_STRING
    if isinstance(value, bool):
        return TYPE_BOOL
    if isinstance(value, int):
        return TYPE_INT
    if isinstance(value, float):
        return TYPE_DOUBLE
    raise ValidationError(f"Unsupported value type {type(value).__name__}")


def format_text(value: object, unit: str = "") -> str:
    """Render a value for GetText, appending *unit* when given."""
    if value is None:
        return INVALID_TEXT
    if isinstance(value, float):
        text = f"{value:.2f}"
    else:
        text = str(value)
    return f"{text} {unit}".rstrip() if unit else text
