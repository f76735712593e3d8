"""
Canonical Codec — Deterministic serialization for hashing and signing.

The output of ``stable_serialize`` feeds a hash that the wallet, the node and
external SDKs must reproduce byte for byte, so the textual form follows
JavaScript's ``JSON.stringify`` for every scalar:

- ``None`` -> ``null``, booleans -> ``true``/``false``
- numbers use the shortest round-trip form, integral floats drop ``.0``
- strings are JSON-escaped without forcing ASCII
- dict keys are sorted by UTF-16 code units before serialization

Only the closed JSON value set is accepted: ``None``, ``bool``, ``int``,
``float``, ``str``, ``list``/``tuple`` and ``dict`` with ``str`` keys.
"""
import math
import base64
import binascii
import decimal
from typing import Any, Union

import orjson

from .exceptions import CircularReference, FormatError, UnsupportedValue

JsonScalar = Union[None, bool, int, float, str]
JsonValue = Union[JsonScalar, list["JsonValue"], tuple["JsonValue", ...], dict[str, "JsonValue"]]


# ---------------------------------------------------------------------------
# Base64 helpers
# ---------------------------------------------------------------------------

def b64encode(data: bytes) -> str:
    """Encode bytes as standard padded base64 text."""
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Decode standard base64 text.

    Raises:
        FormatError: If ``value`` is not valid base64.
    """
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise FormatError("Invalid base64 data") from err


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

def format_number(value: Union[int, float]) -> str:
    """Render a number the way ``JSON.stringify`` does.

    Non-finite floats render as ``null``.
    """
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"
    text = repr(value)
    if "e" not in text:
        return text[:-2] if text.endswith(".0") else text
    mantissa, exponent = text.split("e")
    exp = int(exponent)
    if -7 < exp < 21:
        return format(decimal.Decimal(text), "f")
    sign = "+" if exp > 0 else "-"
    return f"{mantissa}e{sign}{abs(exp)}"


def _format_string(value: str) -> str:
    try:
        return orjson.dumps(value).decode("utf-8")
    except orjson.JSONEncodeError as err:
        raise UnsupportedValue(f"String is not valid UTF-8: {err}") from err


def as_string(value: Any) -> str:
    """Coerce a transaction scalar to its canonical string form.

    ``None`` becomes the empty string, never ``"null"``.

    Raises:
        UnsupportedValue: For non-finite numbers and non-scalar values.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise UnsupportedValue(f"Non-finite number: {value!r}")
        return format_number(value)
    raise UnsupportedValue(
        f"Cannot coerce {type(value).__name__} to a canonical string"
    )


# ---------------------------------------------------------------------------
# Structured values
# ---------------------------------------------------------------------------

def _utf16_key(key: str) -> bytes:
    # JS Array.prototype.sort compares UTF-16 code units
    return key.encode("utf-16-be", "surrogatepass")


def _encode(value: Any, path: set[int]) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return _format_string(value)
    if isinstance(value, (list, tuple, dict)):
        marker = id(value)
        if marker in path:
            raise CircularReference(
                f"{type(value).__name__} contains itself"
            )
        path.add(marker)
        try:
            if isinstance(value, dict):
                for key in value:
                    if not isinstance(key, str):
                        raise UnsupportedValue(
                            f"Map keys must be strings, got {type(key).__name__}"
                        )
                parts = [
                    f"{_format_string(key)}:{_encode(value[key], path)}"
                    for key in sorted(value, key=_utf16_key)
                ]
                return "{" + ",".join(parts) + "}"
            return "[" + ",".join(_encode(item, path) for item in value) + "]"
        finally:
            path.discard(marker)
    raise UnsupportedValue(
        f"Unsupported value type: {type(value).__name__}"
    )


def stable_dumps(value: Any) -> str:
    """Serialize ``value`` to canonical JSON text.

    Raises:
        CircularReference: If a list or dict recurs along its own path.
        UnsupportedValue: If ``value`` holds anything outside the JSON set.
    """
    return _encode(value, set())


def stable_serialize(value: Any) -> bytes:
    """Serialize ``value`` to canonical UTF-8 bytes for hashing and signing."""
    return stable_dumps(value).encode("utf-8")
