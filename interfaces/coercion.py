"""
Conversion between loosely typed payloads and typed wire values.

Raw values are either the strings a user types on a command line or the
values produced by a generic JSON decoder. Typed values are plain Python
objects: int, float, bool, str, bytes, aware datetime, or lists of those.
"""

import base64
import binascii
import json
import math
import re
from collections.abc import Mapping as MappingABC
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

from .models import InterfaceSchema, MappingType
from .paths import mapping_from_path
from .timestamps import format_rfc3339, to_utc


INT32_MIN, INT32_MAX = -2**31, 2**31 - 1
INT64_MIN, INT64_MAX = -2**63, 2**63 - 1

_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
_NUMBER_PATTERN = re.compile(r"^-?(0|[1-9]\d*)(\.\d+)?([eE][+-]?\d+)?$")
_EPOCH_DIVISORS = {10: 1, 13: 10**3, 16: 10**6, 19: 10**9}


class CoercionError(ValueError):
    """Raised when a value cannot be represented as the requested wire type."""
    pass


def _coerce_bounded_integer(raw: Any, low: int, high: int, type_name: str) -> int:
    if isinstance(raw, bool):
        raise CoercionError(f"{raw!r} is a boolean, not a valid {type_name}")

    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not math.isfinite(raw) or raw != math.trunc(raw):
            raise CoercionError(f"{raw!r} is not a valid {type_name}")
        value = int(raw)
    elif isinstance(raw, str):
        if not _INTEGER_PATTERN.match(raw):
            raise CoercionError(f"'{raw}' is not a valid {type_name}")
        value = int(raw)
    else:
        raise CoercionError(f"{raw!r} is not a valid {type_name}")

    if not low <= value <= high:
        raise CoercionError(f"{value} is out of range for {type_name}")
    return value


def _coerce_integer(raw: Any) -> int:
    return _coerce_bounded_integer(raw, INT32_MIN, INT32_MAX, "integer")


def _coerce_long_integer(raw: Any) -> int:
    return _coerce_bounded_integer(raw, INT64_MIN, INT64_MAX, "longinteger")


def _coerce_double(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise CoercionError(f"{raw!r} is not a valid double")
    try:
        return float(raw)
    except (ValueError, OverflowError):
        raise CoercionError(f"'{raw}' is not a valid double")


def _coerce_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw == "true":
        return True
    if raw == "false":
        return False
    raise CoercionError(f"{raw!r} is not a valid boolean, use 'true' or 'false'")


def _coerce_string(raw: Any) -> str:
    if not isinstance(raw, str):
        raise CoercionError(f"{raw!r} is not a string")
    return raw


def _coerce_binary_blob(raw: Any) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if not isinstance(raw, str):
        raise CoercionError(f"{raw!r} is not a valid binaryblob")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise CoercionError("Input string is not base64 encoded")


def _coerce_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return to_utc(raw)
    if isinstance(raw, bool):
        raise CoercionError(f"{raw!r} is not a valid datetime")
    if isinstance(raw, (int, float)):
        return _from_epoch(raw, 1)
    if not isinstance(raw, str) or not raw.strip():
        raise CoercionError(f"{raw!r} is not a valid datetime")

    raw = raw.strip()
    if raw.isdigit() and len(raw) in _EPOCH_DIVISORS:
        return _from_epoch(int(raw), _EPOCH_DIVISORS[len(raw)])

    try:
        return to_utc(date_parser.parse(raw))
    except (ValueError, OverflowError) as e:
        raise CoercionError(f"'{raw}' is not a recognized date/time: {e}")


def _from_epoch(value: int | float, divisor: int) -> datetime:
    try:
        return datetime.fromtimestamp(value / divisor, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        raise CoercionError(f"{value} is not a valid epoch timestamp")


_SCALAR_COERCERS = {
    MappingType.INTEGER: _coerce_integer,
    MappingType.LONG_INTEGER: _coerce_long_integer,
    MappingType.DOUBLE: _coerce_double,
    MappingType.BOOLEAN: _coerce_boolean,
    MappingType.STRING: _coerce_string,
    MappingType.BINARY_BLOB: _coerce_binary_blob,
    MappingType.DATETIME: _coerce_datetime,
}


def _coerce_array(raw: Any, wire_type: MappingType) -> list:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CoercionError(f"Invalid JSON array for {wire_type.value}: {e}")

    if not isinstance(raw, (list, tuple)):
        raise CoercionError(f"{wire_type.value} expects an array, got {type(raw).__name__}")

    coercer = _SCALAR_COERCERS[wire_type.scalar]
    result = []
    for index, item in enumerate(raw):
        try:
            result.append(coercer(item))
        except CoercionError as e:
            raise CoercionError(f"Invalid item {index} of {wire_type.value}: {e}")
    return result


def normalize_json_numbers(value: Any) -> Any:
    """
    Re-represent integral floats coming out of a generic JSON decoder as ints.

    Fractional values are left alone, so 15.0 becomes 15 while 15.5 stays
    15.5. Maps and lists are walked recursively, keeping key order.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value == math.trunc(value):
            return int(value)
        return value
    if isinstance(value, MappingABC):
        return {k: normalize_json_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [normalize_json_numbers(v) for v in value]
    return value


def coerce(raw: Any, wire_type: Optional[MappingType | str]) -> Any:
    """
    Coerce a raw value into the typed value for a wire type.

    Args:
        raw: A command line string or a generically decoded JSON value
        wire_type: Declared mapping type, or None for a generic decode

    Returns:
        Typed value

    Raises:
        CoercionError: If raw cannot be represented as wire_type
    """
    if wire_type is None:
        if isinstance(raw, str) and _NUMBER_PATTERN.match(raw):
            if _INTEGER_PATTERN.match(raw):
                return int(raw)
            return normalize_json_numbers(float(raw))
        return normalize_json_numbers(raw)

    try:
        wire_type = MappingType(wire_type)
    except ValueError:
        raise CoercionError(f"{wire_type} is not a valid mapping type")

    if wire_type.is_array:
        return _coerce_array(raw, wire_type)
    return _SCALAR_COERCERS[wire_type](raw)


def to_json_value(typed: Any) -> Any:
    """Return the JSON serializable wire form of a typed value."""
    if isinstance(typed, (bytes, bytearray)):
        return base64.b64encode(bytes(typed)).decode("ascii")
    if isinstance(typed, datetime):
        return format_rfc3339(typed)
    if isinstance(typed, MappingABC):
        return {k: to_json_value(v) for k, v in typed.items()}
    if isinstance(typed, (list, tuple)):
        return [to_json_value(v) for v in typed]
    return typed


def decoerce(typed: Any, wire_type: Optional[MappingType | str] = None) -> str:
    """
    Render a typed value back into its command line string form.

    When wire_type is given, typed is first coerced to it, so the output
    always parses back to the same typed value.

    Raises:
        CoercionError: If typed is not representable as wire_type
    """
    if wire_type is not None:
        typed = coerce(typed, wire_type)

    if isinstance(typed, bool):
        return "true" if typed else "false"
    if isinstance(typed, int):
        return str(typed)
    if isinstance(typed, float):
        return repr(typed)
    if isinstance(typed, str):
        return typed
    if isinstance(typed, (bytes, bytearray, datetime)):
        return to_json_value(typed)
    return json.dumps(to_json_value(typed))


def coerce_object_payload(
    schema: Optional[InterfaceSchema],
    base_path: str,
    payload: Any
) -> dict:
    """
    Coerce an object aggregated payload, one sibling at a time.

    Each key is resolved to the mapping at base_path/key. Without a schema
    the payload only gets its JSON numbers normalized.

    Raises:
        CoercionError: If the payload is not a JSON object or a value is invalid
        SchemaMismatchError: If a key does not resolve to a mapping
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise CoercionError(f"Invalid JSON object payload: {e}")

    if not isinstance(payload, MappingABC):
        raise CoercionError("Object aggregated payloads must be JSON objects")

    if schema is None:
        return normalize_json_numbers(payload)

    coerced = {}
    for key, value in payload.items():
        mapping = mapping_from_path(schema, f"{base_path.rstrip('/')}/{key}")
        try:
            coerced[key] = coerce(value, mapping.type)
        except CoercionError as e:
            raise CoercionError(f"Invalid value for {mapping.endpoint}: {e}")
    return coerced
