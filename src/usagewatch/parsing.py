import math
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence


def lenient_float(
    payload: "Mapping[str, Any]",
    keys: "Sequence[str]",
    default: "float" = 0.0,
) -> "float":
    """
    returns the first value found under any of the given keys that
    can be read as a number. JSON numbers and numeric strings are
    both accepted; booleans are not. Falls back to default when no
    key yields a number, since upstream payloads are unversioned.
    """
    for key in keys:
        value = coerce_float(payload.get(key))
        if value is not None:
            return value
    return default


def lenient_int(
    payload: "Mapping[str, Any]",
    keys: "Sequence[str]",
    default: "int" = 0,
) -> "int":
    for key in keys:
        value = coerce_float(payload.get(key))
        if value is not None:
            return int(value)
    return default


def coerce_float(value: "Any") -> "float | None":
    """
    reads a JSON number or numeric string. NaN and infinities,
    including strings that overflow to infinity, count as absent.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def coerce_int(value: "Any") -> "int | None":
    number = coerce_float(value)
    if number is None:
        return None
    return int(number)


def parse_iso_datetime(value: "Any") -> "datetime | None":
    """
    parses ISO-8601 strings with or without fractional seconds and
    a trailing "Z". Naive results are assumed to be UTC.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_epoch_seconds(value: "Any") -> "datetime | None":
    seconds = coerce_float(value)
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def from_epoch_millis(value: "Any") -> "datetime | None":
    millis = coerce_float(value)
    if millis is None:
        return None
    return from_epoch_seconds(millis / 1000)
