"""Value parsing for warehouse rows.

All functions accept the raw cell value (str, number, datetime or None) and
return the parsed type or None when the value is absent or unparseable.
Callers decide whether None is an error.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

# BigQuery renders TIMESTAMP columns as "2021-10-01 12:00:00.123 UTC" in CSV exports
_UTC_SUFFIX_RE = re.compile(r"\s*(UTC|Z)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_ts
# ---------------------------------------------------------------------------

def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_ts(value: Any) -> datetime | None:
    """Parse a timestamp cell into an aware UTC datetime.

    Accepts datetime objects (naive values are taken as UTC), ISO-8601 strings
    with or without a trailing 'UTC'/'Z', and epoch seconds as int, float or
    Decimal.  Numeric strings are not taken as epochs: a bare "2021" in a
    timestamp column is malformed, not 1970.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float, Decimal)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    v = trim(value)
    if v is None:
        return None

    had_utc_suffix = _UTC_SUFFIX_RE.search(v) is not None
    v = _UTC_SUFFIX_RE.sub("", v)
    try:
        dt = datetime.fromisoformat(v)
    except ValueError:
        return None
    if had_utc_suffix and dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return _as_utc(dt)


# ---------------------------------------------------------------------------
# Rule 3: parse_int32
# ---------------------------------------------------------------------------

def parse_int32(value: Any) -> int | None:
    """Parse a signed 32-bit integer.  Bools, fractions and overflow → None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        n = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        n = int(value)
    else:
        v = trim(value)
        if v is None:
            return None
        try:
            d = Decimal(v)
        except InvalidOperation:
            return None
        if not d.is_finite() or d != d.to_integral_value():
            return None
        n = int(d)
    if n < INT32_MIN or n > INT32_MAX:
        return None
    return n


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)
