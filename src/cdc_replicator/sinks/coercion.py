"""Value coercion applied to every outgoing SQL parameter.

Debezium encodes temporal columns as epoch integers (seconds, milliseconds or
microseconds depending on the column precision) or ISO-8601 strings.  These
heuristics turn them back into ``datetime`` objects so psycopg2 binds them as
timestamps:

- 64-bit integers above 13 digits are epoch microseconds, truncated to
  milliseconds.
- 64-bit integers after 2000-01-01 in epoch milliseconds are timestamps.
- 32-bit integers between 2000-01-01 and 2100-01-01 in epoch seconds are
  timestamps.
- ``YYYY-MM-DDTHH:MM:SS...`` strings are local date-times (suffix ignored).

Everything else is passed through unchanged.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

logger = structlog.get_logger()

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

# Largest 13-digit value; anything above is epoch microseconds
_MAX_EPOCH_MILLIS = 9_999_999_999_999
# 2000-01-01T00:00:00Z
_Y2K_MILLIS = 946_684_800_000
_Y2K_SECONDS = 946_684_800
# 2100-01-01T00:00:00Z
_Y2100_SECONDS = 4_102_444_800

# Prefix shared by ISO-8601 date-time strings; anything after the seconds is ignored
ISO_DATETIME_PREFIX = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S"


def is_int32(value: int) -> bool:
    return _INT32_MIN <= value <= _INT32_MAX


def from_epoch_millis(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=millis)


def coerce_value(value: Any) -> Any:
    """Convert a row value to the type bound into the SQL statement."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return _coerce_int(value)
    if isinstance(value, str):
        return _coerce_str(value)
    return value


def coerce_row(row: dict[str, Any]) -> list[Any]:
    """Coerce every value of *row*, preserving column order."""
    return [coerce_value(v) for v in row.values()]


def _coerce_int(value: int) -> Any:
    if is_int32(value):
        if _Y2K_SECONDS < value < _Y2100_SECONDS:
            return _EPOCH + timedelta(seconds=value)
        return value

    if value > 0:
        try:
            if value > _MAX_EPOCH_MILLIS:
                return from_epoch_millis(value // 1000)
            if value > _Y2K_MILLIS:
                return from_epoch_millis(value)
        except OverflowError as exc:
            logger.warning(
                "coercion.timestamp_out_of_range", value=value, error=str(exc)
            )
            return value
    return value


def _coerce_str(value: str) -> Any:
    if not ISO_DATETIME_PREFIX.match(value):
        return value
    try:
        return datetime.strptime(value[:19], _ISO_FORMAT)
    except ValueError as exc:
        logger.warning(
            "coercion.timestamp_parse_failed", value=value, error=str(exc)
        )
        return value
