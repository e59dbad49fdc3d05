"""Column type rendering for target DDL.

Two sources of type information feed ``CREATE TABLE`` statements:

- :func:`map_source_type` translates a type declared in the source catalog
  (``information_schema.columns.data_type``) into target DDL.
- :func:`infer_sample_type` guesses a type from a JSON value when the source
  catalog is unavailable.  This is the degraded path: no lengths, precision or
  key constraints survive it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import structlog

from cdc_replicator.sinks.coercion import ISO_DATETIME_PREFIX, is_int32

logger = structlog.get_logger()

_ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")

# Types that need no length/precision arguments
_SIMPLE_TYPES: dict[str, str] = {
    "text": "TEXT",
    "integer": "INTEGER",
    "int": "INTEGER",
    "int4": "INTEGER",
    "bigint": "BIGINT",
    "int8": "BIGINT",
    "smallint": "SMALLINT",
    "int2": "SMALLINT",
    "real": "REAL",
    "float4": "REAL",
    "double precision": "DOUBLE PRECISION",
    "float8": "DOUBLE PRECISION",
    "boolean": "BOOLEAN",
    "bool": "BOOLEAN",
    "date": "DATE",
    "time": "TIME",
    "timestamp": "TIMESTAMP",
    "timestamp without time zone": "TIMESTAMP",
    "timestamp with time zone": "TIMESTAMPTZ",
    "json": "JSON",
    "jsonb": "JSONB",
    "uuid": "UUID",
}


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    """One column as described by the source catalog."""

    name: str
    data_type: str
    nullable: bool = True
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None

    @classmethod
    def from_catalog_row(cls, row: dict[str, Any]) -> ColumnInfo:
        """Build from an ``information_schema.columns`` row."""
        return cls(
            name=row["column_name"],
            data_type=row["data_type"],
            nullable=row.get("is_nullable") != "NO",
            max_length=row.get("character_maximum_length"),
            precision=row.get("numeric_precision"),
            scale=row.get("numeric_scale"),
        )

    def render_type(self) -> str:
        return map_source_type(
            self.data_type, self.max_length, self.precision, self.scale
        )


def map_source_type(
    data_type: str,
    max_length: int | None = None,
    precision: int | None = None,
    scale: int | None = None,
) -> str:
    """Render the target DDL type for a source-declared column type."""
    key = data_type.strip().lower()

    if key in ("varchar", "character varying"):
        return f"VARCHAR({max_length})" if max_length is not None else "TEXT"
    if key in ("char", "character"):
        return f"CHAR({max_length})" if max_length is not None else "CHAR(1)"
    if key in ("decimal", "numeric"):
        if precision is not None and scale is not None:
            return f"NUMERIC({precision},{scale})"
        if precision is not None:
            return f"NUMERIC({precision})"
        return "NUMERIC"

    mapped = _SIMPLE_TYPES.get(key)
    if mapped is None:
        logger.warning("schema.unknown_type", data_type=data_type, mapped="TEXT")
        return "TEXT"
    return mapped


def infer_sample_type(value: Any) -> str:
    """Infer a target DDL type from one sample JSON value."""
    if value is None:
        return "TEXT"
    if isinstance(value, bool):
        return "BOOLEAN"
    if isinstance(value, int):
        return "INTEGER" if is_int32(value) else "BIGINT"
    if isinstance(value, float):
        return "DOUBLE PRECISION"
    if isinstance(value, str):
        if ISO_DATETIME_PREFIX.match(value):
            return "TIMESTAMP"
        if _ISO_DATE.fullmatch(value):
            return "DATE"
        return "TEXT"
    return "TEXT"
