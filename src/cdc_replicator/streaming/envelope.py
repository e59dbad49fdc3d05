"""Debezium JSON change envelope model and decoder.

Only the fields the replicator acts on are read:

- ``before`` / ``after``  row snapshots (objects or null)
- ``source.db`` / ``source.table``  origin of the change
- ``op``     one of ``c`` (create), ``u`` (update), ``d`` (delete), ``r`` (snapshot read)
- ``ts_ms``  connector timestamp, carried but not used for routing

Every other field is ignored.  An empty body is a tombstone and decodes to
``None``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from cdc_replicator.errors import DecodeError

Row = dict[str, Any]


class Operation(StrEnum):
    """Debezium operation codes."""

    CREATE = "c"
    UPDATE = "u"
    DELETE = "d"
    READ = "r"

    @property
    def label(self) -> str:
        return _OPERATION_LABELS[self]


_OPERATION_LABELS = {
    Operation.CREATE: "INSERT",
    Operation.UPDATE: "UPDATE",
    Operation.DELETE: "DELETE",
    Operation.READ: "SNAPSHOT",
}


@dataclass(frozen=True, slots=True)
class TableCoordinates:
    """Identity of a replicated table: source database + table name."""

    database: str | None
    table: str

    @property
    def qualified_name(self) -> str:
        if self.database:
            return f"{self.database}.{self.table}"
        return self.table


@dataclass(slots=True)
class ChangeEvent:
    """A single decoded change envelope."""

    before: Row | None
    after: Row | None
    source: TableCoordinates | None
    operation: Operation | str | None
    timestamp_ms: int | None = None

    @property
    def table_name(self) -> str | None:
        return self.source.table if self.source else None

    @property
    def database_name(self) -> str | None:
        return self.source.database if self.source else None

    @property
    def operation_label(self) -> str:
        if isinstance(self.operation, Operation):
            return self.operation.label
        return "UNKNOWN"

    @property
    def sample_row(self) -> Row | None:
        """Row data usable for schema inference: ``after`` first, then ``before``."""
        return self.after if self.after is not None else self.before


def decode_envelope(payload: bytes | str | None) -> ChangeEvent | None:
    """Decode a raw message body into a ChangeEvent.

    Returns ``None`` for tombstones (empty body or JSON ``null``).  Raises
    :class:`DecodeError` when the body is not a JSON object envelope.
    """
    if payload is None:
        return None
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            msg = f"Envelope is not valid UTF-8: {exc}"
            raise DecodeError(msg) from exc
    if not payload.strip():
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        msg = f"Envelope is not valid JSON: {exc}"
        raise DecodeError(msg) from exc

    if data is None:
        return None
    if not isinstance(data, dict):
        msg = f"Envelope must be a JSON object, got {type(data).__name__}"
        raise DecodeError(msg)

    # JsonConverter with schemas.enable=true wraps the envelope
    if "op" not in data and "payload" in data:
        data = data["payload"]
        if data is None:
            return None
        if not isinstance(data, dict):
            msg = f"Envelope payload must be a JSON object, got {type(data).__name__}"
            raise DecodeError(msg)

    return ChangeEvent(
        before=_row(data, "before"),
        after=_row(data, "after"),
        source=_source(data.get("source")),
        operation=_operation(data.get("op")),
        timestamp_ms=_timestamp(data.get("ts_ms")),
    )


def _row(data: dict[str, Any], field: str) -> Row | None:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, dict):
        msg = f"Envelope field '{field}' must be an object, got {type(value).__name__}"
        raise DecodeError(msg)
    return {column: _scalar(v) for column, v in value.items()}


def _scalar(value: Any) -> Any:
    # json/jsonb columns may arrive as structures; the row keeps them as text
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _source(value: Any) -> TableCoordinates | None:
    if not isinstance(value, dict):
        return None
    table = value.get("table")
    if not table:
        return None
    return TableCoordinates(database=value.get("db"), table=str(table))


def _operation(value: Any) -> Operation | str | None:
    if value is None:
        return None
    try:
        return Operation(value)
    except ValueError:
        return str(value)


def _timestamp(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
