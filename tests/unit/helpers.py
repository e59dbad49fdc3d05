"""Test doubles and envelope builders shared by the unit tests."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Sequence
from typing import Any
from unittest.mock import MagicMock

from cdc_replicator.streaming.base import Delivery


class SQLiteStore:
    """In-memory stand-in for PostgresStore.

    Each target schema is an attached in-memory database, so
    ``"schema"."table"`` resolves the way it does in PostgreSQL while an
    unqualified CREATE lands in ``main``, outside every schema.  Translates
    ``%s`` placeholders and answers the two information_schema lookups the
    catalog issues against the target from the schema's own catalog.
    """

    def __init__(self, *schemas: str) -> None:
        self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self.statements: list[str] = []
        for schema in schemas or ("public",):
            self._conn.execute(f"ATTACH DATABASE ':memory:' AS \"{schema}\"")

    def execute(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        *,
        idempotent: bool = True,
    ) -> int:
        with self._lock:
            self.statements.append(sql)
            cur = self._conn.execute(sql.replace("%s", "?"), tuple(params or ()))
            self._conn.commit()
            return cur.rowcount

    def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> list[dict[str, Any]]:
        if "information_schema.tables" in sql:
            schema, table = params or ("", "")
            return self._select(
                f'SELECT COUNT(*) AS table_count FROM "{schema}".sqlite_master '
                "WHERE type = 'table' AND name = ?",
                (table,),
            )
        if "information_schema.key_column_usage" in sql:
            schema, table = params or ("", "")
            info = self._select(f'PRAGMA "{schema}".table_info("{table}")', ())
            keyed = sorted((r for r in info if r["pk"]), key=lambda r: r["pk"])
            return [{"column_name": r["name"]} for r in keyed]
        return self._select(sql.replace("%s", "?"), tuple(params or ()))

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._conn.execute(sql, params).fetchall()]

    def rows(self, table: str, schema: str = "public") -> list[dict[str, Any]]:
        return self._select(f'SELECT * FROM "{schema}"."{table}" ORDER BY rowid', ())

    def close(self) -> None:
        self._conn.close()


def source_catalog(
    columns: dict[str, list[dict[str, Any]]],
    primary_keys: dict[str, list[str]],
) -> MagicMock:
    """Mock source store answering the column and primary-key catalog queries."""

    def _query(sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        table = (params or ("",))[0]
        if "information_schema.columns" in sql:
            return columns.get(table, [])
        return [{"column_name": c} for c in primary_keys.get(table, [])]

    store = MagicMock()
    store.query.side_effect = _query
    return store


def column(
    name: str,
    data_type: str,
    *,
    nullable: bool = True,
    max_length: int | None = None,
    precision: int | None = None,
    scale: int | None = None,
) -> dict[str, Any]:
    """One ``information_schema.columns`` row."""
    return {
        "column_name": name,
        "data_type": data_type,
        "is_nullable": "YES" if nullable else "NO",
        "column_default": None,
        "character_maximum_length": max_length,
        "numeric_precision": precision,
        "numeric_scale": scale,
    }


def envelope(
    op: str | None,
    *,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    table: str | None = "products",
    db: str | None = "inventory",
) -> bytes:
    """Serialize a Debezium-style change envelope."""
    data: dict[str, Any] = {
        "before": before,
        "after": after,
        "op": op,
        "ts_ms": 1700000000000,
    }
    if table is not None:
        data["source"] = {"db": db, "table": table, "connector": "postgresql"}
    return json.dumps(data).encode()


def delivery(value: bytes | None, *, offset: int = 0) -> Delivery:
    return Delivery(
        topic="dbserver1.inventory.products",
        partition=0,
        offset=offset,
        key=b'{"id":1}',
        value=value,
    )
