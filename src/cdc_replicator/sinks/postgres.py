"""Row-level mutations against the PostgreSQL target.

Each operation renders one parameterized statement, coerces the row values
and executes it as a single auto-committed unit.  Identifiers are always
double-quoted and, when a target schema is configured, schema-qualified;
parameters are positional and follow the row's column order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import structlog

from cdc_replicator.errors import MissingPredicateError, MutationExecutionError
from cdc_replicator.sinks.coercion import coerce_row, coerce_value
from cdc_replicator.store.base import MutationStore

logger = structlog.get_logger()

Statement = tuple[str, list[Any]]


def quote_ident(name: str) -> str:
    """Quote a SQL identifier, doubling any embedded quote."""
    return '"' + name.replace('"', '""') + '"'


def qualified_table(table: str, schema: str | None = None) -> str:
    """``"schema"."table"``, or just ``"table"`` when *schema* is unset."""
    if schema:
        return f"{quote_ident(schema)}.{quote_ident(table)}"
    return quote_ident(table)


def _dml(identifier: str) -> str:
    # psycopg2 treats every % in a parameterized statement as a placeholder
    return identifier.replace("%", "%%")


def _column_list(columns: Iterable[str]) -> str:
    return ", ".join(_dml(quote_ident(c)) for c in columns)


def _predicate(columns: Iterable[str], separator: str) -> str:
    return separator.join(f"{_dml(quote_ident(c))} = %s" for c in columns)


def build_insert(
    table: str, row: Mapping[str, Any], *, schema: str | None = None
) -> Statement:
    target = _dml(qualified_table(table, schema))
    placeholders = ", ".join("%s" for _ in row)
    sql = (
        f"INSERT INTO {target} ({_column_list(row)}) "  # noqa: S608
        f"VALUES ({placeholders})"
    )
    return sql, coerce_row(dict(row))


def build_update(
    table: str,
    new_row: Mapping[str, Any],
    where_row: Mapping[str, Any],
    *,
    schema: str | None = None,
) -> Statement:
    target = _dml(qualified_table(table, schema))
    sql = (
        f"UPDATE {target} SET {_predicate(new_row, ', ')} "  # noqa: S608
        f"WHERE {_predicate(where_row, ' AND ')}"
    )
    params = coerce_row(dict(new_row)) + coerce_row(dict(where_row))
    return sql, params


def build_delete(
    table: str, where_row: Mapping[str, Any], *, schema: str | None = None
) -> Statement:
    target = _dml(qualified_table(table, schema))
    sql = f"DELETE FROM {target} WHERE {_predicate(where_row, ' AND ')}"  # noqa: S608
    return sql, coerce_row(dict(where_row))


def build_upsert(
    table: str,
    row: Mapping[str, Any],
    conflict_columns: Sequence[str],
    *,
    schema: str | None = None,
) -> Statement:
    """Render INSERT ... ON CONFLICT DO UPDATE (unconditional last-writer-wins)."""
    insert_sql, params = build_insert(table, row, schema=schema)
    conflict = set(conflict_columns)
    updates = [
        f"{_dml(quote_ident(c))} = EXCLUDED.{_dml(quote_ident(c))}"
        for c in row
        if c not in conflict
    ]
    if updates:
        action = f"DO UPDATE SET {', '.join(updates)}"
    else:
        # Row holds only key columns; nothing to overwrite
        action = "DO NOTHING"
    sql = f"{insert_sql} ON CONFLICT ({_column_list(conflict_columns)}) {action}"
    return sql, params


class MutationApplier:
    """Applies INSERT / UPDATE / DELETE / UPSERT to target tables.

    Tables are qualified with *schema* when given.  Plain inserts are not
    idempotent, so the store is told not to replay them after a lost
    connection.
    """

    def __init__(self, store: MutationStore, *, schema: str | None = None) -> None:
        self._store = store
        self._schema = schema

    def insert(self, table: str, row: Mapping[str, Any] | None) -> int:
        if not row:
            logger.warning("applier.empty_row", op="INSERT", table=table)
            return 0
        sql, params = build_insert(table, row, schema=self._schema)
        return self._execute("INSERT", table, sql, params, idempotent=False)

    def update(
        self,
        table: str,
        new_row: Mapping[str, Any] | None,
        where_row: Mapping[str, Any] | None,
    ) -> int:
        if not new_row:
            logger.warning("applier.empty_row", op="UPDATE", table=table)
            return 0
        if not where_row:
            logger.error("applier.missing_predicate", op="UPDATE", table=table)
            msg = f"WHERE clause required for UPDATE on table {table}"
            raise MissingPredicateError(msg)
        sql, params = build_update(table, new_row, where_row, schema=self._schema)
        affected = self._execute("UPDATE", table, sql, params)
        if affected == 0:
            logger.warning(
                "applier.no_rows_affected",
                op="UPDATE",
                table=table,
                where={k: coerce_value(v) for k, v in where_row.items()},
            )
        return affected

    def delete(self, table: str, where_row: Mapping[str, Any] | None) -> int:
        if not where_row:
            logger.error("applier.missing_predicate", op="DELETE", table=table)
            msg = f"WHERE clause required for DELETE on table {table}"
            raise MissingPredicateError(msg)
        sql, params = build_delete(table, where_row, schema=self._schema)
        affected = self._execute("DELETE", table, sql, params)
        if affected == 0:
            logger.warning(
                "applier.no_rows_affected",
                op="DELETE",
                table=table,
                where={k: coerce_value(v) for k, v in where_row.items()},
            )
        return affected

    def upsert(
        self,
        table: str,
        row: Mapping[str, Any] | None,
        conflict_columns: Sequence[str],
    ) -> int:
        if not row:
            logger.warning("applier.empty_row", op="UPSERT", table=table)
            return 0
        if not conflict_columns:
            msg = f"UPSERT on table {table} requires conflict columns"
            raise ValueError(msg)
        sql, params = build_upsert(
            table, row, conflict_columns, schema=self._schema
        )
        return self._execute("UPSERT", table, sql, params)

    def _execute(
        self,
        op: str,
        table: str,
        sql: str,
        params: list[Any],
        *,
        idempotent: bool = True,
    ) -> int:
        logger.debug("applier.execute", op=op, table=table, sql=sql, params=params)
        try:
            affected = self._store.execute(sql, params, idempotent=idempotent)
        except Exception as exc:
            logger.error("applier.failed", op=op, table=table, error=str(exc))
            msg = f"{op} failed for table {table}"
            raise MutationExecutionError(msg) from exc
        logger.debug("applier.applied", op=op, table=table, rows=affected)
        return affected
