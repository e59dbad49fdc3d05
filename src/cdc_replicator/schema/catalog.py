"""Target schema discovery and per-table primary-key metadata.

The catalog makes sure a target table exists before the first mutation for it
is applied, and caches the table's primary-key columns for the lifetime of the
process.  Tables are created by cloning the source table definition from the
source catalog when possible, and by inferring column types from the event's
row data otherwise.

The cache is shared by every worker thread.  Lookups are lock-free; discovery
for a table runs under a per-table lock so concurrent first sightings of the
same table do the introspection once.  ``CREATE TABLE IF NOT EXISTS`` keeps
table creation itself safe even across processes.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import structlog

from cdc_replicator.errors import (
    DDLExecutionError,
    SchemaIntrospectionError,
    UnresolvedKeyError,
)
from cdc_replicator.schema.types import ColumnInfo, infer_sample_type
from cdc_replicator.sinks.postgres import qualified_table, quote_ident
from cdc_replicator.store.base import CatalogStore
from cdc_replicator.streaming.envelope import ChangeEvent, Row, TableCoordinates

logger = structlog.get_logger()

_TABLE_EXISTS_SQL = (
    "SELECT COUNT(*) AS table_count FROM information_schema.tables "
    "WHERE table_schema = %s AND table_name = %s"
)

_COLUMNS_SQL = (
    "SELECT column_name, data_type, is_nullable, column_default, "
    "character_maximum_length, numeric_precision, numeric_scale "
    "FROM information_schema.columns "
    "WHERE table_name = %s "
    "ORDER BY ordinal_position"
)

_PRIMARY_KEY_SQL = (
    "SELECT kcu.column_name "
    "FROM information_schema.key_column_usage kcu "
    "JOIN information_schema.table_constraints tc "
    "ON kcu.constraint_name = tc.constraint_name "
    "AND kcu.table_schema = tc.table_schema "
    "AND kcu.table_name = tc.table_name "
    "WHERE tc.table_name = %s AND tc.constraint_type = 'PRIMARY KEY' "
    "ORDER BY kcu.ordinal_position"
)

_TARGET_PRIMARY_KEY_SQL = (
    "SELECT kcu.column_name "
    "FROM information_schema.key_column_usage kcu "
    "JOIN information_schema.table_constraints tc "
    "ON kcu.constraint_name = tc.constraint_name "
    "AND kcu.table_schema = tc.table_schema "
    "AND kcu.table_name = tc.table_name "
    "WHERE tc.table_schema = %s AND tc.table_name = %s "
    "AND tc.constraint_type = 'PRIMARY KEY' "
    "ORDER BY kcu.ordinal_position"
)


@dataclass(frozen=True, slots=True)
class TableMetadata:
    """Primary-key layout of one target table."""

    table_name: str
    primary_key_columns: tuple[str, ...] = ()

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_key_columns)


class SchemaCatalog:
    """Ensures target tables exist and resolves primary-key values."""

    def __init__(
        self,
        source: CatalogStore,
        target: CatalogStore,
        *,
        target_schema: str = "public",
        suffix_fallback: bool = True,
    ) -> None:
        self._source = source
        self._target = target
        self._target_schema = target_schema
        self._suffix_fallback = suffix_fallback
        self._cache: dict[str, TableMetadata] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def target_schema(self) -> str:
        return self._target_schema

    def cached_tables(self) -> list[str]:
        return sorted(self._cache)

    # -- Table provisioning ----------------------------------------------------

    def ensure_table_exists(
        self, coordinates: TableCoordinates, sample_event: ChangeEvent | None
    ) -> TableMetadata:
        """Create the target table on first sight and cache its metadata.

        Idempotent per table for the lifetime of the catalog.  Raises
        :class:`DDLExecutionError` when the table can neither be found nor
        created.
        """
        key = coordinates.qualified_name
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        with self._lock_for(key):
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            table = coordinates.table
            try:
                if not self._target_table_exists(table):
                    logger.info("schema.creating_table", table=table, key=key)
                    self._create_target_table(table, sample_event)
                metadata = self._load_table_metadata(table)
            except DDLExecutionError:
                raise
            except Exception as exc:
                logger.error(
                    "schema.ensure_table_failed", table=table, error=str(exc)
                )
                msg = f"Failed to prepare target table {table}"
                raise DDLExecutionError(msg) from exc

            self._cache[key] = metadata
            logger.info(
                "schema.table_ready",
                table=table,
                key=key,
                primary_key=list(metadata.primary_key_columns),
            )
            return metadata

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _target_table_exists(self, table: str) -> bool:
        rows = self._target.query(_TABLE_EXISTS_SQL, (self._target_schema, table))
        if not rows:
            return False
        return int(next(iter(rows[0].values())) or 0) > 0

    def _create_target_table(
        self, table: str, sample_event: ChangeEvent | None
    ) -> None:
        sample = sample_event.sample_row if sample_event is not None else None
        if sample is None:
            msg = f"No sample data available to create table {table}"
            raise DDLExecutionError(msg)

        try:
            ddl = self._ddl_from_source_schema(table)
        except SchemaIntrospectionError as exc:
            logger.warning(
                "schema.source_introspection_failed", table=table, error=str(exc)
            )
            self._create_from_sample(table, sample)
            return

        logger.info("schema.create_table", table=table, sql=ddl)
        self._execute_ddl(table, ddl)

    def _create_from_sample(self, table: str, sample: Row) -> None:
        if not sample:
            msg = f"Sample row for table {table} has no columns"
            raise DDLExecutionError(msg)
        ddl = build_sample_ddl(table, sample, schema=self._target_schema)
        logger.info("schema.create_table_from_sample", table=table, sql=ddl)
        self._execute_ddl(table, ddl)
        logger.warning(
            "schema.degraded_table_created",
            table=table,
            detail="column types inferred from sample data; no lengths, "
            "precision or primary key",
        )

    def _execute_ddl(self, table: str, ddl: str) -> None:
        try:
            self._target.execute(ddl)
        except Exception as exc:
            logger.error("schema.ddl_failed", table=table, error=str(exc))
            msg = f"CREATE TABLE failed for {table}"
            raise DDLExecutionError(msg) from exc

    def describe_source_table(
        self, table: str
    ) -> tuple[list[ColumnInfo], list[str]]:
        """Return the source table's columns and primary-key columns.

        Raises :class:`SchemaIntrospectionError` when the source catalog is
        unreachable or does not know the table.
        """
        try:
            column_rows = self._source.query(_COLUMNS_SQL, (table,))
            if not column_rows:
                msg = f"No column information found for source table {table}"
                raise SchemaIntrospectionError(msg)
            pk_rows = self._source.query(_PRIMARY_KEY_SQL, (table,))
        except SchemaIntrospectionError:
            raise
        except Exception as exc:
            msg = f"Source catalog query failed for {table}: {exc}"
            raise SchemaIntrospectionError(msg) from exc

        columns = [ColumnInfo.from_catalog_row(row) for row in column_rows]
        primary_keys = [row["column_name"] for row in pk_rows]
        return columns, primary_keys

    def _ddl_from_source_schema(self, table: str) -> str:
        columns, primary_keys = self.describe_source_table(table)
        return build_source_ddl(
            table, columns, primary_keys, schema=self._target_schema
        )

    def _load_table_metadata(self, table: str) -> TableMetadata:
        rows = self._target.query(
            _TARGET_PRIMARY_KEY_SQL, (self._target_schema, table)
        )
        return TableMetadata(
            table_name=table,
            primary_key_columns=tuple(row["column_name"] for row in rows),
        )

    # -- Key resolution --------------------------------------------------------

    def get_table_metadata(self, table: str | TableCoordinates) -> TableMetadata:
        """Look up metadata for *table*, loading it from the target if uncached.

        A bare table name (or an unmatched qualified name) falls back to the
        first cached entry whose key ends with ``.<table>`` when suffix
        fallback is enabled.
        """
        if isinstance(table, TableCoordinates):
            key, name = table.qualified_name, table.table
        else:
            key, name = table, table

        metadata = self._cache.get(key)
        if metadata is not None:
            return metadata

        if self._suffix_fallback:
            suffix = f".{name}"
            for cached_key, cached in list(self._cache.items()):
                if cached_key.endswith(suffix):
                    return cached

        try:
            return self._load_table_metadata(name)
        except Exception as exc:
            msg = f"Failed to load metadata for table {name}"
            raise DDLExecutionError(msg) from exc

    def extract_primary_key_values(
        self,
        table: str | TableCoordinates,
        old_row: Row | None,
        new_row: Row | None,
    ) -> dict[str, Any]:
        """Return ``{pk_column: value}`` for every key column with a value.

        Values come from *new_row* when it is non-empty, otherwise from
        *old_row*.  Returns an empty dict (and logs) when nothing resolves.
        """
        metadata = self.get_table_metadata(table)
        source_row = new_row if new_row else (old_row or {})

        values: dict[str, Any] = {}
        for column in metadata.primary_key_columns:
            value = source_row.get(column)
            if value is not None:
                values[column] = value

        if not values:
            logger.warning(
                "schema.primary_key_unresolved",
                table=metadata.table_name,
                primary_key=list(metadata.primary_key_columns),
            )
        return values

    def require_primary_key_values(
        self,
        table: str | TableCoordinates,
        old_row: Row | None,
        new_row: Row | None,
    ) -> dict[str, Any]:
        """Like :meth:`extract_primary_key_values` but raise when empty."""
        values = self.extract_primary_key_values(table, old_row, new_row)
        if not values:
            name = table.table if isinstance(table, TableCoordinates) else table
            msg = f"No primary key values found for table {name}"
            raise UnresolvedKeyError(msg)
        return values


def build_source_ddl(
    table: str,
    columns: list[ColumnInfo],
    primary_keys: list[str],
    *,
    schema: str | None = None,
) -> str:
    """Render ``CREATE TABLE IF NOT EXISTS`` from source column definitions."""
    definitions = []
    for column in columns:
        definition = f"{quote_ident(column.name)} {column.render_type()}"
        if not column.nullable:
            definition += " NOT NULL"
        definitions.append(definition)
    if primary_keys:
        keys = ", ".join(quote_ident(pk) for pk in primary_keys)
        definitions.append(f"PRIMARY KEY ({keys})")
    target = qualified_table(table, schema)
    return f"CREATE TABLE IF NOT EXISTS {target} ({', '.join(definitions)})"


def build_sample_ddl(table: str, sample: Row, *, schema: str | None = None) -> str:
    """Render ``CREATE TABLE IF NOT EXISTS`` from one sample row."""
    definitions = [
        f"{quote_ident(column)} {infer_sample_type(value)}"
        for column, value in sample.items()
    ]
    target = qualified_table(table, schema)
    return f"CREATE TABLE IF NOT EXISTS {target} ({', '.join(definitions)})"
