"""Store protocols used by the schema catalog and the mutation applier.

The replicator only needs two capabilities from a relational store: run a
read-only query returning rows as dicts, and run a statement returning the
affected row count.  Both are auto-committed units.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class CatalogStore(Protocol):
    """Read access to a store's catalog plus DDL execution."""

    def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> list[dict[str, Any]]:
        """Run a query and return each row as a column -> value dict."""
        ...

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Run a statement and return the number of affected rows."""
        ...


@runtime_checkable
class MutationStore(Protocol):
    """Write access used for INSERT/UPDATE/DELETE/UPSERT."""

    def execute(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        *,
        idempotent: bool = True,
    ) -> int:
        """Run a statement and return the number of affected rows.

        A non-idempotent statement must not be replayed after a lost
        connection, since the server may already have committed it.
        """
        ...
