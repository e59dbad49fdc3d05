"""psycopg2-backed store shared by worker threads."""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Sequence
from typing import Any

import psycopg2
import structlog
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cdc_replicator.config.models import DatabaseConfig

logger = structlog.get_logger()


class PostgresStore:
    """Thread-safe PostgreSQL access through a connection pool.

    Every connection runs in autocommit mode, so each ``execute`` is its own
    unit of work.  A connection that fails with ``OperationalError`` is
    discarded and the call is retried on a fresh one, except for statements
    flagged non-idempotent: the server may have committed them before the
    connection dropped, so they fail instead of running twice.
    """

    def __init__(self, config: DatabaseConfig, *, name: str = "target") -> None:
        self._config = config
        self._name = name
        self._pool: ThreadedConnectionPool | None = None

    @property
    def name(self) -> str:
        return self._name

    def open(self) -> None:
        if self._pool is not None:
            return
        self._pool = ThreadedConnectionPool(
            self._config.min_connections,
            self._config.max_connections,
            host=self._config.host,
            port=self._config.port,
            dbname=self._config.database,
            user=self._config.username,
            password=self._config.password.get_secret_value(),
            connect_timeout=self._config.connect_timeout_seconds,
        )
        logger.info(
            "store.opened",
            store=self._name,
            host=self._config.host,
            database=self._config.database,
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("store.closed", store=self._name)

    def __enter__(self) -> PostgresStore:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextlib.contextmanager
    def _connection(self) -> Iterator[Any]:
        if self._pool is None:
            msg = f"Store '{self._name}' is not open"
            raise RuntimeError(msg)
        pool = self._pool
        conn = pool.getconn()
        broken = False
        try:
            conn.autocommit = True
            yield conn
        except psycopg2.OperationalError:
            broken = True
            raise
        finally:
            pool.putconn(conn, close=broken or conn.closed != 0)

    def _run(self, fn: Any, *, retry: bool = True) -> Any:
        attempts = self._config.reconnect_attempts if retry else 1
        for attempt in Retrying(
            retry=retry_if_exception_type(psycopg2.OperationalError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            before_sleep=self._log_reconnect,
            reraise=True,
        ):
            with attempt, self._connection() as conn:
                return fn(conn)
        return None  # pragma: no cover

    def _log_reconnect(self, retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "store.connection_lost",
            store=self._name,
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    def execute(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        *,
        idempotent: bool = True,
    ) -> int:
        def _execute(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount)

        return int(self._run(_execute, retry=idempotent))

    def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> list[dict[str, Any]]:
        def _query(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]

        return self._run(_query)  # type: ignore[no-any-return]

    def ping(self) -> bool:
        try:
            self.query("SELECT 1 AS ok")
        except Exception:
            return False
        return True
