"""
PostgreSQL dialect for tagorm.

Uses psycopg2 with a ThreadedConnectionPool. Rows are read through
RealDictCursor; inserts report generated keys with RETURNING.

Invariants:
    - Pooled connections run in autocommit mode outside transactions
    - Connections go back to the pool in a finally block
    - Connections older than conn_max_lifetime are closed instead of reused
    - Identifiers are always double-quoted
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
from psycopg2 import extras, pool

from ..errors import ConnectionError, ExecutionError, TransactionError
from ..schema.types import FieldKind, FieldMetadata
from .base import Dialect, ExecResult, Transaction

if TYPE_CHECKING:
    from ..config import ConnectionConfig

logger = logging.getLogger(__name__)

_COLUMN_TYPES = {
    FieldKind.INTEGER: "BIGINT",
    FieldKind.FLOAT: "DOUBLE PRECISION",
    FieldKind.DECIMAL: "NUMERIC",
    FieldKind.BOOLEAN: "BOOLEAN",
    FieldKind.TIMESTAMP: "TIMESTAMP",
    FieldKind.DATE: "DATE",
    FieldKind.BYTES: "BYTEA",
    FieldKind.JSON: "JSONB",
}


def _run_query(conn: Any, sql: str, args: Sequence[Any]) -> List[Dict[str, Any]]:
    try:
        with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
            cur.execute(sql, args)
            if cur.description is None:
                return []
            return [dict(row) for row in cur.fetchall()]
    except psycopg2.Error as exc:
        raise ExecutionError(f"Query failed: {exc}", sql=sql) from exc


def _run_execute(conn: Any, sql: str, args: Sequence[Any]) -> ExecResult:
    try:
        with conn.cursor() as cur:
            cur.execute(sql, args)
            last_id = None
            if cur.description is not None:
                row = cur.fetchone()
                if row is not None:
                    last_id = row[0]
            return ExecResult(rows_affected=cur.rowcount, last_insert_id=last_id)
    except psycopg2.Error as exc:
        raise ExecutionError(f"Statement failed: {exc}", sql=sql) from exc


class PostgresTransaction(Transaction):
    """Transaction holding one pooled connection until it finishes."""

    def __init__(self, dialect: PostgresDialect, conn: Any) -> None:
        super().__init__(dialect)
        self._conn = conn

    @property
    def is_active(self) -> bool:
        return self._conn is not None

    def _connection(self) -> Any:
        if self._conn is None:
            raise TransactionError("Transaction is already finished")
        return self._conn

    def query(self, sql: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        params = self.prepare_args(args)
        self.dialect._log_statement(sql, params)
        return _run_query(self._connection(), sql, params)

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        params = self.prepare_args(args)
        self.dialect._log_statement(sql, params)
        return _run_execute(self._connection(), sql, params)

    def commit(self) -> None:
        conn = self._connection()
        try:
            conn.commit()
        except psycopg2.Error as exc:
            raise ExecutionError(f"COMMIT failed: {exc}", sql="COMMIT") from exc
        finally:
            self._release(conn)

    def rollback(self) -> None:
        conn = self._connection()
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            raise ExecutionError(f"ROLLBACK failed: {exc}", sql="ROLLBACK") from exc
        finally:
            self._release(conn)

    def _release(self, conn: Any) -> None:
        self._conn = None
        if not conn.closed:
            conn.autocommit = True
        self.dialect._release(conn)


class PostgresDialect(Dialect):
    """PostgreSQL backend on a psycopg2 connection pool."""

    name = "postgres"
    supports_returning = True

    def __init__(self) -> None:
        super().__init__()
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._max_lifetime = 0
        self._born: Dict[int, float] = {}
        self._born_lock = threading.Lock()

    def connect(self, config: ConnectionConfig) -> None:
        if self._pool is not None:
            return
        self.echo = config.echo
        self._max_lifetime = config.conn_max_lifetime
        try:
            self._pool = pool.ThreadedConnectionPool(
                config.max_idle_conns,
                config.max_open_conns,
                dsn=config.dsn(),
                options=f"-c statement_timeout={config.statement_timeout_ms}",
            )
        except psycopg2.Error as exc:
            logger.error(f"Failed to initialize database pool: {exc}")
            raise ConnectionError(
                f"Cannot connect to postgres: {exc}",
                target=f"{config.host}:{config.effective_port}/{config.database}",
            ) from exc
        logger.info(
            "Postgres connection pool initialized",
            extra={
                "host": config.host,
                "database": config.database,
                "max_open_conns": config.max_open_conns,
            },
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            with self._born_lock:
                self._born.clear()
            logger.info("Postgres connection pool closed")

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    def _acquire(self) -> Any:
        if self._pool is None:
            raise ConnectionError("Dialect is not connected", target=None)
        try:
            conn = self._pool.getconn()
            if self._expired(conn):
                with self._born_lock:
                    self._born.pop(id(conn), None)
                self._pool.putconn(conn, close=True)
                conn = self._pool.getconn()
        except (psycopg2.Error, pool.PoolError) as exc:
            raise ConnectionError(f"Cannot acquire postgres connection: {exc}", target=None) from exc
        with self._born_lock:
            self._born.setdefault(id(conn), time.monotonic())
        conn.autocommit = True
        return conn

    def _expired(self, conn: Any) -> bool:
        if conn.closed:
            return True
        if not self._max_lifetime:
            return False
        with self._born_lock:
            born = self._born.get(id(conn))
        return born is not None and time.monotonic() - born > self._max_lifetime

    def _release(self, conn: Any) -> None:
        if self._pool is None:
            return
        discard = bool(conn.closed) or self._expired(conn)
        if discard:
            with self._born_lock:
                self._born.pop(id(conn), None)
        self._pool.putconn(conn, close=discard)

    @contextmanager
    def _get_connection(self) -> Iterator[Any]:
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    def query(self, sql: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        params = self.prepare_args(args)
        self._log_statement(sql, params)
        with self._get_connection() as conn:
            return _run_query(conn, sql, params)

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        params = self.prepare_args(args)
        self._log_statement(sql, params)
        with self._get_connection() as conn:
            return _run_execute(conn, sql, params)

    def begin(self) -> PostgresTransaction:
        conn = self._acquire()
        conn.autocommit = False
        return PostgresTransaction(self, conn)

    def placeholder(self, index: int) -> str:
        return "%s"

    def quote(self, identifier: str) -> str:
        return ".".join(f'"{part}"' for part in identifier.split("."))

    def adapt(self, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return extras.Json(value)
        return value

    def column_type(self, field: FieldMetadata) -> str:
        if field.kind == FieldKind.STRING:
            return f"VARCHAR({field.length})" if field.length else "TEXT"
        return _COLUMN_TYPES[field.kind]

    def column_definition(self, field: FieldMetadata) -> str:
        if field.auto_increment:
            return f"{self.quote(field.column)} BIGSERIAL PRIMARY KEY"
        return super().column_definition(field)

    def table_exists(self, table: str) -> bool:
        rows = self.query(
            "SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = %s",
            (table,),
        )
        return bool(rows)
