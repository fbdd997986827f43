"""
SQLite dialect for tagorm.

Uses the standard library sqlite3 module with one connection per statement
and one dedicated connection per transaction.

Invariants:
    - Connections run in autocommit mode; transactions issue explicit BEGIN
    - Foreign keys are enforced (PRAGMA foreign_keys = ON)
    - ":memory:" maps to a private database file in a temporary directory
      that close() removes, so it locks like any file database

How to change safely:
    - Never use shared-cache URIs for ":memory:"; a writer's table lock
      makes readers on other connections fail instead of wait
"""

from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence

from ..errors import ConnectionError, ExecutionError, TransactionError
from ..schema.types import FieldKind, FieldMetadata
from .base import Dialect, ExecResult, Transaction

if TYPE_CHECKING:
    from ..config import ConnectionConfig

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

MEMORY_FILE_NAME = "memory.db"

_COLUMN_TYPES = {
    FieldKind.INTEGER: "INTEGER",
    FieldKind.FLOAT: "REAL",
    FieldKind.DECIMAL: "NUMERIC",
    FieldKind.BOOLEAN: "BOOLEAN",
    FieldKind.TIMESTAMP: "TIMESTAMP",
    FieldKind.DATE: "DATE",
    FieldKind.BYTES: "BLOB",
    FieldKind.JSON: "TEXT",
}


def _run_query(conn: sqlite3.Connection, sql: str, args: Sequence[Any]) -> List[Dict[str, Any]]:
    try:
        cursor = conn.execute(sql, args)
        return [dict(row) for row in cursor.fetchall()]
    except sqlite3.Error as exc:
        raise ExecutionError(f"Query failed: {exc}", sql=sql) from exc


def _run_execute(conn: sqlite3.Connection, sql: str, args: Sequence[Any]) -> ExecResult:
    try:
        cursor = conn.execute(sql, args)
        return ExecResult(rows_affected=cursor.rowcount, last_insert_id=cursor.lastrowid)
    except sqlite3.Error as exc:
        raise ExecutionError(f"Statement failed: {exc}", sql=sql) from exc


class SqliteTransaction(Transaction):
    """Transaction bound to one sqlite3 connection."""

    def __init__(self, dialect: SqliteDialect, conn: sqlite3.Connection) -> None:
        super().__init__(dialect)
        self._conn: Optional[sqlite3.Connection] = conn

    @property
    def is_active(self) -> bool:
        return self._conn is not None

    def _connection(self) -> sqlite3.Connection:
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
        self._finish("COMMIT")

    def rollback(self) -> None:
        self._finish("ROLLBACK")

    def _finish(self, statement: str) -> None:
        conn = self._connection()
        try:
            conn.execute(statement)
        except sqlite3.Error as exc:
            raise ExecutionError(f"{statement} failed: {exc}", sql=statement) from exc
        finally:
            self._conn = None
            conn.close()


class SqliteDialect(Dialect):
    """SQLite backend.

    Attributes:
        busy_timeout_ms: Lock wait before SQLITE_BUSY is reported
        wal_mode: Use WAL journal mode for file databases
    """

    name = "sqlite"
    supports_returning = False
    unbounded_limit = "-1"

    def __init__(self) -> None:
        super().__init__()
        self.busy_timeout_ms = 5000
        self.wal_mode = True
        self._target: Optional[str] = None
        self._scratch_dir: Optional[str] = None
        self._anchor: Optional[sqlite3.Connection] = None

    def connect(self, config: ConnectionConfig) -> None:
        self.busy_timeout_ms = config.statement_timeout_ms
        self.echo = config.echo
        self.wal_mode = config.sqlite_wal

        if config.database == MEMORY_DATABASE:
            self._scratch_dir = tempfile.mkdtemp(prefix="tagorm-")
            db_path = Path(self._scratch_dir) / MEMORY_FILE_NAME
        else:
            db_path = Path(config.database)
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._target = str(db_path)

        try:
            self._anchor = self._open()
            if self.wal_mode:
                self._anchor.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as exc:
            self.close()
            raise ConnectionError(f"Cannot open sqlite database: {exc}", target=config.database) from exc

        logger.info(f"Connected to sqlite database {config.database}", extra={"database": config.database})

    def close(self) -> None:
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None
        if self._scratch_dir is not None:
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            self._scratch_dir = None
        if self._target is not None:
            logger.info("Closed sqlite database")
        self._target = None

    @property
    def is_connected(self) -> bool:
        return self._target is not None

    def _open(self) -> sqlite3.Connection:
        if self._target is None:
            raise ConnectionError("Dialect is not connected", target=None)
        conn = sqlite3.connect(
            self._target,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a connection for one statement.

        Yields:
            SQLite connection, closed on exit
        """
        try:
            conn = self._open()
        except sqlite3.Error as exc:
            raise ConnectionError(f"Cannot open sqlite connection: {exc}", target=self._target) from exc
        try:
            yield conn
        finally:
            conn.close()

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

    def begin(self) -> SqliteTransaction:
        try:
            conn = self._open()
        except sqlite3.Error as exc:
            raise ConnectionError(f"Cannot open sqlite connection: {exc}", target=self._target) from exc
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as exc:
            conn.close()
            raise ExecutionError(f"BEGIN failed: {exc}", sql="BEGIN") from exc
        return SqliteTransaction(self, conn)

    def placeholder(self, index: int) -> str:
        return "?"

    def adapt(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return value

    def literal(self, value: Any) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        return super().literal(value)

    def column_type(self, field: FieldMetadata) -> str:
        if field.kind == FieldKind.STRING:
            return f"VARCHAR({field.length})" if field.length else "TEXT"
        return _COLUMN_TYPES[field.kind]

    def column_definition(self, field: FieldMetadata) -> str:
        if field.auto_increment:
            return f"{self.quote(field.column)} INTEGER PRIMARY KEY AUTOINCREMENT"
        return super().column_definition(field)

    def table_exists(self, table: str) -> bool:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        return bool(rows)
