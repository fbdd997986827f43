"""
Test doubles and shared models.

RecordingDialect records every statement instead of running it and replays
queued results, so SQL rendering and orchestration can be asserted without
a database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tagorm.dialects.base import Dialect, ExecResult, Transaction
from tagorm.schema.types import FieldMetadata, column


@dataclass
class User:
    id: int = column('orm:"pk,auto"', default=0)
    name: str = column("", default="")
    email: str = column('orm:"unique"', default="")


@dataclass
class Member:
    id: int = column('orm:"pk,auto"', default=0)
    name: str = column('db:"name" length:"80"', default="")
    age: int = column('orm:"index"', default=0)
    active: bool = column('orm:"default:true"', default=True)
    joined: Optional[datetime] = column('orm:"nullable"', default=None)


@dataclass
class Tag:
    """String primary key, no auto-increment."""

    code: str = column('orm:"pk"', default="")
    label: str = column("", default="")


class RecordingTransaction(Transaction):
    def __init__(self, dialect: RecordingDialect) -> None:
        super().__init__(dialect)
        self.recorder = dialect
        self.active = True

    @property
    def is_active(self) -> bool:
        return self.active

    def query(self, sql: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return self.recorder._record("tx.query", sql, args)

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        return self.recorder._record("tx.execute", sql, args)

    def commit(self) -> None:
        self.recorder.log.append(("commit", "", []))
        if self.recorder.commit_error is not None:
            raise self.recorder.commit_error
        self.active = False

    def rollback(self) -> None:
        self.recorder.log.append(("rollback", "", []))
        self.active = False
        if self.recorder.rollback_error is not None:
            raise self.recorder.rollback_error


class RecordingDialect(Dialect):
    """Dialect that records statements.

    Attributes:
        log: (kind, sql, args) for every call, in order
        rows: Queue of row lists returned by query()
        results: Queue of ExecResults returned by execute()
    """

    name = "recording"

    def __init__(self, style: str = "?", returning: bool = False) -> None:
        super().__init__()
        self.style = style
        self.supports_returning = returning
        self.log: List[Tuple[str, str, List[Any]]] = []
        self.rows: List[List[Dict[str, Any]]] = []
        self.results: List[ExecResult] = []
        self.tables: set = set()
        self.connected = False
        self.commit_error: Optional[BaseException] = None
        self.rollback_error: Optional[BaseException] = None
        self.begun = 0

    def _record(self, kind: str, sql: str, args: Sequence[Any]) -> Any:
        self.log.append((kind, sql, list(args)))
        if kind.endswith("query"):
            return self.rows.pop(0) if self.rows else []
        return self.results.pop(0) if self.results else ExecResult(rows_affected=1, last_insert_id=None)

    @property
    def statements(self) -> List[str]:
        return [sql for kind, sql, _ in self.log if sql]

    def connect(self, config: Any) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def query(self, sql: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return self._record("query", sql, args)

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        return self._record("execute", sql, args)

    def begin(self) -> RecordingTransaction:
        self.begun += 1
        self.log.append(("begin", "", []))
        return RecordingTransaction(self)

    def placeholder(self, index: int) -> str:
        return f"${index}" if self.style == "$" else self.style

    def column_type(self, field: FieldMetadata) -> str:
        return field.kind.name

    def table_exists(self, table: str) -> bool:
        return table in self.tables
