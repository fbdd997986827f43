"""
Dialect interface for tagorm.

A dialect executes SQL against one database engine. It owns the
engine-specific pieces:
- Connection management (pooling for server engines)
- Placeholder style (``?`` or ``%s``)
- Identifier quoting
- Semantic type to column type mapping
- Table DDL and existence checks
- Transactions that hold one connection until commit or rollback

Invariants:
    - Every statement releases its connection, on success and on error
    - Driver exceptions surface as ExecutionError with the driver error chained
    - query() returns rows as plain dicts keyed by column name
    - A Transaction runs every statement on the same connection

How to change safely:
    - New dialects implement every abstract method here and register in
      create_dialect()
    - Keep DDL generation idempotent (IF NOT EXISTS)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from ..errors import ValidationError
from ..schema.types import FieldMetadata, ModelMetadata, check_identifier

if TYPE_CHECKING:
    from ..config import ConnectionConfig

logger = logging.getLogger(__name__)

REFERENTIAL_ACTIONS = ("CASCADE", "SET NULL", "SET DEFAULT", "RESTRICT", "NO ACTION")


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a write statement.

    Attributes:
        rows_affected: Rows changed by the statement
        last_insert_id: Key assigned by the database, when there is one
    """

    rows_affected: int
    last_insert_id: Optional[Any] = None


class Executor(ABC):
    """Anything that can run SQL: a dialect or one of its transactions."""

    supports_returning: bool = False

    # LIMIT value meaning "no limit", for OFFSET without LIMIT
    unbounded_limit: str = "ALL"

    @abstractmethod
    def query(self, sql: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement that returns rows."""
        ...

    @abstractmethod
    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        """Run a write statement."""
        ...

    @abstractmethod
    def placeholder(self, index: int) -> str:
        """Parameter marker for the ``index``-th (1-based) argument."""
        ...

    def quote(self, identifier: str) -> str:
        """Quote a (possibly ``table.column``) identifier."""
        return identifier

    def adapt(self, value: Any) -> Any:
        """Convert a Python value into something the driver accepts."""
        return value

    def prepare_args(self, args: Sequence[Any]) -> List[Any]:
        return [self.adapt(a) for a in args]


class Transaction(Executor):
    """A unit of work on one connection.

    Placeholders, quoting and value adaptation follow the owning dialect.
    """

    def __init__(self, dialect: Dialect) -> None:
        self.dialect = dialect

    @property
    def supports_returning(self) -> bool:  # type: ignore[override]
        return self.dialect.supports_returning

    @property
    def unbounded_limit(self) -> str:  # type: ignore[override]
        return self.dialect.unbounded_limit

    def placeholder(self, index: int) -> str:
        return self.dialect.placeholder(index)

    def quote(self, identifier: str) -> str:
        return self.dialect.quote(identifier)

    def adapt(self, value: Any) -> Any:
        return self.dialect.adapt(value)

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """True until commit or rollback has been called."""
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class Dialect(Executor):
    """Base class for database engines."""

    name: str = ""

    def __init__(self) -> None:
        self.echo = False

    @abstractmethod
    def connect(self, config: ConnectionConfig) -> None:
        """Open the connection or pool.

        Raises:
            ConnectionError: If the database is unreachable
        """
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def begin(self) -> Transaction:
        """Start a transaction on a dedicated connection."""
        ...

    @abstractmethod
    def column_type(self, field: FieldMetadata) -> str:
        """Engine column type for a field."""
        ...

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        ...

    # DDL

    def literal(self, value: Any) -> str:
        """Render a default value as an SQL literal."""
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"

    def column_definition(self, field: FieldMetadata) -> str:
        parts = [self.quote(field.column), self.column_type(field)]
        if field.primary_key:
            parts.append("PRIMARY KEY")
        elif not field.nullable:
            parts.append("NOT NULL")
        if field.unique and not field.primary_key:
            parts.append("UNIQUE")
        if field.has_default:
            parts.append(f"DEFAULT {self.literal(field.default)}")
        return " ".join(parts)

    def foreign_key_constraint(self, field: FieldMetadata) -> str:
        fk = field.foreign_key
        assert fk is not None
        clause = (
            f"FOREIGN KEY ({self.quote(field.column)}) "
            f"REFERENCES {self.quote(fk.table)} ({self.quote(fk.column)})"
        )
        for label, action in (("ON DELETE", fk.on_delete), ("ON UPDATE", fk.on_update)):
            if action is None:
                continue
            if action not in REFERENTIAL_ACTIONS:
                raise ValidationError(
                    f"Unsupported referential action '{action}' on '{field.name}'",
                    field_name=field.name,
                )
            clause += f" {label} {action}"
        return clause

    def create_table_statements(self, metadata: ModelMetadata) -> List[str]:
        """CREATE TABLE plus CREATE INDEX statements for a model."""
        definitions = [self.column_definition(f) for f in metadata.fields]
        definitions.extend(
            self.foreign_key_constraint(f) for f in metadata.fields if f.foreign_key is not None
        )
        statements = [
            f"CREATE TABLE IF NOT EXISTS {self.quote(metadata.table_name)} ({', '.join(definitions)})"
        ]
        for index in metadata.indexes:
            unique = "UNIQUE " if index.unique else ""
            statements.append(
                f"CREATE {unique}INDEX IF NOT EXISTS {self.quote(index.name)} "
                f"ON {self.quote(index.table)} ({self.quote(index.column)})"
            )
        return statements

    def create_table(self, metadata: ModelMetadata) -> None:
        for statement in self.create_table_statements(metadata):
            self.execute(statement)
        logger.info(f"Created table {metadata.table_name}", extra={"table": metadata.table_name})

    def drop_table(self, table: str) -> None:
        check_identifier(table)
        self.execute(f"DROP TABLE IF EXISTS {self.quote(table)}")
        logger.info(f"Dropped table {table}", extra={"table": table})

    def _log_statement(self, sql: str, args: Sequence[Any]) -> None:
        if self.echo:
            logger.debug(f"SQL: {sql}", extra={"dialect": self.name, "args": list(args)})


def create_dialect(name: str) -> Dialect:
    """Factory function to create a dialect by name.

    Args:
        name: ``sqlite`` or ``postgres`` (``postgresql`` accepted)

    Returns:
        An unconnected Dialect

    Raises:
        ValueError: If the dialect is not supported
    """
    from .postgres import PostgresDialect
    from .sqlite import SqliteDialect

    key = name.strip().lower()
    if key in ("sqlite", "sqlite3"):
        return SqliteDialect()
    elif key in ("postgres", "postgresql"):
        return PostgresDialect()
    else:
        raise ValueError(f"Unsupported dialect: {name}")

