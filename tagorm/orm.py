"""
ORM session facade.

An ORM binds a dialect and a metadata registry and hands out query
builders, repositories, raw queries and transactions. Inside a transaction
callback the ORM passed in is a scoped handle: everything it creates runs
on the transaction's connection.

Invariants:
    - A scoped handle never starts another transaction (TransactionError)
    - Work done through the outer handle inside a callback is NOT part of
      the transaction
    - The registry is shared between the outer and scoped handles
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Any, Callable, List, Optional, Type, TypeVar, Union

from .config import ConnectionConfig
from .dialects.base import Dialect, ExecResult, Executor, Transaction, create_dialect
from .errors import TransactionError
from .query.builder import QueryBuilder
from .repository import Repository
from .schema.registry import MetadataRegistry
from .schema.types import ModelMetadata, check_identifier
from .transaction import atomic, run_in_transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ORM:
    """Entry point for mapped data access.

    Args:
        dialect: Connected (or to-be-connected) dialect
        registry: Metadata registry; a private one is created if omitted
    """

    def __init__(
        self,
        dialect: Dialect,
        registry: Optional[MetadataRegistry] = None,
        transaction: Optional[Transaction] = None,
    ) -> None:
        self.dialect = dialect
        self.registry = registry if registry is not None else MetadataRegistry()
        self._transaction = transaction

    @classmethod
    def open(cls, config: ConnectionConfig, registry: Optional[MetadataRegistry] = None) -> ORM:
        """Create the configured dialect, connect it, and wrap it."""
        dialect = create_dialect(config.dialect)
        dialect.connect(config)
        return cls(dialect, registry)

    @property
    def executor(self) -> Executor:
        return self._transaction if self._transaction is not None else self.dialect

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def connect(self, config: ConnectionConfig) -> ORM:
        self.dialect.connect(config)
        return self

    def close(self) -> None:
        if self.in_transaction:
            raise TransactionError("Cannot close the connection from inside a transaction")
        self.dialect.close()

    def __enter__(self) -> ORM:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if not self.in_transaction:
            self.close()

    # Metadata

    def register_model(self, *models: type) -> List[ModelMetadata]:
        return self.registry.register(*models)

    def metadata(self, model: Any) -> ModelMetadata:
        return self.registry.metadata_for(model)

    # Data access

    def query(self, model: Type[Any]) -> QueryBuilder:
        return QueryBuilder(self.metadata(model), self.executor)

    def repository(self, model: Type[T]) -> Repository[T]:
        return Repository(self.executor, self.metadata(model))

    def raw(self, sql: str, *args: Any) -> List[dict]:
        """Run a row-returning statement verbatim."""
        return self.executor.query(sql, list(args))

    def exec(self, sql: str, *args: Any) -> ExecResult:
        """Run a write statement verbatim."""
        return self.executor.execute(sql, list(args))

    # Transactions

    def _scoped(self, transaction: Transaction) -> ORM:
        return ORM(self.dialect, self.registry, transaction=transaction)

    def _check_not_nested(self) -> None:
        if self.in_transaction:
            raise TransactionError("Nested transactions are not supported")

    def transaction(self, callback: Callable[[ORM], R]) -> R:
        """Run ``callback`` in a transaction and return its result.

        Commits when the callback returns; rolls back and re-raises when it
        raises.

        Raises:
            TransactionError: When called on a scoped handle, or when commit
                or rollback fails
        """
        self._check_not_nested()
        return run_in_transaction(self.dialect, callback, self._scoped)

    def atomic(self) -> AbstractContextManager:
        """Context-manager form of transaction()."""
        self._check_not_nested()
        return atomic(self.dialect, self._scoped)

    # Schema

    def create_table(self, model: type) -> None:
        meta = self.metadata(model)
        if self._transaction is None:
            self.dialect.create_table(meta)
            return
        for statement in self.dialect.create_table_statements(meta):
            self._transaction.execute(statement)

    def drop_table(self, model: Union[type, str]) -> None:
        table = model if isinstance(model, str) else self.metadata(model).table_name
        if self._transaction is None:
            self.dialect.drop_table(table)
            return
        check_identifier(table)
        self._transaction.execute(f"DROP TABLE IF EXISTS {self.dialect.quote(table)}")

    def table_exists(self, model: Union[type, str]) -> bool:
        table = model if isinstance(model, str) else self.metadata(model).table_name
        return self.dialect.table_exists(table)

    def migrate(self, *models: type) -> List[str]:
        """Create missing tables for the given (or all registered) models.

        Existing tables are left as they are; columns are never altered.

        Returns:
            Names of the tables that were created
        """
        metas = self.register_model(*models) if models else self.registry.registered()
        created = []
        for meta in metas:
            if self.dialect.table_exists(meta.table_name):
                continue
            self.create_table(meta.model)
            created.append(meta.table_name)
        if created:
            logger.info(f"Created {len(created)} table(s)", extra={"tables": created})
        return created
