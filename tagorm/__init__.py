"""
tagorm: metadata-driven relational mapping for dataclasses.

Dataclass fields carry struct-tag style annotations that describe their
columns. tagorm builds table metadata from them and drives SQL through
interchangeable dialects (SQLite, PostgreSQL).

Example:
    >>> from dataclasses import dataclass
    >>> from tagorm import ORM, ConnectionConfig, column
    >>>
    >>> @dataclass
    ... class User:
    ...     id: int = column('orm:"pk,auto"', default=0)
    ...     name: str = column('db:"name"', default="")
    ...     email: str = column('orm:"unique"', default="")
    >>>
    >>> orm = ORM.open(ConnectionConfig(database=":memory:"))
    >>> orm.migrate(User)
    >>> user = orm.repository(User).save(User(name="ada", email="ada@example.com"))
    >>> user.id
    1
"""

from ._version import __version__
from .builder import SimpleORM
from .config import ConnectionConfig, setup_logging
from .dialects import Dialect, ExecResult, Transaction, create_dialect
from .errors import (
    ConnectionError,
    ExecutionError,
    OrmError,
    TagParseError,
    TransactionError,
    ValidationError,
)
from .orm import ORM
from .query import QueryBuilder
from .repository import Compare, Equals, Repository, to_criteria
from .schema import FieldKind, FieldMetadata, MetadataRegistry, ModelMetadata, column, parse_tag
from .transaction import TransactionContext, TransactionState

__all__ = [
    "ORM",
    "Compare",
    "ConnectionConfig",
    "ConnectionError",
    "Dialect",
    "Equals",
    "ExecResult",
    "ExecutionError",
    "FieldKind",
    "FieldMetadata",
    "MetadataRegistry",
    "ModelMetadata",
    "OrmError",
    "QueryBuilder",
    "Repository",
    "SimpleORM",
    "TagParseError",
    "Transaction",
    "TransactionContext",
    "TransactionError",
    "TransactionState",
    "ValidationError",
    "__version__",
    "column",
    "create_dialect",
    "parse_tag",
    "setup_logging",
    "to_criteria",
]
