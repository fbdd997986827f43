"""
Database dialects for tagorm.

Provides:
- Dialect / Transaction: Abstract interfaces
- SqliteDialect: Standard library sqlite3 backend
- PostgresDialect: psycopg2 pooled backend
- create_dialect: Factory by name
"""

from .base import Dialect, ExecResult, Executor, Transaction, create_dialect
from .postgres import PostgresDialect, PostgresTransaction
from .sqlite import SqliteDialect, SqliteTransaction

__all__ = [
    "Dialect",
    "ExecResult",
    "Executor",
    "PostgresDialect",
    "PostgresTransaction",
    "SqliteDialect",
    "SqliteTransaction",
    "Transaction",
    "create_dialect",
]
