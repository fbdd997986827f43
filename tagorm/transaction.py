"""
Transaction coordination for tagorm.

Wraps a unit of work in a dialect transaction:

    >>> def transfer(tx_orm):
    ...     accounts = tx_orm.repository(Account)
    ...     ...
    >>> orm.transaction(transfer)

or, as a context manager:

    >>> with orm.atomic() as tx_orm:
    ...     tx_orm.repository(Account).save(account)

Invariants:
    - A context moves IDLE -> ACTIVE -> COMMITTED | ROLLED_BACK, once
    - Any exception from the unit of work (including KeyboardInterrupt)
      triggers a rollback, then the original exception propagates
    - A failing rollback raises TransactionError carrying both errors,
      chained from the original
    - A failing commit raises TransactionError; nothing is committed

How to change safely:
    - Never commit after the unit of work raised
    - Keep rollback before re-raise so connections go back to the pool
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterator, Optional, TypeVar

from .dialects.base import Dialect, Transaction
from .errors import TransactionError

logger = logging.getLogger(__name__)

R = TypeVar("R")
S = TypeVar("S")


class TransactionState(Enum):
    """Lifecycle of a TransactionContext."""

    IDLE = "idle"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_finished(self) -> bool:
        return self in (TransactionState.COMMITTED, TransactionState.ROLLED_BACK)


class TransactionContext:
    """State machine around one dialect transaction.

    Single-owner: never share a context between threads.
    """

    def __init__(self, dialect: Dialect) -> None:
        self._dialect = dialect
        self._tx: Optional[Transaction] = None
        self.state = TransactionState.IDLE

    @property
    def transaction(self) -> Transaction:
        if self.state != TransactionState.ACTIVE or self._tx is None:
            raise TransactionError(f"Transaction is not active (state={self.state.value})")
        return self._tx

    def begin(self) -> Transaction:
        if self.state != TransactionState.IDLE:
            raise TransactionError(f"Cannot begin a transaction in state {self.state.value}")
        self._tx = self._dialect.begin()
        self.state = TransactionState.ACTIVE
        logger.debug("Transaction started", extra={"dialect": self._dialect.name})
        return self._tx

    def commit(self) -> None:
        """Commit the transaction.

        Raises:
            TransactionError: If not active or if the commit fails
        """
        tx = self.transaction
        try:
            tx.commit()
        except Exception as exc:
            self.state = TransactionState.ROLLED_BACK
            rollback_error = None
            if tx.is_active:
                try:
                    tx.rollback()
                except Exception as rb_exc:
                    rollback_error = rb_exc
            logger.error(f"Commit failed: {exc}", extra={"dialect": self._dialect.name})
            raise TransactionError(
                f"Commit failed: {exc}",
                original_error=exc,
                rollback_error=rollback_error,
            ) from exc
        self.state = TransactionState.COMMITTED
        logger.debug("Transaction committed", extra={"dialect": self._dialect.name})

    def rollback(self) -> None:
        tx = self.transaction
        self.state = TransactionState.ROLLED_BACK
        tx.rollback()
        logger.debug("Transaction rolled back", extra={"dialect": self._dialect.name})

    def abort(self, error: BaseException) -> None:
        """Roll back after ``error`` ended the unit of work.

        Raises:
            TransactionError: If the rollback itself fails
        """
        logger.warning(
            f"Rolling back transaction after {type(error).__name__}: {error}",
            extra={"dialect": self._dialect.name},
        )
        try:
            self.rollback()
        except Exception as rb_exc:
            logger.error(f"Rollback failed: {rb_exc}", extra={"dialect": self._dialect.name})
            raise TransactionError(
                f"Transaction failed: {error}, rollback failed: {rb_exc}",
                original_error=error,
                rollback_error=rb_exc,
            ) from error


def run_in_transaction(
    dialect: Dialect,
    callback: Callable[[S], R],
    scope: Callable[[Transaction], S],
) -> R:
    """Run ``callback`` with a transaction-scoped handle.

    Args:
        dialect: Dialect to begin the transaction on
        callback: Unit of work; receives ``scope(transaction)``
        scope: Builds the handle passed to the callback

    Returns:
        Whatever the callback returns, after a successful commit
    """
    ctx = TransactionContext(dialect)
    tx = ctx.begin()
    try:
        result = callback(scope(tx))
    except BaseException as exc:
        ctx.abort(exc)
        raise
    ctx.commit()
    return result


@contextmanager
def atomic(dialect: Dialect, scope: Callable[[Transaction], S]) -> Iterator[S]:
    """Context-manager form of run_in_transaction."""
    ctx = TransactionContext(dialect)
    tx = ctx.begin()
    try:
        yield scope(tx)
    except BaseException as exc:
        ctx.abort(exc)
        raise
    ctx.commit()
