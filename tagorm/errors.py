"""
Error types for tagorm.

This module defines all exception types raised by the mapping layer:
- OrmError: Base exception
- ValidationError: Bad model declarations, criteria, or query input
- TagParseError: Malformed field annotation
- ExecutionError: A statement failed in the dialect
- ConnectionError: The dialect could not connect
- TransactionError: Commit, rollback, or nesting failures

Invariants:
    - All errors inherit from OrmError
    - Driver errors are chained (``raise ... from exc``), never replaced
    - "Not found" is reported as None, not as an exception
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OrmError(Exception):
    """Base exception for all tagorm errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ORM_ERROR"
        self.details = details or {}


class ValidationError(OrmError):
    """Model or query input failed validation.

    Raised when:
    - A model has zero or several primary keys
    - A field annotation type is unsupported
    - A default cannot be coerced to the field type
    - A query references an unknown column or operator
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class TagParseError(ValidationError):
    """A field annotation string could not be parsed.

    Attributes:
        fragment: The offending piece of the annotation
    """

    def __init__(
        self,
        message: str,
        fragment: Optional[str] = None,
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(message, field_name=field_name, code="TAG_PARSE_ERROR")
        self.fragment = fragment
        self.details["fragment"] = fragment


class ExecutionError(OrmError):
    """A statement failed while running against the database.

    The driver exception is available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        sql: Optional[str] = None,
        code: str = "EXECUTION_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"sql": sql})
        self.sql = sql


class ConnectionError(ExecutionError):
    """Failed to open or use a database connection."""

    def __init__(self, message: str, target: Optional[str] = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR")
        self.target = target
        self.details["target"] = target


class TransactionError(OrmError):
    """Transaction lifecycle failure.

    Raised when:
    - A transaction is started from inside another one
    - A finished transaction is used again
    - Commit fails
    - Rollback fails after the unit of work failed

    When rollback fails, both ``original_error`` and ``rollback_error`` are
    set and the original error is the ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        rollback_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details={
                "original_error": repr(original_error) if original_error else None,
                "rollback_error": repr(rollback_error) if rollback_error else None,
            },
        )
        self.original_error = original_error
        self.rollback_error = rollback_error
