"""Query building for tagorm."""

from .builder import ALLOWED_OPERATORS, Join, Predicate, QueryBuilder

__all__ = ["ALLOWED_OPERATORS", "Join", "Predicate", "QueryBuilder"]
