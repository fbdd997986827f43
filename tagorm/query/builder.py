"""
Fluent SELECT builder for tagorm.

A QueryBuilder is bound to one model's metadata and one executor (a dialect
or a transaction). Clause methods accumulate state and return the builder;
terminal methods render and run the statement.

    >>> rows = (orm.query(User)
    ...         .select("id", "name")
    ...         .where("age", ">", 25)
    ...         .order_by("name")
    ...         .limit(10)
    ...         .find())

Invariants:
    - Every value is bound through a placeholder, never spliced into SQL
    - Predicates are AND-conjoined in the order they were added
    - Identifiers are validated at render time: bare columns must exist in
      the model metadata, qualified ``table.column`` names must be plain
      identifiers
    - A builder is single-owner; take a fresh one per logical query

How to change safely:
    - New operators go in ALLOWED_OPERATORS and need a rendering test
    - Raw fragments (having conditions, join conditions, select_expr) are
      for trusted code only; never pass request input through them
    - Raw fragments are written with a literal "%"; it is doubled for
      "%s" placeholder drivers only when the statement binds arguments
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..dialects.base import Executor
from ..errors import ValidationError
from ..schema.types import IDENTIFIER_PATTERN, ModelMetadata

logger = logging.getLogger(__name__)

ALLOWED_OPERATORS = ("=", "!=", "<>", "<", ">", "<=", ">=", "LIKE", "NOT LIKE")
ALLOWED_DIRECTIONS = ("ASC", "DESC")
ALLOWED_JOINS = ("INNER", "LEFT", "RIGHT", "FULL", "CROSS")


@dataclass(frozen=True)
class Predicate:
    """One WHERE condition.

    ``operator`` is a comparison operator or one of the special forms
    IN, NOT IN, IS NULL, IS NOT NULL, BETWEEN, NOT BETWEEN.
    """

    column: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class Join:
    kind: str
    target: str
    condition: str


class QueryBuilder:
    """Accumulates a query specification and renders it."""

    def __init__(self, metadata: ModelMetadata, executor: Executor) -> None:
        self.metadata = metadata
        self.executor = executor
        self._columns: List[str] = []
        self._expressions: List[str] = []
        self._distinct = False
        self._predicates: List[Predicate] = []
        self._order: List[Tuple[str, str]] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._group_by: List[str] = []
        self._having: List[Tuple[str, Tuple[Any, ...]]] = []
        self._joins: List[Join] = []
        self._escape_percent = False

    # Clauses

    def select(self, *columns: str) -> QueryBuilder:
        self._columns.extend(columns)
        return self

    def select_expr(self, *expressions: str) -> QueryBuilder:
        """Add raw select expressions such as ``COUNT(*) AS n``."""
        self._expressions.extend(expressions)
        return self

    def distinct(self) -> QueryBuilder:
        self._distinct = True
        return self

    def where(self, column: str, operator: str, value: Any) -> QueryBuilder:
        self._predicates.append(Predicate(column, operator.strip().upper(), value))
        return self

    def where_in(self, column: str, values: Sequence[Any]) -> QueryBuilder:
        self._predicates.append(Predicate(column, "IN", tuple(values)))
        return self

    def where_not_in(self, column: str, values: Sequence[Any]) -> QueryBuilder:
        self._predicates.append(Predicate(column, "NOT IN", tuple(values)))
        return self

    def where_null(self, column: str) -> QueryBuilder:
        self._predicates.append(Predicate(column, "IS NULL"))
        return self

    def where_not_null(self, column: str) -> QueryBuilder:
        self._predicates.append(Predicate(column, "IS NOT NULL"))
        return self

    def where_between(self, column: str, low: Any, high: Any) -> QueryBuilder:
        self._predicates.append(Predicate(column, "BETWEEN", (low, high)))
        return self

    def where_not_between(self, column: str, low: Any, high: Any) -> QueryBuilder:
        self._predicates.append(Predicate(column, "NOT BETWEEN", (low, high)))
        return self

    def where_like(self, column: str, pattern: str) -> QueryBuilder:
        return self.where(column, "LIKE", pattern)

    def where_not_like(self, column: str, pattern: str) -> QueryBuilder:
        return self.where(column, "NOT LIKE", pattern)

    def order_by(self, column: str, direction: str = "ASC") -> QueryBuilder:
        self._order.append((column, direction.strip().upper()))
        return self

    def limit(self, n: int) -> QueryBuilder:
        if n < 0:
            raise ValidationError(f"Limit must be >= 0, got {n}")
        self._limit = n
        return self

    def offset(self, n: int) -> QueryBuilder:
        if n < 0:
            raise ValidationError(f"Offset must be >= 0, got {n}")
        self._offset = n
        return self

    def paginate(self, page: int, per_page: int) -> QueryBuilder:
        """1-based page of ``per_page`` rows."""
        if page < 1 or per_page < 1:
            raise ValidationError(f"Invalid page {page} / per_page {per_page}")
        self._limit = per_page
        self._offset = (page - 1) * per_page
        return self

    def group_by(self, *columns: str) -> QueryBuilder:
        self._group_by.extend(columns)
        return self

    def having(self, condition: str, *args: Any) -> QueryBuilder:
        """Add a raw HAVING condition; ``?`` marks each argument."""
        if condition.count("?") != len(args):
            raise ValidationError(
                f"HAVING condition has {condition.count('?')} markers but {len(args)} arguments"
            )
        self._having.append((condition, args))
        return self

    def join(self, kind: str, target: str, condition: str) -> QueryBuilder:
        self._joins.append(Join(kind.strip().upper(), target, condition))
        return self

    def inner_join(self, target: str, condition: str) -> QueryBuilder:
        return self.join("INNER", target, condition)

    def left_join(self, target: str, condition: str) -> QueryBuilder:
        return self.join("LEFT", target, condition)

    def right_join(self, target: str, condition: str) -> QueryBuilder:
        return self.join("RIGHT", target, condition)

    # Rendering

    def _identifier(self, name: str) -> str:
        parts = name.split(".")
        if len(parts) == 1:
            self.metadata.column(name)
        elif len(parts) == 2:
            table, column = parts
            if not IDENTIFIER_PATTERN.match(table) or not IDENTIFIER_PATTERN.match(column):
                raise ValidationError(f"Invalid column reference: {name!r}", field_name=name)
            if table == self.metadata.table_name:
                self.metadata.column(column)
        else:
            raise ValidationError(f"Invalid column reference: {name!r}", field_name=name)
        return self.executor.quote(name)

    def _bind(self, value: Any, args: List[Any]) -> str:
        args.append(value)
        return self.executor.placeholder(len(args))

    def _render_predicate(self, p: Predicate, args: List[Any]) -> str:
        column = self._identifier(p.column)

        if p.operator in ("IS NULL", "IS NOT NULL"):
            return f"{column} {p.operator}"
        if p.operator in ("IN", "NOT IN"):
            if not p.value:
                return "1 = 0" if p.operator == "IN" else "1 = 1"
            markers = ", ".join(self._bind(v, args) for v in p.value)
            return f"{column} {p.operator} ({markers})"
        if p.operator in ("BETWEEN", "NOT BETWEEN"):
            low, high = p.value
            return f"{column} {p.operator} {self._bind(low, args)} AND {self._bind(high, args)}"

        if p.operator not in ALLOWED_OPERATORS:
            raise ValidationError(f"Unsupported operator: {p.operator!r}", field_name=p.column)
        if p.value is None:
            if p.operator == "=":
                return f"{column} IS NULL"
            if p.operator in ("!=", "<>"):
                return f"{column} IS NOT NULL"
            raise ValidationError(f"Operator {p.operator} cannot compare with NULL", field_name=p.column)
        return f"{column} {p.operator} {self._bind(p.value, args)}"

    def render_where(self, args: List[Any]) -> str:
        """Render `` WHERE ...`` (or nothing), appending values to args."""
        if not self._predicates:
            return ""
        conditions = [self._render_predicate(p, args) for p in self._predicates]
        return " WHERE " + " AND ".join(conditions)

    def _render_body(self, args: List[Any]) -> str:
        """FROM ... JOIN ... WHERE ... GROUP BY ... HAVING ..."""
        sql = f" FROM {self.executor.quote(self.metadata.table_name)}"

        for j in self._joins:
            if j.kind not in ALLOWED_JOINS:
                raise ValidationError(f"Unsupported join kind: {j.kind!r}")
            if not IDENTIFIER_PATTERN.match(j.target):
                raise ValidationError(f"Invalid join target: {j.target!r}")
            sql += f" {j.kind} JOIN {self.executor.quote(j.target)}"
            if j.kind != "CROSS":
                sql += f" ON {self._raw(j.condition)}"

        sql += self.render_where(args)

        if self._group_by:
            sql += " GROUP BY " + ", ".join(self._identifier(c) for c in self._group_by)

        if self._having:
            rendered = []
            for condition, having_args in self._having:
                pieces = condition.split("?")
                out = self._raw(pieces[0])
                for value, piece in zip(having_args, pieces[1:]):
                    out += self._bind(value, args) + self._raw(piece)
                rendered.append(out)
            sql += " HAVING " + " AND ".join(rendered)

        return sql

    def _render_paging(self, args: List[Any]) -> str:
        sql = ""
        if self._limit is not None:
            sql += f" LIMIT {self._bind(self._limit, args)}"
        elif self._offset is not None:
            sql += f" LIMIT {self.executor.unbounded_limit}"
        if self._offset is not None:
            sql += f" OFFSET {self._bind(self._offset, args)}"
        return sql

    def _select_sql(self, args: List[Any]) -> str:
        selected = [self._identifier(c) for c in self._columns] + [self._raw(e) for e in self._expressions]
        head = "SELECT DISTINCT " if self._distinct else "SELECT "
        sql = head + (", ".join(selected) if selected else "*")
        sql += self._render_body(args)

        if self._order:
            parts = []
            for column, direction in self._order:
                if direction not in ALLOWED_DIRECTIONS:
                    raise ValidationError(f"Unsupported sort direction: {direction!r}", field_name=column)
                parts.append(f"{self._identifier(column)} {direction}")
            sql += " ORDER BY " + ", ".join(parts)

        sql += self._render_paging(args)
        return sql

    def _needs_subquery(self) -> bool:
        return self._distinct or bool(self._group_by) or self._limit is not None or self._offset is not None

    def _unordered_select(self, args: List[Any]) -> str:
        saved = self._order
        self._order = []
        try:
            return self._select_sql(args)
        finally:
            self._order = saved

    def _count_sql(self, args: List[Any]) -> str:
        if self._needs_subquery():
            return f"SELECT COUNT(*) AS count FROM ({self._unordered_select(args)}) AS sub"
        return "SELECT COUNT(*) AS count" + self._render_body(args)

    def _exists_sql(self, args: List[Any]) -> str:
        if self._needs_subquery():
            sql = f"SELECT 1 FROM ({self._unordered_select(args)}) AS sub"
        else:
            sql = "SELECT 1" + self._render_body(args)
        return sql + f" LIMIT {self._bind(1, args)}"

    def _raw(self, fragment: str) -> str:
        return fragment.replace("%", "%%") if self._escape_percent else fragment

    def _render(self, build: Callable[[List[Any]], str]) -> Tuple[str, List[Any]]:
        args: List[Any] = []
        sql = build(args)
        if args and self.executor.placeholder(1) == "%s":
            # pyformat drivers treat "%" in raw fragments as a conversion
            self._escape_percent = True
            try:
                args = []
                sql = build(args)
            finally:
                self._escape_percent = False
        return sql, args

    def to_sql(self) -> Tuple[str, List[Any]]:
        """Render the SELECT statement.

        Returns:
            (sql, args) with args in placeholder order

        Raises:
            ValidationError: On unknown columns, operators, directions
                or join kinds
        """
        return self._render(self._select_sql)

    def count_sql(self) -> Tuple[str, List[Any]]:
        """Render a COUNT(*) over the current specification.

        Distinct, grouped or paged queries are counted through a subquery.
        """
        return self._render(self._count_sql)

    def exists_sql(self) -> Tuple[str, List[Any]]:
        """Render ``SELECT 1 ... LIMIT 1``; paged queries go through a subquery."""
        return self._render(self._exists_sql)

    # Terminals

    def find(self) -> List[Dict[str, Any]]:
        sql, args = self.to_sql()
        return self.executor.query(sql, args)

    def first(self) -> Optional[Dict[str, Any]]:
        saved = self._limit
        self._limit = 1
        try:
            rows = self.find()
        finally:
            self._limit = saved
        return rows[0] if rows else None

    def count(self) -> int:
        sql, args = self.count_sql()
        rows = self.executor.query(sql, args)
        if not rows:
            return 0
        return int(next(iter(rows[0].values())))

    def exists(self) -> bool:
        sql, args = self.exists_sql()
        return bool(self.executor.query(sql, args))

    def raw(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        """Run a statement verbatim with positional arguments."""
        return self.executor.query(sql, list(args))
