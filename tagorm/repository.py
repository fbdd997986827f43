"""
Repository: CRUD for one mapped dataclass type.

The repository chooses INSERT or UPDATE from the primary key, turns
criteria mappings into predicates, and maps result rows back into
dataclass instances.

Criteria are ordered mappings from column name to either a literal
(equality) or a single-entry ``{operator: value}`` mapping:

    >>> repo.find_by({"age": {">": 25}, "active": True})

Invariants:
    - save() inserts when the primary key holds its kind's zero value and
      updates otherwise
    - INSERT lists every non-auto-increment column in declaration order
    - Criteria entries are AND-conjoined in insertion order
    - Lookups that match nothing return None or an empty list
    - Row values that cannot be coerced to the field kind raise
      ExecutionError
    - On models with a soft-delete column, reads skip rows whose column is
      set; query() stays unfiltered and delete() still removes the row
    - Batch helpers run one statement per instance; wrap them in a
      transaction when they must succeed or fail together

How to change safely:
    - A real zero key on a non-auto field looks like an unset key; models
      that need key 0 must insert explicitly with insert()
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Generic, Iterable, Iterator, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from .dialects.base import Executor
from .errors import ExecutionError, ValidationError
from .query.builder import QueryBuilder
from .schema.types import FieldKind, FieldMetadata, ModelMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")

CRITERIA_OPERATORS = (">", "<", ">=", "<=", "!=", "=")

NUMERIC_KINDS = (FieldKind.INTEGER, FieldKind.FLOAT, FieldKind.DECIMAL)


@dataclass(frozen=True)
class Equals:
    """Criterion: column equals value (None means IS NULL)."""

    value: Any


@dataclass(frozen=True)
class Compare:
    """Criterion: column compared to value with an operator."""

    operator: str
    value: Any

    def __post_init__(self) -> None:
        if self.operator not in CRITERIA_OPERATORS:
            raise ValidationError(
                f"Unsupported criteria operator {self.operator!r}, expected one of {CRITERIA_OPERATORS}"
            )


Criterion = Union[Equals, Compare]


def to_criteria(criteria: Mapping[str, Any]) -> List[Tuple[str, Criterion]]:
    """Normalize a criteria mapping into (column, Criterion) pairs.

    Raises:
        ValidationError: If a nested mapping is not a single known operator
    """
    result: List[Tuple[str, Criterion]] = []
    for column, entry in criteria.items():
        if isinstance(entry, (Equals, Compare)):
            result.append((column, entry))
        elif isinstance(entry, Mapping):
            if len(entry) != 1:
                raise ValidationError(
                    f"Criteria for '{column}' must have exactly one operator, got {len(entry)}",
                    field_name=column,
                )
            operator, value = next(iter(entry.items()))
            result.append((column, Compare(operator, value)))
        else:
            result.append((column, Equals(entry)))
    return result


def _coerce(field: FieldMetadata, value: Any) -> Any:
    kind = field.kind
    if kind == FieldKind.INTEGER:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{value!r} is not integral")
        return int(value)
    if kind == FieldKind.FLOAT:
        return float(value)
    if kind == FieldKind.DECIMAL:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if kind == FieldKind.STRING:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).decode()
        return str(value)
    if kind == FieldKind.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")
        raise ValueError(f"{value!r} is not a boolean")
    if kind == FieldKind.TIMESTAMP:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return datetime.fromisoformat(str(value))
    if kind == FieldKind.DATE:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return date.fromisoformat(str(value))
    if kind == FieldKind.BYTES:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        raise ValueError(f"{type(value).__name__} is not binary")
    if kind == FieldKind.JSON:
        if isinstance(value, (dict, list)):
            return value
        return json.loads(value)
    return value


class Repository(Generic[T]):
    """CRUD operations for one dataclass type.

    Args:
        executor: Dialect or transaction that runs the statements
        metadata: Metadata of the bound type
    """

    def __init__(self, executor: Executor, metadata: ModelMetadata) -> None:
        self.executor = executor
        self.metadata = metadata
        self._init_fields = {f.name for f in dataclasses.fields(metadata.model) if f.init}

    @property
    def model(self) -> Type[T]:
        return self.metadata.model

    def query(self) -> QueryBuilder:
        """A fresh builder on the same executor."""
        return QueryBuilder(self.metadata, self.executor)

    # Mapping

    def _to_db(self, field: FieldMetadata, value: Any) -> Any:
        if value is None and field.has_default:
            return field.default
        return value

    def _from_row(self, row: Mapping[str, Any]) -> T:
        values: Dict[str, Any] = {}
        for field in self.metadata.fields:
            if field.column not in row or field.name not in self._init_fields:
                continue
            raw = row[field.column]
            if raw is None:
                values[field.name] = None
                continue
            try:
                values[field.name] = _coerce(field, raw)
            except (ValueError, TypeError, InvalidOperation) as exc:
                raise ExecutionError(
                    f"Cannot map column '{field.column}' value {raw!r} to {field.kind.value}: {exc}"
                ) from exc
        try:
            return self.model(**values)
        except TypeError as exc:
            raise ExecutionError(f"Cannot build {self.model.__name__} from row: {exc}") from exc

    def _with_value(self, instance: T, name: str, value: Any) -> T:
        if type(instance).__dataclass_params__.frozen:  # type: ignore[attr-defined]
            return dataclasses.replace(instance, **{name: value})
        setattr(instance, name, value)
        return instance

    def _field(self, name: str) -> FieldMetadata:
        """Resolve a column or attribute name to its field."""
        field = self.metadata.field_for_attribute(name)
        if field is not None and not self.metadata.has_column(name):
            return field
        return self.metadata.column(name)

    def _soft_field(self) -> FieldMetadata:
        if self.metadata.soft_delete is None:
            raise ValidationError(f"Soft deletes are not enabled for {self.model.__name__}")
        return self.metadata.column(self.metadata.soft_delete)

    def _live_query(self) -> QueryBuilder:
        qb = self.query()
        if self.metadata.soft_delete is not None:
            qb.where_null(self.metadata.soft_delete)
        return qb

    def _key_of(self, instance_or_key: Any) -> Any:
        if isinstance(instance_or_key, self.model):
            return getattr(instance_or_key, self.metadata.pk_field.name)
        return instance_or_key

    def _check_instance(self, instance: Any) -> None:
        if not isinstance(instance, self.model):
            raise ValidationError(
                f"Expected {self.model.__name__}, got {type(instance).__name__}"
            )

    def _criteria_query(self, criteria: Mapping[str, Any], live: bool = True) -> QueryBuilder:
        qb = self._live_query() if live else self.query()
        for name, criterion in to_criteria(criteria):
            column = name
            if not self.metadata.has_column(name):
                field = self.metadata.field_for_attribute(name)
                if field is not None:
                    column = field.column
            if isinstance(criterion, Equals):
                qb.where(column, "=", criterion.value)
            else:
                qb.where(column, criterion.operator, criterion.value)
        return qb

    # Writes

    def save(self, instance: T) -> T:
        """Insert or update depending on the primary key value.

        Returns:
            The saved instance; for frozen dataclasses a copy carrying the
            generated key
        """
        self._check_instance(instance)
        pk = self.metadata.pk_field
        if pk.is_zero(getattr(instance, pk.name)):
            return self.insert(instance)
        return self.update(instance)

    def insert(self, instance: T) -> T:
        self._check_instance(instance)
        meta = self.metadata
        q = self.executor.quote
        fields = meta.insert_fields()

        columns = ", ".join(q(f.column) for f in fields)
        markers = ", ".join(self.executor.placeholder(i + 1) for i in range(len(fields)))
        sql = f"INSERT INTO {q(meta.table_name)} ({columns}) VALUES ({markers})"
        if meta.auto_increment and self.executor.supports_returning:
            sql += f" RETURNING {q(meta.auto_increment)}"

        args = [self._to_db(f, getattr(instance, f.name)) for f in fields]
        result = self.executor.execute(sql, args)

        if meta.auto_increment and result.last_insert_id is not None:
            instance = self._with_value(instance, meta.pk_field.name, result.last_insert_id)

        logger.debug(
            f"Inserted into {meta.table_name}",
            extra={"table": meta.table_name, "key": getattr(instance, meta.pk_field.name)},
        )
        return instance

    def update(self, instance: T) -> T:
        """Write every non-key column of an existing row.

        Raises:
            ValidationError: If the primary key is unset
        """
        self._check_instance(instance)
        meta = self.metadata
        q = self.executor.quote
        pk = meta.pk_field
        key = getattr(instance, pk.name)
        if pk.is_zero(key):
            raise ValidationError(
                f"Cannot update {self.model.__name__} without a primary key value",
                field_name=pk.name,
            )

        fields = meta.update_fields()
        if not fields:
            return instance
        assignments = ", ".join(
            f"{q(f.column)} = {self.executor.placeholder(i + 1)}" for i, f in enumerate(fields)
        )
        sql = (
            f"UPDATE {q(meta.table_name)} SET {assignments} "
            f"WHERE {q(pk.column)} = {self.executor.placeholder(len(fields) + 1)}"
        )
        args = [self._to_db(f, getattr(instance, f.name)) for f in fields]
        args.append(key)
        result = self.executor.execute(sql, args)

        logger.debug(
            f"Updated {meta.table_name}",
            extra={"table": meta.table_name, "key": key, "rows": result.rows_affected},
        )
        return instance

    def delete(self, instance_or_key: Any) -> int:
        """Delete by instance or key value.

        Returns:
            Number of rows deleted
        """
        meta = self.metadata
        q = self.executor.quote
        key = self._key_of(instance_or_key)
        sql = f"DELETE FROM {q(meta.table_name)} WHERE {q(meta.primary_key)} = {self.executor.placeholder(1)}"
        result = self.executor.execute(sql, [key])
        logger.debug(f"Deleted from {meta.table_name}", extra={"table": meta.table_name, "key": key})
        return result.rows_affected

    def delete_by(self, criteria: Mapping[str, Any]) -> int:
        """Delete every row matching the criteria.

        Raises:
            ValidationError: If criteria is empty
        """
        if not criteria:
            raise ValidationError("delete_by requires at least one criterion")
        args: List[Any] = []
        where = self._criteria_query(criteria).render_where(args)
        sql = f"DELETE FROM {self.executor.quote(self.metadata.table_name)}{where}"
        result = self.executor.execute(sql, args)
        logger.debug(
            f"Deleted from {self.metadata.table_name} by criteria",
            extra={"table": self.metadata.table_name, "rows": result.rows_affected},
        )
        return result.rows_affected

    def force_delete(self, instance_or_key: Any) -> int:
        """Remove the row even when the model soft-deletes."""
        return self.delete(instance_or_key)

    # Soft deletes

    def soft_delete(self, instance: T) -> T:
        """Stamp the soft-delete column with the current time.

        Returns:
            The instance carrying the timestamp; a copy for frozen dataclasses

        Raises:
            ValidationError: If the model has no soft-delete column or the
                primary key is unset
        """
        self._check_instance(instance)
        return self._set_trashed(instance, datetime.now())

    def restore(self, instance: T) -> T:
        """Clear the soft-delete column of one row."""
        self._check_instance(instance)
        return self._set_trashed(instance, None)

    def _set_trashed(self, instance: T, stamp: Optional[datetime]) -> T:
        soft = self._soft_field()
        meta = self.metadata
        q = self.executor.quote
        pk = meta.pk_field
        key = getattr(instance, pk.name)
        if pk.is_zero(key):
            raise ValidationError(
                f"Cannot soft-delete {self.model.__name__} without a primary key value",
                field_name=pk.name,
            )

        sql = (
            f"UPDATE {q(meta.table_name)} SET {q(soft.column)} = {self.executor.placeholder(1)} "
            f"WHERE {q(pk.column)} = {self.executor.placeholder(2)}"
        )
        self.executor.execute(sql, [stamp, key])
        logger.debug(
            f"{'Trashed' if stamp else 'Restored'} {meta.table_name} row",
            extra={"table": meta.table_name, "key": key},
        )
        return self._with_value(instance, soft.name, stamp)

    def soft_delete_by(self, criteria: Mapping[str, Any]) -> int:
        """Soft-delete every live row matching the criteria.

        Raises:
            ValidationError: If criteria is empty
        """
        if not criteria:
            raise ValidationError("soft_delete_by requires at least one criterion")
        soft = self._soft_field()
        return self._update_trashed(soft, datetime.now(), self._criteria_query(criteria))

    def restore_by(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        """Restore every trashed row matching the criteria (all when empty)."""
        soft = self._soft_field()
        qb = self._criteria_query(criteria or {}, live=False).where_not_null(soft.column)
        return self._update_trashed(soft, None, qb)

    def _update_trashed(self, soft: FieldMetadata, stamp: Optional[datetime], qb: QueryBuilder) -> int:
        table = self.metadata.table_name
        q = self.executor.quote
        # The SET value takes the first placeholder
        args: List[Any] = [stamp]
        where = qb.render_where(args)
        sql = f"UPDATE {q(table)} SET {q(soft.column)} = {self.executor.placeholder(1)}{where}"
        result = self.executor.execute(sql, args)
        logger.debug(
            f"{'Trashed' if stamp else 'Restored'} {table} rows by criteria",
            extra={"table": table, "rows": result.rows_affected},
        )
        return result.rows_affected

    def find_trashed(self) -> List[T]:
        """Every soft-deleted row."""
        soft = self._soft_field()
        return [self._from_row(row) for row in self.query().where_not_null(soft.column).find()]

    # Batches

    def batch_create(self, instances: Iterable[T]) -> List[T]:
        return [self.insert(instance) for instance in instances]

    def batch_update(self, instances: Iterable[T]) -> List[T]:
        return [self.update(instance) for instance in instances]

    def batch_delete(self, instances_or_keys: Iterable[Any]) -> int:
        """Delete each instance or key; returns the total rows removed."""
        return sum(self.delete(item) for item in instances_or_keys)

    # Column helpers

    def increment(self, column: str, amount: Any = 1, criteria: Optional[Mapping[str, Any]] = None) -> int:
        """Add amount to a numeric column in every matching live row.

        Returns:
            Number of rows updated

        Raises:
            ValidationError: If the column is unknown or not numeric
        """
        return self._step(column, "+", amount, criteria)

    def decrement(self, column: str, amount: Any = 1, criteria: Optional[Mapping[str, Any]] = None) -> int:
        return self._step(column, "-", amount, criteria)

    def _step(self, column: str, sign: str, amount: Any, criteria: Optional[Mapping[str, Any]]) -> int:
        field = self._field(column)
        if field.kind not in NUMERIC_KINDS or field.primary_key:
            raise ValidationError(
                f"Column '{field.column}' is not a numeric value column",
                field_name=field.name,
            )
        if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
            raise ValidationError(f"Step amount must be a number, got {amount!r}", field_name=field.name)

        table = self.metadata.table_name
        target = self.executor.quote(field.column)
        args: List[Any] = [amount]
        where = self._criteria_query(criteria or {}).render_where(args)
        sql = (
            f"UPDATE {self.executor.quote(table)} "
            f"SET {target} = {target} {sign} {self.executor.placeholder(1)}{where}"
        )
        result = self.executor.execute(sql, args)
        logger.debug(
            f"Stepped {table}.{field.column}",
            extra={"table": table, "rows": result.rows_affected},
        )
        return result.rows_affected

    def pluck(self, column: str, criteria: Optional[Mapping[str, Any]] = None) -> List[Any]:
        """Values of one column across the matching live rows."""
        field = self._field(column)
        rows = self._criteria_query(criteria or {}).select(field.column).find()
        values = []
        for row in rows:
            raw = row[field.column]
            try:
                values.append(None if raw is None else _coerce(field, raw))
            except (ValueError, TypeError, InvalidOperation) as exc:
                raise ExecutionError(
                    f"Cannot map column '{field.column}' value {raw!r} to {field.kind.value}: {exc}"
                ) from exc
        return values

    # Reads

    def find(self, key: Any) -> Optional[T]:
        row = self._live_query().where(self.metadata.primary_key, "=", key).first()
        return self._from_row(row) if row is not None else None

    def find_all(self) -> List[T]:
        return [self._from_row(row) for row in self._live_query().find()]

    def find_by(self, criteria: Mapping[str, Any]) -> List[T]:
        return [self._from_row(row) for row in self._criteria_query(criteria).find()]

    def find_one_by(self, criteria: Mapping[str, Any]) -> Optional[T]:
        row = self._criteria_query(criteria).first()
        return self._from_row(row) if row is not None else None

    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int:
        return self._criteria_query(criteria or {}).count()

    def exists(self, key: Any) -> bool:
        return self._live_query().where(self.metadata.primary_key, "=", key).exists()

    def chunk(self, size: int, criteria: Optional[Mapping[str, Any]] = None) -> Iterator[List[T]]:
        """Yield matching live rows in primary-key order, size at a time.

        Each page is a separate statement, so rows written between pages
        can shift the window.

        Raises:
            ValidationError: If size is less than 1
        """
        if size < 1:
            raise ValidationError(f"Chunk size must be at least 1, got {size}")
        offset = 0
        while True:
            qb = self._criteria_query(criteria or {}).order_by(self.metadata.primary_key)
            qb.limit(size).offset(offset)
            batch = [self._from_row(row) for row in qb.find()]
            if batch:
                yield batch
            if len(batch) < size:
                return
            offset += size

    def each(self, criteria: Optional[Mapping[str, Any]] = None, size: int = 100) -> Iterator[T]:
        """Iterate matching live rows one at a time, reading size per page."""
        for batch in self.chunk(size, criteria):
            yield from batch
