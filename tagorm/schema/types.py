"""
Schema metadata types for tagorm.

This module defines the normalized description of a mapped model:
- FieldKind: Semantic type of a column
- ForeignKey: Reference to another table's column
- FieldMetadata: One mapped attribute
- IndexDef: A secondary index
- ModelMetadata: The whole table description for one dataclass
- column(): Declares a dataclass field with an annotation string

Invariants:
    - Metadata objects are immutable once built
    - auto_increment implies primary_key
    - FieldMetadata.default is already coerced to the field kind
    - to_dict() output is deterministic (used for fingerprinting)

How to change safely:
    - Adding a FieldKind requires a zero value, a coercion rule, and a
      column type in every dialect
    - Never change the to_dict() key names; fingerprints depend on them
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..errors import ValidationError

TAG_METADATA_KEY = "tag"

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_identifier(name: str) -> str:
    """Reject table, column and index names that are not plain identifiers.

    Raises:
        ValidationError: If the name is not a plain identifier
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise ValidationError(f"Invalid identifier: {name!r}", field_name=str(name))
    return name


class FieldKind(Enum):
    """Semantic column types.

    Dialects map each kind to an engine type name.
    """

    INTEGER = "int"
    FLOAT = "float"
    DECIMAL = "decimal"
    STRING = "str"
    BOOLEAN = "bool"
    TIMESTAMP = "datetime"
    DATE = "date"
    BYTES = "bytes"
    JSON = "json"

    @classmethod
    def from_annotation(cls, annotation: Any) -> FieldKind:
        """Resolve a (non-Optional) Python annotation to a kind.

        Raises:
            ValidationError: If the annotation has no column mapping
        """
        origin = getattr(annotation, "__origin__", None)
        if origin in (dict, list):
            return cls.JSON

        # bool before int: bool is a subclass of int
        for py_type, kind in _ANNOTATION_KINDS:
            if annotation is py_type:
                return kind
        raise ValidationError(f"Unsupported field annotation: {annotation!r}")

    def zero_value(self) -> Any:
        """The value that marks an unset primary key of this kind."""
        return _ZERO_VALUES.get(self)


_ANNOTATION_KINDS: Tuple[Tuple[Any, FieldKind], ...] = (
    (bool, FieldKind.BOOLEAN),
    (int, FieldKind.INTEGER),
    (float, FieldKind.FLOAT),
    (Decimal, FieldKind.DECIMAL),
    (str, FieldKind.STRING),
    (datetime, FieldKind.TIMESTAMP),
    (date, FieldKind.DATE),
    (bytes, FieldKind.BYTES),
    (dict, FieldKind.JSON),
    (list, FieldKind.JSON),
)

_ZERO_VALUES: Dict[FieldKind, Any] = {
    FieldKind.INTEGER: 0,
    FieldKind.FLOAT: 0.0,
    FieldKind.DECIMAL: Decimal(0),
    FieldKind.STRING: "",
    FieldKind.BOOLEAN: False,
    FieldKind.BYTES: b"",
}


def coerce_default(kind: FieldKind, raw: str, field_name: str) -> Any:
    """Convert an annotation default to the field's kind.

    Raises:
        ValidationError: If the text does not fit the kind
    """
    text = raw.strip()
    try:
        if kind == FieldKind.BOOLEAN:
            lowered = text.lower()
            if lowered not in ("true", "false"):
                raise ValueError(raw)
            return lowered == "true"
        if kind == FieldKind.INTEGER:
            return int(text)
        if kind == FieldKind.FLOAT:
            return float(text)
        if kind == FieldKind.DECIMAL:
            return Decimal(text)
    except (ValueError, InvalidOperation):
        raise ValidationError(
            f"Default {raw!r} is not a valid {kind.value} for field '{field_name}'",
            field_name=field_name,
        )
    return raw


@dataclass(frozen=True)
class ForeignKey:
    """Foreign key reference, recorded for DDL and introspection."""

    table: str
    column: str
    on_delete: Optional[str] = None
    on_update: Optional[str] = None

    def __post_init__(self) -> None:
        check_identifier(self.table)
        check_identifier(self.column)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"table": self.table, "column": self.column}
        if self.on_delete:
            result["on_delete"] = self.on_delete
        if self.on_update:
            result["on_update"] = self.on_update
        return result


@dataclass(frozen=True)
class FieldMetadata:
    """Normalized description of one mapped attribute.

    Attributes:
        name: Attribute name on the dataclass
        column: Column name in the table
        kind: Semantic type
        primary_key: Field is the primary key
        auto_increment: Database assigns the key on insert
        unique: Column has a unique constraint
        indexed: Column gets a secondary index
        nullable: Column accepts NULL
        soft_delete: Column records when the row was soft-deleted
        length: Column length for sized types
        raw_default: Default as written in the annotation
        default: Default coerced to ``kind``
        foreign_key: Foreign key reference
    """

    name: str
    column: str
    kind: FieldKind
    primary_key: bool = False
    auto_increment: bool = False
    unique: bool = False
    indexed: bool = False
    nullable: bool = True
    soft_delete: bool = False
    length: Optional[int] = None
    raw_default: Optional[str] = None
    default: Any = None
    foreign_key: Optional[ForeignKey] = None

    def __post_init__(self) -> None:
        if not self.column:
            raise ValidationError(f"Field '{self.name}' has an empty column name", field_name=self.name)
        check_identifier(self.column)
        if self.auto_increment and not self.primary_key:
            raise ValidationError(
                f"Field '{self.name}' is auto-increment but not the primary key",
                field_name=self.name,
            )
        if self.auto_increment and self.kind != FieldKind.INTEGER:
            raise ValidationError(
                f"Auto-increment field '{self.name}' must be an int",
                field_name=self.name,
            )
        if self.primary_key and self.nullable:
            raise ValidationError(f"Primary key '{self.name}' cannot be nullable", field_name=self.name)
        if self.soft_delete:
            if self.kind != FieldKind.TIMESTAMP or self.primary_key:
                raise ValidationError(
                    f"Soft-delete field '{self.name}' must be a non-key datetime",
                    field_name=self.name,
                )
            if not self.nullable:
                raise ValidationError(f"Soft-delete field '{self.name}' must be nullable", field_name=self.name)

    @property
    def has_default(self) -> bool:
        return self.raw_default is not None

    def is_zero(self, value: Any) -> bool:
        """Check whether a value is this field's zero value."""
        if value is None:
            return True
        zero = self.kind.zero_value()
        return zero is not None and value == zero

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: Dict[str, Any] = {
            "name": self.name,
            "column": self.column,
            "kind": self.kind.value,
            "nullable": self.nullable,
        }
        if self.primary_key:
            result["primary_key"] = True
        if self.auto_increment:
            result["auto_increment"] = True
        if self.unique:
            result["unique"] = True
        if self.indexed:
            result["indexed"] = True
        if self.soft_delete:
            result["soft_delete"] = True
        if self.length is not None:
            result["length"] = self.length
        if self.raw_default is not None:
            result["default"] = self.raw_default
        if self.foreign_key is not None:
            result["foreign_key"] = self.foreign_key.to_dict()
        return result


@dataclass(frozen=True)
class IndexDef:
    """A secondary index on one column."""

    name: str
    table: str
    column: str
    unique: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "column": self.column, "unique": self.unique}


@dataclass(frozen=True)
class ModelMetadata:
    """Table description for one dataclass type.

    Attributes:
        model: The dataclass type
        table_name: Table name
        fields: Mapped fields in declaration order
        primary_key: Column name of the primary key
        auto_increment: Column name of the auto-increment key, if any
        indexes: Secondary indexes
        soft_delete: Column name of the soft-delete timestamp, if any
    """

    model: type
    table_name: str
    fields: Tuple[FieldMetadata, ...]
    primary_key: str
    auto_increment: Optional[str] = None
    indexes: Tuple[IndexDef, ...] = ()
    soft_delete: Optional[str] = None

    def __post_init__(self) -> None:
        check_identifier(self.table_name)

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(f.column for f in self.fields)

    @property
    def pk_field(self) -> FieldMetadata:
        return self.column(self.primary_key)

    def column(self, name: str) -> FieldMetadata:
        """Look up a field by column name.

        Raises:
            ValidationError: If the model has no such column
        """
        for f in self.fields:
            if f.column == name:
                return f
        raise ValidationError(
            f"Unknown column '{name}' for table '{self.table_name}'",
            field_name=name,
        )

    def has_column(self, name: str) -> bool:
        return any(f.column == name for f in self.fields)

    def field_for_attribute(self, name: str) -> Optional[FieldMetadata]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def insert_fields(self) -> Tuple[FieldMetadata, ...]:
        """Fields written by INSERT: everything except the auto key."""
        return tuple(f for f in self.fields if not f.auto_increment)

    def update_fields(self) -> Tuple[FieldMetadata, ...]:
        """Fields written by UPDATE: everything except the primary key."""
        return tuple(f for f in self.fields if not f.primary_key)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: Dict[str, Any] = {
            "model": self.model.__name__,
            "table": self.table_name,
            "primary_key": self.primary_key,
            "fields": [f.to_dict() for f in self.fields],
        }
        if self.auto_increment:
            result["auto_increment"] = self.auto_increment
        if self.indexes:
            result["indexes"] = [i.to_dict() for i in self.indexes]
        if self.soft_delete:
            result["soft_delete"] = self.soft_delete
        return result

    def fingerprint(self) -> str:
        """Hash of the table description, ``sha256:<hex>``."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"


def column(
    tag: str = "",
    *,
    default: Any = dataclasses.MISSING,
    default_factory: Any = dataclasses.MISSING,
) -> Any:
    """Declare a dataclass field carrying an annotation string.

    Example:
        >>> @dataclass
        ... class User:
        ...     id: int = column('orm:"pk,auto"', default=0)
        ...     email: str = column('db:"email" unique:"true"', default="")
    """
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={TAG_METADATA_KEY: tag},
    )
