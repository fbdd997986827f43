"""
Field annotation parser for tagorm.

A field annotation is a struct-tag style string made of whitespace separated
``key:"value"`` attributes. Two grammars are read from the same string:

- Legacy: one attribute per concept, e.g.
  ``db:"email" unique:"true" length:"120"``
- Compact: everything inside a single ``orm`` attribute, e.g.
  ``orm:"column:email,unique,length:120"``

Both are merged into one FieldDirectives value. Every concept is tri-state:
None means the annotation did not mention it.

Invariants:
    - parse_tag is a pure function of its input
    - When both grammars state a concept, the compact value wins
    - Unknown attribute and directive names are ignored
    - Malformed syntax raises TagParseError naming the fragment

How to change safely:
    - New directives need a legacy spelling, a compact spelling, and a
      FieldDirectives attribute
    - Never make an unknown name an error; annotations are shared with
      other tools
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from ..errors import TagParseError

SKIP_MARKER = "-"

COMPACT_KEY = "orm"

_TRUE = "true"
_FALSE = "false"

# Compact flags map to the FieldDirectives attribute they set
_COMPACT_FLAGS = {
    "pk": "primary_key",
    "primary": "primary_key",
    "auto": "auto_increment",
    "auto_increment": "auto_increment",
    "unique": "unique",
    "index": "index",
    "nullable": "nullable",
    "soft": "soft_delete",
}

_LEGACY_BOOLS = {
    "primary": "primary_key",
    "autoincrement": "auto_increment",
    "unique": "unique",
    "index": "index",
    "nullable": "nullable",
    "soft": "soft_delete",
}


@dataclass(frozen=True)
class ForeignKeyRef:
    """A ``table.column`` reference taken from an annotation."""

    table: str
    column: str

    @classmethod
    def parse(cls, value: str, fragment: str) -> ForeignKeyRef:
        parts = value.split(".")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            raise TagParseError(
                f"Foreign key must look like table.column, got {value!r}",
                fragment=fragment,
            )
        return cls(table=parts[0].strip(), column=parts[1].strip())


@dataclass(frozen=True)
class FieldDirectives:
    """Merged directives for one field.

    Attributes:
        skip: Field is excluded from mapping
        column: Explicit column name
        table: Table name override (only meaningful on the first field)
        primary_key: Field is the primary key
        auto_increment: Database assigns the key
        unique: Column carries a unique constraint
        index: Column gets a secondary index
        nullable: Column accepts NULL
        soft_delete: Column holds the soft-delete timestamp
        length: Column length for sized types
        default: Default value as written in the annotation
        foreign_key: Referenced table and column
        on_delete: Referential action on delete
        on_update: Referential action on update
    """

    skip: bool = False
    column: Optional[str] = None
    table: Optional[str] = None
    primary_key: Optional[bool] = None
    auto_increment: Optional[bool] = None
    unique: Optional[bool] = None
    index: Optional[bool] = None
    nullable: Optional[bool] = None
    soft_delete: Optional[bool] = None
    length: Optional[int] = None
    default: Optional[str] = None
    foreign_key: Optional[ForeignKeyRef] = None
    on_delete: Optional[str] = None
    on_update: Optional[str] = None

    def merged_with(self, override: FieldDirectives) -> FieldDirectives:
        """Return a copy where every concept stated by ``override`` wins."""
        changes = {}
        for f in fields(self):
            value = getattr(override, f.name)
            if f.name == "skip":
                if value:
                    changes["skip"] = True
            elif value is not None:
                changes[f.name] = value
        return replace(self, **changes)


@dataclass(frozen=True)
class TagDescriptor:
    """Raw annotation plus its parsed attributes and merged directives."""

    raw: str
    attributes: Mapping[str, str]
    directives: FieldDirectives


def parse_attributes(raw: str) -> Dict[str, str]:
    """Split an annotation into its ``key:"value"`` attributes.

    Args:
        raw: Annotation string

    Returns:
        Attributes in the order they appear

    Raises:
        TagParseError: On empty keys, missing colons or quotes,
            unterminated quotes, and duplicate keys
    """
    attrs: Dict[str, str] = {}
    i = 0
    n = len(raw)

    while i < n:
        while i < n and raw[i].isspace():
            i += 1
        if i >= n:
            break

        start = i
        while i < n and raw[i] != ":" and raw[i] != '"' and not raw[i].isspace():
            i += 1
        key = raw[start:i]

        if i >= n or raw[i] != ":":
            if not key:
                raise TagParseError("Empty attribute name", fragment=raw[start:])
            raise TagParseError(f"Missing ':' after attribute {key!r}", fragment=key)
        if not key:
            raise TagParseError("Empty attribute name", fragment=raw[start:])

        i += 1
        if i >= n or raw[i] != '"':
            raise TagParseError(
                f"Value of attribute {key!r} must be quoted",
                fragment=raw[start:],
            )
        i += 1

        chars = []
        while i < n and raw[i] != '"':
            if raw[i] == "\\" and i + 1 < n:
                i += 1
            chars.append(raw[i])
            i += 1
        if i >= n:
            raise TagParseError(
                f"Unterminated quote in attribute {key!r}",
                fragment=raw[start:],
            )
        i += 1

        if key in attrs:
            raise TagParseError(f"Duplicate attribute {key!r}", fragment=key)
        attrs[key] = "".join(chars)

    return attrs


def _parse_bool(value: str, fragment: str) -> bool:
    lowered = value.strip().lower()
    if lowered == _TRUE:
        return True
    if lowered == _FALSE:
        return False
    raise TagParseError(f"Expected true or false, got {value!r}", fragment=fragment)


def _parse_length(value: str, fragment: str) -> int:
    try:
        length = int(value.strip())
    except ValueError:
        raise TagParseError(f"Length must be an integer, got {value!r}", fragment=fragment)
    if length <= 0:
        raise TagParseError(f"Length must be positive, got {length}", fragment=fragment)
    return length


def _parse_legacy(attrs: Mapping[str, str]) -> FieldDirectives:
    values: Dict[str, object] = {}

    for key, value in attrs.items():
        fragment = f'{key}:"{value}"'

        if key in ("column", "db"):
            if value.strip() == SKIP_MARKER:
                values["skip"] = True
            elif value.strip():
                values["column"] = value.strip()
        elif key == "table":
            if value.strip():
                values["table"] = value.strip()
        elif key in _LEGACY_BOOLS:
            values[_LEGACY_BOOLS[key]] = _parse_bool(value, fragment)
        elif key == "length":
            values["length"] = _parse_length(value, fragment)
        elif key == "default":
            # An empty default means no default
            if value:
                values["default"] = value
        elif key == "foreign":
            values["foreign_key"] = ForeignKeyRef.parse(value, fragment)
        elif key == "ondelete":
            values["on_delete"] = value.strip().upper()
        elif key == "onupdate":
            values["on_update"] = value.strip().upper()

    return FieldDirectives(**values)


def _parse_compact(value: str) -> FieldDirectives:
    if value.strip() == SKIP_MARKER:
        return FieldDirectives(skip=True)

    values: Dict[str, object] = {}

    for part in value.split(","):
        fragment = part.strip()
        if not fragment:
            continue

        if ":" not in fragment:
            attr = _COMPACT_FLAGS.get(fragment)
            if attr is not None:
                values[attr] = True
            continue

        name, _, arg = fragment.partition(":")
        name = name.strip()
        arg = arg.strip()
        if not name:
            raise TagParseError("Directive name is empty", fragment=fragment)
        if not arg:
            raise TagParseError(f"Directive {name!r} has no value", fragment=fragment)

        if name == "column":
            values["column"] = arg
        elif name == "table":
            values["table"] = arg
        elif name == "length":
            values["length"] = _parse_length(arg, fragment)
        elif name == "default":
            values["default"] = arg
        elif name in ("fk", "foreign_key"):
            values["foreign_key"] = ForeignKeyRef.parse(arg, fragment)
        elif name == "ondelete":
            values["on_delete"] = arg.upper()
        elif name == "onupdate":
            values["on_update"] = arg.upper()

    return FieldDirectives(**values)


def parse_tag(raw: Optional[str]) -> FieldDirectives:
    """Parse an annotation string into merged directives.

    Args:
        raw: Annotation string, may be empty or None

    Returns:
        FieldDirectives with compact values taking precedence

    Raises:
        TagParseError: If the annotation is malformed
    """
    return describe(raw).directives


def describe(raw: Optional[str]) -> TagDescriptor:
    """Parse an annotation and keep the intermediate attributes."""
    raw = raw or ""
    if raw.strip() == SKIP_MARKER:
        return TagDescriptor(raw=raw, attributes=MappingProxyType({}), directives=FieldDirectives(skip=True))

    attrs = parse_attributes(raw)
    compact_value = attrs.get(COMPACT_KEY)
    legacy = _parse_legacy({k: v for k, v in attrs.items() if k != COMPACT_KEY})
    directives = legacy
    if compact_value is not None:
        directives = legacy.merged_with(_parse_compact(compact_value))

    return TagDescriptor(raw=raw, attributes=MappingProxyType(attrs), directives=directives)


__all__ = [
    "FieldDirectives",
    "ForeignKeyRef",
    "TagDescriptor",
    "describe",
    "parse_attributes",
    "parse_tag",
]
