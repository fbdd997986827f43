"""
Metadata registry for tagorm.

The MetadataRegistry turns annotated dataclasses into ModelMetadata and
caches the result per type. It provides:
- Extraction from dataclass fields and their annotation strings
- A per-type cache that is safe to populate from several threads
- Fingerprinting of every model seen so far

Invariants:
    - Metadata for a type is built at most once per registry
    - Every caller gets the same ModelMetadata object for a type
    - A model has exactly one primary key and at most one soft-delete column
    - Column names are unique within a model
    - Defaults are coerced when metadata is built, never at query time

How to change safely:
    - Keep extraction a pure function of the class; the cache assumes it
    - clear() exists for tests; production code should not need it

Example:
    >>> registry = MetadataRegistry()
    >>> meta = registry.metadata_for(User)
    >>> meta.table_name
    'user'
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import threading
import types
import typing
from typing import Any, Dict, List, Optional, Tuple

from ..errors import TagParseError, ValidationError
from .tags import describe
from .types import (
    TAG_METADATA_KEY,
    FieldKind,
    FieldMetadata,
    ForeignKey,
    IndexDef,
    ModelMetadata,
    coerce_default,
)

logger = logging.getLogger(__name__)

TABLE_ATTRIBUTE = "__table__"


def _unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
    """Return (inner annotation, was_optional)."""
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is getattr(types, "UnionType", None):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0], True
        raise ValidationError(f"Union annotations are not supported: {annotation!r}")
    return annotation, False


def extract_metadata(model: type) -> ModelMetadata:
    """Build ModelMetadata for a dataclass type.

    Args:
        model: Dataclass type

    Returns:
        Immutable table description

    Raises:
        ValidationError: On unsupported annotations, bad defaults,
            duplicate columns, or a primary key count other than one
    """
    if not (isinstance(model, type) and dataclasses.is_dataclass(model)):
        raise ValidationError(f"Expected a dataclass type, got {model!r}")

    try:
        hints = typing.get_type_hints(model)
    except NameError as exc:
        raise ValidationError(f"Cannot resolve annotations of {model.__name__}: {exc}") from exc

    table_name: Optional[str] = getattr(model, TABLE_ATTRIBUTE, None)
    mapped: List[FieldMetadata] = []
    errors: List[str] = []

    for position, dc_field in enumerate(dataclasses.fields(model)):
        tag = dc_field.metadata.get(TAG_METADATA_KEY, "")
        try:
            directives = describe(tag).directives
        except TagParseError as exc:
            raise TagParseError(
                f"Field '{dc_field.name}' of {model.__name__}: {exc.message}",
                fragment=exc.fragment,
                field_name=dc_field.name,
            ) from exc

        if position == 0 and directives.table and table_name is None:
            table_name = directives.table
        if directives.skip:
            continue

        inner, _ = _unwrap_optional(hints[dc_field.name])
        try:
            kind = FieldKind.from_annotation(inner)
        except ValidationError as exc:
            raise ValidationError(
                f"Field '{dc_field.name}' of {model.__name__}: {exc.message}",
                field_name=dc_field.name,
            ) from exc

        auto_increment = bool(directives.auto_increment)
        primary_key = bool(directives.primary_key) or auto_increment
        nullable = directives.nullable if directives.nullable is not None else True
        soft_delete = bool(directives.soft_delete)
        if primary_key:
            nullable = False
        elif soft_delete:
            nullable = True

        default = None
        if directives.default is not None:
            default = coerce_default(kind, directives.default, dc_field.name)

        foreign_key = None
        if directives.foreign_key is not None:
            foreign_key = ForeignKey(
                table=directives.foreign_key.table,
                column=directives.foreign_key.column,
                on_delete=directives.on_delete,
                on_update=directives.on_update,
            )

        mapped.append(
            FieldMetadata(
                name=dc_field.name,
                column=directives.column or dc_field.name.lower(),
                kind=kind,
                primary_key=primary_key,
                auto_increment=auto_increment,
                unique=bool(directives.unique),
                indexed=bool(directives.index),
                nullable=nullable,
                soft_delete=soft_delete,
                length=directives.length,
                raw_default=directives.default,
                default=default,
                foreign_key=foreign_key,
            )
        )

    table_name = table_name or model.__name__.lower()

    seen: Dict[str, str] = {}
    for f in mapped:
        if f.column in seen:
            errors.append(f"Column '{f.column}' is mapped by both '{seen[f.column]}' and '{f.name}'")
        seen[f.column] = f.name

    keys = [f for f in mapped if f.primary_key]
    if not keys:
        errors.append("No primary key field")
    elif len(keys) > 1:
        errors.append(f"Composite primary keys are not supported: {[f.name for f in keys]}")

    soft_fields = [f for f in mapped if f.soft_delete]
    if len(soft_fields) > 1:
        errors.append(f"Only one soft-delete field is allowed: {[f.name for f in soft_fields]}")

    if errors:
        raise ValidationError(
            f"Invalid model {model.__name__}: {'; '.join(errors)}",
            errors=errors,
        )

    pk = keys[0]
    indexes = tuple(
        IndexDef(name=f"idx_{table_name}_{f.column}", table=table_name, column=f.column)
        for f in mapped
        if f.indexed
    )

    return ModelMetadata(
        model=model,
        table_name=table_name,
        fields=tuple(mapped),
        primary_key=pk.column,
        auto_increment=pk.column if pk.auto_increment else None,
        indexes=indexes,
        soft_delete=soft_fields[0].column if soft_fields else None,
    )


class MetadataRegistry:
    """Cache of ModelMetadata keyed by dataclass type.

    Thread-safe: reads go straight to the cache; misses are built under
    the registry lock with a second lookup so a type is built once.
    """

    def __init__(self) -> None:
        self._cache: Dict[type, ModelMetadata] = {}
        self._lock = threading.Lock()

    def metadata_for(self, model: Any) -> ModelMetadata:
        """Get metadata for a dataclass type or instance.

        Raises:
            ValidationError: If the type cannot be mapped
        """
        cls = model if isinstance(model, type) else type(model)

        cached = self._cache.get(cls)
        if cached is not None:
            return cached

        with self._lock:
            cached = self._cache.get(cls)
            if cached is not None:
                return cached
            meta = extract_metadata(cls)
            self._cache[cls] = meta

        logger.debug(
            f"Built metadata for {cls.__name__} -> {meta.table_name}",
            extra={"table": meta.table_name, "columns": list(meta.columns)},
        )
        return meta

    def register(self, *models: type) -> List[ModelMetadata]:
        """Build and cache metadata for several types up front."""
        return [self.metadata_for(m) for m in models]

    def registered(self) -> List[ModelMetadata]:
        """All cached metadata, in registration order."""
        with self._lock:
            return list(self._cache.values())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def to_dict(self) -> Dict[str, Any]:
        ordered = sorted(self.registered(), key=lambda m: m.table_name)
        return {"models": [m.to_dict() for m in ordered]}

    def fingerprint(self) -> str:
        """SHA-256 over the canonical JSON of every cached model."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, model: type) -> bool:
        return model in self._cache
