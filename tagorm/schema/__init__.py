"""
Schema layer for tagorm.

Turns annotated dataclasses into immutable table descriptions.
"""

from .registry import MetadataRegistry, extract_metadata
from .tags import FieldDirectives, ForeignKeyRef, TagDescriptor, describe, parse_attributes, parse_tag
from .types import (
    FieldKind,
    FieldMetadata,
    ForeignKey,
    IndexDef,
    ModelMetadata,
    column,
)

__all__ = [
    "FieldDirectives",
    "FieldKind",
    "FieldMetadata",
    "ForeignKey",
    "ForeignKeyRef",
    "IndexDef",
    "MetadataRegistry",
    "ModelMetadata",
    "TagDescriptor",
    "column",
    "describe",
    "extract_metadata",
    "parse_attributes",
    "parse_tag",
]
