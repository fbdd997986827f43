"""
Unit tests for metadata extraction and the registry.

Tests cover:
- Table and column resolution
- Primary key rules
- Kind resolution and default coercion
- Indexes and foreign keys
- Caching and concurrent first access
- Fingerprinting
"""

import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from tagorm.errors import TagParseError, ValidationError
from tagorm.schema.registry import MetadataRegistry, extract_metadata
from tagorm.schema.types import FieldKind, ForeignKey, column
from tests.fakes import Member, Tag, User


@dataclass
class Account:
    ID: int = column('orm:"pk,auto"', default=0)
    Owner: str = column('db:"owner_name"', default="")
    balance: Decimal = column('orm:"default:10.50"', default=Decimal(0))


@dataclass
class Comment:
    id: int = column('orm:"pk,auto"', default=0)
    user_id: int = column('orm:"fk:user.id,ondelete:cascade"', default=0)
    body: str = column("", default="")
    cache: str = column("-", default="")


@dataclass
class Legacy:
    key: int = column('db:"k" primary:"true" table:"legacy_items"', default=0)
    data: Optional[Dict[str, int]] = column("", default=None)


@dataclass
class Everything:
    id: int = column('orm:"pk"', default=0)
    f: float = column("", default=0.0)
    d: Decimal = column("", default=Decimal(0))
    s: str = column("", default="")
    b: bool = column("", default=False)
    ts: Optional[datetime] = column("", default=None)
    day: Optional[date] = column("", default=None)
    blob: bytes = column("", default=b"")
    tags: List[str] = column("", default_factory=list)


class TestExtraction:
    """Tests for extract_metadata."""

    def test_user_table(self):
        """Lower-cased type name is the table; columns follow declaration order."""
        meta = extract_metadata(User)

        assert meta.table_name == "user"
        assert meta.columns == ("id", "name", "email")
        assert meta.primary_key == "id"
        assert meta.auto_increment == "id"
        assert meta.column("email").unique is True

    def test_column_names_lowercase_attribute(self):
        """Untagged columns use the lower-cased attribute name."""
        meta = extract_metadata(Account)

        assert meta.columns == ("id", "owner_name", "balance")
        assert meta.column("owner_name").name == "Owner"

    def test_table_attribute_on_first_field(self):
        """Legacy table attribute on the first field names the table."""
        meta = extract_metadata(Legacy)

        assert meta.table_name == "legacy_items"
        assert meta.primary_key == "k"
        assert meta.auto_increment is None

    def test_dunder_table_override(self):
        """__table__ class attribute names the table."""

        @dataclass
        class Person:
            __table__ = "people"
            id: int = column('orm:"pk"', default=0)

        assert extract_metadata(Person).table_name == "people"

    def test_skipped_field(self):
        """Fields tagged - are not mapped."""
        meta = extract_metadata(Comment)

        assert "cache" not in meta.columns

    def test_kinds(self):
        """Annotations resolve to semantic kinds."""
        meta = extract_metadata(Everything)
        kinds = {f.column: f.kind for f in meta.fields}

        assert kinds == {
            "id": FieldKind.INTEGER,
            "f": FieldKind.FLOAT,
            "d": FieldKind.DECIMAL,
            "s": FieldKind.STRING,
            "b": FieldKind.BOOLEAN,
            "ts": FieldKind.TIMESTAMP,
            "day": FieldKind.DATE,
            "blob": FieldKind.BYTES,
            "tags": FieldKind.JSON,
        }

    def test_optional_dict_is_json(self):
        """Optional[Dict[...]] is a JSON column."""
        assert extract_metadata(Legacy).column("data").kind == FieldKind.JSON

    def test_nullability(self):
        """Columns are nullable unless they are the key."""
        meta = extract_metadata(Member)

        assert meta.column("id").nullable is False
        assert meta.column("name").nullable is True

    def test_defaults_are_coerced(self):
        """Defaults are converted to the field kind at build time."""
        assert extract_metadata(Account).column("balance").default == Decimal("10.50")
        assert extract_metadata(Member).column("active").default is True

    def test_bad_default(self):
        """Uncoercible default is a ValidationError."""

        @dataclass
        class Bad:
            id: int = column('orm:"pk"', default=0)
            count: int = column('orm:"default:many"', default=0)

        with pytest.raises(ValidationError, match="not a valid int"):
            extract_metadata(Bad)

    def test_empty_legacy_default_is_no_default(self):
        """An int field tagged default:"" builds without a default."""

        @dataclass
        class Counter:
            id: int = column('orm:"pk"', default=0)
            hits: int = column('default:""', default=0)

        field = extract_metadata(Counter).column("hits")
        assert field.default is None
        assert field.has_default is False

    def test_indexes(self):
        """Indexed fields produce named index definitions."""
        meta = extract_metadata(Member)

        assert len(meta.indexes) == 1
        assert meta.indexes[0].name == "idx_member_age"
        assert meta.indexes[0].column == "age"

    def test_foreign_key(self):
        """fk directive records the reference and actions."""
        fk = extract_metadata(Comment).column("user_id").foreign_key

        assert fk == ForeignKey(table="user", column="id", on_delete="CASCADE")

    def test_insert_and_update_fields(self):
        """INSERT skips the auto key; UPDATE skips the key."""
        meta = extract_metadata(User)

        assert [f.column for f in meta.insert_fields()] == ["name", "email"]
        assert [f.column for f in meta.update_fields()] == ["name", "email"]

        tag_meta = extract_metadata(Tag)
        assert [f.column for f in tag_meta.insert_fields()] == ["code", "label"]


class TestPrimaryKeyRules:
    """Tests for primary key validation."""

    def test_missing_primary_key(self):
        """A model without a key is rejected."""

        @dataclass
        class NoKey:
            name: str = ""

        with pytest.raises(ValidationError, match="No primary key"):
            extract_metadata(NoKey)

    def test_composite_key_rejected(self):
        """Two keys are rejected."""

        @dataclass
        class TwoKeys:
            a: int = column('orm:"pk"', default=0)
            b: int = column('primary:"true"', default=0)

        with pytest.raises(ValidationError, match="Composite"):
            extract_metadata(TwoKeys)

    def test_auto_implies_primary(self):
        """auto alone makes the field the key."""

        @dataclass
        class AutoOnly:
            n: int = column('orm:"auto"', default=0)

        meta = extract_metadata(AutoOnly)
        assert meta.primary_key == "n"
        assert meta.pk_field.primary_key is True

    def test_auto_requires_int(self):
        """Auto-increment on a str key is rejected."""

        @dataclass
        class StrAuto:
            code: str = column('orm:"pk,auto"', default="")

        with pytest.raises(ValidationError, match="must be an int"):
            extract_metadata(StrAuto)


class TestSoftDeleteColumn:
    """Tests for the soft-delete column rules."""

    def test_soft_column_recorded_and_nullable(self):
        """The soft field is forced nullable and named on the model."""

        @dataclass
        class Note:
            id: int = column('orm:"pk,auto"', default=0)
            removed: Optional[datetime] = column('db:"removed_at" nullable:"false" orm:"soft"', default=None)

        meta = extract_metadata(Note)
        assert meta.soft_delete == "removed_at"
        assert meta.column("removed_at").nullable is True
        assert meta.column("removed_at").soft_delete is True
        assert meta.to_dict()["soft_delete"] == "removed_at"

    def test_no_soft_column(self):
        """Models without the flag have no soft-delete column."""
        assert extract_metadata(User).soft_delete is None
        assert "soft_delete" not in extract_metadata(User).to_dict()

    def test_soft_column_must_be_datetime(self):
        """A non-timestamp soft field is rejected."""

        @dataclass
        class BadSoft:
            id: int = column('orm:"pk"', default=0)
            gone: bool = column('orm:"soft"', default=False)

        with pytest.raises(ValidationError, match="must be a non-key datetime"):
            extract_metadata(BadSoft)

    def test_single_soft_column(self):
        """Two soft fields are rejected."""

        @dataclass
        class TwoSoft:
            id: int = column('orm:"pk"', default=0)
            a: Optional[datetime] = column('orm:"soft"', default=None)
            b: Optional[datetime] = column('orm:"soft"', default=None)

        with pytest.raises(ValidationError, match="Only one soft-delete field"):
            extract_metadata(TwoSoft)


class TestExtractionErrors:
    """Tests for rejected declarations."""

    def test_not_a_dataclass(self):
        """Plain classes are rejected."""

        class Plain:
            pass

        with pytest.raises(ValidationError, match="dataclass"):
            extract_metadata(Plain)

    def test_unsupported_annotation(self):
        """Annotations without a column mapping are rejected."""

        @dataclass
        class Weird:
            id: int = column('orm:"pk"', default=0)
            other: object = None

        with pytest.raises(ValidationError, match="Unsupported field annotation") as exc_info:
            extract_metadata(Weird)

        assert exc_info.value.field_name == "other"

    def test_duplicate_columns(self):
        """Two fields on one column are rejected."""

        @dataclass
        class Dupe:
            id: int = column('orm:"pk"', default=0)
            a: str = column('db:"x"', default="")
            b: str = column('orm:"column:x"', default="")

        with pytest.raises(ValidationError, match="mapped by both"):
            extract_metadata(Dupe)

    def test_bad_tag_names_field(self):
        """Tag errors carry the field name."""

        @dataclass
        class BadTag:
            id: int = column('orm:"pk,length:zero"', default=0)

        with pytest.raises(TagParseError) as exc_info:
            extract_metadata(BadTag)

        assert exc_info.value.field_name == "id"

    def test_bad_identifier(self):
        """Column names must be plain identifiers."""

        @dataclass
        class Injected:
            id: int = column('orm:"pk,column:id;drop"', default=0)

        with pytest.raises(ValidationError, match="Invalid identifier"):
            extract_metadata(Injected)


class TestMetadataRegistry:
    """Tests for MetadataRegistry."""

    def test_cached_instance(self, registry):
        """Second lookup returns the same object."""
        first = registry.metadata_for(User)

        assert registry.metadata_for(User) is first
        assert registry.metadata_for(User(name="x")) is first
        assert User in registry

    def test_isolated_registries(self):
        """Registries do not share caches."""
        a = MetadataRegistry()
        b = MetadataRegistry()

        a.metadata_for(User)

        assert len(a) == 1
        assert len(b) == 0

    def test_register_and_clear(self, registry):
        """register() fills the cache; clear() empties it."""
        registry.register(User, Member)

        assert [m.table_name for m in registry.registered()] == ["user", "member"]

        registry.clear()
        assert len(registry) == 0

    def test_failed_build_not_cached(self, registry):
        """A model that fails validation is not cached."""

        @dataclass
        class NoKey:
            name: str = ""

        with pytest.raises(ValidationError):
            registry.metadata_for(NoKey)

        assert NoKey not in registry

    def test_concurrent_first_access(self, registry):
        """Concurrent callers all get one identical instance."""
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(registry.metadata_for(Member))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert len({r.fingerprint() for r in results}) == 1

    def test_fingerprint_deterministic(self):
        """Same models, same fingerprint regardless of order."""
        a = MetadataRegistry()
        b = MetadataRegistry()
        a.register(User, Member)
        b.register(Member, User)

        assert a.fingerprint() == b.fingerprint()
        assert a.fingerprint().startswith("sha256:")

    def test_fingerprint_changes(self):
        """Adding a model changes the fingerprint."""
        registry = MetadataRegistry()
        registry.register(User)
        before = registry.fingerprint()

        registry.register(Member)

        assert registry.fingerprint() != before

    def test_to_dict(self, registry):
        """to_dict exports column details."""
        registry.register(User)

        exported = registry.to_dict()["models"][0]
        assert exported["table"] == "user"
        assert exported["auto_increment"] == "id"
        assert exported["fields"][2] == {
            "name": "email",
            "column": "email",
            "kind": "str",
            "nullable": True,
            "unique": True,
        }
