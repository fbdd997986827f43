"""
Unit tests for dialect type mapping, DDL and the factory.

Tests cover:
- create_dialect
- Column types per dialect
- CREATE TABLE / CREATE INDEX rendering
- Value adaptation
- Behaviour when not connected
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

import pytest

from tagorm.dialects import PostgresDialect, SqliteDialect, create_dialect
from tagorm.errors import ConnectionError, ValidationError
from tagorm.schema.registry import extract_metadata
from tagorm.schema.types import column
from tests.fakes import Member, User


@dataclass
class Post:
    id: int = column('orm:"pk,auto"', default=0)
    author_id: int = column('orm:"fk:user.id,ondelete:cascade,index"', default=0)
    title: str = column('orm:"length:200"', default="")


@dataclass
class BadAction:
    id: int = column('orm:"pk"', default=0)
    ref: int = column('orm:"fk:user.id,ondelete:explode"', default=0)


class TestFactory:
    """Tests for create_dialect."""

    @pytest.mark.parametrize(
        "name,cls",
        [("sqlite", SqliteDialect), ("SQLite3", SqliteDialect), ("postgres", PostgresDialect), ("postgresql", PostgresDialect)],
    )
    def test_known(self, name, cls):
        """Known names map to dialect classes."""
        assert isinstance(create_dialect(name), cls)

    def test_unknown(self):
        """Unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unsupported dialect"):
            create_dialect("mssql")


class TestSqliteDDL:
    """Tests for SQLite DDL rendering."""

    def test_create_user_table(self):
        """Auto key becomes INTEGER PRIMARY KEY AUTOINCREMENT."""
        statements = SqliteDialect().create_table_statements(extract_metadata(User))

        assert statements == [
            "CREATE TABLE IF NOT EXISTS user (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "name TEXT, email TEXT UNIQUE)"
        ]

    def test_defaults_lengths_and_indexes(self):
        """Defaults, lengths and secondary indexes render."""
        statements = SqliteDialect().create_table_statements(extract_metadata(Member))

        assert statements[0] == (
            "CREATE TABLE IF NOT EXISTS member (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "name VARCHAR(80), age INTEGER, active BOOLEAN DEFAULT 1, joined TIMESTAMP)"
        )
        assert statements[1] == "CREATE INDEX IF NOT EXISTS idx_member_age ON member (age)"

    def test_foreign_key(self):
        """Foreign keys render as table constraints."""
        statements = SqliteDialect().create_table_statements(extract_metadata(Post))

        assert statements[0].endswith(
            "title VARCHAR(200), FOREIGN KEY (author_id) REFERENCES user (id) ON DELETE CASCADE)"
        )

    def test_bad_referential_action(self):
        """Unknown ON DELETE actions are rejected."""
        with pytest.raises(ValidationError, match="referential action"):
            SqliteDialect().create_table_statements(extract_metadata(BadAction))

    def test_adapt(self):
        """Values are converted to sqlite-friendly types."""
        d = SqliteDialect()

        assert d.adapt(True) == 1
        assert d.adapt(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05"
        assert d.adapt(date(2024, 1, 2)) == "2024-01-02"
        assert d.adapt(Decimal("1.50")) == "1.50"
        assert json.loads(d.adapt({"b": 1, "a": [2]})) == {"a": [2], "b": 1}
        assert d.adapt("plain") == "plain"

    def test_not_connected(self):
        """Statements before connect() raise ConnectionError."""
        with pytest.raises(ConnectionError, match="not connected"):
            SqliteDialect().query("SELECT 1")


class TestPostgresDDL:
    """Tests for PostgreSQL rendering (no server needed)."""

    def test_quoting_and_placeholders(self):
        """Identifiers are double-quoted; placeholders are %s."""
        d = PostgresDialect()

        assert d.quote("user") == '"user"'
        assert d.quote("user.id") == '"user"."id"'
        assert d.placeholder(3) == "%s"
        assert d.supports_returning is True

    def test_create_table(self):
        """Auto key becomes BIGSERIAL; booleans use TRUE/FALSE."""
        statements = PostgresDialect().create_table_statements(extract_metadata(Member))

        assert statements[0] == (
            'CREATE TABLE IF NOT EXISTS "member" ("id" BIGSERIAL PRIMARY KEY, '
            '"name" VARCHAR(80), "age" BIGINT, "active" BOOLEAN DEFAULT TRUE, "joined" TIMESTAMP)'
        )

    def test_not_connected(self):
        """Statements before connect() raise ConnectionError."""
        with pytest.raises(ConnectionError):
            PostgresDialect().execute("SELECT 1")
