"""
Unit tests for ConnectionConfig.

Tests cover:
- Defaults
- Environment loading
- Validation
- DSN and redaction
- Logging setup
"""

import logging

import json_log_formatter
import pydantic
import pytest

from tagorm.config import ConnectionConfig, setup_logging


class TestConnectionConfig:
    """Tests for ConnectionConfig."""

    def test_defaults(self, monkeypatch):
        """Defaults describe an in-memory sqlite database."""
        for key in ("TAGORM_DIALECT", "TAGORM_DATABASE"):
            monkeypatch.delenv(key, raising=False)

        config = ConnectionConfig()

        assert config.dialect == "sqlite"
        assert config.database == ":memory:"
        assert config.max_open_conns == 10
        assert config.echo is False

    def test_from_env(self, monkeypatch):
        """TAGORM_* variables populate the settings."""
        monkeypatch.setenv("TAGORM_DIALECT", "postgresql")
        monkeypatch.setenv("TAGORM_HOST", "db.internal")
        monkeypatch.setenv("TAGORM_DATABASE", "app")
        monkeypatch.setenv("TAGORM_MAX_OPEN_CONNS", "20")
        monkeypatch.setenv("TAGORM_ECHO", "true")

        config = ConnectionConfig()

        assert config.dialect == "postgres"
        assert config.host == "db.internal"
        assert config.max_open_conns == 20
        assert config.echo is True
        assert config.effective_port == 5432

    def test_unknown_dialect(self):
        """Unsupported dialects are rejected."""
        with pytest.raises(pydantic.ValidationError, match="Unsupported dialect"):
            ConnectionConfig(dialect="oracle")

    def test_pool_bounds(self):
        """Idle connections cannot exceed open connections."""
        with pytest.raises(pydantic.ValidationError, match="max_idle_conns"):
            ConnectionConfig(max_open_conns=2, max_idle_conns=5)

    def test_postgres_dsn(self):
        """DSN carries host, port, database and credentials."""
        config = ConnectionConfig(
            dialect="postgres",
            host="h",
            port=6543,
            database="d",
            username="u",
            password="secret",
        )

        assert config.dsn() == "host=h port=6543 dbname=d sslmode=disable user=u password=secret"

    def test_sqlite_dsn_is_path(self, data_dir):
        """For sqlite the DSN is the file path."""
        config = ConnectionConfig(database=f"{data_dir}/app.db")

        assert config.dsn() == f"{data_dir}/app.db"

    def test_redacted(self):
        """Passwords are masked."""
        config = ConnectionConfig(password="hunter2")

        assert config.redacted()["password"] == "***"
        assert "hunter2" not in str(config.redacted())


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        """Put the package logger back after each test."""
        package_logger = logging.getLogger("tagorm")
        level, handlers = package_logger.level, list(package_logger.handlers)
        yield
        package_logger.setLevel(level)
        package_logger.handlers = handlers

    def test_configures_package_logger(self):
        """Only the tagorm logger is configured."""
        root_handlers = list(logging.getLogger().handlers)

        setup_logging(ConnectionConfig(log_level="warning"))

        package_logger = logging.getLogger("tagorm")
        assert package_logger.level == logging.WARNING
        assert len(package_logger.handlers) == 1
        assert logging.getLogger().handlers == root_handlers

    def test_echo_enables_debug(self):
        """echo turns on statement logging."""
        setup_logging(ConnectionConfig(echo=True, log_format="json"))

        assert logging.getLogger("tagorm").level == logging.DEBUG
        assert isinstance(logging.getLogger("tagorm").handlers[0].formatter, json_log_formatter.JSONFormatter)
