"""
Connection configuration for tagorm.

All settings can be set through environment variables with the
``TAGORM_`` prefix, e.g. ``TAGORM_DIALECT=postgres``,
``TAGORM_DATABASE=app``, ``TAGORM_MAX_OPEN_CONNS=20``.

Invariants:
    - Passwords never appear in redacted() output or logs
    - Pool sizes are positive and max_idle_conns <= max_open_conns
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import json_log_formatter
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

SUPPORTED_DIALECTS = ("sqlite", "postgres")

_DIALECT_ALIASES = {"postgresql": "postgres", "sqlite3": "sqlite"}

_DEFAULT_PORTS = {"postgres": 5432}


class ConnectionConfig(BaseSettings):
    """Database connection settings."""

    dialect: str = Field(default="sqlite", description="Dialect name: sqlite or postgres")

    # Server dialects
    host: str = Field(default="localhost")
    port: int = Field(default=0, description="0 means the dialect's default port")
    username: str = Field(default="")
    password: str = Field(default="")
    ssl_mode: str = Field(default="disable", description="Postgres sslmode")

    # Database name, or file path for sqlite (":memory:" for in-memory)
    database: str = Field(default=":memory:")

    # Pooling
    max_open_conns: int = Field(default=10, description="Upper bound on pooled connections")
    max_idle_conns: int = Field(default=2, description="Connections opened eagerly and kept idle")
    conn_max_lifetime: int = Field(default=3600, description="Seconds before a pooled connection is recycled")

    # Statements
    statement_timeout_ms: int = Field(default=5000, description="Busy/statement timeout passed to the driver")
    sqlite_wal: bool = Field(default=True, description="Use WAL journal mode for file databases")
    echo: bool = Field(default=False, description="Log every statement at DEBUG")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="text or json")

    model_config = {"env_prefix": "TAGORM_"}

    @field_validator("dialect")
    @classmethod
    def _normalize_dialect(cls, value: str) -> str:
        name = value.strip().lower()
        name = _DIALECT_ALIASES.get(name, name)
        if name not in SUPPORTED_DIALECTS:
            raise ValueError(f"Unsupported dialect '{value}', expected one of {SUPPORTED_DIALECTS}")
        return name

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in ("text", "json"):
            raise ValueError(f"log_format must be text or json, got '{value}'")
        return value

    @model_validator(mode="after")
    def _check_pool(self) -> ConnectionConfig:
        if self.max_open_conns < 1:
            raise ValueError("max_open_conns must be >= 1")
        if self.max_idle_conns < 0:
            raise ValueError("max_idle_conns must be >= 0")
        if self.max_idle_conns > self.max_open_conns:
            raise ValueError("max_idle_conns must not exceed max_open_conns")
        if self.statement_timeout_ms < 0:
            raise ValueError("statement_timeout_ms must be >= 0")
        return self

    @property
    def effective_port(self) -> int:
        return self.port or _DEFAULT_PORTS.get(self.dialect, 0)

    def dsn(self) -> str:
        """Connection string for the configured dialect."""
        if self.dialect == "sqlite":
            return self.database
        parts = [
            f"host={self.host}",
            f"port={self.effective_port}",
            f"dbname={self.database}",
            f"sslmode={self.ssl_mode}",
        ]
        if self.username:
            parts.append(f"user={self.username}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with the password masked."""
        data = self.model_dump()
        if data.get("password"):
            data["password"] = "***"
        return data

    def log_config(self) -> None:
        """Log configuration (with secrets redacted)."""
        logger.info(
            "Connection configuration",
            extra={"config": self.redacted()},
        )


def setup_logging(config: ConnectionConfig) -> None:
    """Configure the tagorm logger hierarchy from settings.

    Only the ``tagorm`` logger is touched, so applications keep control
    of the root logger.
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    package_logger = logging.getLogger("tagorm")
    package_logger.setLevel(logging.DEBUG if config.echo else level)
    package_logger.handlers = [handler]
