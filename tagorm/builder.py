"""
SimpleORM: fluent setup for the common case.

    >>> orm = (SimpleORM()
    ...        .with_env_config()
    ...        .register_models(User, Post)
    ...        .connect())
    >>> orm.repository(User).save(User(name="ada"))

connect() creates the dialect, connects it, registers the models and
creates any missing tables.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Type, TypeVar, Union

from .config import ConnectionConfig
from .dialects.base import Dialect, create_dialect
from .errors import ConnectionError
from .orm import ORM
from .query.builder import QueryBuilder
from .repository import Repository
from .schema.registry import MetadataRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SimpleORM:
    """Builder that ends in a connected, migrated ORM."""

    def __init__(self) -> None:
        self._dialect: Optional[Dialect] = None
        self._config: Optional[ConnectionConfig] = None
        self._models: List[type] = []
        self._registry = MetadataRegistry()
        self._orm: Optional[ORM] = None

    def with_dialect(self, dialect: Union[str, Dialect]) -> SimpleORM:
        """Use a dialect instance, or create one by name."""
        self._dialect = create_dialect(dialect) if isinstance(dialect, str) else dialect
        return self

    def with_config(self, config: ConnectionConfig) -> SimpleORM:
        self._config = config
        return self

    def with_env_config(self) -> SimpleORM:
        """Load settings from ``TAGORM_*`` environment variables."""
        self._config = ConnectionConfig()
        return self

    def register_models(self, *models: type) -> SimpleORM:
        self._models.extend(models)
        return self

    def connect(self) -> ORM:
        """Connect, register models, and create missing tables.

        Raises:
            ConnectionError: If the database is unreachable
            ValidationError: If a model cannot be mapped
        """
        if self._orm is not None:
            return self._orm

        config = self._config or ConnectionConfig()
        dialect = self._dialect or create_dialect(config.dialect)

        # Validate models before touching the database
        self._registry.register(*self._models)

        dialect.connect(config)
        orm = ORM(dialect, self._registry)
        try:
            created = orm.migrate(*self._models)
        except Exception:
            dialect.close()
            raise
        logger.info(
            f"ORM ready on {dialect.name}",
            extra={"models": [m.__name__ for m in self._models], "created": created},
        )
        self._orm = orm
        return orm

    @property
    def orm(self) -> ORM:
        if self._orm is None:
            raise ConnectionError("SimpleORM is not connected; call connect() first")
        return self._orm

    def repository(self, model: Type[T]) -> Repository[T]:
        return self.orm.repository(model)

    def query(self, model: type) -> QueryBuilder:
        return self.orm.query(model)

    def raw(self, sql: str, *args: Any) -> List[dict]:
        return self.orm.raw(sql, *args)

    def close(self) -> None:
        if self._orm is not None:
            self._orm.close()
            self._orm = None
