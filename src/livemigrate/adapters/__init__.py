"""
Storage adapters.

Every backend is reached through the StorageAdapter interface; its
capabilities are described by a Dialect record.

Implementations:
- SqlAdapter: PostgreSQL, MySQL and SQLite via SQLAlchemy asyncio
- MongoAdapter: MongoDB via pymongo's async client
- InMemoryAdapter: In-process backend for tests
"""

from livemigrate.adapters.base import TIMESTAMP_COLUMNS, Dialect, Row, StorageAdapter
from livemigrate.adapters.factory import AdapterRegistry, create_adapter
from livemigrate.adapters.memory import MEMORY_DIALECT, InMemoryAdapter
from livemigrate.adapters.mongodb import MONGODB_DIALECT, MongoAdapter
from livemigrate.adapters.sql import (
    MYSQL_DIALECT,
    POSTGRESQL_DIALECT,
    SQLITE_DIALECT,
    SqlAdapter,
    SqlDialect,
)

__all__ = [
    "AdapterRegistry",
    "Dialect",
    "InMemoryAdapter",
    "MEMORY_DIALECT",
    "MONGODB_DIALECT",
    "MYSQL_DIALECT",
    "MongoAdapter",
    "POSTGRESQL_DIALECT",
    "Row",
    "SQLITE_DIALECT",
    "SqlAdapter",
    "SqlDialect",
    "StorageAdapter",
    "TIMESTAMP_COLUMNS",
    "create_adapter",
]
