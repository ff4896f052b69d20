"""
Boundary data shapes for livemigrate.

These are the shapes the system accepts from and hands back to its
callers: where a dataset lives (StorageEndpoint) and what its structure
should be (StructuralDefinition and its parts). They are pydantic models
so externally supplied descriptors are validated once, at the edge.

Models in this module:

Enums:
    - BackendKind: Storage backend families with a built-in adapter
    - LogicalType: Closed column type vocabulary shared by all backends

Endpoint:
    - StorageEndpoint: Connection descriptor for one backend

Structure:
    - ColumnDefinition, ForeignKeyDefinition, TableDefinition
    - IndexDefinition, ConstraintDefinition
    - StructuralDefinition: Versioned collection of the above
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class BackendKind(Enum):
    """
    Storage backend families with a built-in adapter.

    Attributes:
        POSTGRESQL: Relational backend reached through asyncpg.
        MYSQL: Relational backend reached through aiomysql.
        MONGODB: Document backend reached through pymongo's async client.
        SQLITE: Local relational backend reached through aiosqlite.
        MEMORY: In-process backend for tests and prototyping.
    """

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    SQLITE = "sqlite"
    MEMORY = "memory"

    @property
    def is_relational(self) -> bool:
        """True for the SQL family."""
        return self in (BackendKind.POSTGRESQL, BackendKind.MYSQL, BackendKind.SQLITE)


class LogicalType(Enum):
    """
    Closed vocabulary of column types.

    Backends map these to their native types when creating tables and map
    native types back when describing them.
    """

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    JSON = "json"
    UUID = "uuid"


# Native spellings accepted on input and normalized to the closed vocabulary.
TYPE_ALIASES: dict[str, LogicalType] = {
    "varchar": LogicalType.STRING,
    "char": LogicalType.STRING,
    "int": LogicalType.INTEGER,
    "smallint": LogicalType.INTEGER,
    "tinyint": LogicalType.INTEGER,
    "numeric": LogicalType.DECIMAL,
    "float": LogicalType.DECIMAL,
    "double": LogicalType.DECIMAL,
    "bool": LogicalType.BOOLEAN,
    "bit": LogicalType.BOOLEAN,
    "timestamp": LogicalType.DATETIME,
    "jsonb": LogicalType.JSON,
}


def normalize_type(value: Any) -> Any:
    """
    Normalize a type name to a LogicalType where possible.

    Unknown names are returned unchanged so pydantic reports them.
    """
    if isinstance(value, LogicalType):
        return value
    if isinstance(value, str):
        name = value.strip().lower()
        if name in TYPE_ALIASES:
            return TYPE_ALIASES[name]
        return name
    return value


class StorageEndpoint(BaseModel):
    """
    Connection descriptor for one storage backend.

    Immutable once created. ``kind`` is kept as a plain string so that the
    adapter factory, not validation, decides whether a backend is supported
    and can raise UnsupportedBackendError.

    Attributes:
        kind: Backend kind name (see BackendKind)
        host: Host name
        port: TCP port; None uses the driver default
        database: Database name, or file path for sqlite
        username: Login name
        password: Login secret (masked in serialized output)
        tls: Whether to require TLS

    Example:
        >>> endpoint = StorageEndpoint(kind="postgresql", host="db", port=5432, database="app")
        >>> endpoint.signature
        'postgresql://db:5432/app'
    """

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="Backend kind (postgresql, mysql, mongodb, ...)")
    host: str = Field(default="localhost", description="Backend host")
    port: int | None = Field(default=None, ge=1, le=65535, description="Backend port")
    database: str = Field(..., min_length=1, description="Database name or sqlite path")
    username: str | None = Field(default=None, description="Login name")
    password: SecretStr | None = Field(default=None, description="Login secret")
    tls: bool = Field(default=False, description="Require TLS")

    @field_validator("kind", mode="before")
    @classmethod
    def _lower_kind(cls, value: Any) -> Any:
        if isinstance(value, BackendKind):
            return value.value
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def signature(self) -> str:
        """Cache key identifying the physical endpoint."""
        port = "" if self.port is None else self.port
        return f"{self.kind}://{self.host}:{port}/{self.database}"


class ColumnDefinition(BaseModel):
    """
    A single column of a table.

    Attributes:
        name: Column name
        type: Logical type (aliases like "varchar" or "jsonb" are normalized)
        nullable: Whether NULL is allowed
        default_value: Optional default
        constraints: Free-form column constraints carried through verbatim
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: LogicalType
    nullable: bool = True
    default_value: Any = None
    constraints: tuple[str, ...] = ()

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return normalize_type(value)

    def structurally_equals(self, other: ColumnDefinition) -> bool:
        """Compare type, nullability and default; the name is the diff key."""
        return (
            self.type == other.type
            and self.nullable == other.nullable
            and self.default_value == other.default_value
        )


class ForeignKeyDefinition(BaseModel):
    """A foreign key from one column to a column of another table."""

    model_config = ConfigDict(frozen=True)

    name: str
    column: str
    referenced_table: str
    referenced_column: str
    on_delete: Literal["CASCADE", "SET NULL", "RESTRICT"] | None = None


class TableDefinition(BaseModel):
    """
    Structure of one table or collection.

    Column order is significant for generated statements but not for
    semantic comparison.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    columns: tuple[ColumnDefinition, ...] = ()
    primary_key: str | None = None
    foreign_keys: tuple[ForeignKeyDefinition, ...] = ()

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def column(self, name: str) -> ColumnDefinition | None:
        """Look up a column by name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def renamed(self, name: str) -> TableDefinition:
        """Return the same structure under another table name."""
        return self.model_copy(update={"name": name})


class IndexDefinition(BaseModel):
    """A (possibly unique) index over one or more columns of a table."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    table: str
    columns: tuple[str, ...] = Field(..., min_length=1)
    unique: bool = False


class ConstraintDefinition(BaseModel):
    """A table-level constraint expressed in backend-native syntax."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal["CHECK", "UNIQUE", "EXCLUDE"]
    definition: str
    table: str | None = None


class StructuralDefinition(BaseModel):
    """
    Versioned structure of a whole dataset.

    Example:
        >>> schema = StructuralDefinition(
        ...     version="2",
        ...     tables=[
        ...         TableDefinition(
        ...             name="users",
        ...             columns=[
        ...                 ColumnDefinition(name="id", type="integer", nullable=False),
        ...                 ColumnDefinition(name="email", type="varchar"),
        ...             ],
        ...             primary_key="id",
        ...         )
        ...     ],
        ... )
    """

    model_config = ConfigDict(frozen=True)

    version: str = "1.0"
    tables: tuple[TableDefinition, ...] = ()
    indexes: tuple[IndexDefinition, ...] = ()
    constraints: tuple[ConstraintDefinition, ...] = ()

    @property
    def table_names(self) -> list[str]:
        return [table.name for table in self.tables]

    def table(self, name: str) -> TableDefinition | None:
        """Look up a table by name."""
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def indexes_for(self, table: str) -> list[IndexDefinition]:
        """Indexes declared on the given table."""
        return [index for index in self.indexes if index.table == table]


__all__ = [
    "BackendKind",
    "LogicalType",
    "TYPE_ALIASES",
    "normalize_type",
    "StorageEndpoint",
    "ColumnDefinition",
    "ForeignKeyDefinition",
    "TableDefinition",
    "IndexDefinition",
    "ConstraintDefinition",
    "StructuralDefinition",
]
