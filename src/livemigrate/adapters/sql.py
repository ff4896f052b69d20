"""
Relational storage adapter built on SQLAlchemy's asyncio extension.

One adapter class serves PostgreSQL (asyncpg), MySQL (aiomysql) and
SQLite (aiosqlite). What differs between them (driver name, upsert
syntax, trigger and statistics statements, DDL transactionality) lives in
a SqlDialect record, so nothing here branches on the backend's name.

Structure changes go through Alembic's operations API, which renders
portable ALTER/RENAME/INDEX statements and falls back to table rebuilds
("batch mode") where the database cannot alter a column in place.

Connection model:
    A pooled AsyncEngine hands each concurrent caller its own connection.
    An explicit transaction pins one connection to the calling task via a
    context variable; every adapter call made from that task while the
    transaction is open runs on it. SQLite serializes all connection use
    behind a lock because it allows a single writer.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import event
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import URL, Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncTransaction,
    create_async_engine,
)

from livemigrate._time import latest
from livemigrate.adapters.base import TIMESTAMP_COLUMNS, Dialect, Row, StorageAdapter
from livemigrate.definitions import (
    ColumnDefinition,
    IndexDefinition,
    LogicalType,
    StorageEndpoint,
    TableDefinition,
)
from livemigrate.exceptions import BackendExecutionError, StorageConnectionError
from livemigrate.models import TableChanges
from livemigrate.observability import (
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_TABLE,
    Tracer,
)

logger = logging.getLogger(__name__)

Quote = Callable[[str], str]

# =============================================================================
# Type mapping
# =============================================================================

SA_TYPES: dict[LogicalType, Callable[[], Any]] = {
    LogicalType.STRING: lambda: sa.String(255),
    LogicalType.TEXT: sa.Text,
    LogicalType.INTEGER: sa.Integer,
    LogicalType.BIGINT: sa.BigInteger,
    LogicalType.DECIMAL: lambda: sa.Numeric(38, 10),
    LogicalType.BOOLEAN: sa.Boolean,
    LogicalType.DATE: sa.Date,
    LogicalType.DATETIME: lambda: sa.DateTime(timezone=True),
    LogicalType.JSON: lambda: sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
    LogicalType.UUID: lambda: sa.Uuid(as_uuid=False),
}

# Order matters: subclasses before their bases.
_REFLECTED_TYPES: tuple[tuple[type[Any], LogicalType], ...] = (
    (sa.Boolean, LogicalType.BOOLEAN),
    (sa.BigInteger, LogicalType.BIGINT),
    (sa.Integer, LogicalType.INTEGER),
    (sa.Float, LogicalType.DECIMAL),
    (sa.Numeric, LogicalType.DECIMAL),
    (sa.DateTime, LogicalType.DATETIME),
    (sa.Date, LogicalType.DATE),
    (sa.JSON, LogicalType.JSON),
    (sa.Uuid, LogicalType.UUID),
    (sa.Text, LogicalType.TEXT),
    (sa.String, LogicalType.STRING),
)


def sa_type_for(logical: LogicalType) -> Any:
    """SQLAlchemy column type for a logical type."""
    return SA_TYPES[logical]()


def logical_type_for(sa_type: Any) -> LogicalType:
    """
    Logical type for a reflected SQLAlchemy column type.

    Unknown native types are treated as strings.
    """
    for sa_class, logical in _REFLECTED_TYPES:
        if isinstance(sa_type, sa_class):
            return logical
    return LogicalType.STRING


def parse_server_default(text: str | None) -> Any:
    """
    Turn a reflected server default into a plain value.

    Handles quoted literals (with an optional PostgreSQL ``::type`` cast),
    booleans and numbers. Expressions such as ``now()`` are kept verbatim.
    """
    if text is None:
        return None
    value = text.strip()
    while value.startswith("(") and value.endswith(")"):
        value = value[1:-1].strip()
    if "::" in value and value.startswith("'"):
        value = value.split("::", 1)[0]
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def server_default_for(value: Any) -> Any:
    """Server default clause for a column default value."""
    if value is None:
        return None
    if isinstance(value, bool):
        return sa.text("true" if value else "false")
    if isinstance(value, int | float):
        return sa.text(str(value))
    if isinstance(value, dict | list):
        return json.dumps(value)
    return str(value)


# =============================================================================
# Dialect-specific statements
# =============================================================================


def _pg_upsert(table: sa.TableClause, key: str, columns: list[str]) -> Any:
    stmt = postgresql.insert(table)
    updates = {c: stmt.excluded[c] for c in columns if c != key}
    if not updates:
        return stmt.on_conflict_do_nothing(index_elements=[key])
    return stmt.on_conflict_do_update(index_elements=[key], set_=updates)


def _sqlite_upsert(table: sa.TableClause, key: str, columns: list[str]) -> Any:
    stmt = sqlite.insert(table)
    updates = {c: stmt.excluded[c] for c in columns if c != key}
    if not updates:
        return stmt.on_conflict_do_nothing(index_elements=[key])
    return stmt.on_conflict_do_update(index_elements=[key], set_=updates)


def _mysql_upsert(table: sa.TableClause, key: str, columns: list[str]) -> Any:
    stmt = mysql.insert(table)
    updates = {c: stmt.inserted[c] for c in columns if c != key}
    if not updates:
        updates = {key: stmt.inserted[key]}
    return stmt.on_duplicate_key_update(updates)


def _pg_trigger_toggle(table: str, enabled: bool) -> str:
    return f"ALTER TABLE {table} {'ENABLE' if enabled else 'DISABLE'} TRIGGER ALL"


def _pg_statistics(table: str) -> str:
    return f"ANALYZE {table}"


def _mysql_statistics(table: str) -> str:
    return f"ANALYZE TABLE {table}"


def _pg_change_capture(
    q: Quote, table: str, shadow: str, columns: list[str], key: str
) -> list[str]:
    function = q(f"sync_{table}_to_{shadow}")
    trigger = q(f"{table}_shadow_sync")
    names = ", ".join(q(c) for c in columns)
    values = ", ".join(f"NEW.{q(c)}" for c in columns)
    return [
        f"""CREATE OR REPLACE FUNCTION {function}() RETURNS TRIGGER AS $$
BEGIN
    IF TG_OP IN ('UPDATE', 'DELETE') THEN
        DELETE FROM {q(shadow)} WHERE {q(key)} = OLD.{q(key)};
    END IF;
    IF TG_OP = 'DELETE' THEN
        RETURN OLD;
    END IF;
    INSERT INTO {q(shadow)} ({names}) VALUES ({values});
    RETURN NEW;
END;
$$ LANGUAGE plpgsql""",
        f"DROP TRIGGER IF EXISTS {trigger} ON {q(table)}",
        f"CREATE TRIGGER {trigger} AFTER INSERT OR UPDATE OR DELETE ON {q(table)} "
        f"FOR EACH ROW EXECUTE FUNCTION {function}()",
    ]


def _pg_remove_capture(q: Quote, table: str, shadow: str) -> list[str]:
    return [
        f"DROP TRIGGER IF EXISTS {q(f'{table}_shadow_sync')} ON {q(table)}",
        f"DROP FUNCTION IF EXISTS {q(f'sync_{table}_to_{shadow}')}()",
    ]


def _sqlite_change_capture(
    q: Quote, table: str, shadow: str, columns: list[str], key: str
) -> list[str]:
    names = ", ".join(q(c) for c in columns)
    values = ", ".join(f"NEW.{q(c)}" for c in columns)
    copy_new = f"INSERT OR REPLACE INTO {q(shadow)} ({names}) VALUES ({values});"
    delete_old = f"DELETE FROM {q(shadow)} WHERE {q(key)} = OLD.{q(key)};"
    return [
        f"CREATE TRIGGER IF NOT EXISTS {q(f'{table}_shadow_ins')} "
        f"AFTER INSERT ON {q(table)} BEGIN {copy_new} END",
        f"CREATE TRIGGER IF NOT EXISTS {q(f'{table}_shadow_upd')} "
        f"AFTER UPDATE ON {q(table)} BEGIN {delete_old} {copy_new} END",
        f"CREATE TRIGGER IF NOT EXISTS {q(f'{table}_shadow_del')} "
        f"AFTER DELETE ON {q(table)} BEGIN {delete_old} END",
    ]


def _sqlite_remove_capture(q: Quote, table: str, shadow: str) -> list[str]:
    return [
        f"DROP TRIGGER IF EXISTS {q(f'{table}_shadow_{suffix}')}"
        for suffix in ("ins", "upd", "del")
    ]


@dataclass(frozen=True)
class SqlDialect(Dialect):
    """
    Capability record of a relational backend.

    Attributes:
        driver: SQLAlchemy driver name (e.g., "postgresql+asyncpg").
        file_database: The endpoint's database is a file path.
        serialize_connections: Only one connection may be used at a time.
        explicit_begin: Emit BEGIN ourselves so DDL joins transactions.
        upsert: Builds an insert-or-update statement keyed by one column.
        trigger_toggle: Statement disabling/enabling triggers on a table.
        statistics: Statement refreshing planner statistics for a table.
        change_capture: Statements mirroring a table into its shadow.
        remove_capture: Statements removing that mirroring.
    """

    driver: str = ""
    file_database: bool = False
    serialize_connections: bool = False
    explicit_begin: bool = False
    upsert: Callable[[sa.TableClause, str, list[str]], Any] | None = None
    trigger_toggle: Callable[[str, bool], str] | None = None
    statistics: Callable[[str], str] | None = None
    change_capture: Callable[[Quote, str, str, list[str], str], list[str]] | None = None
    remove_capture: Callable[[Quote, str, str], list[str]] | None = None

    def url(self, endpoint: StorageEndpoint) -> URL:
        """Connection URL for an endpoint."""
        if self.file_database:
            return URL.create(self.driver, database=endpoint.database)
        return URL.create(
            self.driver,
            username=endpoint.username,
            password=endpoint.password.get_secret_value() if endpoint.password else None,
            host=endpoint.host,
            port=endpoint.port,
            database=endpoint.database,
        )

    def connect_args(self, endpoint: StorageEndpoint) -> dict[str, Any]:
        if endpoint.tls and not self.file_database:
            return {"ssl": ssl.create_default_context()}
        return {}


POSTGRESQL_DIALECT = SqlDialect(
    name="postgresql",
    driver="postgresql+asyncpg",
    supports_change_triggers=True,
    supports_trigger_toggle=True,
    supports_statistics=True,
    upsert=_pg_upsert,
    trigger_toggle=_pg_trigger_toggle,
    statistics=_pg_statistics,
    change_capture=_pg_change_capture,
    remove_capture=_pg_remove_capture,
)

MYSQL_DIALECT = SqlDialect(
    name="mysql",
    driver="mysql+aiomysql",
    transactional_ddl=False,
    supports_statistics=True,
    upsert=_mysql_upsert,
    statistics=_mysql_statistics,
)

SQLITE_DIALECT = SqlDialect(
    name="sqlite",
    driver="sqlite+aiosqlite",
    file_database=True,
    serialize_connections=True,
    explicit_begin=True,
    supports_change_triggers=True,
    supports_statistics=True,
    upsert=_sqlite_upsert,
    statistics=_pg_statistics,
    change_capture=_sqlite_change_capture,
    remove_capture=_sqlite_remove_capture,
)


# =============================================================================
# Adapter
# =============================================================================


class SqlAdapter(StorageAdapter):
    """
    Storage adapter for the relational family.

    Args:
        endpoint: Endpoint descriptor
        dialect: Relational dialect (POSTGRESQL_DIALECT, MYSQL_DIALECT, SQLITE_DIALECT)
        engine: Optional pre-built AsyncEngine; when given, the adapter does
            not dispose it on disconnect
        tracer: Optional custom Tracer instance
        enable_tracing: If True, emit traces (default: True)

    Example:
        >>> adapter = SqlAdapter(
        ...     StorageEndpoint(kind="postgresql", host="db", port=5432, database="app"),
        ...     POSTGRESQL_DIALECT,
        ... )
        >>> await adapter.connect()
        >>> rows = await adapter.select_rows("users", limit=100)
    """

    def __init__(
        self,
        endpoint: StorageEndpoint,
        dialect: SqlDialect,
        *,
        engine: AsyncEngine | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(endpoint, tracer=tracer, enable_tracing=enable_tracing)
        self._dialect = dialect
        self._engine = engine
        self._owns_engine = engine is None
        self._connected = False
        self._definitions: dict[str, TableDefinition] = {}
        self._serial = asyncio.Lock()
        self._tx: ContextVar[tuple[AsyncConnection, AsyncTransaction] | None] = ContextVar(
            f"livemigrate_sql_tx_{id(self)}", default=None
        )

    @property
    def dialect(self) -> SqlDialect:
        return self._dialect

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -- connection -----------------------------------------------------

    async def connect(self) -> None:
        if self._connected:
            return
        if self._engine is None:
            self._engine = create_async_engine(
                self._dialect.url(self._endpoint),
                connect_args=self._dialect.connect_args(self._endpoint),
            )
            if self._dialect.explicit_begin:
                _emit_explicit_begin(self._engine)
        try:
            async with self._engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            if self._owns_engine:
                await self._engine.dispose()
                self._engine = None
            raise StorageConnectionError(self.signature, str(e)) from e
        self._connected = True
        logger.info(
            "Connected to %s",
            self.signature,
            extra={"db_system": self._dialect.name},
        )

    async def disconnect(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
        self._connected = False
        self._definitions.clear()

    def _ensure_connected(self) -> AsyncEngine:
        if self._engine is None or not self._connected:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._engine

    @contextlib.asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        state = self._tx.get()
        if state is not None:
            yield state[0]
            return
        engine = self._ensure_connected()
        if self._dialect.serialize_connections:
            async with self._serial, engine.begin() as conn:
                yield conn
        else:
            async with engine.begin() as conn:
                yield conn

    @contextlib.asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncConnection]:
        """Connection for one operation, with driver errors wrapped."""
        try:
            async with self._connection() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise BackendExecutionError(operation, str(e), cause=e) from e

    def _quote(self, name: str) -> str:
        return self._ensure_connected().dialect.identifier_preparer.quote(name)

    def _span_attributes(self, operation: str, table: str | None = None) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            ATTR_DB_SYSTEM: self._dialect.name,
            ATTR_DB_NAME: self._endpoint.database,
            ATTR_DB_OPERATION: operation,
        }
        if table is not None:
            attributes[ATTR_TABLE] = table
        return attributes

    # -- commands and structure -----------------------------------------

    async def run_command(
        self,
        text: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        with self._tracer.span(
            "livemigrate.adapter.run_command",
            self._span_attributes("COMMAND"),
        ):
            async with self._session("run_command") as conn:
                result = await conn.execute(sa.text(text), dict(params or {}))
                if not result.returns_rows:
                    return []
                return [dict(row) for row in result.mappings().all()]

    async def list_tables(self) -> list[str]:
        async with self._session("list_tables") as conn:
            return await conn.run_sync(lambda sync_conn: sa.inspect(sync_conn).get_table_names())

    async def describe_table(self, name: str) -> TableDefinition:
        def _inspect(sync_conn: Connection) -> TableDefinition:
            inspector = sa.inspect(sync_conn)
            if not inspector.has_table(name):
                return TableDefinition(name=name)
            columns = [
                ColumnDefinition(
                    name=column["name"],
                    type=logical_type_for(column["type"]),
                    nullable=bool(column.get("nullable", True)),
                    default_value=parse_server_default(column.get("default")),
                )
                for column in inspector.get_columns(name)
            ]
            primary = inspector.get_pk_constraint(name).get("constrained_columns") or []
            return TableDefinition(
                name=name,
                columns=tuple(columns),
                primary_key=primary[0] if primary else None,
            )

        with self._tracer.span(
            "livemigrate.adapter.describe_table",
            self._span_attributes("DESCRIBE", name),
        ):
            async with self._session("describe_table") as conn:
                return await conn.run_sync(_inspect)

    async def _definition(self, name: str, operation: str) -> TableDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            definition = await self.describe_table(name)
            if not definition.columns:
                raise BackendExecutionError(operation, f"table {name} does not exist")
            self._definitions[name] = definition
        return definition

    def _forget(self, *names: str) -> None:
        for name in names:
            self._definitions.pop(name, None)

    @staticmethod
    def _column(column: ColumnDefinition, primary_key: str | None = None) -> sa.Column[Any]:
        return sa.Column(
            column.name,
            sa_type_for(column.type),
            nullable=column.nullable,
            primary_key=column.name == primary_key,
            autoincrement=False,
            server_default=server_default_for(column.default_value),
        )

    @staticmethod
    def _table_clause(definition: TableDefinition) -> sa.TableClause:
        return sa.table(
            definition.name,
            *(sa.column(c.name, sa_type_for(c.type)) for c in definition.columns),
        )

    async def create_table(self, table: TableDefinition) -> None:
        columns = [self._column(c, table.primary_key) for c in table.columns]

        def _create(sync_conn: Connection) -> None:
            Operations(MigrationContext.configure(sync_conn)).create_table(table.name, *columns)

        with self._tracer.span(
            "livemigrate.adapter.create_table",
            self._span_attributes("CREATE", table.name),
        ):
            async with self._session("create_table") as conn:
                await conn.run_sync(_create)
        self._forget(table.name)

    async def drop_table(self, name: str) -> None:
        def _drop(sync_conn: Connection) -> None:
            sa.Table(name, sa.MetaData()).drop(sync_conn, checkfirst=True)

        async with self._session("drop_table") as conn:
            await conn.run_sync(_drop)
        self._forget(name)

    async def evolve_table(self, name: str, changes: TableChanges) -> None:
        if changes.is_empty:
            return
        current = await self.describe_table(name)

        def _evolve(sync_conn: Connection) -> None:
            ops = Operations(MigrationContext.configure(sync_conn))
            if changes.add:
                with ops.batch_alter_table(name) as batch:
                    for column in changes.add:
                        batch.add_column(self._column(column))
            if changes.modify:
                with ops.batch_alter_table(name) as batch:
                    for column in changes.modify:
                        existing = current.column(column.name)
                        batch.alter_column(
                            column.name,
                            type_=sa_type_for(column.type),
                            nullable=column.nullable,
                            server_default=server_default_for(column.default_value),
                            existing_type=sa_type_for(existing.type) if existing else None,
                            existing_nullable=existing.nullable if existing else None,
                        )
            if changes.drop:
                with ops.batch_alter_table(name) as batch:
                    for column_name in changes.drop:
                        batch.drop_column(column_name)

        with self._tracer.span(
            "livemigrate.adapter.evolve_table",
            self._span_attributes("ALTER", name),
        ):
            async with self._session("evolve_table") as conn:
                await conn.run_sync(_evolve)
        self._forget(name)

    async def rename_table(self, old_name: str, new_name: str) -> None:
        def _rename(sync_conn: Connection) -> None:
            Operations(MigrationContext.configure(sync_conn)).rename_table(old_name, new_name)

        with self._tracer.span(
            "livemigrate.adapter.rename_table",
            self._span_attributes("RENAME", old_name),
        ):
            async with self._session("rename_table") as conn:
                await conn.run_sync(_rename)
        self._forget(old_name, new_name)

    # -- rows -----------------------------------------------------------

    async def insert_rows(
        self,
        table: str,
        rows: Sequence[Row],
        *,
        key: str | None = None,
    ) -> int:
        if not rows:
            return 0
        definition = await self._definition(table, "insert_rows")
        columns = [c for c in definition.column_names if any(c in row for row in rows)]
        records = [{c: row.get(c) for c in columns} for row in rows]
        clause = self._table_clause(definition)
        if key is not None and self._dialect.upsert is not None:
            stmt = self._dialect.upsert(clause, key, columns)
        else:
            stmt = sa.insert(clause)

        with self._tracer.span(
            "livemigrate.adapter.insert_rows",
            self._span_attributes("INSERT", table),
        ):
            async with self._session("insert_rows") as conn:
                await conn.execute(stmt, records)
        return len(records)

    @staticmethod
    def _ordering(definition: TableDefinition, clause: sa.TableClause) -> list[Any]:
        """Primary key, or every orderable column when there is none."""
        if definition.primary_key:
            return [clause.c[definition.primary_key]]
        return [clause.c[c.name] for c in definition.columns if c.type is not LogicalType.JSON]

    async def select_rows(self, table: str, limit: int, offset: int = 0) -> list[Row]:
        definition = await self._definition(table, "select_rows")
        clause = self._table_clause(definition)
        stmt = (
            sa.select(clause)
            .order_by(*self._ordering(definition, clause))
            .limit(limit)
            .offset(offset)
        )

        with self._tracer.span(
            "livemigrate.adapter.select_rows",
            self._span_attributes("SELECT", table),
        ):
            async with self._session("select_rows") as conn:
                result = await conn.execute(stmt)
                return [dict(row) for row in result.mappings().all()]

    async def select_changed_since(
        self,
        table: str,
        since: datetime,
        limit: int,
        *,
        after_key: Any = None,
        offset: int = 0,
    ) -> list[Row]:
        definition = await self._definition(table, "select_changed_since")
        clause = self._table_clause(definition)
        stamps = [clause.c[c] for c in TIMESTAMP_COLUMNS if definition.column(c) is not None]
        if not stamps:
            raise BackendExecutionError(
                "select_changed_since",
                f"table {table} has no updated_at or created_at column",
            )
        # SQLite's coalesce() needs at least two arguments.
        stamp = stamps[0] if len(stamps) == 1 else sa.func.coalesce(*stamps)
        condition = stamp > since
        if definition.primary_key and after_key is not None:
            key = clause.c[definition.primary_key]
            condition = sa.or_(condition, sa.and_(stamp == since, key > after_key))
        stmt = (
            sa.select(clause)
            .where(condition)
            .order_by(stamp, *self._ordering(definition, clause))
            .limit(limit)
            .offset(offset)
        )
        async with self._session("select_changed_since") as conn:
            result = await conn.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

    async def latest_timestamp(self, table: str) -> datetime | None:
        definition = await self._definition(table, "latest_timestamp")
        clause = self._table_clause(definition)
        stamps = [clause.c[c] for c in TIMESTAMP_COLUMNS if definition.column(c) is not None]
        if not stamps:
            return None
        async with self._session("latest_timestamp") as conn:
            result = await conn.execute(sa.select(*(sa.func.max(stamp) for stamp in stamps)))
            return latest(*result.one())

    async def count_rows(self, table: str) -> int:
        stmt = sa.select(sa.func.count()).select_from(sa.table(table))
        async with self._session("count_rows") as conn:
            return int((await conn.execute(stmt)).scalar_one())

    async def delete_rows(self, table: str) -> int:
        async with self._session("delete_rows") as conn:
            result = await conn.execute(sa.delete(sa.table(table)))
            return max(result.rowcount or 0, 0)

    # -- indexes --------------------------------------------------------

    async def create_index(self, index: IndexDefinition) -> None:
        def _create(sync_conn: Connection) -> None:
            Operations(MigrationContext.configure(sync_conn)).create_index(
                index.name, index.table, list(index.columns), unique=index.unique
            )

        async with self._session("create_index") as conn:
            await conn.run_sync(_create)

    async def drop_index(self, name: str, table: str) -> None:
        def _drop(sync_conn: Connection) -> None:
            Operations(MigrationContext.configure(sync_conn)).drop_index(name, table_name=table)

        async with self._session("drop_index") as conn:
            await conn.run_sync(_drop)

    # -- transactions ---------------------------------------------------

    async def begin_transaction(self) -> None:
        if self._tx.get() is not None:
            raise BackendExecutionError("begin_transaction", "a transaction is already active")
        engine = self._ensure_connected()
        if self._dialect.serialize_connections:
            await self._serial.acquire()
        conn: AsyncConnection | None = None
        try:
            conn = await engine.connect()
            transaction = await conn.begin()
        except SQLAlchemyError as e:
            if conn is not None:
                await conn.close()
            if self._dialect.serialize_connections:
                self._serial.release()
            raise BackendExecutionError("begin_transaction", str(e), cause=e) from e
        self._tx.set((conn, transaction))

    async def commit(self) -> None:
        state = self._tx.get()
        if state is None:
            raise BackendExecutionError("commit", "no active transaction")
        conn, transaction = state
        try:
            await transaction.commit()
        except SQLAlchemyError as e:
            raise BackendExecutionError("commit", str(e), cause=e) from e
        finally:
            await self._release(conn)

    async def rollback(self) -> None:
        state = self._tx.get()
        if state is None:
            return
        conn, transaction = state
        try:
            await transaction.rollback()
        except SQLAlchemyError as e:
            raise BackendExecutionError("rollback", str(e), cause=e) from e
        finally:
            await self._release(conn)
            # Cached definitions may describe renamed tables that were rolled back.
            self._definitions.clear()

    async def _release(self, conn: AsyncConnection) -> None:
        self._tx.set(None)
        try:
            await conn.close()
        finally:
            if self._dialect.serialize_connections:
                self._serial.release()

    # -- optional capabilities ------------------------------------------

    async def _run_statements(self, operation: str, statements: list[str]) -> None:
        async with self._session(operation) as conn:
            for statement in statements:
                await conn.execute(sa.text(statement))

    async def suspend_triggers(self, table: str) -> None:
        if self._dialect.trigger_toggle is None:
            raise self._unsupported("suspend_triggers")
        await self._run_statements(
            "suspend_triggers", [self._dialect.trigger_toggle(self._quote(table), False)]
        )

    async def resume_triggers(self, table: str) -> None:
        if self._dialect.trigger_toggle is None:
            raise self._unsupported("resume_triggers")
        await self._run_statements(
            "resume_triggers", [self._dialect.trigger_toggle(self._quote(table), True)]
        )

    async def refresh_statistics(self, table: str) -> None:
        if self._dialect.statistics is None:
            raise self._unsupported("refresh_statistics")
        await self._run_statements(
            "refresh_statistics", [self._dialect.statistics(self._quote(table))]
        )

    async def install_change_capture(self, table: TableDefinition, shadow: str) -> None:
        if self._dialect.change_capture is None:
            raise self._unsupported("install_change_capture")
        if table.primary_key is None:
            raise BackendExecutionError(
                "install_change_capture", f"table {table.name} has no primary key"
            )
        statements = self._dialect.change_capture(
            self._quote, table.name, shadow, table.column_names, table.primary_key
        )
        await self._run_statements("install_change_capture", statements)

    async def remove_change_capture(self, table: str, shadow: str) -> None:
        if self._dialect.remove_capture is None:
            raise self._unsupported("remove_change_capture")
        await self._run_statements(
            "remove_change_capture", self._dialect.remove_capture(self._quote, table, shadow)
        )


def _emit_explicit_begin(engine: AsyncEngine) -> None:
    """
    Make the driver leave transaction control to SQLAlchemy.

    Python's sqlite3 module does not BEGIN before DDL, so renames would
    autocommit. Disabling its implicit handling and emitting BEGIN on
    every SQLAlchemy transaction makes DDL transactional.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


__all__ = [
    "SqlAdapter",
    "SqlDialect",
    "POSTGRESQL_DIALECT",
    "MYSQL_DIALECT",
    "SQLITE_DIALECT",
    "SA_TYPES",
    "sa_type_for",
    "logical_type_for",
    "parse_server_default",
    "server_default_for",
]
