"""
Storage adapter interface.

A StorageAdapter is the only way the planner, the migrator, replication
and the orchestrator touch a backend. Backends differ in query dialect
and driver call shape; what they can do is declared by their Dialect
capability record so callers never need to inspect the adapter's type.

This module provides:
- Dialect: Capability flags of a backend
- StorageAdapter: Abstract base class for backend implementations
- TIMESTAMP_COLUMNS: Columns used for watermarks and change detection
- change_stamp, ChangeCursor: Paging over changed rows

Transaction semantics:
    ``begin_transaction``/``commit``/``rollback`` are native on the SQL
    family and on the memory backend. The document backend has no
    multi-statement transactions in a standalone deployment; there these
    calls are no-ops and ``dialect.supports_transactions`` is False.
    MySQL commits DDL implicitly, so its ``transactional_ddl`` is False.
    Callers that need all-or-nothing renames check ``transactional_ddl``
    and compensate when it is False.
"""

from __future__ import annotations

import contextlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from livemigrate._time import ensure_utc
from livemigrate.definitions import (
    IndexDefinition,
    StorageEndpoint,
    TableDefinition,
)
from livemigrate.exceptions import BackendExecutionError
from livemigrate.models import TableChanges
from livemigrate.observability import Tracer, create_tracer

TIMESTAMP_COLUMNS: tuple[str, ...] = ("updated_at", "created_at")

Row = dict[str, Any]


def change_stamp(row: Mapping[str, Any]) -> datetime | None:
    """The instant a row last changed: updated_at, else created_at."""
    for column in TIMESTAMP_COLUMNS:
        value = ensure_utc(row.get(column))
        if value is not None:
            return value
    return None


@dataclass
class ChangeCursor:
    """
    Position of a scan over changed rows.

    Tables with a primary key are paged by keyset: the next page starts
    after the (change stamp, key) of the last row seen, so rows sharing
    one timestamp are never skipped. Tables without a key keep ``since``
    fixed and page by offset.

    Attributes:
        since: Change stamp the scan starts after.
        after_key: Key of the last row seen at ``since``, if any.
        offset: Rows already read under ``since`` (keyless tables only).
    """

    since: datetime
    after_key: Any = None
    offset: int = 0

    def advance(self, page: Sequence[Row], key: str | None) -> None:
        """Move past a page returned by ``select_changed_since``."""
        if not page:
            return
        if key is not None:
            stamp = change_stamp(page[-1])
            if stamp is not None:
                self.since = stamp
                self.after_key = page[-1].get(key)
                return
        self.offset += len(page)


@dataclass(frozen=True)
class Dialect:
    """
    Capability record of a backend.

    Attributes:
        name: Dialect name (e.g., "postgresql").
        supports_transactions: begin/commit/rollback are native.
        transactional_ddl: Renames and other DDL roll back with the transaction.
        supports_native_commands: run_command accepts backend-native text.
        supports_change_triggers: Native triggers can mirror a table into
            another table of the same database.
        supports_trigger_toggle: Row-level triggers can be disabled during
            bulk load.
        supports_statistics: Planner statistics can be refreshed.
    """

    name: str
    supports_transactions: bool = True
    transactional_ddl: bool = True
    supports_native_commands: bool = True
    supports_change_triggers: bool = False
    supports_trigger_toggle: bool = False
    supports_statistics: bool = False


class StorageAdapter(ABC):
    """
    Abstract base class for storage backends.

    Implementations manage one logical connection (or a pool) per endpoint
    and must be safe to call from several tasks at once: replication
    streams of the same job share one adapter.

    Every operation that fails at the backend raises BackendExecutionError
    with the driver error chained. ``connect`` raises StorageConnectionError.
    """

    def __init__(
        self,
        endpoint: StorageEndpoint,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._endpoint = endpoint
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def endpoint(self) -> StorageEndpoint:
        return self._endpoint

    @property
    def signature(self) -> str:
        """Cache key of the endpoint (kind://host:port/database)."""
        return self._endpoint.signature

    @property
    @abstractmethod
    def dialect(self) -> Dialect:
        """Capabilities of this backend."""

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    # -- connection -----------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the connection.

        Raises:
            StorageConnectionError: If the backend cannot be reached
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection. Safe to call when not connected."""

    # -- commands and structure -----------------------------------------

    @abstractmethod
    async def run_command(
        self,
        text: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        """
        Execute a backend-native statement.

        Args:
            text: Statement text (SQL with :named parameters, or a
                document-store command name)
            params: Statement parameters

        Returns:
            Result rows, empty for statements that return none
        """

    @abstractmethod
    async def list_tables(self) -> list[str]:
        """Names of all tables (or collections)."""

    async def table_exists(self, name: str) -> bool:
        return name in await self.list_tables()

    @abstractmethod
    async def describe_table(self, name: str) -> TableDefinition:
        """
        Introspect the live structure of a table.

        Document backends sample one record; an empty collection yields a
        definition without columns.
        """

    @abstractmethod
    async def create_table(self, table: TableDefinition) -> None: ...

    @abstractmethod
    async def drop_table(self, name: str) -> None:
        """Drop a table if it exists."""

    @abstractmethod
    async def evolve_table(self, name: str, changes: TableChanges) -> None:
        """Apply column changes: adds first, then modifies, then drops."""

    @abstractmethod
    async def rename_table(self, old_name: str, new_name: str) -> None: ...

    # -- rows -----------------------------------------------------------

    @abstractmethod
    async def insert_rows(
        self,
        table: str,
        rows: Sequence[Row],
        *,
        key: str | None = None,
    ) -> int:
        """
        Insert rows in bulk.

        Args:
            table: Target table
            rows: Rows to write
            key: When given, rows are upserted by this column

        Returns:
            Number of rows written
        """

    @abstractmethod
    async def select_rows(self, table: str, limit: int, offset: int = 0) -> list[Row]:
        """Return one page of rows."""

    @abstractmethod
    async def select_changed_since(
        self,
        table: str,
        since: datetime,
        limit: int,
        *,
        after_key: Any = None,
        offset: int = 0,
    ) -> list[Row]:
        """
        Rows whose change stamp is later than ``since``.

        A row's change stamp is its updated_at, or created_at when
        updated_at is null (see ``change_stamp``). Rows are ordered by
        change stamp, then by primary key (by every column when the table
        has none), at most ``limit`` rows.

        Args:
            table: Table to read
            since: Exclusive lower bound on the change stamp
            limit: Page size
            after_key: Also return rows stamped exactly ``since`` whose
                primary key is greater than this; ignored for tables
                without a primary key
            offset: Rows of the ordered result to skip

        Raises:
            BackendExecutionError: If the table has no timestamp columns
                or the query fails
        """

    @abstractmethod
    async def latest_timestamp(self, table: str) -> datetime | None:
        """
        Greatest updated_at/created_at value in a table.

        Returns:
            The instant in UTC, or None for an empty table or one
            without timestamp columns
        """

    @abstractmethod
    async def count_rows(self, table: str) -> int: ...

    @abstractmethod
    async def delete_rows(self, table: str) -> int:
        """Delete every row of a table. Returns the number removed, if known."""

    # -- indexes --------------------------------------------------------

    @abstractmethod
    async def create_index(self, index: IndexDefinition) -> None: ...

    @abstractmethod
    async def drop_index(self, name: str, table: str) -> None: ...

    # -- transactions ---------------------------------------------------

    @abstractmethod
    async def begin_transaction(self) -> None: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Run a block inside begin/commit, rolling back on any error.

        Example:
            >>> async with adapter.transaction():
            ...     await adapter.rename_table("users", "users_backup")
            ...     await adapter.rename_table("users_shadow", "users")
        """
        await self.begin_transaction()
        try:
            yield
        except BaseException:
            await self.rollback()
            raise
        await self.commit()

    # -- optional capabilities ------------------------------------------

    async def suspend_triggers(self, table: str) -> None:
        """Disable row-level triggers (requires supports_trigger_toggle)."""
        raise self._unsupported("suspend_triggers")

    async def resume_triggers(self, table: str) -> None:
        """Re-enable row-level triggers (requires supports_trigger_toggle)."""
        raise self._unsupported("resume_triggers")

    async def refresh_statistics(self, table: str) -> None:
        """Refresh planner statistics (requires supports_statistics)."""
        raise self._unsupported("refresh_statistics")

    async def install_change_capture(self, table: TableDefinition, shadow: str) -> None:
        """Mirror writes on ``table`` into ``shadow`` (requires supports_change_triggers)."""
        raise self._unsupported("install_change_capture")

    async def remove_change_capture(self, table: str, shadow: str) -> None:
        """Remove what install_change_capture created."""
        raise self._unsupported("remove_change_capture")

    def _unsupported(self, operation: str) -> BackendExecutionError:
        return BackendExecutionError(
            operation,
            f"not supported by the {self.dialect.name} backend",
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.signature!r})"


__all__ = [
    "Dialect",
    "Row",
    "StorageAdapter",
    "TIMESTAMP_COLUMNS",
]
