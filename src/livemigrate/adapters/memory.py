"""
In-memory storage adapter.

Useful for testing and development. Not suitable for production as all
rows are lost when the process terminates.

Tables are kept as lists of dictionaries next to their TableDefinition.
Primary keys are enforced on insert so duplicate writes surface the same
way they would on a relational backend. Transactions take a snapshot on
begin and restore it on rollback, DDL included.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from livemigrate._time import ensure_utc, latest
from livemigrate.adapters.base import (
    TIMESTAMP_COLUMNS,
    Dialect,
    Row,
    StorageAdapter,
    change_stamp,
)
from livemigrate.definitions import IndexDefinition, StorageEndpoint, TableDefinition
from livemigrate.exceptions import BackendExecutionError
from livemigrate.models import EPOCH, TableChanges
from livemigrate.observability import ATTR_DB_SYSTEM, ATTR_TABLE, Tracer

logger = logging.getLogger(__name__)

MEMORY_DIALECT = Dialect(
    name="memory",
    supports_transactions=True,
    transactional_ddl=True,
    supports_native_commands=False,
)


class InMemoryAdapter(StorageAdapter):
    """
    In-memory implementation of the storage adapter.

    Thread-safety:
        Uses an asyncio lock around every operation. A transaction holds
        the lock from begin until commit or rollback, so concurrent
        callers observe either the state before or after it.

    Example:
        >>> adapter = InMemoryAdapter(StorageEndpoint(kind="memory", database="src"))
        >>> await adapter.connect()
        >>> await adapter.create_table(users)
        >>> await adapter.insert_rows("users", [{"id": 1, "email": "a@example.com"}])
    """

    def __init__(
        self,
        endpoint: StorageEndpoint,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(endpoint, tracer=tracer, enable_tracing=enable_tracing)
        self._definitions: dict[str, TableDefinition] = {}
        self._rows: dict[str, list[Row]] = {}
        self._indexes: dict[str, IndexDefinition] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._snapshot: tuple[Any, Any, Any] | None = None
        self._tx_owner: asyncio.Task[Any] | None = None

    @property
    def dialect(self) -> Dialect:
        return MEMORY_DIALECT

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def indexes(self) -> dict[str, IndexDefinition]:
        """Current indexes by name."""
        return dict(self._indexes)

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def _acquire(self) -> bool:
        """Take the lock unless the current task owns the open transaction."""
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            return False
        await self._lock.acquire()
        return True

    def _ensure_table(self, name: str, operation: str) -> TableDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise BackendExecutionError(operation, f"table {name} does not exist")
        return definition

    async def run_command(
        self,
        text: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        raise BackendExecutionError(
            "run_command",
            "the memory backend has no native command language",
        )

    async def list_tables(self) -> list[str]:
        return list(self._definitions)

    async def describe_table(self, name: str) -> TableDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            return TableDefinition(name=name)
        return definition

    async def create_table(self, table: TableDefinition) -> None:
        with self._tracer.span(
            "livemigrate.adapter.create_table",
            {ATTR_DB_SYSTEM: "memory", ATTR_TABLE: table.name},
        ):
            locked = await self._acquire()
            try:
                if table.name in self._definitions:
                    raise BackendExecutionError(
                        "create_table", f"table {table.name} already exists"
                    )
                self._definitions[table.name] = table
                self._rows[table.name] = []
            finally:
                if locked:
                    self._lock.release()

    async def drop_table(self, name: str) -> None:
        locked = await self._acquire()
        try:
            self._definitions.pop(name, None)
            self._rows.pop(name, None)
            for index_name in [n for n, i in self._indexes.items() if i.table == name]:
                del self._indexes[index_name]
        finally:
            if locked:
                self._lock.release()

    async def evolve_table(self, name: str, changes: TableChanges) -> None:
        locked = await self._acquire()
        try:
            definition = self._ensure_table(name, "evolve_table")
            columns = list(definition.columns)
            rows = self._rows[name]

            for column in changes.add:
                columns.append(column)
                for row in rows:
                    row[column.name] = column.default_value
            for column in changes.modify:
                columns = [column if c.name == column.name else c for c in columns]
            for column_name in changes.drop:
                columns = [c for c in columns if c.name != column_name]
                for row in rows:
                    row.pop(column_name, None)

            primary_key = definition.primary_key
            if primary_key in changes.drop:
                primary_key = None
            self._definitions[name] = definition.model_copy(
                update={"columns": tuple(columns), "primary_key": primary_key}
            )
        finally:
            if locked:
                self._lock.release()

    async def rename_table(self, old_name: str, new_name: str) -> None:
        locked = await self._acquire()
        try:
            definition = self._ensure_table(old_name, "rename_table")
            if new_name in self._definitions:
                raise BackendExecutionError("rename_table", f"table {new_name} already exists")
            self._definitions[new_name] = definition.renamed(new_name)
            self._rows[new_name] = self._rows.pop(old_name)
            del self._definitions[old_name]
            for index_name, index in list(self._indexes.items()):
                if index.table == old_name:
                    self._indexes[index_name] = index.model_copy(update={"table": new_name})
        finally:
            if locked:
                self._lock.release()

    async def insert_rows(
        self,
        table: str,
        rows: Sequence[Row],
        *,
        key: str | None = None,
    ) -> int:
        if not rows:
            return 0
        locked = await self._acquire()
        try:
            definition = self._ensure_table(table, "insert_rows")
            stored = self._rows[table]
            pk = definition.primary_key
            known = set(definition.column_names)

            for row in rows:
                record = {k: v for k, v in row.items() if k in known} if known else dict(row)
                if key is not None:
                    for i, existing in enumerate(stored):
                        if existing.get(key) == record.get(key):
                            stored[i] = record
                            break
                    else:
                        stored.append(record)
                    continue
                if pk is not None and any(e.get(pk) == record.get(pk) for e in stored):
                    raise BackendExecutionError(
                        "insert_rows",
                        f"duplicate key {pk}={record.get(pk)!r} in {table}",
                    )
                stored.append(record)
            return len(rows)
        finally:
            if locked:
                self._lock.release()

    async def select_rows(self, table: str, limit: int, offset: int = 0) -> list[Row]:
        self._ensure_table(table, "select_rows")
        return [dict(row) for row in self._rows[table][offset : offset + limit]]

    async def select_changed_since(
        self,
        table: str,
        since: datetime,
        limit: int,
        *,
        after_key: Any = None,
        offset: int = 0,
    ) -> list[Row]:
        definition = self._ensure_table(table, "select_changed_since")
        if not any(definition.column(c) is not None for c in TIMESTAMP_COLUMNS):
            raise BackendExecutionError(
                "select_changed_since",
                f"table {table} has no updated_at or created_at column",
            )
        threshold = ensure_utc(since) or EPOCH
        key = definition.primary_key
        stamped = [
            (stamp, row) for row in self._rows[table] if (stamp := change_stamp(row)) is not None
        ]

        def changed(stamp: datetime, row: Row) -> bool:
            if stamp > threshold:
                return True
            return (
                key is not None
                and after_key is not None
                and stamp == threshold
                and row.get(key) > after_key
            )

        def order(item: tuple[datetime, Row]) -> tuple[Any, ...]:
            stamp, row = item
            return (stamp, row.get(key)) if key is not None else (stamp,)

        matches = sorted((item for item in stamped if changed(*item)), key=order)
        return [dict(row) for _, row in matches[offset : offset + limit]]

    async def latest_timestamp(self, table: str) -> datetime | None:
        self._ensure_table(table, "latest_timestamp")
        return latest(
            *(row.get(column) for row in self._rows[table] for column in TIMESTAMP_COLUMNS)
        )

    async def count_rows(self, table: str) -> int:
        self._ensure_table(table, "count_rows")
        return len(self._rows[table])

    async def delete_rows(self, table: str) -> int:
        locked = await self._acquire()
        try:
            self._ensure_table(table, "delete_rows")
            removed = len(self._rows[table])
            self._rows[table] = []
            return removed
        finally:
            if locked:
                self._lock.release()

    async def create_index(self, index: IndexDefinition) -> None:
        locked = await self._acquire()
        try:
            definition = self._ensure_table(index.table, "create_index")
            missing = [c for c in index.columns if definition.column(c) is None]
            if missing:
                raise BackendExecutionError(
                    "create_index",
                    f"columns {missing} do not exist on {index.table}",
                )
            if index.name in self._indexes:
                raise BackendExecutionError("create_index", f"index {index.name} already exists")
            self._indexes[index.name] = index
        finally:
            if locked:
                self._lock.release()

    async def drop_index(self, name: str, table: str) -> None:
        locked = await self._acquire()
        try:
            self._indexes.pop(name, None)
        finally:
            if locked:
                self._lock.release()

    async def begin_transaction(self) -> None:
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            raise BackendExecutionError("begin_transaction", "transaction already active")
        await self._lock.acquire()
        self._tx_owner = asyncio.current_task()
        self._snapshot = (
            copy.deepcopy(self._definitions),
            copy.deepcopy(self._rows),
            copy.deepcopy(self._indexes),
        )

    async def commit(self) -> None:
        self._end_transaction()

    async def rollback(self) -> None:
        if self._snapshot is not None:
            self._definitions, self._rows, self._indexes = self._snapshot
            logger.debug("Rolled back in-memory transaction on %s", self.signature)
        self._end_transaction()

    def _end_transaction(self) -> None:
        if self._tx_owner is None:
            return
        self._snapshot = None
        self._tx_owner = None
        self._lock.release()


__all__ = ["InMemoryAdapter", "MEMORY_DIALECT"]
