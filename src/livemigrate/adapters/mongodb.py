"""
Document storage adapter backed by PyMongo's native asyncio client.

Collections play the role of tables. A collection has no declared
structure, so ``describe_table`` samples one document and infers logical
types from its values; an empty collection describes as a table without
columns. Rows are read without the ``_id`` field so they transfer cleanly
into relational targets. Decimal values are stored as BSON decimal128
and read back as Decimal.

Transactions:
    Multi-document transactions need a replica set, which a standalone
    deployment does not have. ``begin_transaction``, ``commit`` and
    ``rollback`` are therefore no-ops and the dialect reports
    ``supports_transactions=False`` and ``transactional_ddl=False``.
    Callers that rename collections compensate on failure themselves.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReplaceOne
from pymongo.errors import PyMongoError

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

MONGODB_DIALECT = Dialect(
    name="mongodb",
    supports_transactions=False,
    transactional_ddl=False,
    supports_native_commands=True,
)

_WITHOUT_ID = {"_id": 0}
_CHANGE_STAMP = "_livemigrate_change_stamp"


class DecimalCodec(TypeCodec):
    """Store Decimal values as BSON decimal128 and read them back as Decimal."""

    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value: Decimal) -> Decimal128:
        return Decimal128(value)

    def transform_bson(self, value: Decimal128) -> Decimal:
        return value.to_decimal()


CODEC_OPTIONS: CodecOptions[Any] = CodecOptions(
    tz_aware=True, type_registry=TypeRegistry([DecimalCodec()])
)


def infer_logical_type(value: Any) -> LogicalType:
    """Logical type of a sampled document value."""
    if isinstance(value, bool):
        return LogicalType.BOOLEAN
    if isinstance(value, int):
        return LogicalType.INTEGER if -(2**31) <= value < 2**31 else LogicalType.BIGINT
    if isinstance(value, float | Decimal):
        return LogicalType.DECIMAL
    if isinstance(value, datetime):
        return LogicalType.DATETIME
    if isinstance(value, dict | list):
        return LogicalType.JSON
    return LogicalType.STRING


class MongoAdapter(StorageAdapter):
    """
    Storage adapter for MongoDB.

    Args:
        endpoint: Endpoint descriptor
        client: Optional pre-built AsyncMongoClient (not closed on disconnect)
        tracer: Optional custom Tracer instance
        enable_tracing: If True, emit traces (default: True)
    """

    def __init__(
        self,
        endpoint: StorageEndpoint,
        *,
        client: AsyncMongoClient[Any] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(endpoint, tracer=tracer, enable_tracing=enable_tracing)
        self._client = client
        self._owns_client = client is None
        self._connected = False

    @property
    def dialect(self) -> Dialect:
        return MONGODB_DIALECT

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def _db(self) -> Any:
        if self._client is None or not self._connected:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._client.get_database(self._endpoint.database, codec_options=CODEC_OPTIONS)

    @contextlib.contextmanager
    def _guard(self, operation: str, table: str | None = None) -> Iterator[None]:
        """Trace one operation and wrap driver errors."""
        attributes: dict[str, Any] = {
            ATTR_DB_SYSTEM: "mongodb",
            ATTR_DB_NAME: self._endpoint.database,
            ATTR_DB_OPERATION: operation,
        }
        if table is not None:
            attributes[ATTR_TABLE] = table
        with self._tracer.span(f"livemigrate.adapter.{operation}", attributes):
            try:
                yield
            except PyMongoError as e:
                raise BackendExecutionError(operation, str(e), cause=e) from e

    async def connect(self) -> None:
        if self._connected:
            return
        if self._client is None:
            self._client = AsyncMongoClient(
                host=self._endpoint.host,
                port=self._endpoint.port or 27017,
                username=self._endpoint.username,
                password=(
                    self._endpoint.password.get_secret_value()
                    if self._endpoint.password
                    else None
                ),
                tls=self._endpoint.tls,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
            )
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            if self._owns_client:
                await self._client.close()
                self._client = None
            raise StorageConnectionError(self.signature, str(e)) from e
        self._connected = True
        logger.info("Connected to %s", self.signature, extra={"db_system": "mongodb"})

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None
        self._connected = False

    async def run_command(
        self,
        text: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        """Run a database command (e.g., ``"dbStats"``) and return its reply."""
        with self._guard("run_command"):
            reply = await self._db.command(text, **dict(params or {}))
        return [dict(reply)]

    async def list_tables(self) -> list[str]:
        with self._guard("list_tables"):
            return list(await self._db.list_collection_names())

    async def describe_table(self, name: str) -> TableDefinition:
        with self._guard("describe_table", name):
            sample = await self._db[name].find_one({}, _WITHOUT_ID)
        if not sample:
            return TableDefinition(name=name)
        columns = tuple(
            ColumnDefinition(name=key, type=infer_logical_type(value), nullable=True)
            for key, value in sample.items()
        )
        return TableDefinition(
            name=name,
            columns=columns,
            primary_key="id" if "id" in sample else None,
        )

    async def create_table(self, table: TableDefinition) -> None:
        with self._guard("create_table", table.name):
            collection = await self._db.create_collection(table.name)
            if table.primary_key is not None:
                await collection.create_index(
                    [(table.primary_key, ASCENDING)],
                    name=f"{table.name}_{table.primary_key}_pk",
                    unique=True,
                )

    async def drop_table(self, name: str) -> None:
        with self._guard("drop_table", name):
            await self._db.drop_collection(name)

    async def evolve_table(self, name: str, changes: TableChanges) -> None:
        """
        Backfill defaults of added fields and unset dropped ones.

        Type and nullability changes have no meaning without a declared
        structure and are ignored.
        """
        if changes.modify:
            logger.debug(
                "Ignoring %d column modifications on collection %s",
                len(changes.modify),
                name,
                extra={"table": name},
            )
        with self._guard("evolve_table", name):
            collection = self._db[name]
            for column in changes.add:
                if column.default_value is not None:
                    await collection.update_many(
                        {column.name: {"$exists": False}},
                        {"$set": {column.name: column.default_value}},
                    )
            if changes.drop:
                await collection.update_many(
                    {}, {"$unset": {column_name: "" for column_name in changes.drop}}
                )

    async def rename_table(self, old_name: str, new_name: str) -> None:
        with self._guard("rename_table", old_name):
            await self._db[old_name].rename(new_name)

    async def insert_rows(
        self,
        table: str,
        rows: Sequence[Row],
        *,
        key: str | None = None,
    ) -> int:
        if not rows:
            return 0
        # insert_many adds _id to the documents it is given.
        documents = [dict(row) for row in rows]
        with self._guard("insert_rows", table):
            collection = self._db[table]
            if key is None:
                await collection.insert_many(documents, ordered=True)
            else:
                await collection.bulk_write(
                    [ReplaceOne({key: doc.get(key)}, doc, upsert=True) for doc in documents],
                    ordered=True,
                )
        return len(documents)

    async def select_rows(self, table: str, limit: int, offset: int = 0) -> list[Row]:
        with self._guard("select_rows", table):
            cursor = self._db[table].find({}, _WITHOUT_ID).sort("_id", ASCENDING)
            return await cursor.skip(offset).limit(limit).to_list(None)

    async def select_changed_since(
        self,
        table: str,
        since: datetime,
        limit: int,
        *,
        after_key: Any = None,
        offset: int = 0,
    ) -> list[Row]:
        definition = await self.describe_table(table)
        fields = [c for c in TIMESTAMP_COLUMNS if definition.column(c) is not None]
        if not fields:
            raise BackendExecutionError(
                "select_changed_since",
                f"collection {table} has no updated_at or created_at field",
            )
        if len(fields) == 1:
            stamp: Any = f"${fields[0]}"
        else:
            stamp = {"$ifNull": [f"${field}" for field in fields]}
        key = definition.primary_key
        match: dict[str, Any] = {_CHANGE_STAMP: {"$gt": since}}
        if key is not None and after_key is not None:
            match = {
                "$or": [match, {_CHANGE_STAMP: since, key: {"$gt": after_key}}],
            }
        order = {_CHANGE_STAMP: ASCENDING, key or "_id": ASCENDING}
        pipeline: list[dict[str, Any]] = [
            {"$addFields": {_CHANGE_STAMP: stamp}},
            {"$match": match},
            {"$sort": order},
            {"$skip": offset},
            {"$limit": limit},
            {"$project": {"_id": 0, _CHANGE_STAMP: 0}},
        ]
        with self._guard("select_changed_since", table):
            cursor = await self._db[table].aggregate(pipeline)
            return await cursor.to_list(None)

    async def latest_timestamp(self, table: str) -> datetime | None:
        values: list[Any] = []
        with self._guard("latest_timestamp", table):
            collection = self._db[table]
            for field in TIMESTAMP_COLUMNS:
                document = await collection.find_one(
                    {field: {"$exists": True}},
                    {field: 1, "_id": 0},
                    sort=[(field, DESCENDING)],
                )
                if document:
                    values.append(document.get(field))
        return latest(*values)

    async def count_rows(self, table: str) -> int:
        with self._guard("count_rows", table):
            return int(await self._db[table].count_documents({}))

    async def delete_rows(self, table: str) -> int:
        with self._guard("delete_rows", table):
            result = await self._db[table].delete_many({})
        return result.deleted_count

    async def create_index(self, index: IndexDefinition) -> None:
        with self._guard("create_index", index.table):
            await self._db[index.table].create_index(
                [(column, ASCENDING) for column in index.columns],
                name=index.name,
                unique=index.unique,
            )

    async def drop_index(self, name: str, table: str) -> None:
        with self._guard("drop_index", table):
            await self._db[table].drop_index(name)

    async def begin_transaction(self) -> None:
        logger.debug("Transactions are not supported on %s; continuing", self.signature)

    async def commit(self) -> None:
        pass

    async def rollback(self) -> None:
        pass


__all__ = [
    "CODEC_OPTIONS",
    "DecimalCodec",
    "MongoAdapter",
    "MONGODB_DIALECT",
    "infer_logical_type",
]
