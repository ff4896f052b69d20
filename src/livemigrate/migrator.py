"""
BatchDataMigrator - Copies row data between storage adapters.

Tables are processed sequentially and each table is copied in bounded
batches, converting every value to the target column's type. Two modes:

    - Full: page through the source with limit/offset until a short page.
      A table whose row count is an exact multiple of the batch size
      costs one extra (empty) fetch.
    - Incremental: fetch only source rows whose updated_at/created_at is
      later than the target's watermark and upsert them by primary key.
      Pages continue after the (timestamp, key) of the last row read, so
      rows sharing one timestamp are all copied.
      If the filtered query fails, one unfiltered bounded page is copied
      instead and the fallback is logged as a warning. That page may
      repeat rows already copied or miss newer ones.

Pause and cancellation are cooperative: a JobControl is consulted before
every batch.

Usage:
    >>> migrator = BatchDataMigrator(MigrationConfig(batch_size=500))
    >>> control = JobControl()
    >>> result = await migrator.migrate_full(
    ...     source, target, schema, progress=on_progress, control=control,
    ... )
    >>> report = await migrator.validate_data_integrity(source, target, schema)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from livemigrate.adapters.base import ChangeCursor, Row, StorageAdapter
from livemigrate.config import MigrationConfig, validate_batch_size, validate_max_concurrency
from livemigrate.definitions import IndexDefinition, StructuralDefinition, TableDefinition
from livemigrate.exceptions import BackendExecutionError, MigrationCancelledError
from livemigrate.models import (
    EPOCH,
    IntegrityReport,
    LogLevel,
    MigrationJob,
    TableCountMismatch,
    TransferResult,
)
from livemigrate.observability import (
    ATTR_BATCH_SIZE,
    ATTR_JOB_ID,
    ATTR_ROWS_DROPPED,
    ATTR_ROWS_TRANSFERRED,
    ATTR_TABLE,
    ATTR_TABLE_COUNT,
    ATTR_WATERMARK,
    Tracer,
    create_tracer,
)
from livemigrate.transform import ValueTransformer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class JobControl:
    """
    Cooperative pause and cancellation for one running job.

    Long-running loops call ``checkpoint()`` at batch boundaries. A paused
    job parks there until resumed; a cancelled job raises there.
    """

    def __init__(self) -> None:
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._cancelled = False

    @property
    def is_paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def pause(self) -> None:
        self._resume_event.clear()

    def resume(self) -> None:
        self._resume_event.set()

    def cancel(self) -> None:
        """Request cancellation; also releases a paused job so it can observe it."""
        self._cancelled = True
        self._resume_event.set()

    async def checkpoint(self) -> None:
        """
        Wait while paused, then raise if cancelled.

        Raises:
            MigrationCancelledError: If cancel() was called
        """
        await self._resume_event.wait()
        if self._cancelled:
            raise MigrationCancelledError()


class BatchDataMigrator:
    """
    Transfers rows table by table in bounded batches.

    Args:
        config: Migration configuration (batch size, coercion policy)
        tracer: Optional custom Tracer instance
        enable_tracing: If True, emit traces (default: True)
    """

    def __init__(
        self,
        config: MigrationConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        config = config or MigrationConfig()
        self._batch_size = config.batch_size
        self._max_concurrency = config.max_concurrency
        self._transformer = ValueTransformer(config.coercion)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def set_batch_size(self, value: int) -> None:
        """
        Change the batch size.

        Raises:
            ValueError: If value is outside [1, 10000]
        """
        self._batch_size = validate_batch_size(value)

    def set_max_concurrency(self, value: int) -> None:
        """
        Change the concurrency hint.

        Raises:
            ValueError: If value is outside [1, 20]
        """
        self._max_concurrency = validate_max_concurrency(value)

    # -- full copy ------------------------------------------------------

    async def migrate_full(
        self,
        source: StorageAdapter,
        target: StorageAdapter,
        schema: StructuralDefinition,
        *,
        job: MigrationJob | None = None,
        progress: ProgressCallback | None = None,
        control: JobControl | None = None,
    ) -> TransferResult:
        """
        Copy every row of every schema table.

        Args:
            source: Adapter rows are read from
            target: Adapter rows are written to
            schema: Tables to copy (target column types drive conversion)
            job: Job whose log receives entries
            progress: Called with percent of tables done after each table
            control: Pause/cancel signal checked before each batch

        Returns:
            TransferResult with read, written and dropped counts

        Raises:
            BackendExecutionError: If a read or write fails
            MigrationCancelledError: If the job is cancelled
        """
        result = TransferResult()
        with self._tracer.span(
            "livemigrate.migrator.migrate_full",
            {
                ATTR_JOB_ID: str(job.id) if job else "",
                ATTR_TABLE_COUNT: len(schema.tables),
                ATTR_BATCH_SIZE: self._batch_size,
            },
        ):
            total = len(schema.tables)
            for position, table in enumerate(schema.tables, start=1):
                written = await self._copy_table_full(source, target, table, result, control)
                result.tables[table.name] = written
                self._log(
                    job,
                    LogLevel.INFO,
                    f"Migrated {written} rows for table {table.name}",
                    table=table.name,
                    rows=written,
                )
                if progress is not None:
                    progress(position / total * 100)
        return result

    async def _copy_table_full(
        self,
        source: StorageAdapter,
        target: StorageAdapter,
        table: TableDefinition,
        result: TransferResult,
        control: JobControl | None,
    ) -> int:
        written = 0
        offset = 0
        with self._tracer.span(
            "livemigrate.migrator.copy_table",
            {ATTR_TABLE: table.name, ATTR_BATCH_SIZE: self._batch_size},
        ):
            while True:
                if control is not None:
                    await control.checkpoint()
                page = await source.select_rows(table.name, self._batch_size, offset)
                result.pages_fetched += 1
                result.rows_read += len(page)
                written += await self._write(target, table, page, result, key=None)
                if len(page) < self._batch_size:
                    break
                offset += self._batch_size
        return written

    # -- incremental copy -----------------------------------------------

    async def migrate_incremental(
        self,
        source: StorageAdapter,
        target: StorageAdapter,
        schema: StructuralDefinition,
        *,
        job: MigrationJob | None = None,
        progress: ProgressCallback | None = None,
        control: JobControl | None = None,
    ) -> TransferResult:
        """
        Copy rows changed since each target table's watermark.

        Rows are upserted by primary key, so re-copied rows replace
        earlier copies instead of duplicating them. Running this twice
        without intervening source writes copies nothing the second time.

        Returns:
            TransferResult; ``fallbacks`` lists tables that used the
            unfiltered fallback fetch
        """
        result = TransferResult()
        with self._tracer.span(
            "livemigrate.migrator.migrate_incremental",
            {
                ATTR_JOB_ID: str(job.id) if job else "",
                ATTR_TABLE_COUNT: len(schema.tables),
                ATTR_BATCH_SIZE: self._batch_size,
            },
        ):
            total = len(schema.tables)
            for position, table in enumerate(schema.tables, start=1):
                written = await self._copy_table_incremental(
                    source, target, table, result, job, control
                )
                result.tables[table.name] = written
                if written:
                    self._log(
                        job,
                        LogLevel.INFO,
                        f"Incrementally migrated {written} rows for table {table.name}",
                        table=table.name,
                        rows=written,
                    )
                if progress is not None:
                    progress(position / total * 100)
        return result

    async def get_watermark(self, target: StorageAdapter, table: str) -> datetime:
        """Latest updated_at/created_at in a target table, or the epoch."""
        return await target.latest_timestamp(table) or EPOCH

    async def _copy_table_incremental(
        self,
        source: StorageAdapter,
        target: StorageAdapter,
        table: TableDefinition,
        result: TransferResult,
        job: MigrationJob | None,
        control: JobControl | None,
    ) -> int:
        since = await self.get_watermark(target, table.name)
        cursor = ChangeCursor(since)
        written = 0
        with self._tracer.span(
            "livemigrate.migrator.copy_table_incremental",
            {ATTR_TABLE: table.name, ATTR_WATERMARK: since.isoformat()},
        ) as span:
            while True:
                if control is not None:
                    await control.checkpoint()
                try:
                    page = await source.select_changed_since(
                        table.name,
                        cursor.since,
                        self._batch_size,
                        after_key=cursor.after_key,
                        offset=cursor.offset,
                    )
                except BackendExecutionError as e:
                    self._log(
                        job,
                        LogLevel.WARN,
                        f"Incremental query failed for {table.name}, "
                        f"falling back to an unfiltered fetch: {e}",
                        table=table.name,
                    )
                    result.fallbacks.append(table.name)
                    page = await source.select_rows(table.name, self._batch_size)
                    result.pages_fetched += 1
                    result.rows_read += len(page)
                    written += await self._write(
                        target, table, page, result, key=table.primary_key
                    )
                    break

                result.pages_fetched += 1
                result.rows_read += len(page)
                written += await self._write(target, table, page, result, key=table.primary_key)
                if len(page) < self._batch_size:
                    break
                cursor.advance(page, table.primary_key)
            if span is not None:
                span.set_attribute(ATTR_ROWS_TRANSFERRED, written)
        return written

    async def _write(
        self,
        target: StorageAdapter,
        table: TableDefinition,
        page: list[Row],
        result: TransferResult,
        *,
        key: str | None,
    ) -> int:
        if not page:
            return 0
        rows, dropped = self._transformer.transform_rows(page, table)
        result.rows_dropped += dropped
        if not rows:
            return 0
        with self._tracer.span(
            "livemigrate.migrator.write_batch",
            {
                ATTR_TABLE: table.name,
                ATTR_ROWS_TRANSFERRED: len(rows),
                ATTR_ROWS_DROPPED: dropped,
            },
        ):
            written = await target.insert_rows(table.name, rows, key=key)
        result.rows_written += written
        return written

    # -- verification and maintenance -----------------------------------

    async def validate_data_integrity(
        self,
        source: StorageAdapter,
        target: StorageAdapter,
        schema: StructuralDefinition,
    ) -> IntegrityReport:
        """
        Compare row counts of every schema table.

        Returns:
            IntegrityReport listing exactly the tables whose counts differ
        """
        mismatches = []
        with self._tracer.span(
            "livemigrate.migrator.validate_data_integrity",
            {ATTR_TABLE_COUNT: len(schema.tables)},
        ):
            for table in schema.tables:
                source_count = await source.count_rows(table.name)
                target_count = await target.count_rows(table.name)
                if source_count != target_count:
                    mismatches.append(
                        TableCountMismatch(
                            table=table.name,
                            source_count=source_count,
                            target_count=target_count,
                        )
                    )
        return IntegrityReport(is_valid=not mismatches, mismatches=tuple(mismatches))

    async def optimize_migration(
        self,
        target: StorageAdapter,
        schema: StructuralDefinition,
        job: MigrationJob | None = None,
    ) -> list[IndexDefinition]:
        """
        Prepare the target for bulk load.

        Drops the schema's indexes and suspends row-level triggers where
        the backend supports it. Each step fails independently with a
        warning.

        Returns:
            Indexes that were dropped
        """
        dropped: list[IndexDefinition] = []
        for index in schema.indexes:
            try:
                await target.drop_index(index.name, index.table)
                dropped.append(index)
            except BackendExecutionError as e:
                self._log(job, LogLevel.WARN, f"Could not drop index {index.name}: {e}")

        if target.dialect.supports_trigger_toggle:
            for table in schema.tables:
                try:
                    await target.suspend_triggers(table.name)
                except BackendExecutionError as e:
                    self._log(
                        job,
                        LogLevel.WARN,
                        f"Could not disable triggers on {table.name}: {e}",
                        table=table.name,
                    )
        return dropped

    async def post_migration_optimization(
        self,
        target: StorageAdapter,
        schema: StructuralDefinition,
        job: MigrationJob | None = None,
    ) -> None:
        """
        Restore what optimize_migration removed and refresh statistics.

        Each step fails independently with a warning.
        """
        for index in schema.indexes:
            try:
                await target.create_index(index)
            except BackendExecutionError as e:
                self._log(job, LogLevel.WARN, f"Could not recreate index {index.name}: {e}")

        for table in schema.tables:
            if target.dialect.supports_trigger_toggle:
                try:
                    await target.resume_triggers(table.name)
                except BackendExecutionError as e:
                    self._log(
                        job,
                        LogLevel.WARN,
                        f"Could not re-enable triggers on {table.name}: {e}",
                        table=table.name,
                    )
            if target.dialect.supports_statistics:
                try:
                    await target.refresh_statistics(table.name)
                except BackendExecutionError as e:
                    self._log(
                        job,
                        LogLevel.WARN,
                        f"Could not refresh statistics for {table.name}: {e}",
                        table=table.name,
                    )

    async def rollback_data(
        self,
        target: StorageAdapter,
        schema: StructuralDefinition,
        job: MigrationJob | None = None,
    ) -> int:
        """
        Delete every row of every schema table on the target.

        Returns:
            Number of rows removed
        """
        removed = 0
        for table in schema.tables:
            try:
                removed += await target.delete_rows(table.name)
            except BackendExecutionError as e:
                self._log(
                    job,
                    LogLevel.WARN,
                    f"Failed to clear data from table {table.name}: {e}",
                    table=table.name,
                )
        return removed

    @staticmethod
    def _log(job: MigrationJob | None, level: LogLevel, message: str, **metadata: object) -> None:
        if job is not None:
            job.add_log(level, message, **metadata)
        else:
            logger.log(level.log_level, message, extra=metadata)


__all__ = ["BatchDataMigrator", "JobControl", "ProgressCallback"]
