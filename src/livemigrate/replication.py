"""
ShadowReplicationManager - Shadow tables, change replication and cutover.

One manager exists per zero-downtime job and owns all of that job's
shadow mappings and replication streams; nothing is shared between jobs.

Protocol:
    1. Shadow setup: for every migrated table, create ``<table>_shadow`` on
       the target with the target structure and start a replication stream.
    2. Replication: a polling stream copies source rows changed since its
       last-synced timestamp into the shadow on a fixed interval. It starts
       at the epoch, so its first ticks backfill the shadow. When source
       and target are the same database and the dialect supports it,
       native triggers mirror writes instead and no polling happens.
    3. Cutover:
        a. Row-count parity between every source table and its shadow
           (fatal IntegrityMismatchError on mismatch, before any change)
        b. Enter maintenance mode on the source (sentinel row only)
        c. Stop streams, remove triggers, run one final sync
        d. In one transaction, rename each live table to
           ``<table>_backup_<ms>`` and its shadow to the live name
        e. Exit maintenance mode
       Any failure after (b) runs rollback-cutover, which reverses exactly
       the renames that took effect and exits maintenance mode. If that
       fails too, the failure is logged at CRITICAL and carried on the
       raised CutoverError.
    4. Cleanup: stop everything and forget all mappings. Idempotent.

Usage:
    >>> manager = ShadowReplicationManager(source, target, config=config, events=channel)
    >>> await manager.setup_shadow_writes(schema)
    >>> ...  # bulk work while streams keep shadows current
    >>> result = await manager.cutover()
    >>> await manager.cleanup()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any
from uuid import UUID

from livemigrate._time import latest
from livemigrate.adapters.base import ChangeCursor, Row, StorageAdapter, change_stamp
from livemigrate.config import MigrationConfig
from livemigrate.definitions import (
    ColumnDefinition,
    LogicalType,
    StructuralDefinition,
    TableDefinition,
)
from livemigrate.events import EventChannel, MigrationEventType
from livemigrate.exceptions import (
    BackendExecutionError,
    CutoverError,
    IntegrityMismatchError,
    MigrationError,
)
from livemigrate.models import (
    CutoverResult,
    LogLevel,
    MigrationJob,
    ReplicationMode,
    ReplicationStream,
)
from livemigrate.observability import (
    ATTR_JOB_ID,
    ATTR_SHADOW_TABLE,
    ATTR_TABLE,
    ATTR_TABLE_COUNT,
    Tracer,
    create_tracer,
)
from livemigrate.transform import ValueTransformer

logger = logging.getLogger(__name__)

MAINTENANCE_TABLE = TableDefinition(
    name="maintenance_mode",
    columns=(
        ColumnDefinition(name="enabled", type=LogicalType.BOOLEAN, nullable=False),
        ColumnDefinition(
            name="message",
            type=LogicalType.STRING,
            default_value="System under maintenance",
        ),
    ),
)


def shadow_name(table: str) -> str:
    return f"{table}_shadow"


def backup_name(table: str, timestamp_ms: int) -> str:
    return f"{table}_backup_{timestamp_ms}"


class ShadowReplicationManager:
    """
    Runs the shadow-table protocol for one job.

    Args:
        source: Adapter of the live dataset
        target: Adapter receiving shadow tables
        config: Replication interval, batch size and coercion policy
        events: Channel receiving setup/replication/cutover events
        job: Job whose log receives entries
        tracer: Optional custom Tracer instance
        enable_tracing: If True, emit traces (default: True)
    """

    def __init__(
        self,
        source: StorageAdapter,
        target: StorageAdapter,
        *,
        config: MigrationConfig | None = None,
        events: EventChannel | None = None,
        job: MigrationJob | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._target = target
        self._config = config or MigrationConfig()
        self._events = events
        self._job = job
        self._transformer = ValueTransformer(self._config.coercion)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._streams: dict[str, ReplicationStream] = {}
        self._shadow_definitions: dict[str, TableDefinition] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._renames: list[tuple[str, str]] = []
        self._swapped: dict[str, str] = {}
        self._maintenance = False

    @property
    def job_id(self) -> UUID | None:
        return self._job.id if self._job else None

    @property
    def streams(self) -> dict[str, ReplicationStream]:
        """Replication streams keyed by source table."""
        return dict(self._streams)

    @property
    def shadow_tables(self) -> dict[str, str]:
        """Mapping of source table name to shadow table name."""
        return {name: stream.shadow_table for name, stream in self._streams.items()}

    @property
    def swapped(self) -> dict[str, str]:
        """Live table name to backup name, for the last successful cutover."""
        return dict(self._swapped)

    @property
    def in_maintenance(self) -> bool:
        return self._maintenance

    # -- shadow setup ---------------------------------------------------

    async def setup_shadow_writes(
        self,
        schema: StructuralDefinition | None = None,
    ) -> dict[str, str]:
        """
        Create shadow tables and start replication for every table.

        Args:
            schema: Target structure. Its tables are shadowed with the
                target columns; None shadows every source table with its
                own structure.

        Returns:
            Mapping of source table name to shadow table name

        Raises:
            BackendExecutionError: If a shadow table cannot be created
        """
        self._emit(MigrationEventType.SHADOW_SETUP_STARTED)
        with self._tracer.span(
            "livemigrate.replication.setup_shadow_writes",
            {
                ATTR_JOB_ID: str(self.job_id or ""),
                ATTR_TABLE_COUNT: len(schema.tables) if schema else 0,
            },
        ):
            try:
                names = await self._source.list_tables()
                if schema is not None:
                    names = [name for name in schema.table_names if name in names]
                for name in names:
                    source_definition = await self._source.describe_table(name)
                    wanted = schema.table(name) if schema is not None else None
                    await self._setup_table(source_definition, wanted or source_definition)
            except Exception as e:
                self._emit(MigrationEventType.SHADOW_SETUP_FAILED, error=str(e))
                raise

        self._emit(
            MigrationEventType.SHADOW_SETUP_COMPLETED,
            tables=self.shadow_tables,
        )
        return self.shadow_tables

    async def _setup_table(
        self,
        source_definition: TableDefinition,
        target_definition: TableDefinition,
    ) -> None:
        table = source_definition.name
        shadow = shadow_name(table)
        shadow_definition = target_definition.renamed(shadow)

        if await self._target.table_exists(shadow):
            await self._target.drop_table(shadow)
        await self._target.create_table(shadow_definition)

        primary_key = target_definition.primary_key or source_definition.primary_key
        use_triggers = (
            self._source is self._target
            and self._source.dialect.supports_change_triggers
            and primary_key is not None
        )
        stream = ReplicationStream(
            source_table=table,
            shadow_table=shadow,
            mode=ReplicationMode.TRIGGER if use_triggers else ReplicationMode.POLLING,
            primary_key=primary_key,
        )
        self._streams[table] = stream
        self._shadow_definitions[table] = shadow_definition

        if use_triggers:
            await self._source.install_change_capture(source_definition, shadow)
            await self._backfill(stream)
        else:
            self._tasks[table] = asyncio.create_task(
                self._run_stream(stream),
                name=f"livemigrate-replication-{table}",
            )
        self._log(
            LogLevel.INFO,
            f"Shadow table {shadow} ready ({stream.mode.value})",
            table=table,
        )

    async def _backfill(self, stream: ReplicationStream) -> None:
        """Copy existing rows once; triggers carry everything after."""
        batch = self._config.replication_batch_size
        offset = 0
        while True:
            page = await self._source.select_rows(stream.source_table, batch, offset)
            await self._apply(stream, page)
            if len(page) < batch:
                break
            offset += batch

    # -- replication ----------------------------------------------------

    async def _run_stream(self, stream: ReplicationStream) -> None:
        interval = self._config.replication_interval_ms / 1000
        while stream.is_active:
            try:
                await self.sync_stream(stream)
            except MigrationError as e:
                stream.error_count += 1
                logger.warning(
                    "Replication tick failed for %s: %s",
                    stream.source_table,
                    e,
                    extra={"table": stream.source_table, "job_id": str(self.job_id)},
                )
                self._emit(
                    MigrationEventType.REPLICATION_ERROR,
                    table=stream.source_table,
                    shadow_table=stream.shadow_table,
                    error=str(e),
                )
            if not stream.is_active:
                break
            await asyncio.sleep(interval)

    async def sync_stream(self, stream: ReplicationStream) -> int:
        """
        Apply source changes since the stream's last-synced timestamp.

        If the changed-rows query fails, one unfiltered bounded page is
        applied instead and a replication error event is emitted.

        Returns:
            Rows written to the shadow table
        """
        if stream.mode is ReplicationMode.TRIGGER:
            return 0
        batch = self._config.replication_batch_size
        cursor = ChangeCursor(stream.last_synced_at, stream.last_synced_key)
        newest = stream.last_synced_at
        written = 0
        with self._tracer.span(
            "livemigrate.replication.sync_stream",
            {ATTR_TABLE: stream.source_table, ATTR_SHADOW_TABLE: stream.shadow_table},
        ):
            while True:
                try:
                    rows = await self._source.select_changed_since(
                        stream.source_table,
                        cursor.since,
                        batch,
                        after_key=cursor.after_key,
                        offset=cursor.offset,
                    )
                except BackendExecutionError as e:
                    stream.error_count += 1
                    self._emit(
                        MigrationEventType.REPLICATION_ERROR,
                        table=stream.source_table,
                        shadow_table=stream.shadow_table,
                        error=str(e),
                        fallback=True,
                    )
                    rows = await self._source.select_rows(stream.source_table, batch)
                    written += await self._apply(stream, rows)
                    break

                written += await self._apply(stream, rows)
                newest = latest(newest, *(change_stamp(row) for row in rows)) or newest
                cursor.advance(rows, stream.primary_key)
                if len(rows) < batch:
                    break
        if stream.primary_key is not None:
            stream.last_synced_at = cursor.since
            stream.last_synced_key = cursor.after_key
        else:
            stream.last_synced_at = newest
        return written

    async def _apply(self, stream: ReplicationStream, rows: list[Row]) -> int:
        if not rows:
            return 0
        converted, _ = self._transformer.transform_rows(
            rows, self._shadow_definitions[stream.source_table]
        )
        if not converted:
            return 0
        written = await self._target.insert_rows(
            stream.shadow_table, converted, key=stream.primary_key
        )
        stream.rows_replicated += written
        return written

    async def synchronize(self) -> int:
        """Run one sync of every active polling stream; returns rows written."""
        written = 0
        for stream in self._streams.values():
            if stream.is_active:
                written += await self.sync_stream(stream)
        return written

    async def stop_replication(self) -> None:
        """
        Deactivate every stream and wait for its task to finish.

        The stream state is kept so a final sync can still run.
        """
        for stream in self._streams.values():
            stream.is_active = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Replication task %s ended with an error: %s",
                    task.get_name(),
                    result,
                    exc_info=result,
                )

    async def _remove_triggers(self) -> None:
        for stream in self._streams.values():
            if stream.mode is ReplicationMode.TRIGGER:
                await self._source.remove_change_capture(stream.source_table, stream.shadow_table)
                stream.mode = ReplicationMode.POLLING

    # -- cutover --------------------------------------------------------

    async def validate_parity(self) -> None:
        """
        Compare row counts of every source table and its shadow.

        Raises:
            IntegrityMismatchError: On the first table whose counts differ
        """
        for stream in self._streams.values():
            source_count = await self._source.count_rows(stream.source_table)
            shadow_count = await self._target.count_rows(stream.shadow_table)
            if source_count != shadow_count:
                raise IntegrityMismatchError(
                    stream.source_table,
                    source_count,
                    shadow_count,
                    job_id=self.job_id,
                )

    async def cutover(self) -> CutoverResult:
        """
        Promote every shadow table to its live name.

        Returns:
            CutoverResult with the live-to-backup mapping

        Raises:
            IntegrityMismatchError: If parity fails (nothing was changed)
            CutoverError: If a later step failed; rollback-cutover has
                already run and its outcome is on the error
        """
        started = time.perf_counter()
        self._emit(MigrationEventType.CUTOVER_STARTED, tables=list(self._streams))

        with self._tracer.span(
            "livemigrate.replication.cutover",
            {ATTR_JOB_ID: str(self.job_id or ""), ATTR_TABLE_COUNT: len(self._streams)},
        ):
            try:
                await self.validate_parity()
            except IntegrityMismatchError as e:
                self._emit(MigrationEventType.CUTOVER_FAILED, error=str(e))
                raise

            await self.enter_maintenance_mode()
            try:
                await self.stop_replication()
                await self._remove_triggers()
                for stream in self._streams.values():
                    await self.sync_stream(stream)
                await self._swap_tables()
            except BaseException as e:
                rollback_error = await self._rollback_after_failure()
                duration_ms = (time.perf_counter() - started) * 1000
                self._emit(
                    MigrationEventType.CUTOVER_FAILED,
                    error=str(e),
                    rollback_error=rollback_error,
                    duration_ms=duration_ms,
                )
                if not isinstance(e, Exception):
                    raise
                raise CutoverError(
                    f"Cutover failed: {e}",
                    job_id=self.job_id,
                    rollback_performed=rollback_error is None,
                    rollback_error=rollback_error,
                ) from e

            await self.exit_maintenance_mode()

        duration_ms = (time.perf_counter() - started) * 1000
        self._emit(MigrationEventType.CONNECTIONS_UPDATED, tables=dict(self._swapped))
        self._emit(
            MigrationEventType.CUTOVER_COMPLETED,
            swapped=dict(self._swapped),
            duration_ms=duration_ms,
        )
        self._log(LogLevel.INFO, f"Cutover completed in {duration_ms:.1f}ms")
        return CutoverResult(success=True, swapped=dict(self._swapped), duration_ms=duration_ms)

    async def _swap_tables(self) -> None:
        timestamp_ms = int(time.time() * 1000)
        swapped: dict[str, str] = {}
        try:
            async with self._target.transaction():
                for table, stream in self._streams.items():
                    backup = backup_name(table, timestamp_ms)
                    await self._target.rename_table(table, backup)
                    self._renames.append((table, backup))
                    await self._target.rename_table(stream.shadow_table, table)
                    self._renames.append((stream.shadow_table, table))
                    swapped[table] = backup
        except BaseException:
            if self._target.dialect.transactional_ddl:
                # The transaction already undid every rename.
                self._renames.clear()
            raise
        self._swapped = swapped

    async def _rollback_after_failure(self) -> str | None:
        try:
            await self.rollback_cutover()
        except Exception as e:
            logger.critical(
                "Rollback of cutover failed; live tables may remain under backup names: %s",
                e,
                exc_info=True,
                extra={"job_id": str(self.job_id), "renames": list(self._renames)},
            )
            self._log(LogLevel.ERROR, f"Cutover rollback failed: {e}")
            return str(e)
        return None

    async def rollback_cutover(self) -> None:
        """
        Reverse the renames that took effect and exit maintenance mode.

        Each live table goes back to its shadow name and each backup back
        to its live name, inside one transaction.
        """
        with self._tracer.span(
            "livemigrate.replication.rollback_cutover",
            {ATTR_JOB_ID: str(self.job_id or "")},
        ):
            try:
                if self._renames:
                    await self._reverse_renames()
                self._swapped = {}
            finally:
                await self.exit_maintenance_mode()
        self._log(LogLevel.WARN, "Cutover rolled back")

    async def _reverse_renames(self) -> None:
        reversed_pairs: list[tuple[str, str]] = []
        try:
            async with self._target.transaction():
                for old, new in reversed(self._renames):
                    await self._target.rename_table(new, old)
                    reversed_pairs.append((old, new))
        except BaseException:
            if not self._target.dialect.transactional_ddl:
                self._renames = [pair for pair in self._renames if pair not in reversed_pairs]
            raise
        self._renames.clear()

    # -- maintenance mode -----------------------------------------------

    async def enter_maintenance_mode(self) -> bool:
        """
        Write the maintenance sentinel row on the source.

        Enforcing it is up to the application. Failure only logs a warning.
        """
        try:
            if not await self._source.table_exists(MAINTENANCE_TABLE.name):
                await self._source.create_table(MAINTENANCE_TABLE)
            await self._source.insert_rows(
                MAINTENANCE_TABLE.name,
                [{"enabled": True, "message": "Migration in progress"}],
            )
        except BackendExecutionError as e:
            self._log(LogLevel.WARN, f"Could not enable maintenance mode: {e}")
            return False
        self._maintenance = True
        return True

    async def exit_maintenance_mode(self) -> None:
        if not self._maintenance:
            return
        try:
            await self._source.delete_rows(MAINTENANCE_TABLE.name)
        except BackendExecutionError as e:
            self._log(LogLevel.WARN, f"Could not disable maintenance mode: {e}")
            return
        self._maintenance = False

    # -- cleanup --------------------------------------------------------

    async def cleanup(self) -> None:
        """Stop streams, remove triggers and forget all mappings. Idempotent."""
        await self.stop_replication()
        for stream in self._streams.values():
            if stream.mode is ReplicationMode.TRIGGER:
                try:
                    await self._source.remove_change_capture(
                        stream.source_table, stream.shadow_table
                    )
                except BackendExecutionError as e:
                    self._log(
                        LogLevel.WARN,
                        f"Could not remove change capture on {stream.source_table}: {e}",
                        table=stream.source_table,
                    )
        self._streams.clear()
        self._shadow_definitions.clear()

    # -- helpers --------------------------------------------------------

    def _emit(self, event_type: MigrationEventType, **payload: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, self.job_id, **payload)

    def _log(self, level: LogLevel, message: str, **metadata: Any) -> None:
        if self._job is not None:
            self._job.add_log(level, message, **metadata)
        else:
            logger.log(level.log_level, message, extra=metadata)


__all__ = [
    "MAINTENANCE_TABLE",
    "ShadowReplicationManager",
    "backup_name",
    "shadow_name",
]
