"""
SchemaEvolutionPlanner - Diffs and applies structural changes.

The planner compares the live structure of a table with its target
definition and applies the difference through the StorageAdapter: adds
first, then modifies, then drops, so no operation references a column
that does not exist yet or was already removed. Unknown tables are
created whole.

Failure policy:
    - Table creation or evolution failures are fatal and propagate.
    - Index and constraint failures are logged as warnings and the
      remaining structures are still applied.

Usage:
    >>> planner = SchemaEvolutionPlanner()
    >>> changes = planner.plan_table_changes(current, target)
    >>> await planner.migrate_schema(target_adapter, schema)
    >>>
    >>> report = planner.validate_schema_compatibility(source_schema, schema)
    >>> if not report.compatible:
    ...     print(report.errors)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from livemigrate.adapters.base import StorageAdapter
from livemigrate.definitions import (
    ConstraintDefinition,
    LogicalType,
    StructuralDefinition,
    TableDefinition,
)
from livemigrate.exceptions import BackendExecutionError
from livemigrate.models import CompatibilityReport, LogLevel, MigrationJob, TableChanges
from livemigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_TABLE,
    ATTR_TABLE_COUNT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

# Source type -> target types it can be copied into without loss of meaning.
COMPATIBLE_TYPES: dict[LogicalType, frozenset[LogicalType]] = {
    LogicalType.STRING: frozenset({LogicalType.STRING, LogicalType.TEXT}),
    LogicalType.TEXT: frozenset({LogicalType.TEXT, LogicalType.STRING}),
    LogicalType.INTEGER: frozenset({LogicalType.INTEGER, LogicalType.BIGINT}),
    LogicalType.BIGINT: frozenset({LogicalType.BIGINT, LogicalType.INTEGER}),
    LogicalType.DECIMAL: frozenset({LogicalType.DECIMAL}),
    LogicalType.BOOLEAN: frozenset({LogicalType.BOOLEAN}),
    LogicalType.DATE: frozenset({LogicalType.DATE, LogicalType.DATETIME}),
    LogicalType.DATETIME: frozenset({LogicalType.DATETIME, LogicalType.DATE}),
    LogicalType.JSON: frozenset({LogicalType.JSON, LogicalType.TEXT}),
    LogicalType.UUID: frozenset({LogicalType.UUID}),
}


def types_compatible(source: LogicalType, target: LogicalType) -> bool:
    return target in COMPATIBLE_TYPES.get(source, frozenset({source}))


class SchemaEvolutionPlanner:
    """
    Computes and applies structural changes on a storage adapter.

    Args:
        tracer: Optional custom Tracer instance
        enable_tracing: If True, emit traces (default: True)
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    def plan_table_changes(
        self,
        current: TableDefinition,
        target: TableDefinition,
    ) -> TableChanges:
        """
        Diff two table structures by column name.

        Args:
            current: Live structure
            target: Desired structure

        Returns:
            Disjoint add/modify/drop sets. ``add`` and ``modify`` keep the
            target's column order.
        """
        current_columns = {column.name: column for column in current.columns}
        target_names = set(target.column_names)

        add = []
        modify = []
        for column in target.columns:
            existing = current_columns.get(column.name)
            if existing is None:
                add.append(column)
            elif not existing.structurally_equals(column):
                modify.append(column)
        drop = [name for name in current.column_names if name not in target_names]

        return TableChanges(add=tuple(add), modify=tuple(modify), drop=tuple(drop))

    async def describe_schema(
        self,
        adapter: StorageAdapter,
        tables: Iterable[str] | None = None,
    ) -> StructuralDefinition:
        """
        Introspect the live structure of an adapter's tables.

        Args:
            adapter: Adapter to introspect
            tables: Restrict to these names (missing ones are skipped);
                None means every table

        Returns:
            StructuralDefinition of the tables that exist
        """
        existing = await adapter.list_tables()
        names = existing if tables is None else [t for t in tables if t in existing]
        definitions = [await adapter.describe_table(name) for name in names]
        return StructuralDefinition(tables=tuple(definitions))

    async def migrate_schema(
        self,
        adapter: StorageAdapter,
        schema: StructuralDefinition,
        job: MigrationJob | None = None,
    ) -> None:
        """
        Bring every table of ``schema`` into existence on ``adapter``.

        Args:
            adapter: Target adapter
            schema: Desired structure
            job: Job whose log receives progress entries

        Raises:
            BackendExecutionError: If a table cannot be created or evolved
        """
        with self._tracer.span(
            "livemigrate.planner.migrate_schema",
            {
                ATTR_DB_SYSTEM: adapter.dialect.name,
                ATTR_TABLE_COUNT: len(schema.tables),
            },
        ):
            existing = set(await adapter.list_tables())
            for table in schema.tables:
                if table.name not in existing:
                    await adapter.create_table(table)
                    self._log(job, LogLevel.INFO, f"Created table {table.name}", table=table.name)
                    continue

                current = await adapter.describe_table(table.name)
                changes = self.plan_table_changes(current, table)
                if changes.is_empty:
                    continue
                await adapter.evolve_table(table.name, changes)
                self._log(
                    job,
                    LogLevel.INFO,
                    f"Evolved table {table.name}: +{len(changes.add)} "
                    f"~{len(changes.modify)} -{len(changes.drop)}",
                    table=table.name,
                )

            for index in schema.indexes:
                try:
                    await adapter.create_index(index)
                except BackendExecutionError as e:
                    self._log(
                        job,
                        LogLevel.WARN,
                        f"Failed to create index {index.name}: {e}",
                        table=index.table,
                    )

            for constraint in schema.constraints:
                await self._apply_constraint(adapter, constraint, job)

    async def _apply_constraint(
        self,
        adapter: StorageAdapter,
        constraint: ConstraintDefinition,
        job: MigrationJob | None,
    ) -> None:
        if constraint.table is None or not adapter.dialect.supports_native_commands:
            self._log(job, LogLevel.WARN, f"Skipping constraint {constraint.name}")
            return
        statement = (
            f"ALTER TABLE {constraint.table} ADD CONSTRAINT {constraint.name} "
            f"{constraint.type} ({constraint.definition})"
        )
        try:
            await adapter.run_command(statement)
        except BackendExecutionError as e:
            self._log(
                job,
                LogLevel.WARN,
                f"Failed to apply constraint {constraint.name}: {e}",
                table=constraint.table,
            )

    def validate_schema_compatibility(
        self,
        source: StructuralDefinition,
        target: StructuralDefinition,
    ) -> CompatibilityReport:
        """
        Check whether source data can be copied into the target structure.

        Type changes across compatibility classes are errors. Nullable
        source columns feeding NOT NULL target columns, target columns
        missing from the source and target tables missing from the source
        are warnings.
        """
        warnings: list[str] = []
        errors: list[str] = []

        for target_table in target.tables:
            source_table = source.table(target_table.name)
            if source_table is None:
                warnings.append(f"Target table {target_table.name} does not exist in source")
                continue

            for target_column in target_table.columns:
                source_column = source_table.column(target_column.name)
                if source_column is None:
                    warnings.append(
                        f"Target column {target_column.name} does not exist "
                        f"in source table {source_table.name}"
                    )
                    continue
                if not types_compatible(source_column.type, target_column.type):
                    errors.append(
                        f"Type incompatibility for {source_table.name}.{target_column.name}: "
                        f"{source_column.type.value} -> {target_column.type.value}"
                    )
                if source_column.nullable and not target_column.nullable:
                    warnings.append(
                        f"Column {source_table.name}.{target_column.name} is nullable "
                        "in source but NOT NULL in target"
                    )

        return CompatibilityReport(
            compatible=not errors,
            warnings=tuple(warnings),
            errors=tuple(errors),
        )

    async def rollback_schema(
        self,
        adapter: StorageAdapter,
        original: StructuralDefinition,
        managed_tables: Iterable[str] | None = None,
    ) -> None:
        """
        Restore a prior structure.

        Tables absent from ``original`` are dropped; tables present in it
        are dropped and recreated. This is destructive: rows of recreated
        tables are lost.

        Args:
            adapter: Adapter to restore
            original: Structure to restore
            managed_tables: If given, only these tables may be dropped
                or recreated; everything else on the adapter is left alone
        """
        managed = None if managed_tables is None else set(managed_tables)
        original_names = set(original.table_names)

        with self._tracer.span(
            "livemigrate.planner.rollback_schema",
            {ATTR_DB_SYSTEM: adapter.dialect.name, ATTR_TABLE_COUNT: len(original.tables)},
        ):
            for name in await adapter.list_tables():
                if managed is not None and name not in managed:
                    continue
                if name not in original_names:
                    with self._tracer.span(
                        "livemigrate.planner.drop_table", {ATTR_TABLE: name}
                    ):
                        await adapter.drop_table(name)
                    logger.info("Dropped table %s during schema rollback", name)

            for table in original.tables:
                if managed is not None and table.name not in managed:
                    continue
                await adapter.drop_table(table.name)
                await adapter.create_table(table)
                logger.info("Recreated table %s during schema rollback", table.name)

    @staticmethod
    def _log(job: MigrationJob | None, level: LogLevel, message: str, **metadata: object) -> None:
        if job is not None:
            job.add_log(level, message, **metadata)
        else:
            logger.log(level.log_level, message, extra=metadata)


__all__ = ["COMPATIBLE_TYPES", "SchemaEvolutionPlanner", "types_compatible"]
