"""
Standard span attribute names for livemigrate tracing.

Using shared constants keeps attribute naming consistent between the
adapters, the planner, the migrator, replication and the orchestrator,
so traces from one job can be filtered and joined reliably.

Database attributes follow the OpenTelemetry semantic conventions;
everything else is namespaced under ``livemigrate.``.

Example:
    >>> from livemigrate.observability import ATTR_JOB_ID, ATTR_TABLE
    >>> with tracer.span("livemigrate.migrator.migrate_table", {
    ...     ATTR_JOB_ID: job_id,
    ...     ATTR_TABLE: "users",
    ... }):
    ...     ...
"""

# =============================================================================
# Job Attributes
# =============================================================================

ATTR_JOB_ID = "livemigrate.job.id"
"""Opaque identifier of the migration job (string)."""

ATTR_JOB_STATUS = "livemigrate.job.status"
"""Current job status (e.g., 'pending', 'running', 'paused')."""

ATTR_STRATEGY_ID = "livemigrate.strategy.id"
"""Identifier of the strategy driving the job."""

ATTR_DOWNTIME = "livemigrate.strategy.downtime"
"""Whether the strategy tolerates downtime (boolean)."""

ATTR_PROGRESS_PERCENT = "livemigrate.job.progress_percent"
"""Job progress percentage (0-100, float)."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'mysql', 'mongodb')."""

ATTR_DB_NAME = "db.name"
"""Database name."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'SELECT', 'INSERT', 'RENAME')."""

# =============================================================================
# Table / Transfer Attributes
# =============================================================================

ATTR_TABLE = "livemigrate.table"
"""Table or collection name."""

ATTR_TABLE_COUNT = "livemigrate.table.count"
"""Number of tables involved in the operation (integer)."""

ATTR_SHADOW_TABLE = "livemigrate.shadow_table"
"""Shadow table name during zero-downtime replication."""

ATTR_BATCH_SIZE = "livemigrate.batch.size"
"""Configured batch size (integer)."""

ATTR_ROWS_TRANSFERRED = "livemigrate.rows.transferred"
"""Number of rows written to the target (integer)."""

ATTR_ROWS_DROPPED = "livemigrate.rows.dropped"
"""Number of rows dropped during value transformation (integer)."""

ATTR_WATERMARK = "livemigrate.watermark"
"""Watermark instant used for incremental catch-up (ISO-8601 string)."""

ATTR_ERROR_TYPE = "livemigrate.error.type"
"""Exception class name when an operation failed."""

__all__ = [
    # Job
    "ATTR_JOB_ID",
    "ATTR_JOB_STATUS",
    "ATTR_STRATEGY_ID",
    "ATTR_DOWNTIME",
    "ATTR_PROGRESS_PERCENT",
    # Database (OTEL semantic)
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    # Table / transfer
    "ATTR_TABLE",
    "ATTR_TABLE_COUNT",
    "ATTR_SHADOW_TABLE",
    "ATTR_BATCH_SIZE",
    "ATTR_ROWS_TRANSFERRED",
    "ATTR_ROWS_DROPPED",
    "ATTR_WATERMARK",
    "ATTR_ERROR_TYPE",
]
