"""
Data models for migration jobs and their components.

Models in this module:

Enums:
    - JobStatus: Migration job lifecycle states
    - LogLevel: Severity of a job log entry
    - ReplicationMode: How a replication stream captures changes

Core Models:
    - MigrationLogEntry: One timestamped entry of a job's log
    - MigrationJob: The unit of work driven by the orchestrator
    - MigrationStatus: Point-in-time snapshot of a job
    - ReplicationStream: Per-table change propagation state

Results:
    - TableChanges: Column diff of one table
    - CompatibilityReport: Result of a schema compatibility check
    - TableCountMismatch / IntegrityReport: Row-count parity results
    - TransferResult: Outcome of a full or incremental copy
    - CutoverResult: Outcome of a cutover
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from livemigrate.definitions import (
    ColumnDefinition,
    StorageEndpoint,
    StructuralDefinition,
)
from livemigrate.strategies import Strategy

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class JobStatus(Enum):
    """
    Migration job lifecycle states.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                   RUNNING <-> PAUSED
        RUNNING | PAUSED -> FAILED
        PAUSED | COMPLETED | FAILED -> ROLLING_BACK -> COMPLETED | FAILED

    ROLLING_BACK is the running sub-state of an explicit rollback; it is
    the only way to leave COMPLETED or FAILED.
    """

    PENDING = "pending"
    """Job created, nothing executed yet."""

    RUNNING = "running"
    """Migration phases are executing."""

    PAUSED = "paused"
    """Execution parked at the next batch boundary."""

    COMPLETED = "completed"
    """Migration (or rollback) finished successfully."""

    FAILED = "failed"
    """Unrecoverable error; see the job's error message."""

    ROLLING_BACK = "rolling_back"
    """Rollback in progress."""

    @property
    def is_settled(self) -> bool:
        """True for COMPLETED and FAILED."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        """True while work is executing or parked."""
        return self in (JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.ROLLING_BACK)

    def can_transition_to(self, target: JobStatus) -> bool:
        """
        Check if transition to target status is valid.

        Args:
            target: The status to transition to.

        Returns:
            True if the transition is valid.
        """
        valid_transitions: dict[JobStatus, tuple[JobStatus, ...]] = {
            JobStatus.PENDING: (JobStatus.RUNNING, JobStatus.FAILED),
            JobStatus.RUNNING: (JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED),
            JobStatus.PAUSED: (JobStatus.RUNNING, JobStatus.FAILED, JobStatus.ROLLING_BACK),
            JobStatus.COMPLETED: (JobStatus.ROLLING_BACK,),
            JobStatus.FAILED: (JobStatus.ROLLING_BACK,),
            JobStatus.ROLLING_BACK: (JobStatus.COMPLETED, JobStatus.FAILED),
        }
        return target in valid_transitions[self]


class LogLevel(Enum):
    """Severity of a job log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
        return {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARN: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }[self]


@dataclass(frozen=True)
class MigrationLogEntry:
    """One timestamped entry of a job's log."""

    timestamp: datetime
    level: LogLevel
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass
class MigrationJob:
    """
    The unit of work driven by the orchestrator.

    A job is mutated only by orchestrator operations, under that job's lock.

    Attributes:
        id: Opaque unique identifier.
        source: Endpoint rows are read from.
        target: Endpoint rows are written to.
        strategy: Validated strategy driving the execution path.
        schema: Target structural definition.
        status: Current lifecycle status.
        progress: Percent complete in [0, 100].
        created_at: When the job was created.
        started_at: When execution first started.
        ended_at: When the job last settled.
        error: Message of the terminal failure, if any.
        logs: Append-only ordered log.
        baseline: Target structure captured before schema migration; the
            rollback restores toward it.
    """

    source: StorageEndpoint
    target: StorageEndpoint
    strategy: Strategy
    schema: StructuralDefinition
    id: UUID = field(default_factory=uuid4)
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    logs: list[MigrationLogEntry] = field(default_factory=list)
    baseline: StructuralDefinition | None = None

    def add_log(
        self,
        level: LogLevel,
        message: str,
        **metadata: Any,
    ) -> MigrationLogEntry:
        """
        Append an entry to the job log and mirror it to the module logger.

        Args:
            level: Entry severity
            message: Human-readable message
            **metadata: Structured context kept with the entry

        Returns:
            The appended entry
        """
        entry = MigrationLogEntry(
            timestamp=datetime.now(UTC),
            level=level,
            message=message,
            metadata=metadata,
        )
        self.logs.append(entry)
        logger.log(
            level.log_level,
            "[%s] %s",
            self.id,
            message,
            extra={"job_id": str(self.id), **{f"job_{k}": v for k, v in metadata.items()}},
        )
        return entry

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": str(self.id),
            "status": self.status.value,
            "source": self.source.model_dump(mode="json"),
            "target": self.target.model_dump(mode="json"),
            "strategy": self.strategy.model_dump(mode="json"),
            "schema": self.schema.model_dump(mode="json"),
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
            "logs": [entry.to_dict() for entry in self.logs],
        }


@dataclass(frozen=True)
class MigrationStatus:
    """
    Point-in-time snapshot of a job for status reporting.

    Attributes:
        job_id: Job identifier.
        status: Lifecycle status.
        progress: Percent complete.
        elapsed_ms: Milliseconds since the job started (0 if not started).
        is_paused: Whether execution is parked.
        error: Terminal error message, if any.
        log_count: Number of log entries.
    """

    job_id: UUID
    status: JobStatus
    progress: float
    elapsed_ms: float
    is_paused: bool
    error: str | None
    log_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "status": self.status.value,
            "progress": self.progress,
            "elapsed_ms": self.elapsed_ms,
            "is_paused": self.is_paused,
            "error": self.error,
            "log_count": self.log_count,
        }


@dataclass(frozen=True)
class TableChanges:
    """
    Column diff between the current and target structure of one table.

    Attributes:
        add: Columns absent from the current table.
        modify: Target definitions of columns whose type, nullability
            or default differ.
        drop: Names of columns absent from the target.
    """

    add: tuple[ColumnDefinition, ...] = ()
    modify: tuple[ColumnDefinition, ...] = ()
    drop: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.add or self.modify or self.drop)


@dataclass(frozen=True)
class CompatibilityReport:
    """Result of validating source structure against target structure."""

    compatible: bool
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class TableCountMismatch:
    """Row-count difference for one table."""

    table: str
    source_count: int
    target_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "source_count": self.source_count,
            "target_count": self.target_count,
        }


@dataclass(frozen=True)
class IntegrityReport:
    """Row-count parity across all tables of a schema."""

    is_valid: bool
    mismatches: tuple[TableCountMismatch, ...] = ()


@dataclass
class TransferResult:
    """
    Outcome of a full or incremental copy.

    Attributes:
        rows_read: Rows fetched from the source.
        rows_written: Rows inserted into the target.
        rows_dropped: Rows discarded by value transformation.
        pages_fetched: Number of source page fetches.
        tables: Rows written per table.
        fallbacks: Tables that used the unfiltered fallback fetch.
    """

    rows_read: int = 0
    rows_written: int = 0
    rows_dropped: int = 0
    pages_fetched: int = 0
    tables: dict[str, int] = field(default_factory=dict)
    fallbacks: list[str] = field(default_factory=list)


class ReplicationMode(Enum):
    """How a replication stream captures source changes."""

    POLLING = "polling"
    """A background task polls the source for changed rows."""

    TRIGGER = "trigger"
    """Database-native triggers copy changes; no polling."""


@dataclass
class ReplicationStream:
    """
    Change propagation state for one source table.

    Attributes:
        source_table: Table being mirrored.
        shadow_table: Shadow table receiving changes.
        mode: Capture mechanism.
        last_synced_at: Greatest change timestamp applied so far.
        last_synced_key: Primary key of the last row applied at
            ``last_synced_at``; the next sync resumes after it.
        is_active: Cleared to stop the stream; observed on the next tick.
        primary_key: Key used to upsert mirrored rows, if any.
        rows_replicated: Rows applied to the shadow so far.
        error_count: Failed ticks so far.
    """

    source_table: str
    shadow_table: str
    mode: ReplicationMode = ReplicationMode.POLLING
    last_synced_at: datetime = EPOCH
    last_synced_key: Any = None
    is_active: bool = True
    primary_key: str | None = None
    rows_replicated: int = 0
    error_count: int = 0


@dataclass(frozen=True)
class CutoverResult:
    """
    Outcome of a cutover.

    Attributes:
        success: Whether every table was swapped.
        swapped: Mapping of live table name to its backup name.
        duration_ms: Time spent in the cutover.
        error_message: Failure description, if any.
        rolled_back: Whether rollback-cutover ran and succeeded.
    """

    success: bool
    swapped: dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0
    error_message: str | None = None
    rolled_back: bool = False


__all__ = [
    "EPOCH",
    "JobStatus",
    "LogLevel",
    "MigrationLogEntry",
    "MigrationJob",
    "MigrationStatus",
    "TableChanges",
    "CompatibilityReport",
    "TableCountMismatch",
    "IntegrityReport",
    "TransferResult",
    "ReplicationMode",
    "ReplicationStream",
    "CutoverResult",
]
