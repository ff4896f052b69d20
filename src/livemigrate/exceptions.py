"""
Exceptions raised by the livemigrate system.

Exception Hierarchy:
    MigrationError (base)
    +-- StorageConnectionError
    +-- UnsupportedBackendError
    +-- BackendExecutionError
    +-- IntegrityMismatchError
    +-- InvalidTransitionError
    +-- RollbackUnsupportedError
    +-- MigrationNotFoundError
    +-- MigrationTimeoutError
    +-- MigrationCancelledError
    +-- CutoverError
    +-- ValueCoercionError
    +-- StrategyValidationError

Error Classification:
    Every exception class carries a default ErrorClassification describing
    its severity, recoverability and the action an operator should take.
    The orchestrator records the message of any failure on the job; the
    classification is available to callers through ``to_dict()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: The system may be left in an operator-visible broken state.
            Example: the compensating rollback of a cutover failed.
        ERROR: Significant failure that aborted a job.
        WARNING: Rejected request or degraded behavior; nothing was changed.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The caller can fix the input or state and try again.
        TRANSIENT: Temporary condition; restarting the job may succeed.
        FATAL: The job cannot continue.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class MigrationError(Exception):
    """
    Base exception for all livemigrate errors.

    Attributes:
        message: Human-readable error description.
        job_id: The job that raised the error, if applicable.
        recoverable: Whether the caller can recover by retrying.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review the job log for the failing step",
    )

    def __init__(
        self,
        message: str,
        *,
        job_id: UUID | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.job_id = job_id
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.job_id:
            parts.append(f"job_id={self.job_id}")
        if self.recoverable:
            parts.append("(recoverable)")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Error classification for this exception type."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        """Severity level of this error."""
        return self.classification.severity

    @property
    def error_code(self) -> str:
        """Unique error code (e.g., "INTEGRITY_MISMATCH")."""
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "job_id": str(self.job_id) if self.job_id else None,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action
            or self.classification.suggested_action,
            "classification": self.classification.to_dict(),
        }


class StorageConnectionError(MigrationError):
    """
    Raised when an adapter cannot reach or authenticate to a backend.

    Fatal to the job. The job is only retried if the caller starts it again.

    Attributes:
        signature: Endpoint signature (kind://host:port/database).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORAGE_CONNECTION_FAILED",
        category="connectivity",
        suggested_action="Check endpoint host, port, credentials and TLS settings",
    )

    def __init__(self, signature: str, reason: str) -> None:
        self.signature = signature
        self.reason = reason
        super().__init__(
            message=f"Cannot connect to {signature}: {reason}",
            recoverable=True,
        )


class UnsupportedBackendError(MigrationError):
    """
    Raised when an endpoint names a backend kind with no adapter.

    Attributes:
        kind: The backend kind that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNSUPPORTED_BACKEND",
        category="configuration",
        suggested_action="Use one of the supported backend kinds",
    )

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(message=f"Unsupported backend kind: {kind}")


class BackendExecutionError(MigrationError):
    """
    Raised when a single backend command fails.

    The original driver exception is chained as ``__cause__`` and kept on
    ``cause``. Whether this aborts a job depends on the step: schema
    evolution and cutover renames are fatal, index and trigger toggling
    are logged and skipped.

    Attributes:
        operation: Short name of the failed operation (e.g., "create_table").
        cause: The original exception, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKEND_EXECUTION_FAILED",
        category="backend",
        suggested_action="Inspect the chained driver error and the statement that failed",
    )

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(message=f"{operation} failed: {message}")


class IntegrityMismatchError(MigrationError):
    """
    Raised when row-count parity fails between source and target.

    Always fatal. Always carries both counts.

    Attributes:
        table: The table whose counts differ.
        source_count: Rows in the source table.
        target_count: Rows in the target (or shadow) table.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INTEGRITY_MISMATCH",
        category="integrity",
        suggested_action="Compare the listed tables and re-run the data copy",
    )

    def __init__(
        self,
        table: str,
        source_count: int,
        target_count: int,
        *,
        job_id: UUID | None = None,
        mismatches: list[Any] | None = None,
    ) -> None:
        self.table = table
        self.source_count = source_count
        self.target_count = target_count
        self.mismatches = mismatches or []
        super().__init__(
            message=(
                f"Data validation failed for {table}: "
                f"source={source_count}, target={target_count}"
            ),
            job_id=job_id,
        )


class InvalidTransitionError(MigrationError):
    """
    Raised when an operation is requested on a job in the wrong state.

    The job is left untouched.

    Attributes:
        current_status: The job's status when the request arrived.
        operation: The rejected operation (e.g., "pause").
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVALID_TRANSITION",
        category="state",
        suggested_action="Check the job status before requesting this operation",
    )

    def __init__(self, job_id: UUID, current_status: Any, operation: str) -> None:
        self.current_status = current_status
        self.operation = operation
        status = getattr(current_status, "value", current_status)
        super().__init__(
            message=f"Cannot {operation} job in status '{status}'",
            job_id=job_id,
        )


class RollbackUnsupportedError(MigrationError):
    """
    Raised when rollback is requested for a strategy that forbids it.

    Attributes:
        strategy_id: The job's strategy.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_UNSUPPORTED",
        category="state",
        suggested_action="Restore the target manually or choose a rollback-capable strategy",
    )

    def __init__(self, job_id: UUID, strategy_id: str) -> None:
        self.strategy_id = strategy_id
        super().__init__(
            message=f"Rollback not supported for strategy {strategy_id}",
            job_id=job_id,
        )


class MigrationNotFoundError(MigrationError):
    """Raised when a job id is unknown to the orchestrator."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the job id; jobs live only as long as the orchestrator",
    )

    def __init__(self, job_id: UUID) -> None:
        super().__init__(message=f"Migration {job_id} not found", job_id=job_id)


class MigrationTimeoutError(MigrationError):
    """
    Raised when a job exceeds its configured deadline.

    Attributes:
        timeout_ms: The deadline that was exceeded.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="MIGRATION_TIMEOUT",
        category="timeout",
        suggested_action="Raise job_timeout_ms or reduce the dataset per job",
    )

    def __init__(self, job_id: UUID, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            message=f"Migration timed out after {timeout_ms} ms",
            job_id=job_id,
        )


class MigrationCancelledError(MigrationError):
    """Raised at a batch boundary when a running job has been cancelled."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_CANCELLED",
        category="state",
        suggested_action="Start a new job if the migration is still needed",
    )

    def __init__(self, job_id: UUID | None = None) -> None:
        super().__init__(message="Migration cancelled", job_id=job_id)


class CutoverError(MigrationError):
    """
    Raised when the cutover fails.

    The compensating rollback-cutover has already been attempted when this
    is raised. If it failed too, ``rollback_error`` is set and the error
    is CRITICAL: a live table may be left under its backup name.

    Attributes:
        rollback_performed: Whether rollback-cutover completed.
        rollback_error: Message of the rollback failure, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CUTOVER_FAILED",
        category="cutover",
        suggested_action="Inspect shadow and backup tables before retrying the cutover",
    )

    _critical_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CUTOVER_ROLLBACK_FAILED",
        category="cutover",
        suggested_action=(
            "Rename the *_backup_* tables back to their live names by hand "
            "and clear the maintenance_mode sentinel"
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        job_id: UUID | None = None,
        rollback_performed: bool = False,
        rollback_error: str | None = None,
    ) -> None:
        self.rollback_performed = rollback_performed
        self.rollback_error = rollback_error
        super().__init__(message=message, job_id=job_id)

    @property
    def classification(self) -> ErrorClassification:
        if self.rollback_error is not None:
            return self._critical_classification
        return self._default_classification


class ValueCoercionError(MigrationError):
    """
    Raised under the strict coercion policy when a value cannot be converted.

    Attributes:
        logical_type: The target logical type.
        value: The offending value.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VALUE_COERCION_FAILED",
        category="data",
        suggested_action="Clean the source value or switch to the default coercion policy",
    )

    def __init__(self, logical_type: str, value: Any) -> None:
        self.logical_type = logical_type
        self.value = value
        super().__init__(message=f"Cannot coerce {value!r} to {logical_type}")


class StrategyValidationError(MigrationError):
    """
    Raised when an externally supplied strategy is malformed.

    Attributes:
        errors: Validation error details.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVALID_STRATEGY",
        category="configuration",
        suggested_action="Supply downtime, rollback_supported and risk_level",
    )

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message=message)


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "MigrationError",
    "StorageConnectionError",
    "UnsupportedBackendError",
    "BackendExecutionError",
    "IntegrityMismatchError",
    "InvalidTransitionError",
    "RollbackUnsupportedError",
    "MigrationNotFoundError",
    "MigrationTimeoutError",
    "MigrationCancelledError",
    "CutoverError",
    "ValueCoercionError",
    "StrategyValidationError",
]
