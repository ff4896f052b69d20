"""
Configuration for migration jobs.

MigrationConfig bundles the tunables shared by the migrator, the
replication manager and the orchestrator. It is immutable and validates
itself on construction.

Example:
    >>> config = MigrationConfig(batch_size=500, job_timeout_ms=600_000)
    >>> orchestrator = MigrationOrchestrator(config=config)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10_000
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20


class CoercionPolicy(Enum):
    """
    How value transformation reacts to values it cannot convert.

    Attributes:
        DEFAULT: Substitute a fallback (0 for numbers, the current time for
            dates, an empty object for JSON) and keep the row.
        STRICT: Raise ValueCoercionError and abort the batch.
    """

    DEFAULT = "default"
    STRICT = "strict"


def validate_batch_size(value: int) -> int:
    if not MIN_BATCH_SIZE <= value <= MAX_BATCH_SIZE:
        raise ValueError(
            f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}, got {value}"
        )
    return value


def validate_max_concurrency(value: int) -> int:
    if not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
        raise ValueError(
            f"max_concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, "
            f"got {value}"
        )
    return value


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for migration jobs.

    Attributes:
        batch_size: Rows per page during bulk and incremental copy.
        max_concurrency: Hint for parallel table transfer; tables are
            currently processed sequentially.
        replication_interval_ms: Delay between replication ticks.
        replication_batch_size: Bound on each replication fetch.
        job_timeout_ms: Optional per-job deadline. None disables it.
        event_queue_size: Bound of each outbound event subscriber queue.
        coercion: Policy for values that cannot be converted.
    """

    batch_size: int = 1000
    max_concurrency: int = 5
    replication_interval_ms: int = 1000
    replication_batch_size: int = 1000
    job_timeout_ms: int | None = None
    event_queue_size: int = 100
    coercion: CoercionPolicy = CoercionPolicy.DEFAULT

    def __post_init__(self) -> None:
        """Validate configuration values."""
        validate_batch_size(self.batch_size)
        validate_max_concurrency(self.max_concurrency)
        if self.replication_interval_ms <= 0:
            raise ValueError(
                f"replication_interval_ms must be positive, got {self.replication_interval_ms}"
            )
        if self.replication_batch_size < 1:
            raise ValueError(
                f"replication_batch_size must be >= 1, got {self.replication_batch_size}"
            )
        if self.job_timeout_ms is not None and self.job_timeout_ms <= 0:
            raise ValueError(f"job_timeout_ms must be positive, got {self.job_timeout_ms}")
        if self.event_queue_size < 1:
            raise ValueError(f"event_queue_size must be >= 1, got {self.event_queue_size}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            "replication_interval_ms": self.replication_interval_ms,
            "replication_batch_size": self.replication_batch_size,
            "job_timeout_ms": self.job_timeout_ms,
            "event_queue_size": self.event_queue_size,
            "coercion": self.coercion.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """Create from dictionary."""
        return cls(
            batch_size=data.get("batch_size", 1000),
            max_concurrency=data.get("max_concurrency", 5),
            replication_interval_ms=data.get("replication_interval_ms", 1000),
            replication_batch_size=data.get("replication_batch_size", 1000),
            job_timeout_ms=data.get("job_timeout_ms"),
            event_queue_size=data.get("event_queue_size", 100),
            coercion=CoercionPolicy(data.get("coercion", CoercionPolicy.DEFAULT.value)),
        )


__all__ = [
    "CoercionPolicy",
    "MigrationConfig",
    "MIN_BATCH_SIZE",
    "MAX_BATCH_SIZE",
    "MIN_CONCURRENCY",
    "MAX_CONCURRENCY",
    "validate_batch_size",
    "validate_max_concurrency",
]
