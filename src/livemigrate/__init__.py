"""
livemigrate - Live data migration between heterogeneous storage backends.

This library provides:
- Storage adapters for PostgreSQL, MySQL, SQLite, MongoDB and an in-memory backend
- Schema evolution planning (add, modify, drop) with compatibility checks
- Batched full and watermark-based incremental data copy
- Shadow-table replication with atomic cutover and rollback
- A job orchestrator with pause, resume, rollback and timeouts
- Outbound lifecycle events and OpenTelemetry tracing
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("livemigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Adapters
from livemigrate.adapters import (
    AdapterRegistry,
    Dialect,
    InMemoryAdapter,
    MongoAdapter,
    SqlAdapter,
    StorageAdapter,
    create_adapter,
)

# Configuration
from livemigrate.config import CoercionPolicy, MigrationConfig

# Structural definitions
from livemigrate.definitions import (
    BackendKind,
    ColumnDefinition,
    ConstraintDefinition,
    ForeignKeyDefinition,
    IndexDefinition,
    LogicalType,
    StorageEndpoint,
    StructuralDefinition,
    TableDefinition,
)

# Events
from livemigrate.events import EventChannel, MigrationEvent, MigrationEventType

# Exceptions
from livemigrate.exceptions import (
    BackendExecutionError,
    CutoverError,
    IntegrityMismatchError,
    InvalidTransitionError,
    MigrationCancelledError,
    MigrationError,
    MigrationNotFoundError,
    MigrationTimeoutError,
    RollbackUnsupportedError,
    StorageConnectionError,
    StrategyValidationError,
    UnsupportedBackendError,
    ValueCoercionError,
)

# Data transfer
from livemigrate.migrator import BatchDataMigrator, JobControl

# Models
from livemigrate.models import (
    CompatibilityReport,
    CutoverResult,
    IntegrityReport,
    JobStatus,
    LogLevel,
    MigrationJob,
    MigrationLogEntry,
    MigrationStatus,
    ReplicationMode,
    ReplicationStream,
    TableChanges,
    TransferResult,
)

# Orchestration
from livemigrate.orchestrator import MigrationOrchestrator
from livemigrate.planner import SchemaEvolutionPlanner
from livemigrate.replication import ShadowReplicationManager

# Strategies
from livemigrate.strategies import (
    OptimizationConstraints,
    Priority,
    RiskLevel,
    Strategy,
    StrategyAdvisor,
    default_strategies,
    resolve_strategies,
    validate_strategy,
)
from livemigrate.transform import ValueTransformer

__all__ = [
    "__version__",
    # Orchestration
    "MigrationOrchestrator",
    "SchemaEvolutionPlanner",
    "BatchDataMigrator",
    "JobControl",
    "ShadowReplicationManager",
    "ValueTransformer",
    # Adapters
    "AdapterRegistry",
    "Dialect",
    "InMemoryAdapter",
    "MongoAdapter",
    "SqlAdapter",
    "StorageAdapter",
    "create_adapter",
    # Configuration
    "CoercionPolicy",
    "MigrationConfig",
    # Definitions
    "BackendKind",
    "ColumnDefinition",
    "ConstraintDefinition",
    "ForeignKeyDefinition",
    "IndexDefinition",
    "LogicalType",
    "StorageEndpoint",
    "StructuralDefinition",
    "TableDefinition",
    # Strategies
    "OptimizationConstraints",
    "Priority",
    "RiskLevel",
    "Strategy",
    "StrategyAdvisor",
    "default_strategies",
    "resolve_strategies",
    "validate_strategy",
    # Models
    "CompatibilityReport",
    "CutoverResult",
    "IntegrityReport",
    "JobStatus",
    "LogLevel",
    "MigrationJob",
    "MigrationLogEntry",
    "MigrationStatus",
    "ReplicationMode",
    "ReplicationStream",
    "TableChanges",
    "TransferResult",
    # Events
    "EventChannel",
    "MigrationEvent",
    "MigrationEventType",
    # Exceptions
    "MigrationError",
    "BackendExecutionError",
    "CutoverError",
    "IntegrityMismatchError",
    "InvalidTransitionError",
    "MigrationCancelledError",
    "MigrationNotFoundError",
    "MigrationTimeoutError",
    "RollbackUnsupportedError",
    "StorageConnectionError",
    "StrategyValidationError",
    "UnsupportedBackendError",
    "ValueCoercionError",
]
