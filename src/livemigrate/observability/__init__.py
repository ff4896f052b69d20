"""
Observability utilities for livemigrate.

Provides the composition-based Tracer abstraction and the standard span
attribute names shared by every component.

Example:
    >>> from livemigrate.observability import create_tracer, ATTR_TABLE
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
    ...
    ...     async def copy(self, table: str) -> None:
    ...         with self._tracer.span("my_component.copy", {ATTR_TABLE: table}):
    ...             ...
"""

from livemigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOWNTIME,
    ATTR_ERROR_TYPE,
    ATTR_JOB_ID,
    ATTR_JOB_STATUS,
    ATTR_PROGRESS_PERCENT,
    ATTR_ROWS_DROPPED,
    ATTR_ROWS_TRANSFERRED,
    ATTR_SHADOW_TABLE,
    ATTR_STRATEGY_ID,
    ATTR_TABLE,
    ATTR_TABLE_COUNT,
    ATTR_WATERMARK,
)
from livemigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_SIZE",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DOWNTIME",
    "ATTR_ERROR_TYPE",
    "ATTR_JOB_ID",
    "ATTR_JOB_STATUS",
    "ATTR_PROGRESS_PERCENT",
    "ATTR_ROWS_DROPPED",
    "ATTR_ROWS_TRANSFERRED",
    "ATTR_SHADOW_TABLE",
    "ATTR_STRATEGY_ID",
    "ATTR_TABLE",
    "ATTR_TABLE_COUNT",
    "ATTR_WATERMARK",
]
