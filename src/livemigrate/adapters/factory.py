"""
Adapter selection and caching.

``create_adapter`` maps an endpoint's backend kind to its adapter class.
``AdapterRegistry`` keeps one connected adapter per endpoint signature for
the lifetime of an orchestrator, so every job and every replication stream
touching the same physical database shares one adapter (and its pool).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from livemigrate.adapters.base import StorageAdapter
from livemigrate.adapters.memory import InMemoryAdapter
from livemigrate.adapters.mongodb import MongoAdapter
from livemigrate.adapters.sql import (
    MYSQL_DIALECT,
    POSTGRESQL_DIALECT,
    SQLITE_DIALECT,
    SqlAdapter,
)
from livemigrate.definitions import BackendKind, StorageEndpoint
from livemigrate.exceptions import UnsupportedBackendError
from livemigrate.observability import Tracer

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., StorageAdapter]

_FACTORIES: dict[str, AdapterFactory] = {
    BackendKind.POSTGRESQL.value: lambda endpoint, **kw: SqlAdapter(
        endpoint, POSTGRESQL_DIALECT, **kw
    ),
    BackendKind.MYSQL.value: lambda endpoint, **kw: SqlAdapter(endpoint, MYSQL_DIALECT, **kw),
    BackendKind.SQLITE.value: lambda endpoint, **kw: SqlAdapter(endpoint, SQLITE_DIALECT, **kw),
    BackendKind.MONGODB.value: MongoAdapter,
    BackendKind.MEMORY.value: InMemoryAdapter,
}


def create_adapter(
    endpoint: StorageEndpoint,
    *,
    tracer: Tracer | None = None,
    enable_tracing: bool = True,
) -> StorageAdapter:
    """
    Build an unconnected adapter for an endpoint.

    Raises:
        UnsupportedBackendError: If the endpoint's kind has no adapter
    """
    factory = _FACTORIES.get(endpoint.kind)
    if factory is None:
        raise UnsupportedBackendError(endpoint.kind)
    return factory(endpoint, tracer=tracer, enable_tracing=enable_tracing)


class AdapterRegistry:
    """
    Connected adapters cached by endpoint signature.

    Example:
        >>> registry = AdapterRegistry()
        >>> adapter = await registry.get(endpoint)   # connects on first use
        >>> same = await registry.get(endpoint)      # cached
        >>> await registry.close_all()
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer
        self._enable_tracing = enable_tracing
        self._adapters: dict[str, StorageAdapter] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, signature: object) -> bool:
        return signature in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def register(self, adapter: StorageAdapter) -> None:
        """Cache a pre-built adapter under its signature."""
        self._adapters[adapter.signature] = adapter

    async def get(self, endpoint: StorageEndpoint) -> StorageAdapter:
        """
        Return the connected adapter for an endpoint, creating it if needed.

        Raises:
            UnsupportedBackendError: If the kind has no adapter
            StorageConnectionError: If connecting fails (nothing is cached)
        """
        async with self._lock:
            adapter = self._adapters.get(endpoint.signature)
            if adapter is None:
                adapter = create_adapter(
                    endpoint, tracer=self._tracer, enable_tracing=self._enable_tracing
                )
            if not adapter.is_connected:
                await adapter.connect()
            self._adapters[endpoint.signature] = adapter
            return adapter

    async def close_all(self) -> None:
        """Disconnect and forget every cached adapter."""
        async with self._lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            try:
                await adapter.disconnect()
            except Exception as e:
                logger.warning(
                    "Failed to disconnect %s: %s",
                    adapter.signature,
                    e,
                    extra={"signature": adapter.signature},
                )


__all__ = ["AdapterRegistry", "create_adapter"]
