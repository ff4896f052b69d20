"""
Shared pytest fixtures for the livemigrate tests.

This module provides:
- In-memory source and target adapters (empty and populated)
- A registry pre-loaded with those adapters
- An orchestrator wired to the registry with tracing disabled
- A MockTracer for span assertions
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from livemigrate.adapters import AdapterRegistry, InMemoryAdapter
from livemigrate.config import MigrationConfig
from livemigrate.events import EventChannel
from livemigrate.observability import MockTracer
from livemigrate.orchestrator import MigrationOrchestrator
from tests.fixtures import memory_endpoint, user_rows, users_table

# ============================================================================
# Tracing
# ============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    """Tracer that records span names and attributes."""
    return MockTracer()


# ============================================================================
# Adapters
# ============================================================================


@pytest_asyncio.fixture
async def source_adapter() -> AsyncGenerator[InMemoryAdapter, None]:
    """Connected, empty in-memory source."""
    adapter = InMemoryAdapter(memory_endpoint("source"), enable_tracing=False)
    await adapter.connect()
    yield adapter
    await adapter.disconnect()


@pytest_asyncio.fixture
async def target_adapter() -> AsyncGenerator[InMemoryAdapter, None]:
    """Connected, empty in-memory target."""
    adapter = InMemoryAdapter(memory_endpoint("target"), enable_tracing=False)
    await adapter.connect()
    yield adapter
    await adapter.disconnect()


@pytest_asyncio.fixture
async def populated_source(source_adapter: InMemoryAdapter) -> InMemoryAdapter:
    """Source holding a users table with 25 rows."""
    await source_adapter.create_table(users_table())
    await source_adapter.insert_rows("users", user_rows(25))
    return source_adapter


# ============================================================================
# Orchestration
# ============================================================================


@pytest.fixture
def config() -> MigrationConfig:
    """Small batches and a fast replication tick."""
    return MigrationConfig(batch_size=10, replication_interval_ms=10, replication_batch_size=10)


@pytest.fixture
def event_channel() -> EventChannel:
    return EventChannel()


@pytest.fixture
def registry(
    source_adapter: InMemoryAdapter,
    target_adapter: InMemoryAdapter,
) -> AdapterRegistry:
    """Registry pre-loaded with the source and target adapters."""
    registry = AdapterRegistry(enable_tracing=False)
    registry.register(source_adapter)
    registry.register(target_adapter)
    return registry


@pytest_asyncio.fixture
async def orchestrator(
    config: MigrationConfig,
    registry: AdapterRegistry,
    event_channel: EventChannel,
) -> AsyncGenerator[MigrationOrchestrator, None]:
    orchestrator = MigrationOrchestrator(
        config,
        registry=registry,
        events=event_channel,
        enable_tracing=False,
    )
    yield orchestrator
    await orchestrator.cleanup()
