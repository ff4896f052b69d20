"""
Shared pytest fixtures for integration tests.

Integration tests run against real databases. SQLite needs nothing but
a temporary file; server backends are only exercised when a connection
URL is supplied through the environment:

    LIVEMIGRATE_TEST_POSTGRES  e.g. postgresql://svc:pw@localhost:5432/app
    LIVEMIGRATE_TEST_MYSQL     e.g. mysql://svc:pw@localhost:3306/app
    LIVEMIGRATE_TEST_MONGODB   e.g. mongodb://localhost:27017/app

Tests that need a missing backend are skipped.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from pathlib import Path
from urllib.parse import urlparse

import pytest
import pytest_asyncio

from livemigrate.adapters import SQLITE_DIALECT, SqlAdapter, StorageAdapter, create_adapter
from livemigrate.definitions import StorageEndpoint

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "postgres: marks tests that require PostgreSQL")
    config.addinivalue_line("markers", "mysql: marks tests that require MySQL")
    config.addinivalue_line("markers", "mongodb: marks tests that require MongoDB")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark every test under tests/integration as an integration test."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Endpoints
# ============================================================================


def endpoint_from_env(variable: str, kind: str) -> StorageEndpoint | None:
    """Build an endpoint from a URL environment variable, or None if unset."""
    url = os.environ.get(variable)
    if not url:
        return None
    parsed = urlparse(url)
    return StorageEndpoint(
        kind=kind,
        host=parsed.hostname or "localhost",
        port=parsed.port,
        database=parsed.path.lstrip("/"),
        username=parsed.username,
        password=parsed.password,
    )


def sqlite_endpoint(path: Path) -> StorageEndpoint:
    return StorageEndpoint(kind="sqlite", database=str(path))


@pytest_asyncio.fixture
async def sqlite_adapter(tmp_path: Path) -> AsyncGenerator[SqlAdapter, None]:
    """Connected adapter on a fresh SQLite file."""
    adapter = SqlAdapter(
        sqlite_endpoint(tmp_path / "app.db"), SQLITE_DIALECT, enable_tracing=False
    )
    await adapter.connect()
    yield adapter
    await adapter.disconnect()


@pytest_asyncio.fixture
async def sqlite_pair(
    tmp_path: Path,
) -> AsyncGenerator[tuple[StorageAdapter, StorageAdapter], None]:
    """Connected source and target adapters on two SQLite files."""
    source = create_adapter(sqlite_endpoint(tmp_path / "source.db"), enable_tracing=False)
    target = create_adapter(sqlite_endpoint(tmp_path / "target.db"), enable_tracing=False)
    await source.connect()
    await target.connect()
    yield source, target
    await source.disconnect()
    await target.disconnect()


@pytest_asyncio.fixture
async def postgres_adapter() -> AsyncGenerator[StorageAdapter, None]:
    endpoint = endpoint_from_env("LIVEMIGRATE_TEST_POSTGRES", "postgresql")
    if endpoint is None:
        pytest.skip("LIVEMIGRATE_TEST_POSTGRES not set")
    adapter = create_adapter(endpoint, enable_tracing=False)
    await adapter.connect()
    yield adapter
    await adapter.disconnect()
