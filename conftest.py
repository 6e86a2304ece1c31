# conftest.py
"""
Pytest configuration and fixtures for the chatmem test suite.

Provides temporary database paths with WAL cleanup and registers the
markers used across tests/.
"""

import gc
import os
from pathlib import Path

import pytest

from chatmem.kernel.metrics_registry import reset_metrics_registry


@pytest.fixture
def anyio_backend():
    """Configure anyio to use only asyncio backend (no trio)."""
    return "asyncio"


@pytest.fixture
def temp_db_path(tmp_path: Path):
    """
    Create a temporary database file path with WAL cleanup.

    Removes the -wal/-shm auxiliary files after each test so tmp_path
    teardown never trips over lingering SQLite handles.
    """
    p = tmp_path / "test.db"
    try:
        yield str(p)
    finally:
        gc.collect()
        for suffix in ("-wal", "-shm"):
            aux = f"{p}{suffix}"
            if os.path.exists(aux):
                try:
                    os.remove(aux)
                except OSError:
                    pass  # still held open; tmp_path cleanup retries


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own metrics registry."""
    reset_metrics_registry()
    yield
    reset_metrics_registry()


@pytest.fixture(autouse=True)
def no_debug_env(monkeypatch):
    """Keep a developer's CHATMEM_RETRIEVAL_DEBUG from leaking into tests."""
    monkeypatch.delenv("CHATMEM_RETRIEVAL_DEBUG", raising=False)


# pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: fast tests of a single module")
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (may be slower)",
    )
    config.addinivalue_line("markers", "smoke: import and wiring checks")
    config.addinivalue_line("markers", "database: marks tests that use database connections")


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on their names and location."""
    for item in items:
        if "db" in item.name.lower() or "store" in item.name.lower():
            item.add_marker(pytest.mark.database)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
