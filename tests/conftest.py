"""
Test fixtures and helpers for the chatmem test suite.

Provides time freezing and ready-made stores seeded with the u1 memories
used by several test modules.
"""

import pytest
from freezegun import freeze_time

from chatmem.kernel.memory_store import MemoryStore
from chatmem.kernel.vector_store import VectorStore
from tests.helpers import seed_memories


U1_MEMORIES = [
    {"content": "我喜欢打篮球", "importance": 8, "category": "interests"},
    {"content": "我的电脑是MacBook", "importance": 5, "category": "device_info"},
]


@pytest.fixture
def frozen_now():
    """
    Freeze time to a stable UTC timestamp for deterministic tests.

    Uses 2025-01-01T00:00:00Z as the frozen time.
    """
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


@pytest.fixture
def memory_store(temp_db_path):
    """Empty MemoryStore on a temporary database"""
    return MemoryStore(temp_db_path)


@pytest.fixture
def vector_store(temp_db_path):
    """VectorStore sharing the temporary database, no fixed dimension"""
    return VectorStore(temp_db_path)


@pytest.fixture
def u1_store(memory_store):
    """MemoryStore holding u1's two memories; ids are in U1_MEMORIES order"""
    memory_store.u1_ids = seed_memories(memory_store, "u1", U1_MEMORIES)
    return memory_store
