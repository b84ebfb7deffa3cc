"""
Shared fixtures for dsent tests.
"""

import pytest
import pytest_asyncio

from dsent.registry import reset_registry
from dsent.store.memory import InMemoryStore


@pytest_asyncio.fixture
async def store():
    """Connected in-memory store."""
    store = InMemoryStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(autouse=True)
def fresh_registry():
    """Start every test with an empty kind registry."""
    reset_registry()
    yield
    reset_registry()
