"""
E2E test fixtures for dsent.

These tests require a running Datastore emulator, for example:

    gcloud beta emulators datastore start --host-port=localhost:8081

and DATASTORE_PROJECT_ID / DATASTORE_EMULATOR_HOST set accordingly.
"""

import os
import uuid

import pytest
import pytest_asyncio

from dsent.config import DatastoreConfig
from dsent.store.datastore import DatastoreStore

E2E_ENABLED = bool(
    os.environ.get("DATASTORE_PROJECT_ID") and os.environ.get("DATASTORE_EMULATOR_HOST")
)


def pytest_collection_modifyitems(config, items):
    """Skip emulator tests unless the emulator is configured."""
    if E2E_ENABLED:
        return
    skip = pytest.mark.skip(
        reason="E2E tests disabled. Set DATASTORE_PROJECT_ID and DATASTORE_EMULATOR_HOST to enable."
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


@pytest_asyncio.fixture
async def datastore_store():
    """Store connected to the emulator."""
    store = DatastoreStore(DatastoreConfig.from_env())
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def test_namespace() -> str:
    """Generate unique namespace for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"
