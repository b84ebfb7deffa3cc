"""
Document store abstraction for dsent.

This module provides a pluggable store backend interface supporting:
- Google Cloud Datastore (production, or the Datastore emulator)
- In-memory (for testing)

Entity sessions only talk to the StoreClient protocol; everything about
the wire protocol, property encoding and query execution stays here.

Invariants:
    - Non-transactional writes commit independently
    - Transactional writes are applied atomically on commit
    - Conflicting concurrent commits fail with ConcurrencyConflictError

How to change safely:
    - New backends must implement StoreClient and Transaction
    - Run the session test suite against every backend
"""

from .base import (
    KEY_PROPERTY,
    Commit,
    Mutation,
    MutationOp,
    PendingKey,
    Query,
    StoreClient,
    Transaction,
    TransactionFn,
    create_store,
)
from .datastore import DatastoreStore, DatastoreTransaction
from .memory import InMemoryStore, InMemoryTransaction

__all__ = [
    # Protocol and types
    "StoreClient",
    "Transaction",
    "TransactionFn",
    "Mutation",
    "MutationOp",
    "PendingKey",
    "Commit",
    "Query",
    "KEY_PROPERTY",
    # Factory
    "create_store",
    # Implementations
    "DatastoreStore",
    "DatastoreTransaction",
    "InMemoryStore",
    "InMemoryTransaction",
]
