"""
dsent - typed entity sessions over a transactional document store.

This package provides:
- Key codec (Key, derive_key, keys_equivalent, set_namespace)
- Entity base class for record types
- EntitySession with Create/Get/Put/Update/Delete, batched and transactional
- Store backends (Google Cloud Datastore, in-memory)
- Kind registry guarding against duplicate record kinds

Example:
    >>> from dataclasses import dataclass
    >>> from dsent import Entity, EntitySession, InMemoryStore, Key
    >>>
    >>> @dataclass
    ... class Task(Entity):
    ...     id: int = 0
    ...     title: str = ""
    ...
    ...     def build_key(self, namespace):
    ...         return Key.id_key("Task", self.id)
    >>>
    >>> store = InMemoryStore()
    >>> await store.connect()
    >>> tasks = EntitySession[Task](store, "tenant_1", "Task")
    >>> await tasks.create(Task(id=1, title="write docs"))

Invariants:
    - Keys never change as a side effect of create or update callbacks
    - Conflicting concurrent transactions fail; nothing is retried
    - Sessions are immutable and safe to share

Version: see _version.py.
"""

from ._version import __version__
from .config import DsEntConfig, SessionConfig, StoreBackend
from .entity import Entity
from .errors import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    DeadlineExceededError,
    DsEntError,
    FieldMismatchError,
    KeyChangedError,
    KeyDerivationError,
    MultiError,
    NotFoundError,
    StoreConnectionError,
    StoreError,
    UpdateAborted,
)
from .keys import Key, derive_key, keys_equivalent, set_namespace
from .registry import (
    DuplicateKindError,
    KindRegistry,
    get_registry,
    register_kind,
)
from .session import EntitySession, WriteResult
from .store import (
    Commit,
    DatastoreStore,
    InMemoryStore,
    Mutation,
    MutationOp,
    PendingKey,
    Query,
    StoreClient,
    Transaction,
    create_store,
)
from .update import UpdateProtocol, UpdateStep

__all__ = [
    # Version
    "__version__",
    # Keys and entities
    "Key",
    "derive_key",
    "keys_equivalent",
    "set_namespace",
    "Entity",
    # Session
    "EntitySession",
    "WriteResult",
    "UpdateProtocol",
    "UpdateStep",
    # Store
    "StoreClient",
    "Transaction",
    "Mutation",
    "MutationOp",
    "PendingKey",
    "Commit",
    "Query",
    "InMemoryStore",
    "DatastoreStore",
    "create_store",
    # Registry
    "KindRegistry",
    "DuplicateKindError",
    "get_registry",
    "register_kind",
    # Config
    "DsEntConfig",
    "SessionConfig",
    "StoreBackend",
    # Errors
    "DsEntError",
    "KeyDerivationError",
    "NotFoundError",
    "AlreadyExistsError",
    "KeyChangedError",
    "ConcurrencyConflictError",
    "DeadlineExceededError",
    "FieldMismatchError",
    "MultiError",
    "StoreError",
    "StoreConnectionError",
    "UpdateAborted",
]
