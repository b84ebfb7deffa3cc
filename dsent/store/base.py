"""
Base protocol and types for the document store abstraction.

This module defines the StoreClient and Transaction protocols that every
backend must implement, along with the mutation, query and commit types
shared by all of them.

Invariants:
    - Outside a transaction every mutate() call commits independently
    - INSERT fails if the key exists, UPDATE fails if it does not
    - DELETE of an absent key is not an error
    - Transactional mutations are queued and applied atomically on commit
    - A transaction that overlaps a concurrently committed one on any key
      fails with ConcurrencyConflictError

How to change safely:
    - Protocol changes require updating all implementations
    - Keep error translation inside the backend modules
"""

from __future__ import annotations

import dataclasses
import itertools
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from ..errors import DsEntError
from ..keys import Key

if TYPE_CHECKING:
    from ..config import DsEntConfig

KEY_PROPERTY = "__key__"

_pending_ids = itertools.count(1)


class MutationOp(Enum):
    """Kinds of write."""

    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class Mutation:
    """A single write against one key.

    Attributes:
        op: Write kind
        key: Target key (may be incomplete for INSERT/UPSERT)
        properties: Entity properties (None for DELETE)
    """

    op: MutationOp
    key: Key
    properties: Optional[Dict[str, Any]] = None

    @classmethod
    def insert(cls, key: Key, properties: Dict[str, Any]) -> Mutation:
        return cls(MutationOp.INSERT, key, dict(properties))

    @classmethod
    def update(cls, key: Key, properties: Dict[str, Any]) -> Mutation:
        return cls(MutationOp.UPDATE, key, dict(properties))

    @classmethod
    def upsert(cls, key: Key, properties: Dict[str, Any]) -> Mutation:
        return cls(MutationOp.UPSERT, key, dict(properties))

    @classmethod
    def delete(cls, key: Key) -> Mutation:
        return cls(MutationOp.DELETE, key)


@dataclass(frozen=True)
class PendingKey:
    """Placeholder for a key written inside an open transaction.

    Resolved to a concrete Key through Commit.key() once the transaction
    has committed.
    """

    key: Key
    pending_id: int = field(default_factory=lambda: next(_pending_ids))


@dataclass
class Commit:
    """Result of a committed transaction."""

    resolved: Dict[int, Key] = field(default_factory=dict)

    def key(self, pending: PendingKey) -> Key:
        """Concrete key for a pending key of this transaction."""
        try:
            return self.resolved[pending.pending_id]
        except KeyError:
            if pending.key.is_complete:
                return pending.key
            raise DsEntError(f"pending key {pending.key} does not belong to this commit")


@dataclass(frozen=True)
class Query:
    """Keys-only capable query over one kind in one namespace.

    Only equality filters are supported; anything more belongs to the
    backend's own query API.

    Attributes:
        kind: Kind to scan
        namespace: Namespace to scan
        filters: (property, value) equality filters; KEY_PROPERTY filters on the key
        ancestor: Restrict to descendants of this key
        keys_only: Return keys without properties
        limit: Maximum number of results
    """

    kind: str
    namespace: str = ""
    filters: Tuple[Tuple[str, Any], ...] = ()
    ancestor: Optional[Key] = None
    keys_only: bool = False
    limit: Optional[int] = None

    def filter(self, prop: str, value: Any) -> Query:
        return dataclasses.replace(self, filters=self.filters + ((prop, value),))

    def key_filter(self, key: Key) -> Query:
        return self.filter(KEY_PROPERTY, key)

    def with_ancestor(self, ancestor: Key) -> Query:
        return dataclasses.replace(self, ancestor=ancestor)

    def as_keys_only(self) -> Query:
        return dataclasses.replace(self, keys_only=True)

    def with_limit(self, limit: int) -> Query:
        return dataclasses.replace(self, limit=limit)

    @property
    def key_filters(self) -> List[Key]:
        return [v for p, v in self.filters if p == KEY_PROPERTY]


@runtime_checkable
class Transaction(Protocol):
    """Handle passed to a transaction body.

    Reads observe the transaction's snapshot plus its own queued writes.
    Writes are queued and applied on commit.
    """

    @abstractmethod
    async def get(self, key: Key) -> Dict[str, Any]:
        """Read one entity.

        Raises:
            NotFoundError: If no entity exists at key
        """
        ...

    @abstractmethod
    async def get_multi(self, keys: Sequence[Key]) -> List[Optional[Dict[str, Any]]]:
        """Read many entities; None marks a missing entry."""
        ...

    @abstractmethod
    async def mutate(self, *mutations: Mutation) -> List[PendingKey]:
        """Queue writes for commit."""
        ...

    @abstractmethod
    async def query_keys(self, query: Query) -> List[Key]:
        """Run a keys-only query inside the transaction."""
        ...


TransactionFn = Callable[[Transaction], Awaitable[Any]]


@runtime_checkable
class StoreClient(Protocol):
    """Protocol for document store backends.

    Example:
        >>> store = InMemoryStore()
        >>> await store.connect()
        >>> keys = await store.mutate(Mutation.insert(Key.id_key("Task", 1), {"title": "x"}))
        >>> await store.get(keys[0])
        {'title': 'x'}
    """

    backend_name: str

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StoreConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, key: Key) -> Dict[str, Any]:
        """Read one entity.

        Raises:
            NotFoundError: If no entity exists at key
        """
        ...

    @abstractmethod
    async def get_multi(self, keys: Sequence[Key]) -> List[Optional[Dict[str, Any]]]:
        """Read many entities in input order; None marks a missing entry."""
        ...

    @abstractmethod
    async def mutate(self, *mutations: Mutation) -> List[Key]:
        """Apply writes atomically, outside any caller transaction.

        Returns:
            Final keys in input order (incomplete keys filled in)

        Raises:
            AlreadyExistsError: INSERT on an existing key
            NotFoundError: UPDATE on a missing key
        """
        ...

    @abstractmethod
    async def run_in_transaction(self, fn: TransactionFn) -> Commit:
        """Run fn inside a transaction and commit it.

        If fn raises, the transaction is rolled back and the error propagates.

        Raises:
            ConcurrencyConflictError: If a concurrent transaction won
        """
        ...

    @abstractmethod
    async def query_keys(self, query: Query) -> List[Key]:
        """Run a keys-only query."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has succeeded."""
        ...


def create_store(config: "DsEntConfig") -> StoreClient:
    """Factory function to create a store from configuration.

    Args:
        config: dsent configuration

    Returns:
        Appropriate StoreClient implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend

    if config.store_backend == StoreBackend.MEMORY:
        from .memory import InMemoryStore

        return InMemoryStore(latency=config.memory.latency_ms / 1000.0)
    elif config.store_backend == StoreBackend.DATASTORE:
        from .datastore import DatastoreStore

        return DatastoreStore(config.datastore)
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
