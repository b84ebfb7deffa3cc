"""
Entity session for dsent.

This module provides the main interface for one record type:
- EntitySession: Create/Get/Put/Update/Delete, single or batched,
  with and without a caller-owned transaction
- WriteResult: Keys and entities returned by create and put

Example:
    >>> store = InMemoryStore()
    >>> await store.connect()
    >>> invoices = EntitySession[Invoice](store, "prod", "Invoice")
    >>> result = await invoices.create(Invoice(id=7, total=100))
    >>> await invoices.update(
    ...     Invoice(id=7),
    ...     lambda inv: dataclasses.replace(inv, total=inv.total + 1),
    ... )

Invariants:
    - A session holds no mutable state and is safe to share
    - Every operation derives keys first; nothing is written if that fails
    - Non-transactional batches run in one implicit transaction
    - Store errors pass through unchanged; nothing is retried
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Generic, List, Optional, Sequence, Tuple, TypeVar

from .config import SessionConfig
from .entity import Entity
from .errors import ConcurrencyConflictError, DeadlineExceededError, FieldMismatchError, MultiError, NotFoundError
from .keys import Key, derive_key
from .store.base import Commit, Mutation, PendingKey, Query, StoreClient, Transaction, TransactionFn
from .update import EntityFn, UpdateProtocol

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Entity)
R = TypeVar("R")


@dataclass
class WriteResult(Generic[T]):
    """Result of a create or put.

    Key resolution is best-effort: keys are returned even when a
    load_key hook failed, and resolve_error holds the last such failure.

    Attributes:
        keys: Final keys in input order
        entities: The written entities, after key resolution
        resolve_error: Last error raised by a load_key hook, if any
    """

    keys: List[Key] = field(default_factory=list)
    entities: List[T] = field(default_factory=list)
    resolve_error: Optional[Exception] = None

    @property
    def key(self) -> Key:
        """Key of a single-entity write."""
        return self.keys[0]

    @property
    def entity(self) -> T:
        """Entity of a single-entity write."""
        return self.entities[0]

    @property
    def ok(self) -> bool:
        """Whether every key was resolved into its entity."""
        return self.resolve_error is None


class EntitySession(Generic[T]):
    """Namespace- and kind-scoped access to one record type.

    Attributes:
        store: Backing store client
        namespace: Namespace stamped on every derived key
        kind: Default kind of the record type (used by new_query())
        operation_timeout: Default deadline of non-transactional calls
    """

    def __init__(
        self,
        store: StoreClient,
        namespace: str,
        kind: str,
        *,
        operation_timeout: Optional[float] = None,
    ) -> None:
        """Initialize a session.

        Args:
            store: Connected store client
            namespace: Namespace for all keys
            kind: Record kind
            operation_timeout: Default deadline in seconds (None = no deadline)
        """
        self._store = store
        self._namespace = namespace
        self._kind = kind
        self._operation_timeout = operation_timeout

    @classmethod
    def from_config(cls, store: StoreClient, kind: str, config: SessionConfig) -> EntitySession[T]:
        """Create a session from SessionConfig."""
        return cls(
            store,
            config.namespace,
            kind,
            operation_timeout=config.operation_timeout,
        )

    @property
    def store(self) -> StoreClient:
        return self._store

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def operation_timeout(self) -> Optional[float]:
        return self._operation_timeout

    async def close(self) -> None:
        """Close the backing store."""
        await self._store.close()

    def new_query(self) -> Query:
        """Query over this session's kind and namespace."""
        return Query(kind=self._kind, namespace=self._namespace)

    # Keys

    def _build_keys(self, objs: Sequence[T]) -> List[Key]:
        return [derive_key(obj, self._namespace) for obj in objs]

    def resolve_key(self, key: Key, obj: T) -> None:
        """Hand the final key to the entity's load_key hook, if it has one."""
        if obj.load_key is not None:
            obj.load_key(key)

    def _resolve_all(self, keys: Sequence[Key], objs: Sequence[T]) -> Optional[Exception]:
        resolve_error: Optional[Exception] = None
        for key, obj in zip(keys, objs):
            try:
                self.resolve_key(key, obj)
            except Exception as e:
                logger.warning(
                    "Key resolution failed",
                    extra={"key": str(key), "entity": type(obj).__name__, "error": str(e)},
                )
                resolve_error = e
        return resolve_error

    def _write_result(self, keys: List[Key], objs: List[T]) -> WriteResult[T]:
        return WriteResult(keys, objs, self._resolve_all(keys, objs))

    # Deadlines and transactions

    async def _deadline(
        self, operation: str, aw: Awaitable[R], timeout: Optional[float]
    ) -> R:
        timeout = timeout if timeout is not None else self._operation_timeout
        if timeout is None:
            return await aw
        try:
            return await asyncio.wait_for(aw, timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Operation deadline exceeded",
                extra={"operation": operation, "kind": self._kind, "timeout": timeout},
            )
            raise DeadlineExceededError(operation, timeout) from e

    async def run_in_transaction(
        self, fn: TransactionFn, *, timeout: Optional[float] = None
    ) -> Commit:
        """Run fn in a store transaction and commit it.

        Raises:
            ConcurrencyConflictError: If a concurrent transaction won
            DeadlineExceededError: If the deadline expired
        """
        try:
            return await self._deadline(
                "run_in_transaction", self._store.run_in_transaction(fn), timeout
            )
        except ConcurrencyConflictError as e:
            logger.info(
                "Transaction conflict",
                extra={"kind": self._kind, "namespace": self._namespace, "keys": e.keys},
            )
            raise

    # Create

    async def create(self, obj: T, *, timeout: Optional[float] = None) -> WriteResult[T]:
        """Insert one entity.

        Raises:
            KeyDerivationError: If the entity's key cannot be built
            AlreadyExistsError: If the key is taken
        """
        key = derive_key(obj, self._namespace)
        keys = await self._deadline(
            "create", self._store.mutate(Mutation.insert(key, obj.save())), timeout
        )
        logger.debug("Entity created", extra={"key": str(keys[0])})
        return self._write_result(keys, [obj])

    async def batch_create(
        self, objs: Sequence[T], *, timeout: Optional[float] = None
    ) -> WriteResult[T]:
        """Insert entities atomically; one existing key fails the whole batch."""
        objs = list(objs)
        if not objs:
            return WriteResult()
        pending: List[PendingKey] = []

        async def body(tx: Transaction) -> None:
            pks, _ = await self.batch_create_tx(tx, objs)
            pending[:] = pks

        commit = await self.run_in_transaction(body, timeout=timeout)
        keys = [commit.key(pk) for pk in pending]
        logger.debug("Entities created", extra={"kind": self._kind, "count": len(keys)})
        return self._write_result(keys, objs)

    async def create_tx(self, tx: Transaction, obj: T) -> Tuple[PendingKey, T]:
        """Queue an insert in tx."""
        pks, objs = await self.batch_create_tx(tx, [obj])
        return pks[0], objs[0]

    async def batch_create_tx(
        self, tx: Transaction, objs: Sequence[T]
    ) -> Tuple[List[PendingKey], List[T]]:
        """Queue inserts in tx."""
        objs = list(objs)
        keys = self._build_keys(objs)
        pks = await tx.mutate(*[Mutation.insert(k, o.save()) for k, o in zip(keys, objs)])
        return pks, objs

    # Put

    async def put(self, obj: T, *, timeout: Optional[float] = None) -> WriteResult[T]:
        """Insert or overwrite one entity."""
        key = derive_key(obj, self._namespace)
        keys = await self._deadline(
            "put", self._store.mutate(Mutation.upsert(key, obj.save())), timeout
        )
        logger.debug("Entity put", extra={"key": str(keys[0])})
        return self._write_result(keys, [obj])

    async def batch_put(
        self, objs: Sequence[T], *, timeout: Optional[float] = None
    ) -> WriteResult[T]:
        """Insert or overwrite entities atomically."""
        objs = list(objs)
        if not objs:
            return WriteResult()
        pending: List[PendingKey] = []

        async def body(tx: Transaction) -> None:
            pks, _ = await self.batch_put_tx(tx, objs)
            pending[:] = pks

        commit = await self.run_in_transaction(body, timeout=timeout)
        keys = [commit.key(pk) for pk in pending]
        logger.debug("Entities put", extra={"kind": self._kind, "count": len(keys)})
        return self._write_result(keys, objs)

    async def put_tx(self, tx: Transaction, obj: T) -> Tuple[PendingKey, T]:
        """Queue an upsert in tx."""
        pks, objs = await self.batch_put_tx(tx, [obj])
        return pks[0], objs[0]

    async def batch_put_tx(
        self, tx: Transaction, objs: Sequence[T]
    ) -> Tuple[List[PendingKey], List[T]]:
        """Queue upserts in tx."""
        objs = list(objs)
        keys = self._build_keys(objs)
        pks = await tx.mutate(*[Mutation.upsert(k, o.save()) for k, o in zip(keys, objs)])
        return pks, objs

    # Get

    async def get(self, obj: T, *, timeout: Optional[float] = None) -> T:
        """Load one entity in place.

        Raises:
            NotFoundError: If the entity does not exist
            FieldMismatchError: If stored fields are unknown to the type
                (obj is still populated)
        """
        try:
            await self.batch_get([obj], timeout=timeout)
        except MultiError as merr:
            raise merr.first() from merr
        return obj

    async def get_tx(self, tx: Transaction, obj: T) -> T:
        """Load one entity in place, inside tx."""
        try:
            await self.batch_get_tx(tx, [obj])
        except MultiError as merr:
            raise merr.first() from merr
        return obj

    async def batch_get(
        self, objs: Sequence[T], *, timeout: Optional[float] = None
    ) -> List[T]:
        """Load entities in place.

        Found entities are populated even when others fail.

        Raises:
            MultiError: Per-entity NotFoundError / FieldMismatchError
        """
        objs = list(objs)
        keys = self._build_keys(objs)
        results = await self._deadline("batch_get", self._store.get_multi(keys), timeout)
        return self._load_all(keys, objs, results)

    async def batch_get_tx(self, tx: Transaction, objs: Sequence[T]) -> List[T]:
        """Load entities in place, inside tx."""
        objs = list(objs)
        keys = self._build_keys(objs)
        results = await tx.get_multi(keys)
        return self._load_all(keys, objs, results)

    def _load_all(
        self,
        keys: Sequence[Key],
        objs: List[T],
        results: Sequence[Optional[dict[str, Any]]],
    ) -> List[T]:
        errors: List[Optional[Exception]] = []
        for key, obj, properties in zip(keys, objs, results):
            if properties is None:
                errors.append(NotFoundError(key=key))
                continue
            try:
                obj.load(properties)
            except FieldMismatchError as e:
                errors.append(e)
            else:
                errors.append(None)
        if any(e is not None for e in errors):
            raise MultiError(errors)
        return objs

    # Exists

    def _exists_query(self, key: Key) -> Query:
        return (
            Query(kind=key.kind, namespace=self._namespace)
            .key_filter(key)
            .as_keys_only()
            .with_limit(1)
        )

    async def exists(self, obj: T, *, timeout: Optional[float] = None) -> bool:
        """Whether an entity exists at obj's key."""
        key = derive_key(obj, self._namespace)
        keys = await self._deadline(
            "exists", self._store.query_keys(self._exists_query(key)), timeout
        )
        return len(keys) > 0

    async def exists_tx(self, tx: Transaction, obj: T) -> bool:
        """Whether an entity exists at obj's key, inside tx."""
        key = derive_key(obj, self._namespace)
        keys = await tx.query_keys(self._exists_query(key))
        return len(keys) > 0

    # Update

    async def update(
        self,
        obj: T,
        update_fn: EntityFn[T],
        create_fn: Optional[EntityFn[T]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Read-modify-write obj in an implicit transaction.

        Args:
            obj: Entity carrying the identity to update
            update_fn: Returns the value to persist; may raise UpdateAborted
            create_fn: Builds the initial value when the entity is missing

        Returns:
            The persisted value (or the unchanged value when aborted)

        Raises:
            NotFoundError: Entity missing and no create_fn
            KeyChangedError: A callback changed the entity's key
            ConcurrencyConflictError: A concurrent transaction won
        """
        updated: List[T] = []

        async def body(tx: Transaction) -> None:
            updated[:] = [await self.update_tx(tx, obj, update_fn, create_fn)]

        await self.run_in_transaction(body, timeout=timeout)
        return updated[0]

    async def update_tx(
        self,
        tx: Transaction,
        obj: T,
        update_fn: EntityFn[T],
        create_fn: Optional[EntityFn[T]] = None,
    ) -> T:
        """Read-modify-write obj inside a caller-owned transaction.

        The caller commits tx and handles its conflicts.
        """
        return await UpdateProtocol(tx, self._namespace, obj, update_fn, create_fn).run()

    # Delete

    async def delete(self, obj: T, *, timeout: Optional[float] = None) -> None:
        """Delete one entity; deleting a missing entity is not an error."""
        key = derive_key(obj, self._namespace)
        await self._deadline("delete", self._store.mutate(Mutation.delete(key)), timeout)
        logger.debug("Entity deleted", extra={"key": str(key)})

    async def delete_tx(self, tx: Transaction, obj: T) -> None:
        """Queue a delete in tx."""
        await self.batch_delete_tx(tx, [obj])

    async def batch_delete(
        self, objs: Sequence[T], *, timeout: Optional[float] = None
    ) -> None:
        """Delete entities atomically."""
        objs = list(objs)
        if not objs:
            return

        async def body(tx: Transaction) -> None:
            await self.batch_delete_tx(tx, objs)

        await self.run_in_transaction(body, timeout=timeout)

    async def batch_delete_tx(self, tx: Transaction, objs: Sequence[T]) -> None:
        """Queue deletes in tx."""
        keys = self._build_keys(objs)
        await tx.mutate(*[Mutation.delete(k) for k in keys])
