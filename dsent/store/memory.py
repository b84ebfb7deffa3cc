"""
In-memory document store for testing.

This module provides a transactional in-memory backend for:
- Unit tests
- Integration tests of record types
- Local development without a Datastore emulator

Conflict detection is optimistic: every commit stamps the keys it writes
with a new sequence number, and a transaction fails to commit if any key it
read or wrote was stamped after the transaction began.

Invariants:
    - All data is lost on process exit
    - Batch writes are all-or-nothing
    - Reads inside a transaction see the transaction's own queued writes
    - Exactly one of two overlapping transactions on a key commits
    - Write stamps are kept only while an open transaction could conflict with them

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with StoreClient protocol
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..errors import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    DsEntError,
    NotFoundError,
    StoreConnectionError,
)
from ..keys import Key
from .base import (
    KEY_PROPERTY,
    Commit,
    Mutation,
    MutationOp,
    PendingKey,
    Query,
    TransactionFn,
)

logger = logging.getLogger(__name__)


class InMemoryTransaction:
    """Transaction handle of InMemoryStore."""

    def __init__(self, store: InMemoryStore, start_seq: int) -> None:
        self._store = store
        self._start_seq = start_seq
        self._reads: Set[Key] = set()
        self._queued: List[Tuple[Mutation, PendingKey]] = []
        self._done = False

    def _check_open(self) -> None:
        if self._done:
            raise DsEntError("transaction is no longer active")

    def _queued_state(self, key: Key) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Latest queued write to key, as (touched, properties or None if deleted)."""
        for mutation, _ in reversed(self._queued):
            if mutation.key.is_complete and mutation.key == key:
                if mutation.op is MutationOp.DELETE:
                    return True, None
                return True, mutation.properties
        return False, None

    async def get(self, key: Key) -> Dict[str, Any]:
        result = (await self.get_multi([key]))[0]
        if result is None:
            raise NotFoundError(key=key)
        return result

    async def get_multi(self, keys: Sequence[Key]) -> List[Optional[Dict[str, Any]]]:
        self._check_open()
        await self._store._round_trip()
        results: List[Optional[Dict[str, Any]]] = []
        async with self._store._lock:
            for key in keys:
                self._reads.add(key)
                touched, props = self._queued_state(key)
                if not touched:
                    props = self._store._records.get(key)
                results.append(copy.deepcopy(props) if props is not None else None)
        return results

    async def mutate(self, *mutations: Mutation) -> List[PendingKey]:
        self._check_open()
        for mutation in mutations:
            self._store._check_key(mutation)
        pending = [PendingKey(m.key) for m in mutations]
        self._queued.extend(zip(mutations, pending))
        return pending

    async def query_keys(self, query: Query) -> List[Key]:
        self._check_open()
        await self._store._round_trip()
        async with self._store._lock:
            keys = self._store._match(query)
            self._reads.update(keys)
            self._reads.update(k for k in query.key_filters if isinstance(k, Key))
        return keys

    async def _commit(self) -> Commit:
        self._check_open()
        store = self._store
        async with store._lock:
            self._done = True
            touched = set(self._reads)
            touched.update(m.key for m, _ in self._queued if m.key.is_complete)
            conflicts = [
                k for k in touched if store._last_write.get(k, 0) > self._start_seq
            ]
            if conflicts:
                logger.debug(
                    "In-memory transaction conflict",
                    extra={"keys": [str(k) for k in conflicts]},
                )
                raise ConcurrencyConflictError(keys=[str(k) for k in conflicts])
            mutations = [m for m, _ in self._queued]
            store._validate(mutations)
            keys = store._apply(mutations)
        return Commit({pk.pending_id: key for (_, pk), key in zip(self._queued, keys)})

    def _rollback(self) -> None:
        self._done = True
        self._queued.clear()


class InMemoryStore:
    """In-memory implementation of StoreClient for testing.

    Attributes:
        latency: Simulated delay of every round trip, in seconds
        mutation_count: Number of individual writes applied so far

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> store = InMemoryStore()
        >>> await store.connect()
        >>> session = EntitySession(store, "test", "Task")
    """

    backend_name = "memory"

    def __init__(self, latency: float = 0.0) -> None:
        """Initialize in-memory store.

        Args:
            latency: Simulated per-round-trip delay in seconds
        """
        self.latency = latency
        self.mutation_count = 0
        self._records: Dict[Key, Dict[str, Any]] = {}
        self._last_write: Dict[Key, int] = {}
        self._seq = 0
        self._open: Counter[int] = Counter()
        self._next_id = 0
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self.clear()
        logger.debug("InMemoryStore closed")

    async def get(self, key: Key) -> Dict[str, Any]:
        result = (await self.get_multi([key]))[0]
        if result is None:
            raise NotFoundError(key=key)
        return result

    async def get_multi(self, keys: Sequence[Key]) -> List[Optional[Dict[str, Any]]]:
        await self._round_trip()
        async with self._lock:
            results = []
            for key in keys:
                record = self._records.get(key)
                results.append(copy.deepcopy(record) if record is not None else None)
        return results

    async def mutate(self, *mutations: Mutation) -> List[Key]:
        for mutation in mutations:
            self._check_key(mutation)
        await self._round_trip()
        async with self._lock:
            self._validate(mutations)
            keys = self._apply(mutations)
            self._prune_stamps()
            return keys

    async def run_in_transaction(self, fn: TransactionFn) -> Commit:
        await self._round_trip()
        async with self._lock:
            tx = InMemoryTransaction(self, self._seq)
            self._open[self._seq] += 1
        try:
            try:
                result = fn(tx)
                if inspect.isawaitable(result):
                    await result
                await self._round_trip()
            except BaseException:
                tx._rollback()
                raise
            return await tx._commit()
        finally:
            self._release(tx._start_seq)

    async def query_keys(self, query: Query) -> List[Key]:
        await self._round_trip()
        async with self._lock:
            return self._match(query)

    async def _round_trip(self) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected", backend=self.backend_name)
        if self.latency:
            await asyncio.sleep(self.latency)

    def _release(self, start_seq: int) -> None:
        self._open[start_seq] -= 1
        if self._open[start_seq] <= 0:
            del self._open[start_seq]
        self._prune_stamps()

    def _prune_stamps(self) -> None:
        """Forget write stamps no open or future transaction can conflict with."""
        horizon = min(self._open) if self._open else self._seq
        stale = [k for k, seq in self._last_write.items() if seq <= horizon]
        for key in stale:
            del self._last_write[key]

    @staticmethod
    def _check_key(mutation: Mutation) -> None:
        if not mutation.key.is_complete and mutation.op in (MutationOp.UPDATE, MutationOp.DELETE):
            raise DsEntError(f"{mutation.op.value} needs a complete key, got {mutation.key}")

    def _validate(self, mutations: Sequence[Mutation]) -> None:
        """Check existence rules, counting earlier writes of the same batch."""
        present: Dict[Key, bool] = {}
        for mutation in mutations:
            key = mutation.key
            if not key.is_complete:
                continue
            exists = present.get(key, key in self._records)
            if mutation.op is MutationOp.INSERT and exists:
                raise AlreadyExistsError(key=key)
            if mutation.op is MutationOp.UPDATE and not exists:
                raise NotFoundError(key=key)
            present[key] = mutation.op is not MutationOp.DELETE

    def _apply(self, mutations: Sequence[Mutation]) -> List[Key]:
        self._seq += 1
        keys = []
        for mutation in mutations:
            key = mutation.key if mutation.key.is_complete else self._allocate(mutation.key)
            if mutation.op is MutationOp.DELETE:
                self._records.pop(key, None)
            else:
                self._records[key] = copy.deepcopy(mutation.properties or {})
            self._last_write[key] = self._seq
            self.mutation_count += 1
            keys.append(key)
        return keys

    def _allocate(self, key: Key) -> Key:
        while True:
            self._next_id += 1
            candidate = key.completed(self._next_id)
            if candidate not in self._records:
                return candidate

    def _match(self, query: Query) -> List[Key]:
        matched = []
        for key, properties in self._records.items():
            if key.kind != query.kind or key.namespace != query.namespace:
                continue
            if query.ancestor is not None and query.ancestor not in list(key.ancestors()):
                continue
            if not all(self._matches(key, properties, p, v) for p, v in query.filters):
                continue
            matched.append(key)
            if query.limit is not None and len(matched) >= query.limit:
                break
        return matched

    @staticmethod
    def _matches(key: Key, properties: Dict[str, Any], prop: str, value: Any) -> bool:
        if prop == KEY_PROPERTY:
            return key == value
        return prop in properties and properties[prop] == value

    # Testing helpers

    def get_all(self, kind: Optional[str] = None) -> Dict[Key, Dict[str, Any]]:
        """Snapshot of all stored entities, optionally of one kind (testing helper)."""
        return {
            key: copy.deepcopy(properties)
            for key, properties in self._records.items()
            if kind is None or key.kind == kind
        }

    def entity_count(self) -> int:
        """Number of stored entities (testing helper)."""
        return len(self._records)

    def stamp_count(self) -> int:
        """Number of keys still tracked for conflict detection (testing helper)."""
        return len(self._last_write)

    def clear(self) -> None:
        """Drop all entities (testing helper)."""
        self._records.clear()
        self._last_write.clear()
        self.mutation_count = 0
