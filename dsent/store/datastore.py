"""
Google Cloud Datastore store implementation.

This module adapts the google-cloud-datastore client to the StoreClient
protocol. It works with:
- Cloud Datastore / Firestore in Datastore mode
- The Datastore emulator (set DATASTORE_EMULATOR_HOST)

The client library is synchronous; every call runs in a worker thread so
the event loop is never blocked.

Invariants:
    - INSERT and UPDATE existence checks run inside a Datastore transaction
    - Non-transactional mutate() is a single-shot transaction
    - Aborted/Conflict from Datastore surface as ConcurrencyConflictError
    - The client library never retries a transaction on our behalf

How to change safely:
    - Test against the emulator before deploying
    - Keep google.api_core exception translation in _translate()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from google.api_core import exceptions as gexc
from google.auth.credentials import AnonymousCredentials
from google.cloud import datastore
from google.cloud.datastore.query import PropertyFilter

from ..config import DatastoreConfig
from ..errors import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    DsEntError,
    NotFoundError,
    StoreConnectionError,
    StoreError,
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


class DatastoreTransaction:
    """Transaction handle of DatastoreStore.

    Writes are buffered by the Datastore transaction itself and overlaid on
    reads, so the transaction sees its own queued writes. Existence checks
    for INSERT and UPDATE are transactional lookups, so a concurrent writer
    to the same key makes the commit fail.
    """

    def __init__(self, store: DatastoreStore, txn: datastore.Transaction) -> None:
        self._store = store
        self._txn = txn
        self._present: Dict[datastore.Key, bool] = {}
        self._written: List[Tuple[PendingKey, datastore.Entity | datastore.Key]] = []

    async def get(self, key: Key) -> Dict[str, Any]:
        result = (await self.get_multi([key]))[0]
        if result is None:
            raise NotFoundError(key=key)
        return result

    async def get_multi(self, keys: Sequence[Key]) -> List[Optional[Dict[str, Any]]]:
        results = await self._store._get_multi(keys, transaction=self._txn)
        for i, key in enumerate(keys):
            touched, properties = self._queued_state(self._store._to_ds_key(key))
            if touched:
                results[i] = properties
        return results

    async def mutate(self, *mutations: Mutation) -> List[PendingKey]:
        ds_keys = [self._store._to_ds_key(m.key) for m in mutations]
        await self._load_presence(
            k
            for m, k in zip(mutations, ds_keys)
            if m.op in (MutationOp.INSERT, MutationOp.UPDATE) and not k.is_partial
        )

        # Validate the whole call before queuing any of it.
        present = dict(self._present)
        for mutation, ds_key in zip(mutations, ds_keys):
            if ds_key.is_partial:
                if mutation.op is MutationOp.DELETE:
                    raise DsEntError(f"delete needs a complete key, got {mutation.key}")
                continue
            if mutation.op is MutationOp.INSERT and present[ds_key]:
                raise AlreadyExistsError(key=mutation.key)
            if mutation.op is MutationOp.UPDATE and not present[ds_key]:
                raise NotFoundError(key=mutation.key)
            present[ds_key] = mutation.op is not MutationOp.DELETE

        pending = []
        for mutation, ds_key in zip(mutations, ds_keys):
            pk = PendingKey(mutation.key)
            if mutation.op is MutationOp.DELETE:
                self._txn.delete(ds_key)
                self._written.append((pk, ds_key))
            else:
                entity = datastore.Entity(key=ds_key)
                entity.update(mutation.properties or {})
                self._txn.put(entity)
                self._written.append((pk, entity))
            pending.append(pk)
        self._present = present
        return pending

    async def query_keys(self, query: Query) -> List[Key]:
        key_filters = query.key_filters
        if len(key_filters) != len(query.filters) or query.ancestor is not None or not key_filters:
            raise StoreError(
                "only __key__ equality queries are supported inside a transaction",
                backend=self._store.backend_name,
            )
        if len(set(key_filters)) > 1:
            return []
        key = key_filters[0]
        if key.kind != query.kind or key.namespace != query.namespace or query.limit == 0:
            return []
        found = await self.get_multi([key])
        return [key] if found[0] is not None else []

    async def _load_presence(self, ds_keys: Iterable[datastore.Key]) -> None:
        """Look up, in one call, whether keys not yet seen by this transaction exist."""
        unknown = list(dict.fromkeys(k for k in ds_keys if k not in self._present))
        if not unknown:
            return
        entities = await self._store._call(
            self._store.client.get_multi, unknown, transaction=self._txn
        )
        found = {e.key for e in entities}
        for ds_key in unknown:
            self._present[ds_key] = ds_key in found

    def _queued_state(
        self, ds_key: datastore.Key
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Latest queued write to ds_key, as (touched, properties or None if deleted)."""
        for _, written in reversed(self._written):
            if isinstance(written, datastore.Entity):
                if not written.key.is_partial and written.key == ds_key:
                    return True, dict(written)
            elif written == ds_key:
                return True, None
        return False, None

    def _resolve(self) -> Commit:
        resolved = {}
        for pk, written in self._written:
            ds_key = written.key if isinstance(written, datastore.Entity) else written
            resolved[pk.pending_id] = self._store._from_ds_key(ds_key)
        return Commit(resolved)


class DatastoreStore:
    """Cloud Datastore implementation of StoreClient protocol.

    Attributes:
        config: Datastore configuration
        client: google.cloud.datastore.Client (after connect())

    Example:
        >>> config = DatastoreConfig(project_id="my-project", emulator_host="localhost:8081")
        >>> store = DatastoreStore(config)
        >>> await store.connect()
    """

    backend_name = "datastore"

    def __init__(self, config: DatastoreConfig) -> None:
        """Initialize Datastore store.

        Args:
            config: DatastoreConfig instance with connection settings
        """
        self.config = config
        self._client: datastore.Client | None = None

    @property
    def is_connected(self) -> bool:
        """Whether a client has been created."""
        return self._client is not None

    @property
    def client(self) -> datastore.Client:
        if self._client is None:
            raise StoreConnectionError("Not connected to Datastore", backend=self.backend_name)
        return self._client

    async def connect(self) -> None:
        """Create the Datastore client.

        Raises:
            StoreConnectionError: If the client cannot be created
        """
        if self._client is not None:
            return

        try:
            self._client = await asyncio.to_thread(self._build_client)
        except (gexc.GoogleAPICallError, OSError, ValueError) as e:
            raise StoreConnectionError(
                f"Failed to connect to Datastore: {e}", backend=self.backend_name
            ) from e

        logger.info(
            "Connected to Datastore",
            extra={
                "project": self.config.project_id,
                "emulator": self.config.emulator_host,
                "database": self.config.database or "(default)",
            },
        )

    def _build_client(self) -> datastore.Client:
        kwargs: Dict[str, Any] = {"project": self.config.project_id}
        if self.config.database:
            kwargs["database"] = self.config.database

        if self.config.emulator_host:
            # The client library only reads the emulator address from the environment.
            os.environ.setdefault("DATASTORE_EMULATOR_HOST", self.config.emulator_host)
            return datastore.Client(credentials=AnonymousCredentials(), **kwargs)
        if self.config.credentials_file:
            return datastore.Client.from_service_account_json(self.config.credentials_file, **kwargs)
        return datastore.Client(**kwargs)

    async def close(self) -> None:
        """Close the underlying transport."""
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
            except Exception as e:
                logger.warning(f"Error closing Datastore client: {e}")
            self._client = None
        logger.info("Datastore connection closed")

    async def get(self, key: Key) -> Dict[str, Any]:
        entity = await self._call(self.client.get, self._to_ds_key(key))
        if entity is None:
            raise NotFoundError(key=key)
        return dict(entity)

    async def get_multi(self, keys: Sequence[Key]) -> List[Optional[Dict[str, Any]]]:
        return await self._get_multi(keys)

    async def mutate(self, *mutations: Mutation) -> List[Key]:
        pending: List[PendingKey] = []

        async def apply(tx: DatastoreTransaction) -> None:
            pending.extend(await tx.mutate(*mutations))

        commit = await self.run_in_transaction(apply)
        return [commit.key(pk) for pk in pending]

    async def run_in_transaction(self, fn: TransactionFn) -> Commit:
        txn = self.client.transaction()
        await self._call(txn.begin)
        tx = DatastoreTransaction(self, txn)

        try:
            result = fn(tx)
            if inspect.isawaitable(result):
                await result
        except BaseException:
            await self._rollback(txn)
            raise

        # A failed commit finishes the transaction; there is nothing to roll back.
        await self._call(txn.commit)
        return tx._resolve()

    async def query_keys(self, query: Query) -> List[Key]:
        q = self.client.query(kind=query.kind, namespace=query.namespace or None)
        q.keys_only()
        for prop, value in query.filters:
            if prop == KEY_PROPERTY:
                q.key_filter(self._to_ds_key(value), "=")
            else:
                q.add_filter(filter=PropertyFilter(prop, "=", value))
        if query.ancestor is not None:
            q.ancestor = self._to_ds_key(query.ancestor)

        entities = await self._call(lambda: list(q.fetch(limit=query.limit)))
        return [self._from_ds_key(e.key) for e in entities]

    async def _get_multi(
        self,
        keys: Sequence[Key],
        transaction: datastore.Transaction | None = None,
    ) -> List[Optional[Dict[str, Any]]]:
        ds_keys = [self._to_ds_key(k) for k in keys]
        entities = await self._call(self.client.get_multi, ds_keys, transaction=transaction)
        found = {e.key: dict(e) for e in entities}
        return [found.get(k) for k in ds_keys]

    async def _rollback(self, txn: datastore.Transaction) -> None:
        try:
            await asyncio.to_thread(txn.rollback)
        except (gexc.GoogleAPICallError, ValueError) as e:
            logger.warning(f"Datastore rollback failed: {e}")

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except gexc.GoogleAPICallError as e:
            raise self._translate(e) from e

    def _translate(self, e: gexc.GoogleAPICallError) -> DsEntError:
        if isinstance(e, (gexc.Aborted, gexc.Conflict)):
            return ConcurrencyConflictError(f"Datastore transaction aborted: {e.message}")
        if isinstance(e, gexc.AlreadyExists):
            return AlreadyExistsError(e.message)
        if isinstance(e, gexc.NotFound):
            return NotFoundError(e.message)
        if isinstance(e, (gexc.ServiceUnavailable, gexc.Unauthenticated, gexc.PermissionDenied)):
            return StoreConnectionError(f"Datastore unavailable: {e.message}", backend=self.backend_name)
        return StoreError(f"Datastore call failed: {e}", backend=self.backend_name)

    def _to_ds_key(self, key: Key) -> datastore.Key:
        return self.client.key(*key.flat_path, namespace=key.namespace or None)

    @staticmethod
    def _from_ds_key(ds_key: datastore.Key) -> Key:
        namespace = ds_key.namespace or ""
        path = ds_key.flat_path
        key: Optional[Key] = None
        for i in range(0, len(path), 2):
            kind = path[i]
            ident = path[i + 1] if i + 1 < len(path) else None
            key = Key(
                kind=kind,
                id=ident if isinstance(ident, int) else None,
                name=ident if isinstance(ident, str) else None,
                parent=key,
                namespace=namespace,
            )
        if key is None:
            raise DsEntError(f"empty Datastore key path: {ds_key}")
        return key
