"""
Read-modify-write update protocol.

The protocol runs inside one transaction and moves through explicit steps:

    READ ──▶ UPDATE ──▶ CHECK_KEY ──▶ MUTATE ──▶ DONE
      │        ▲  │
      ▼        │  └──(UpdateAborted)──────────▶ DONE
    CREATE ────┘

- READ: load the stored value; a missing entity goes to CREATE when a
  create function was given, otherwise NotFoundError propagates.
- CREATE: build the initial value; its key must stay equivalent to the
  original key. The entity is marked for INSERT.
- UPDATE: apply the update function. UpdateAborted ends the protocol
  without a write and without an error.
- CHECK_KEY: the updated value must still derive an equivalent key.
- MUTATE: queue INSERT (created) or UPDATE (existing) in the transaction.

Invariants:
    - At most one mutation is queued per run
    - No mutation is queued unless both key checks passed
    - Errors from callbacks propagate unchanged
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar, Union

from .entity import Entity
from .errors import KeyChangedError, NotFoundError, UpdateAborted
from .keys import Key, derive_key, keys_equivalent
from .store.base import Mutation, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Entity)

EntityFn = Callable[[T], Union[T, None, Awaitable[Optional[T]]]]


class UpdateStep(Enum):
    """States of the update protocol."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    CHECK_KEY = "check_key"
    MUTATE = "mutate"
    DONE = "done"


async def invoke(fn: EntityFn[T], obj: T) -> T:
    """Call a sync or async entity callback.

    A callback returning None is taken to have modified obj in place.
    """
    result = fn(obj)
    if inspect.isawaitable(result):
        result = await result
    return obj if result is None else result


class UpdateProtocol(Generic[T]):
    """One run of the update protocol against an open transaction.

    Attributes:
        key: Key derived from the entity before any callback ran
        obj: Current value
        created: Whether the entity will be inserted rather than updated
        aborted: Whether the update function declined to write
        step: Current state
    """

    def __init__(
        self,
        tx: Transaction,
        namespace: str,
        obj: T,
        update_fn: EntityFn[T],
        create_fn: Optional[EntityFn[T]] = None,
    ) -> None:
        self._tx = tx
        self._namespace = namespace
        self._update_fn = update_fn
        self._create_fn = create_fn
        self.obj = obj
        self.key: Optional[Key] = None
        self.created = False
        self.aborted = False
        self.step = UpdateStep.READ
        self._handlers: Dict[UpdateStep, Callable[[], Awaitable[UpdateStep]]] = {
            UpdateStep.READ: self._read,
            UpdateStep.CREATE: self._create,
            UpdateStep.UPDATE: self._update,
            UpdateStep.CHECK_KEY: self._check_key,
            UpdateStep.MUTATE: self._mutate,
        }

    async def run(self) -> T:
        """Drive the protocol to DONE and return the final value."""
        self.key = derive_key(self.obj, self._namespace)
        while self.step is not UpdateStep.DONE:
            self.step = await self._handlers[self.step]()
        return self.obj

    async def _read(self) -> UpdateStep:
        try:
            properties = await self._tx.get(self.key)
        except NotFoundError:
            if self._create_fn is None:
                raise
            return UpdateStep.CREATE
        self.obj.load(properties)
        return UpdateStep.UPDATE

    async def _create(self) -> UpdateStep:
        self.obj = await invoke(self._create_fn, self.obj)
        self._require_same_key()
        self.created = True
        return UpdateStep.UPDATE

    async def _update(self) -> UpdateStep:
        try:
            self.obj = await invoke(self._update_fn, self.obj)
        except UpdateAborted:
            self.aborted = True
            logger.debug("Update aborted by callback", extra={"key": str(self.key)})
            return UpdateStep.DONE
        return UpdateStep.CHECK_KEY

    async def _check_key(self) -> UpdateStep:
        self._require_same_key()
        return UpdateStep.MUTATE

    async def _mutate(self) -> UpdateStep:
        properties = self.obj.save()
        if self.created:
            mutation = Mutation.insert(self.key, properties)
        else:
            mutation = Mutation.update(self.key, properties)
        await self._tx.mutate(mutation)
        logger.debug(
            "Update queued",
            extra={"key": str(self.key), "op": mutation.op.value},
        )
        return UpdateStep.DONE

    def _require_same_key(self) -> None:
        new_key = derive_key(self.obj, self._namespace)
        if not keys_equivalent(self.key, new_key):
            raise KeyChangedError(self.key, new_key)
