"""
Error types for dsent.

This module defines all exception types raised by the entity layer:
- DsEntError: Base exception
- KeyDerivationError: Entity cannot produce a valid key
- NotFoundError: No entity at the derived key
- AlreadyExistsError: Insert hit an existing key
- KeyChangedError: A callback moved the entity to another key
- ConcurrencyConflictError: Transaction lost to a concurrent commit
- DeadlineExceededError: Operation ran past its deadline
- FieldMismatchError: Stored properties do not fit the record type
- MultiError: Per-entity errors of a batch operation

UpdateAborted is not an error: an update function raises it to end the
update protocol without writing anything.

Invariants:
    - All errors inherit from DsEntError
    - Store errors pass through unchanged
    - Nothing is retried here; ConcurrencyConflictError is for the caller
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .keys import Key


class DsEntError(Exception):
    """Base exception for all dsent errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DSENT_ERROR"
        self.details = details or {}


class KeyDerivationError(DsEntError):
    """Entity cannot build its key.

    Raised when:
    - Identity fields are missing or malformed
    - build_key() fails for any other reason
    """

    def __init__(self, message: str, kind: Optional[str] = None) -> None:
        super().__init__(message, code="KEY_DERIVATION_ERROR", details={"kind": kind})
        self.kind = kind


class NotFoundError(DsEntError):
    """No entity exists at the key."""

    def __init__(self, message: str = "no such entity", key: Optional[Key] = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"key": str(key) if key else None})
        self.key = key


class AlreadyExistsError(DsEntError):
    """Insert targeted a key that is already taken."""

    def __init__(self, message: str = "entity already exists", key: Optional[Key] = None) -> None:
        super().__init__(
            message, code="ALREADY_EXISTS", details={"key": str(key) if key else None}
        )
        self.key = key


class KeyChangedError(DsEntError):
    """Key of an entity changed during a transaction.

    A create or update callback altered the identity fields, which would
    silently move the record. Never corrected automatically.
    """

    def __init__(self, original: Key, changed: Key) -> None:
        super().__init__(
            "key changed during transaction",
            code="KEY_CHANGED",
            details={"original": str(original), "changed": str(changed)},
        )
        self.original = original
        self.changed = changed


class ConcurrencyConflictError(DsEntError):
    """Transaction failed to commit because of a concurrent transaction.

    Safe to retry the whole operation.
    """

    def __init__(self, message: str = "concurrent transaction", keys: Optional[List[str]] = None) -> None:
        super().__init__(message, code="CONCURRENT_TRANSACTION", details={"keys": keys or []})
        self.keys = keys or []


class DeadlineExceededError(DsEntError, TimeoutError):
    """Operation did not finish before its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"{operation} exceeded deadline of {timeout:g}s",
            code="DEADLINE_EXCEEDED",
            details={"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class FieldMismatchError(DsEntError):
    """Stored properties are not declared by the record type.

    The entity is still populated with every property it does declare.
    """

    def __init__(self, type_name: str, fields: Sequence[str]) -> None:
        super().__init__(
            f"cannot load field(s) {', '.join(sorted(fields))} into {type_name}",
            code="FIELD_MISMATCH",
            details={"type_name": type_name, "fields": sorted(fields)},
        )
        self.type_name = type_name
        self.fields = sorted(fields)


class MultiError(DsEntError):
    """Per-entity errors of a batch call.

    ``errors[i]`` is the error of the i-th input, or None when it succeeded.
    """

    def __init__(self, errors: Sequence[Optional[BaseException]]) -> None:
        self.errors: List[Optional[BaseException]] = list(errors)
        failed = [e for e in self.errors if e is not None]
        if not failed:
            message = "no errors"
        elif len(failed) == 1:
            message = str(failed[0])
        else:
            message = f"{failed[0]} (and {len(failed) - 1} other errors)"
        super().__init__(message, code="MULTI_ERROR", details={"failed": len(failed)})

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self) -> Iterator[Optional[BaseException]]:
        return iter(self.errors)

    def __getitem__(self, index: int) -> Optional[BaseException]:
        return self.errors[index]

    def first(self) -> Optional[BaseException]:
        """First non-None error."""
        for err in self.errors:
            if err is not None:
                return err
        return None


class StoreError(DsEntError):
    """Backend failure not covered by a more specific error."""

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(message, code="STORE_ERROR", details={"backend": backend})
        self.backend = backend


class StoreConnectionError(StoreError):
    """Failed to reach the store backend."""

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(message, backend=backend)
        self.code = "STORE_CONNECTION_ERROR"


class UpdateAborted(Exception):
    """Raised by an update function to skip the write.

    The update protocol returns the entity unchanged and reports no error.
    """

    pass
