"""
Key codec for dsent.

A Key is an ordered path of (kind, identifier) levels. The identifier of a
level is a numeric surrogate (id), a caller-chosen name, or absent when the
store assigns one on insert. Every level carries its own namespace.

Invariants:
    - Keys are immutable and hashable
    - Only the leaf level may be incomplete; every ancestor has an id or a name
    - A namespace applied through set_namespace() covers the whole ancestor chain
    - Two keys are equivalent only if every level matches and both chains
      have the same depth

Example:
    >>> parent = Key.name_key("Account", "acme")
    >>> key = Key.id_key("Invoice", 7, parent=parent)
    >>> key = set_namespace(key, "prod")
    >>> key.parent.namespace
    'prod'
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Optional, Tuple

from .errors import DsEntError, KeyDerivationError

if TYPE_CHECKING:
    from .entity import Entity


@dataclass(frozen=True)
class Key:
    """Hierarchical entity key.

    Attributes:
        kind: Record kind of this level
        id: Numeric identifier (None if named or incomplete)
        name: String identifier (None if numeric or incomplete)
        parent: Ancestor key, or None at the root
        namespace: Namespace tag of this level
    """

    kind: str
    id: Optional[int] = None
    name: Optional[str] = None
    parent: Optional[Key] = None
    namespace: str = ""

    def __post_init__(self) -> None:
        if not self.kind:
            raise KeyDerivationError("key kind must not be empty")
        if self.id is not None and self.name is not None:
            raise KeyDerivationError(
                f"key of kind {self.kind!r} has both id and name", kind=self.kind
            )
        if self.id is not None and self.id <= 0:
            raise KeyDerivationError(
                f"key id must be positive, got {self.id}", kind=self.kind
            )
        if self.name == "":
            raise KeyDerivationError("key name must not be empty", kind=self.kind)
        if self.parent is not None and not self.parent.is_complete:
            raise KeyDerivationError(
                f"parent {self.parent.kind!r} of key of kind {self.kind!r} is incomplete",
                kind=self.kind,
            )

    @classmethod
    def id_key(cls, kind: str, id: int, parent: Optional[Key] = None) -> Key:
        """Key with a numeric identifier."""
        return cls(kind=kind, id=id, parent=parent)

    @classmethod
    def name_key(cls, kind: str, name: str, parent: Optional[Key] = None) -> Key:
        """Key with a string identifier."""
        return cls(kind=kind, name=name, parent=parent)

    @classmethod
    def incomplete(cls, kind: str, parent: Optional[Key] = None) -> Key:
        """Key whose identifier is assigned by the store."""
        return cls(kind=kind, parent=parent)

    @property
    def is_complete(self) -> bool:
        """Whether this level has an id or a name."""
        return self.id is not None or self.name is not None

    @property
    def id_or_name(self) -> Optional[int | str]:
        return self.id if self.id is not None else self.name

    @property
    def depth(self) -> int:
        """Number of levels including this one."""
        return sum(1 for _ in self.ancestors())

    def ancestors(self) -> Iterator[Key]:
        """Walk from this key up to the root, starting with self."""
        node: Optional[Key] = self
        while node is not None:
            yield node
            node = node.parent

    @property
    def flat_path(self) -> Tuple[Any, ...]:
        """Root-first (kind, id_or_name, ...) path; an incomplete leaf ends with its kind."""
        path: list[Any] = []
        for level in reversed(list(self.ancestors())):
            path.append(level.kind)
            if level.is_complete:
                path.append(level.id_or_name)
        return tuple(path)

    def completed(self, id: int) -> Key:
        """Copy of an incomplete key with the store-assigned id filled in."""
        if self.is_complete:
            raise DsEntError(f"key {self} is already complete")
        return dataclasses.replace(self, id=id)

    def __str__(self) -> str:
        parts = []
        for level in reversed(list(self.ancestors())):
            ident = level.id_or_name
            parts.append(f"{level.kind},{ident!r}" if ident is not None else f"{level.kind},<incomplete>")
        prefix = f"[{self.namespace}]" if self.namespace else ""
        return prefix + "/" + "/".join(parts)


def set_namespace(key: Key, namespace: str) -> Key:
    """Return the key with namespace set on it and all of its parents."""
    parent = set_namespace(key.parent, namespace) if key.parent is not None else None
    return dataclasses.replace(key, namespace=namespace, parent=parent)


def derive_key(entity: Entity, namespace: str) -> Key:
    """Build the key of an entity in a namespace.

    Args:
        entity: Entity to derive the key from
        namespace: Namespace stamped across the key chain

    Returns:
        Key with the namespace applied uniformly

    Raises:
        KeyDerivationError: If the entity's identity is incomplete or invalid
    """
    try:
        key = entity.build_key(namespace)
    except KeyDerivationError:
        raise
    except Exception as e:
        raise KeyDerivationError(
            f"{type(entity).__name__}.build_key failed: {e}"
        ) from e
    if not isinstance(key, Key):
        raise KeyDerivationError(
            f"{type(entity).__name__}.build_key returned {type(key).__name__}, expected Key"
        )
    return set_namespace(key, namespace)


def keys_equivalent(a: Key, b: Key) -> bool:
    """Compare two keys level by level, including their ancestor chains."""
    left: Optional[Key] = a
    right: Optional[Key] = b
    while True:
        if left.namespace != right.namespace:
            return False
        elif left.kind != right.kind:
            return False
        elif left.id != right.id:
            return False
        elif left.name != right.name:
            return False
        left, right = left.parent, right.parent
        if left is None:
            return right is None
        elif right is None:
            return False
