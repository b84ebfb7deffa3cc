"""
Record-type contract for dsent.

Record types are plain dataclasses that inherit from Entity and implement
build_key(). Persisted properties come from the dataclass fields.

Key resolution:
    Entity.load_key is None by default. A record type that wants the key
    finally assigned by the store (for example a generated numeric id)
    defines a ``load_key(self, key)`` method, and the session calls it after
    the key is known. Types that leave it as None are never called back.

Example:
    >>> @dataclass
    ... class Invoice(Entity):
    ...     id: int = 0
    ...     total: int = 0
    ...
    ...     def build_key(self, namespace):
    ...         return Key.id_key("Invoice", self.id)
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Optional

from .errors import FieldMismatchError
from .keys import Key


class Entity(ABC):
    """Base class for persisted record types.

    Class attributes:
        load_key: Optional hook receiving the store-assigned key
        __dsent_exclude__: Dataclass fields that are never persisted
    """

    load_key: ClassVar[Optional[Callable[[Any, Key], None]]] = None
    __dsent_exclude__: ClassVar[FrozenSet[str]] = frozenset()

    @abstractmethod
    def build_key(self, namespace: str) -> Key:
        """Derive the key of this entity from its identity fields."""
        ...

    def save(self) -> Dict[str, Any]:
        """Properties to persist."""
        return {
            f.name: getattr(self, f.name)
            for f in self._persisted_fields()
        }

    def load(self, properties: Dict[str, Any]) -> None:
        """Populate the entity from stored properties.

        Declared fields are always set. Unknown properties raise
        FieldMismatchError after loading; override to drop them instead.
        """
        known = {f.name for f in self._persisted_fields()}
        for name, value in properties.items():
            if name in known:
                setattr(self, name, value)
        unknown = set(properties) - known
        if unknown:
            raise FieldMismatchError(type(self).__name__, unknown)

    @classmethod
    def _persisted_fields(cls) -> tuple:
        if not dataclasses.is_dataclass(cls):
            raise TypeError(f"{cls.__name__} must be a dataclass to use the default save/load")
        return tuple(
            f for f in dataclasses.fields(cls) if f.name not in cls.__dsent_exclude__
        )
