"""
Record types shared by the test suites.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from dsent.entity import Entity
from dsent.errors import FieldMismatchError, KeyDerivationError
from dsent.keys import Key

KIND = "Test"


@dataclass
class Sample(Entity):
    """Numeric-id entity with a derived field and a key hook."""

    id: int = 0
    data: int = 0
    delegated_data: int = 0
    real_data: int = 0
    loaded_key: int = 0

    __dsent_exclude__ = frozenset({"real_data", "loaded_key"})

    def build_key(self, namespace: str) -> Key:
        return Key.id_key(KIND, self.id)

    def load_key(self, key: Key) -> None:
        self.loaded_key = key.id

    def save(self) -> Dict[str, Any]:
        self.delegated_data = self.real_data
        return super().save()

    def load(self, properties: Dict[str, Any]) -> None:
        try:
            super().load(properties)
        except FieldMismatchError:
            pass
        self.real_data = self.delegated_data


@dataclass
class StrictSample(Entity):
    """Same kind as Sample, but only declares id and data."""

    id: int = 0
    data: int = 0

    def build_key(self, namespace: str) -> Key:
        return Key.id_key(KIND, self.id)


@dataclass
class LenientSample(Entity):
    """Same kind as Sample; drops properties it does not declare."""

    id: int = 0
    data: int = 0

    def build_key(self, namespace: str) -> Key:
        return Key.id_key(KIND, self.id)

    def load(self, properties: Dict[str, Any]) -> None:
        try:
            super().load(properties)
        except FieldMismatchError:
            pass


@dataclass
class Note(Entity):
    """Entity whose id is assigned by the store."""

    id: Optional[int] = None
    text: str = ""

    __dsent_exclude__ = frozenset({"id"})

    def build_key(self, namespace: str) -> Key:
        return Key("Note", id=self.id)

    def load_key(self, key: Key) -> None:
        self.id = key.id


@dataclass
class LineItem(Entity):
    """Child entity keyed under its invoice."""

    invoice: str = ""
    line: int = 0
    amount: int = 0

    def build_key(self, namespace: str) -> Key:
        if not self.invoice:
            raise KeyDerivationError("line item needs an invoice", kind="LineItem")
        return Key.id_key("LineItem", self.line, parent=Key.name_key("Invoice", self.invoice))


@dataclass
class BrokenHook(Entity):
    """Entity whose key hook always fails."""

    id: int = 0

    def build_key(self, namespace: str) -> Key:
        return Key.id_key("Broken", self.id)

    def load_key(self, key: Key) -> None:
        raise ValueError(f"cannot resolve {key.id}")
