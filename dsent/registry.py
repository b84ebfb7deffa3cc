"""
Kind registry for dsent.

A process-wide set of record kind names. Registering the same kind twice
is a programming error (two record types would share storage) and fails
loudly.

Example:
    >>> from dsent import register_kind
    >>> register_kind("Invoice")
    >>> register_kind("Invoice")
    Traceback (most recent call last):
    ...
    DuplicateKindError: kind already registered: Invoice
"""

from __future__ import annotations

import threading
from collections.abc import Iterator

# Global registry
_global_registry: KindRegistry | None = None
_registry_lock = threading.Lock()


class DuplicateKindError(Exception):
    """Kind with this name is already registered."""

    pass


class KindRegistry:
    """Lock-guarded set of registered kind names."""

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._kinds: set[str] = set()
        self._lock = threading.Lock()

    def register_kind(self, name: str) -> None:
        """Register a kind name.

        Raises:
            ValueError: If name is empty
            DuplicateKindError: If name is already registered
        """
        if not name:
            raise ValueError("kind name must not be empty")
        with self._lock:
            if name in self._kinds:
                raise DuplicateKindError(f"kind already registered: {name}")
            self._kinds.add(name)

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._kinds

    def kinds(self) -> Iterator[str]:
        """Iterate over registered kinds in sorted order."""
        with self._lock:
            snapshot = sorted(self._kinds)
        yield from snapshot


def get_registry() -> KindRegistry:
    """Get the global kind registry."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = KindRegistry()
        return _global_registry


def register_kind(name: str) -> None:
    """Register a kind in the global registry."""
    get_registry().register_kind(name)


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
