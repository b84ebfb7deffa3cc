"""
dsent Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no external dependencies)
- integration/: Transaction, concurrency and deadline behaviour
- e2e/: Tests against the Datastore emulator
"""
