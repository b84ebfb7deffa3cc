"""
Unit tests for the read-modify-write update protocol.

Tests cover:
- Step sequence for existing and missing entities
- Key change detection after create and update callbacks
- Aborting an update
- Sync, async and in-place callbacks
"""

import dataclasses

import pytest

from dsent.errors import KeyChangedError, NotFoundError, UpdateAborted
from dsent.keys import Key
from dsent.store.base import Mutation
from dsent.update import UpdateProtocol, UpdateStep, invoke
from tests.models import LineItem, StrictSample

NS = "test"


def sample_key(id):
    return Key("Test", id=id, namespace=NS)


async def run(store, obj, update_fn, create_fn=None):
    """Run the protocol in one transaction and return it."""
    protocols = []

    async def body(tx):
        protocol = UpdateProtocol(tx, NS, obj, update_fn, create_fn)
        protocols.append(protocol)
        await protocol.run()

    await store.run_in_transaction(body)
    return protocols[0]


def add_one(obj):
    return dataclasses.replace(obj, data=obj.data + 1)


class TestInvoke:
    """Tests for invoke()."""

    @pytest.mark.asyncio
    async def test_sync_callback(self):
        """Sync callbacks return the new value."""
        result = await invoke(add_one, StrictSample(id=1, data=1))

        assert result.data == 2

    @pytest.mark.asyncio
    async def test_async_callback(self):
        """Async callbacks are awaited."""

        async def bump(obj):
            return dataclasses.replace(obj, data=10)

        result = await invoke(bump, StrictSample(id=1))

        assert result.data == 10

    @pytest.mark.asyncio
    async def test_none_means_in_place(self):
        """A callback returning None modified the entity in place."""
        obj = StrictSample(id=1)

        def bump(o):
            o.data = 5

        assert await invoke(bump, obj) is obj
        assert obj.data == 5


class TestUpdateExisting:
    """Update of an entity that exists."""

    @pytest.mark.asyncio
    async def test_reads_updates_and_writes(self, store):
        """Stored value is loaded, updated and written back."""
        await store.mutate(Mutation.insert(sample_key(1), {"id": 1, "data": 1}))

        protocol = await run(store, StrictSample(id=1), add_one)

        assert protocol.step is UpdateStep.DONE
        assert not protocol.created
        assert protocol.obj.data == 2
        assert (await store.get(sample_key(1)))["data"] == 2

    @pytest.mark.asyncio
    async def test_create_fn_not_called(self, store):
        """create_fn only runs for missing entities."""
        await store.mutate(Mutation.insert(sample_key(1), {"id": 1, "data": 1}))
        calls = []

        await run(store, StrictSample(id=1), add_one, lambda o: calls.append(o))

        assert calls == []

    @pytest.mark.asyncio
    async def test_abort_writes_nothing(self, store):
        """UpdateAborted ends the protocol without a write or an error."""
        await store.mutate(Mutation.insert(sample_key(1), {"id": 1, "data": 1}))
        writes = store.mutation_count

        def decline(obj):
            raise UpdateAborted()

        protocol = await run(store, StrictSample(id=1), decline)

        assert protocol.aborted
        assert protocol.obj.data == 1
        assert store.mutation_count == writes

    @pytest.mark.asyncio
    async def test_changed_key_raises(self, store):
        """An update that changes identity fields is rejected."""
        await store.mutate(Mutation.insert(sample_key(1), {"id": 1, "data": 1}))

        with pytest.raises(KeyChangedError) as exc_info:
            await run(store, StrictSample(id=1), lambda o: dataclasses.replace(o, id=2))

        assert exc_info.value.original == sample_key(1)
        assert exc_info.value.changed == sample_key(2)
        assert store.entity_count() == 1

    @pytest.mark.asyncio
    async def test_changed_parent_raises(self, store):
        """Moving an entity to another ancestor is a key change."""
        parent = Key("Invoice", name="inv-1", namespace=NS)
        await store.mutate(
            Mutation.insert(Key("LineItem", id=1, parent=parent, namespace=NS), {"amount": 5})
        )

        with pytest.raises(KeyChangedError):
            await run(
                store,
                LineItem(invoice="inv-1", line=1),
                lambda o: dataclasses.replace(o, invoice="inv-2"),
            )

    @pytest.mark.asyncio
    async def test_callback_error_propagates(self, store):
        """Errors from the update function propagate unchanged."""
        await store.mutate(Mutation.insert(sample_key(1), {"id": 1, "data": 1}))

        def fail(obj):
            raise ValueError("bad update")

        with pytest.raises(ValueError, match="bad update"):
            await run(store, StrictSample(id=1), fail)


class TestUpdateMissing:
    """Update of an entity that does not exist."""

    @pytest.mark.asyncio
    async def test_without_create_fn_raises(self, store):
        """Missing entity without create_fn is NotFoundError."""
        with pytest.raises(NotFoundError):
            await run(store, StrictSample(id=1), add_one)

        assert store.entity_count() == 0

    @pytest.mark.asyncio
    async def test_create_then_update(self, store):
        """create_fn builds the value, update_fn then applies on top."""

        def init(obj):
            return dataclasses.replace(obj, data=100)

        protocol = await run(store, StrictSample(id=1), add_one, init)

        assert protocol.created
        assert (await store.get(sample_key(1)))["data"] == 101

    @pytest.mark.asyncio
    async def test_create_changing_key_raises(self, store):
        """create_fn must keep the identity."""
        with pytest.raises(KeyChangedError):
            await run(
                store,
                StrictSample(id=1),
                add_one,
                lambda o: dataclasses.replace(o, id=9),
            )

        assert store.entity_count() == 0

    @pytest.mark.asyncio
    async def test_abort_after_create_writes_nothing(self, store):
        """Aborting after create leaves the entity missing."""

        def decline(obj):
            raise UpdateAborted()

        protocol = await run(store, StrictSample(id=1), decline, lambda o: None)

        assert protocol.created
        assert protocol.aborted
        assert store.entity_count() == 0

    @pytest.mark.asyncio
    async def test_async_create_and_update(self, store):
        """Async callbacks work in every step."""

        async def init(obj):
            obj.data = 1

        async def double(obj):
            return dataclasses.replace(obj, data=obj.data * 2)

        await run(store, StrictSample(id=1), double, init)

        assert (await store.get(sample_key(1)))["data"] == 2
