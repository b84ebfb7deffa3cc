"""
E2E tests for EntitySession on the Datastore emulator.

Tests cover:
- Create, get, put, update and delete round trips
- Store-assigned ids
- Transaction conflicts
- Field mismatch on real entities
"""

import asyncio

import pytest

from dsent.errors import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    FieldMismatchError,
    MultiError,
    NotFoundError,
)
from dsent.session import EntitySession
from tests.models import KIND, LineItem, Note, Sample, StrictSample

pytestmark = pytest.mark.e2e


@pytest.fixture
def samples(datastore_store, test_namespace):
    return EntitySession[Sample](datastore_store, test_namespace, KIND)


def increment(obj):
    obj.data += 1
    return obj


class TestRoundTrip:
    """Basic operations against the emulator."""

    @pytest.mark.asyncio
    async def test_create_get_delete(self, samples):
        """Entities survive a round trip and can be deleted."""
        result = await samples.batch_create(
            [Sample(id=i, data=i, real_data=i) for i in range(1, 4)]
        )
        assert [o.loaded_key for o in result.entities] == [1, 2, 3]

        objs = await samples.batch_get([Sample(id=i) for i in range(1, 4)])
        assert [o.real_data for o in objs] == [1, 2, 3]

        await samples.delete(Sample(id=2))
        await samples.delete(Sample(id=2))

        with pytest.raises(MultiError) as exc_info:
            await samples.batch_get([Sample(id=1), Sample(id=2)])
        assert isinstance(exc_info.value[1], NotFoundError)

    @pytest.mark.asyncio
    async def test_create_existing(self, samples):
        """Second create of the same key fails."""
        await samples.create(Sample(id=1))

        with pytest.raises(AlreadyExistsError):
            await samples.create(Sample(id=1))

    @pytest.mark.asyncio
    async def test_put_and_exists(self, samples):
        """Put creates, exists sees it."""
        await samples.put(Sample(id=7, data=7))

        assert await samples.exists(Sample(id=7))
        assert not await samples.exists(Sample(id=8))

    @pytest.mark.asyncio
    async def test_update_with_create(self, samples):
        """update creates missing entities when given create_fn."""
        with pytest.raises(NotFoundError):
            await samples.update(Sample(id=11), increment)

        updated = await samples.update(Sample(id=11), increment, lambda o: Sample(id=o.id, data=10))

        assert updated.data == 11
        assert (await samples.get(Sample(id=11))).data == 11

    @pytest.mark.asyncio
    async def test_allocated_ids(self, datastore_store, test_namespace):
        """Incomplete keys are completed by Datastore."""
        notes = EntitySession[Note](datastore_store, test_namespace, "Note")

        result = await notes.create(Note(text="hello"))

        assert result.key.is_complete
        assert result.entity.id == result.key.id
        assert (await notes.get(Note(id=result.key.id))).text == "hello"

    @pytest.mark.asyncio
    async def test_ancestor_keys(self, datastore_store, test_namespace):
        """Child entities round-trip with their parent chain."""
        items = EntitySession[LineItem](datastore_store, test_namespace, "LineItem")

        result = await items.create(LineItem(invoice="inv-1", line=1, amount=5))

        assert result.key.parent.name == "inv-1"
        assert result.key.parent.namespace == test_namespace
        assert (await items.get(LineItem(invoice="inv-1", line=1))).amount == 5


class TestTransactions:
    """Transactions against the emulator."""

    @pytest.mark.asyncio
    async def test_multiple_update_tx(self, samples):
        """Several update_tx calls commit together."""
        await samples.batch_create([Sample(id=i, data=i) for i in range(1, 4)])

        async def body(tx):
            for i in range(1, 4):
                await samples.update_tx(tx, Sample(id=i), increment)

        await samples.run_in_transaction(body)

        objs = await samples.batch_get([Sample(id=i) for i in range(1, 4)])
        assert [o.data for o in objs] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_same_entity_twice(self, samples):
        """A second update in the same transaction sees the first."""
        await samples.create(Sample(id=1, data=1))

        async def body(tx):
            await samples.update_tx(tx, Sample(id=1), increment)
            await samples.update_tx(tx, Sample(id=1), increment)

        await samples.run_in_transaction(body)

        assert (await samples.get(Sample(id=1))).data == 3

    @pytest.mark.asyncio
    async def test_reads_see_queued_writes(self, samples):
        """Queued puts and deletes are visible to later reads of the transaction."""
        await samples.create(Sample(id=1, data=1))
        seen = []

        async def body(tx):
            await samples.put_tx(tx, Sample(id=2, data=20))
            await samples.delete_tx(tx, Sample(id=1))
            seen.append((await samples.get_tx(tx, Sample(id=2))).data)
            seen.append(await samples.exists_tx(tx, Sample(id=1)))

        await samples.run_in_transaction(body)

        assert seen == [20, False]
        assert not await samples.exists(Sample(id=1))

    @pytest.mark.asyncio
    async def test_batch_insert_checked_once(self, samples):
        """One taken key fails a transactional batch insert and nothing is written."""
        await samples.create(Sample(id=2))

        with pytest.raises(AlreadyExistsError):
            await samples.batch_create([Sample(id=1), Sample(id=2), Sample(id=3)])

        assert not await samples.exists(Sample(id=1))
        assert not await samples.exists(Sample(id=3))

    @pytest.mark.asyncio
    async def test_conflicting_updates(self, samples):
        """At most one overlapping update commits; the loser sees a conflict."""
        await samples.create(Sample(id=1, data=1))

        async def slow_increment(obj):
            await asyncio.sleep(0.5)
            return increment(obj)

        results = await asyncio.gather(
            samples.update(Sample(id=1), slow_increment),
            samples.update(Sample(id=1), slow_increment),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(f, ConcurrencyConflictError) for f in failures)
        final = (await samples.get(Sample(id=1))).data
        assert final == 1 + len(results) - len(failures)


class TestFieldMismatch:
    """Loading entities into narrower record types."""

    @pytest.mark.asyncio
    async def test_strict_type(self, samples, datastore_store, test_namespace):
        """Unknown stored fields raise but known ones load."""
        await samples.create(Sample(id=1, data=2))
        strict = EntitySession[StrictSample](datastore_store, test_namespace, KIND)
        obj = StrictSample(id=1)

        with pytest.raises(FieldMismatchError):
            await strict.get(obj)

        assert obj.data == 2
