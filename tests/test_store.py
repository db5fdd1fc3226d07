"""Tests for the record store."""

import pytest

from qalloc.db.models import (
    AllocationSubStage,
    AllocationTaskState,
    Compute,
    ComputeType,
    ResourcePool,
)
from qalloc.errors import ConflictError, DependencyNotFoundError


@pytest.mark.asyncio
class TestRecordStore:
    """Tests for get, create, patch and delete."""

    async def test_create_and_get(self, store):
        """Created records can be read back with their JSON columns."""
        await store.create(
            ResourcePool(id="pool-1", name="Pool", custom_properties={"a": "1"})
        )

        pool = await store.get(ResourcePool, "pool-1")
        assert pool is not None
        assert pool.name == "Pool"
        assert pool.custom_properties == {"a": "1"}

    async def test_get_missing_returns_none(self, store):
        assert await store.get(ResourcePool, "missing") is None
        assert await store.get(ResourcePool, None) is None

    async def test_require_missing_raises(self, store):
        with pytest.raises(DependencyNotFoundError) as exc_info:
            await store.require(ResourcePool, "missing", "resource pool")
        assert exc_info.value.kind == "resource pool"
        assert exc_info.value.ref == "missing"

    async def test_duplicate_create_conflicts(self, store):
        """A second record with the same id is rejected."""
        await store.create(ResourcePool(id="pool-1"))

        with pytest.raises(ConflictError):
            await store.create(ResourcePool(id="pool-1"))

        # The first record is untouched
        assert await store.get(ResourcePool, "pool-1") is not None

    async def test_patch_changes_only_given_fields(self, store):
        await store.create(
            AllocationTaskState(id="task-1", resource_description_id="d", resource_count=3)
        )

        updated = await store.patch(
            AllocationTaskState,
            "task-1",
            substage=AllocationSubStage.CONTEXT_PREPARED,
            resource_names=["a", "b", "c"],
        )
        assert updated.substage == AllocationSubStage.CONTEXT_PREPARED

        stored = await store.get(AllocationTaskState, "task-1")
        assert stored.resource_names == ["a", "b", "c"]
        assert stored.resource_count == 3
        assert stored.resource_description_id == "d"

    async def test_patch_unknown_field_rejected(self, store):
        await store.create(ResourcePool(id="pool-1"))
        with pytest.raises(ValueError):
            await store.patch(ResourcePool, "pool-1", no_such_field=1)

    async def test_patch_missing_record(self, store):
        with pytest.raises(DependencyNotFoundError):
            await store.patch(ResourcePool, "missing", name="x")

    async def test_delete(self, store):
        await store.create(ResourcePool(id="pool-1"))

        assert await store.delete(ResourcePool, "pool-1") is True
        assert await store.delete(ResourcePool, "pool-1") is False
        assert await store.get(ResourcePool, "pool-1") is None


@pytest.mark.asyncio
class TestRecordStoreQuery:
    """Tests for predicate queries and pagination."""

    async def test_query_filters_and_orders_by_id(self, store):
        for compute_id in ("c", "a", "b"):
            await store.create(Compute(id=compute_id, resource_pool_id="pool-1"))
        await store.create(Compute(id="other", resource_pool_id="pool-2"))

        records = await store.query_all(Compute, Compute.resource_pool_id == "pool-1")
        assert [r.id for r in records] == ["a", "b", "c"]

    async def test_query_multiple_criteria(self, store):
        await store.create(Compute(id="host", type=ComputeType.VM_HOST, resource_pool_id="p"))
        await store.create(Compute(id="guest", type=ComputeType.VM_GUEST, resource_pool_id="p"))

        records = await store.query_all(
            Compute,
            Compute.resource_pool_id == "p",
            Compute.type == ComputeType.VM_HOST,
        )
        assert [r.id for r in records] == ["host"]

    async def test_pagination_walks_every_record_once(self, store):
        ids = [f"c{i:02d}" for i in range(7)]
        for compute_id in ids:
            await store.create(Compute(id=compute_id))

        seen = []
        page = await store.query(Compute, limit=3)
        seen.extend(r.id for r in page.records)
        while page.cursor is not None:
            page = await store.query(Compute, limit=3, cursor=page.cursor)
            seen.extend(r.id for r in page.records)

        assert seen == ids

    async def test_partial_page_has_no_cursor(self, store):
        await store.create(Compute(id="only"))

        page = await store.query(Compute, limit=5)
        assert [r.id for r in page.records] == ["only"]
        assert page.cursor is None

    async def test_empty_query(self, store):
        page = await store.query(Compute, Compute.resource_pool_id == "none", limit=5)
        assert page.records == []
        assert page.cursor is None
