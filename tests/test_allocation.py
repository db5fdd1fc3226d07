"""Tests for the compute allocation task."""

import pytest

from conftest import seed_inventory
from qalloc.compute import ComputeAllocationTask, PrefixNamingService
from qalloc.db.models import (
    AllocationSubStage,
    AllocationTaskState,
    Compute,
    ComputeDescription,
    ComputeType,
    Disk,
    GroupPlacement,
    NetworkInterface,
    NicTemplate,
    ResourcePool,
    TaskStage,
)
from qalloc.errors import ValidationError
from qalloc.schemas import AllocationRequest


class FixedNaming:
    def __init__(self, names):
        self.names = names

    async def reserve_names(self, base_name, count, task):
        return list(self.names)


class EmptySelector:
    async def select(self, description, pool, count, task):
        return []


def request(inventory, **overrides):
    values = {
        "id": "task-1",
        "resource_description_id": inventory.description_id,
        "resource_pool_id": inventory.pool_id,
        "resource_count": 2,
    }
    values.update(overrides)
    return values


@pytest.mark.asyncio
class TestComputeAllocation:
    """End-to-end allocation runs against a seeded inventory."""

    async def test_allocates_requested_count(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        record = await task.allocate_compute(request(inventory, resource_count=3))

        assert record.stage == TaskStage.COMPLETED
        assert len(record.resource_links) == 3
        assert len(record.resource_names) == 3
        assert len(record.selected_placements) == 3

        computes = [await store.get(Compute, link) for link in record.resource_links]
        assert {c.name for c in computes} == set(record.resource_names)
        assert sorted(c.custom_properties["__placementLink"] for c in computes) == sorted(
            record.selected_placements
        )
        for compute in computes:
            assert compute.parent_id == inventory.endpoint_compute_id
            assert compute.correlation_id == "task-1"
            assert compute.resource_pool_id == inventory.pool_id
            assert compute.lifecycle_state == "PROVISIONING"
            assert compute.tag_ids == ["tag-1"]
            assert len(compute.disk_ids) == 1
            assert len(compute.nic_ids) == 1

    async def test_callback_carries_resource_links(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        record = await task.allocate_compute(request(inventory))

        assert len(notifier.results) == 1
        _, result = notifier.results[0]
        assert result.stage == TaskStage.COMPLETED
        assert sorted(result.resource_links) == sorted(record.resource_links)

    async def test_disks_cloned_and_nics_bound(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        record = await task.allocate_compute(request(inventory, resource_count=1))

        compute = await store.get(Compute, record.resource_links[0])
        disk = await store.get(Disk, compute.disk_ids[0])
        assert disk.id != inventory.disk_template_id
        assert disk.template_id == inventory.disk_template_id
        assert disk.capacity_mbytes == 8192

        nic = await store.get(NetworkInterface, compute.nic_ids[0])
        assert nic.subnet_id == inventory.subnet_id
        assert nic.network_id == "net-1"
        assert nic.security_group_ids == ["sg-1"]

    async def test_round_robin_over_pool_hosts(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        record = await task.allocate_compute(request(inventory, resource_count=3))

        assert record.selected_placements == ["host-a", "host-b", "host-a"]

    async def test_context_prepared(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        await task.create(request(inventory))
        await task.advance("task-1")

        record = await store.get(AllocationTaskState, "task-1")
        assert record.substage == AllocationSubStage.CONTEXT_PREPARED
        assert record.endpoint_id == inventory.endpoint_id
        assert record.endpoint_compute_id == inventory.endpoint_compute_id
        assert record.endpoint_type == "aws"
        assert record.profile_id == inventory.profile_id
        assert record.custom_properties["__endpointLink"] == inventory.endpoint_id
        assert record.custom_properties["__contextId"] == "task-1"
        assert record.custom_properties["__resourcePoolLink"] == inventory.pool_id

    async def test_request_properties_override_description_and_pool(self, store, notifier):
        inventory = await seed_inventory(store)
        await store.patch(
            ComputeDescription,
            inventory.description_id,
            custom_properties={"size": "small", "owner": "desc"},
        )

        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        await task.create(request(inventory, custom_properties={"size": "large"}))
        await task.advance("task-1")

        record = await store.get(AllocationTaskState, "task-1")
        assert record.custom_properties["size"] == "large"
        assert record.custom_properties["owner"] == "desc"

    async def test_description_configured_from_endpoint(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        record = await task.allocate_compute(
            request(inventory, custom_properties={"compute.container.host": "true"})
        )

        assert record.resource_description_id == f"{inventory.description_id}-task-1"
        description = await store.get(ComputeDescription, record.resource_description_id)
        assert description.name == "web"
        assert description.disk_template_ids == [inventory.disk_template_id]
        assert description.region_id == "us-east-1"
        assert description.zone_id == "us-east-1a"
        assert description.environment_name == "AWS"
        assert description.supported_children == ["DOCKER_CONTAINER"]
        assert description.custom_properties["__adapterDockerType"] == "API"

        compute = await store.get(Compute, record.resource_links[0])
        assert compute.description_id == description.id

    async def test_shared_description_untouched(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        await task.allocate_compute(
            request(inventory, custom_properties={"compute.container.host": "true"})
        )

        shared = await store.get(ComputeDescription, inventory.description_id)
        assert shared.custom_properties == {}
        assert shared.supported_children == []
        assert shared.region_id is None

    async def test_configuring_twice_reuses_the_copy(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        await task.create(request(inventory))
        await task.advance("task-1")
        record = await store.get(AllocationTaskState, "task-1")

        # A replay of the same step after a crash
        first = await task.configure_description(record)
        second = await task.configure_description(record)

        assert first.fields["resource_description_id"] == second.fields["resource_description_id"]
        copies = await store.query_all(
            ComputeDescription, ComputeDescription.name == "web"
        )
        assert len(copies) == 2


@pytest.mark.asyncio
class TestRepeatedAllocation:
    """Several tasks for one description each see only their own computes."""

    async def test_same_description_twice(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        first = await task.allocate_compute(request(inventory, id="task-a", resource_count=1))
        second = await task.allocate_compute(request(inventory, id="task-b", resource_count=1))

        for record in (first, second):
            assert record.stage == TaskStage.COMPLETED
            assert len(record.resource_links) == 1
            assert record.custom_properties["__contextId"] == record.id
            compute = await store.get(Compute, record.resource_links[0])
            assert compute.correlation_id == record.id
        assert set(first.resource_links).isdisjoint(second.resource_links)

    async def test_second_pool_keeps_its_own_context(self, store, notifier, inventory):
        await store.create(
            ResourcePool(id="pool-2", custom_properties={"__endpointLink": inventory.endpoint_id})
        )
        await store.create(Compute(id="host-c", type=ComputeType.VM_HOST, resource_pool_id="pool-2"))
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        first = await task.allocate_compute(request(inventory, id="task-a", resource_count=2))
        second = await task.allocate_compute(
            request(inventory, id="task-b", resource_pool_id="pool-2", resource_count=3)
        )

        assert len(first.resource_links) == 2
        assert len(second.resource_links) == 3
        assert second.custom_properties["__resourcePoolLink"] == "pool-2"
        assert second.selected_placements == ["host-c", "host-c", "host-c"]
        for link in second.resource_links:
            compute = await store.get(Compute, link)
            assert compute.correlation_id == "task-b"
            assert compute.resource_pool_id == "pool-2"
        for link in first.resource_links:
            compute = await store.get(Compute, link)
            assert compute.correlation_id == "task-a"
            assert compute.resource_pool_id == inventory.pool_id

    async def test_pool_through_group_placement(self, store, notifier, inventory):
        await store.create(GroupPlacement(id="gp-1", resource_pool_id=inventory.pool_id))
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        record = await task.allocate_compute(
            request(inventory, resource_pool_id=None, placement_group_id="gp-1")
        )

        assert record.stage == TaskStage.COMPLETED
        assert record.resource_pool_id == inventory.pool_id
        compute = await store.get(Compute, record.resource_links[0])
        assert compute.custom_properties["__groupResourcePlacementLink"] == "gp-1"
        assert compute.placement_group_id == "gp-1"

    async def test_pinned_placement(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        record = await task.allocate_compute(
            request(inventory, resource_count=3, custom_properties={"__placementLink": "host-z"})
        )

        assert record.selected_placements == ["host-z", "host-z", "host-z"]

    async def test_compute_id_replaces_spaces(self, store, notifier, inventory):
        task = ComputeAllocationTask(
            store, notifier, naming=FixedNaming(["web server 1"]), ephemeral=False
        )

        record = await task.allocate_compute(request(inventory, resource_count=1))

        assert record.resource_links == ["web-server-1"]
        assert (await store.get(Compute, "web-server-1")).name == "web server 1"

    async def test_container_host_children(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        record = await task.allocate_compute(
            request(inventory, resource_count=1, custom_properties={"compute.container.host": ""})
        )

        compute = await store.get(Compute, record.resource_links[0])
        assert compute.custom_properties["__supportedChildren"] == "DOCKER_CONTAINER"

    async def test_ephemeral_task_deleted_after_completion(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=True)

        record = await task.allocate_compute(request(inventory))

        assert record.stage == TaskStage.COMPLETED
        assert await store.get(AllocationTaskState, "task-1") is None
        assert len(notifier.results) == 1


@pytest.mark.asyncio
class TestComputeAllocationFailures:
    """Failures drive the task to ERROR with the cause preserved."""

    async def test_invalid_request_rejected(self, store, notifier):
        task = ComputeAllocationTask(store, notifier)

        with pytest.raises(ValidationError):
            await task.create({"resource_description_id": "d", "resource_count": 1})
        with pytest.raises(ValidationError):
            await task.create(
                {"resource_description_id": "d", "resource_pool_id": "p", "resource_count": 0}
            )

        assert await store.query_all(AllocationTaskState) == []

    async def test_missing_description(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        record = await task.allocate_compute(
            request(inventory, resource_description_id="missing")
        )

        assert record.stage == TaskStage.ERROR
        assert record.error_info["type"] == "DependencyNotFoundError"
        _, result = notifier.results[0]
        assert result.stage == TaskStage.ERROR

    async def test_missing_endpoint_property(self, store, notifier, inventory):
        await store.patch(ResourcePool, inventory.pool_id, custom_properties={})
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        record = await task.allocate_compute(request(inventory))

        assert record.stage == TaskStage.ERROR
        assert record.substage == AllocationSubStage.ERROR
        assert "endpoint" in record.error_info["message"]

    async def test_not_enough_placements(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, placement=EmptySelector(), ephemeral=False)

        record = await task.allocate_compute(request(inventory))

        assert record.stage == TaskStage.ERROR
        assert "Not enough placements" in record.error_info["message"]
        assert await store.query_all(Compute, Compute.correlation_id == "task-1") == []

    async def test_naming_collision_reported(self, store, notifier, inventory):
        task = ComputeAllocationTask(
            store, notifier, naming=FixedNaming(["web", "web"]), ephemeral=False
        )

        record = await task.allocate_compute(request(inventory))

        assert record.stage == TaskStage.ERROR
        assert record.error_info["type"] == "RemoteCallError"

    async def test_sub_resource_failure_fails_task(self, store, notifier, inventory):
        await store.delete(NicTemplate, inventory.nic_template_id)
        task = ComputeAllocationTask(store, notifier, ephemeral=False)

        record = await task.allocate_compute(request(inventory))

        assert record.stage == TaskStage.ERROR
        assert record.error_info["type"] == "DependencyNotFoundError"
        assert record.resource_links == []

    async def test_existing_compute_name_fails_task(self, store, notifier, inventory):
        await store.create(Compute(id="taken"))
        task = ComputeAllocationTask(
            store, notifier, naming=FixedNaming(["taken"]), ephemeral=False
        )

        record = await task.allocate_compute(request(inventory, resource_count=1))

        assert record.stage == TaskStage.ERROR
        assert record.error_info["type"] == "RemoteCallError"
        assert record.error_info["cause"]["type"] == "ConflictError"

    async def test_duplicate_request_id_reuses_task(self, store, notifier, inventory):
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        first = await task.create(request(inventory))
        second = await task.create(AllocationRequest(**request(inventory, resource_count=5)))

        assert second.id == first.id
        assert second.resource_count == 2


class TestPrefixNaming:
    """Tests for the default naming service."""

    @pytest.mark.asyncio
    async def test_unique_names_with_base_and_prefix(self):
        names = await PrefixNamingService("mcm").reserve_names(
            "web", 5, AllocationTaskState(resource_description_id="d")
        )
        assert len(set(names)) == 5
        assert all(name.startswith("web-mcm") for name in names)
