"""Compute allocation task.

Turns a request for N machines of one compute description into N compute
records, each with cloned disks and NICs bound to resolved subnets:

    CREATED               resolve pool, description, endpoint and profile
    CONTEXT_PREPARED      configure a per-task copy of the description
    RESOURCES_NAMED       reserve N unique names
    PLACEMENT_SELECTED    pick N placement targets
    ALLOCATION_STARTED    create disks, NICs and computes for every unit
    ALLOCATION_COMPLETED  collect the created computes as resource links

Units are created concurrently. A failure in any of them fails the task;
resources already created for other units are left in place.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pydantic

from qalloc.compute import properties as props
from qalloc.compute.resolver import DependencyResolver
from qalloc.compute.services import (
    NamingService,
    PlacementSelector,
    PoolHostSelector,
    PrefixNamingService,
)
from qalloc.compute.subnets import IsolatedNetworkDiscovery, SubnetDiscovery, SubnetResolver
from qalloc.db.models import (
    AllocationSubStage,
    AllocationTaskState,
    Compute,
    ComputeDescription,
    ComputeType,
    Disk,
    Endpoint,
    NetworkInterface,
    NicTemplate,
    Profile,
    ResourcePool,
    Subnet,
    TaskStage,
    generate_uuid,
)
from qalloc.errors import (
    ConflictError,
    DependencyNotFoundError,
    RemoteCallError,
    ValidationError,
)
from qalloc.logging import get_logger
from qalloc.schemas import AllocationRequest, TaskResult
from qalloc.store import RecordStore
from qalloc.tasks.engine import StageUpdate, TaskEngine
from qalloc.tasks.join import join_all
from qalloc.tasks.notify import TaskNotifier

logger = get_logger(__name__)

S = AllocationSubStage


def compute_id_for(name: str) -> str:
    """Compute records are keyed by their reserved name."""
    return name.replace(" ", "-")


def build_nic(
    task: AllocationTaskState,
    description: ComputeDescription,
    template: NicTemplate,
    subnet: Subnet | None,
) -> NetworkInterface:
    """Build the NIC record for ``template`` bound to ``subnet``."""
    if subnet is None and not template.network_id:
        raise DependencyNotFoundError(
            "network", None, f"No matching network found for VM: {description.name}"
        )
    return NetworkInterface(
        id=generate_uuid(),
        name=template.name,
        device_index=template.device_index,
        address=template.address,
        network_id=template.network_id or subnet.network_id,
        subnet_id=subnet.id if subnet is not None else None,
        template_id=template.id,
        endpoint_id=task.endpoint_id,
        tenant_group=task.tenant_group,
        security_group_ids=list(template.security_group_ids),
        group_ids=list(template.group_ids),
        tag_ids=list(template.tag_ids),
        custom_properties=dict(template.custom_properties),
    )


class ComputeAllocationTask(TaskEngine[AllocationTaskState]):
    """Engine for compute allocation tasks.

    Args:
        store: Record store for task and inventory records.
        notifier: Receives the terminal ``TaskResult``.
        naming: Reserves machine names. Defaults to prefix naming.
        placement: Picks placement targets. Defaults to round-robin over
            the pool's VM hosts.
        discovery: Finds subnets in profile-managed networks.
        ephemeral: Delete task records once finished.
    """

    kind = "compute_allocation"
    model = AllocationTaskState
    substages = AllocationSubStage

    def __init__(
        self,
        store: RecordStore,
        notifier: TaskNotifier | None = None,
        *,
        naming: NamingService | None = None,
        placement: PlacementSelector | None = None,
        discovery: SubnetDiscovery | None = None,
        ephemeral: bool | None = None,
    ) -> None:
        super().__init__(store, notifier, ephemeral)
        self.resolver = DependencyResolver(store)
        self.naming = naming or PrefixNamingService()
        self.placement = placement or PoolHostSelector(store)
        self.subnets = SubnetResolver(store, discovery or IsolatedNetworkDiscovery(store))

    def stage_handlers(self):
        return {
            S.CREATED: self.prepare_context,
            S.CONTEXT_PREPARED: self.configure_description,
            S.RESOURCES_NAMED: self.reserve_names,
            S.PLACEMENT_SELECTED: self.select_placements,
            S.ALLOCATION_STARTED: self.allocate,
            S.ALLOCATION_COMPLETED: self.collect_resources,
        }

    def build_result(self, record: AllocationTaskState) -> TaskResult:
        result = super().build_result(record)
        result.resource_links = list(record.resource_links)
        if record.stage == TaskStage.COMPLETED and not record.resource_links:
            logger.warning("no_resource_links", task_id=record.id)
        return result

    async def create(
        self, request: AllocationRequest | Mapping[str, Any]
    ) -> AllocationTaskState | None:
        """Validate ``request`` and persist a new task in CREATED."""
        if not isinstance(request, AllocationRequest):
            try:
                request = AllocationRequest.model_validate(request)
            except pydantic.ValidationError as exc:
                raise ValidationError(str(exc)) from exc

        record = AllocationTaskState(
            id=request.id or generate_uuid(),
            resource_description_id=request.resource_description_id,
            resource_count=request.resource_count,
            resource_pool_id=request.resource_pool_id,
            placement_group_id=request.placement_group_id,
            tenant_group=request.tenant_group,
            profile_constraints=request.profile_constraints,
            custom_properties=dict(request.custom_properties),
            callback_ref=request.callback_ref,
        )
        return await self.start(record)

    async def allocate_compute(
        self, request: AllocationRequest | Mapping[str, Any]
    ) -> AllocationTaskState | None:
        """Create a task and run it to completion."""
        record = await self.create(request)
        if record is None:
            return None
        return await self.run(record.id)

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def prepare_context(self, task: AllocationTaskState) -> StageUpdate:
        pool = await self.resolver.pool(task)
        description = await self.resolver.description(task.resource_description_id)

        custom_properties = props.merge_custom_properties(
            pool.custom_properties,
            description.custom_properties,
            task.custom_properties,
        )
        endpoint = await self.resolver.endpoint(custom_properties.get(props.ENDPOINT_LINK))
        profile = await self.resolver.profile(
            endpoint, task.tenant_group, task.profile_constraints
        )
        custom_properties.setdefault(props.CONTEXT_ID, task.id)
        custom_properties.setdefault(props.RESOURCE_POOL_LINK, pool.id)

        logger.info(
            "context_prepared",
            pool_id=pool.id,
            endpoint_id=endpoint.id,
            profile_id=profile.id,
        )
        return StageUpdate(
            S.CONTEXT_PREPARED,
            {
                "custom_properties": custom_properties,
                "resource_pool_id": pool.id,
                "endpoint_id": endpoint.id,
                "endpoint_compute_id": endpoint.compute_id,
                "endpoint_type": endpoint.endpoint_type,
                "profile_id": profile.id,
            },
        )

    async def configure_description(self, task: AllocationTaskState) -> StageUpdate:
        description = await self.resolver.description(task.resource_description_id)
        endpoint = await self.store.require(Endpoint, task.endpoint_id, "endpoint")

        custom_properties = dict(task.custom_properties)
        supported_children = list(description.supported_children)
        if props.is_container_host(custom_properties):
            supported_children = [ComputeType.DOCKER_CONTAINER.value]
            custom_properties.setdefault(
                props.DOCKER_ADAPTER_TYPE, props.DEFAULT_DOCKER_ADAPTER_TYPE
            )
        merged = props.merge_custom_properties(description.custom_properties, custom_properties)

        # Descriptions are shared inventory; the task configures its own copy
        configured_id = f"{description.id}-{task.id}"
        fields = {
            "region_id": endpoint.region_id,
            "zone_id": endpoint.zone_id,
            "environment_name": endpoint.environment_name,
            "supported_children": supported_children,
            "custom_properties": merged,
        }
        try:
            configured = await self.store.create(
                ComputeDescription(
                    id=configured_id,
                    **description.model_dump(exclude={"id", *fields}),
                    **fields,
                )
            )
        except ConflictError:
            configured = await self.store.patch(ComputeDescription, configured_id, **fields)

        self.resolver.remember(configured)
        logger.info(
            "description_configured",
            source_description_id=description.id,
            description_id=configured.id,
        )
        return StageUpdate(
            S.RESOURCES_NAMED,
            {"resource_description_id": configured.id, "custom_properties": merged},
        )

    async def reserve_names(self, task: AllocationTaskState) -> StageUpdate:
        description = await self.resolver.description(task.resource_description_id)
        names = await self.naming.reserve_names(description.name, task.resource_count, task)
        unique = list(dict.fromkeys(names))
        if len(unique) < task.resource_count:
            raise RemoteCallError(
                f"Naming service reserved {len(unique)} unique names "
                f"for {task.resource_count} resources"
            )
        return StageUpdate(S.PLACEMENT_SELECTED, {"resource_names": unique[: task.resource_count]})

    async def select_placements(self, task: AllocationTaskState) -> StageUpdate:
        pinned = task.custom_properties.get(props.PLACEMENT_LINK)
        if pinned:
            placements = [pinned] * task.resource_count
        else:
            description = await self.resolver.description(task.resource_description_id)
            pool = await self.store.require(ResourcePool, task.resource_pool_id, "resource pool")
            placements = await self.placement.select(description, pool, task.resource_count, task)

        _check_placements(placements, task.resource_count)
        return StageUpdate(
            S.ALLOCATION_STARTED,
            {"selected_placements": list(placements[: task.resource_count])},
        )

    async def allocate(self, task: AllocationTaskState) -> StageUpdate:
        description = await self.resolver.description(task.resource_description_id)
        profile = await self.store.require(Profile, task.profile_id, "profile")
        _check_placements(task.selected_placements, task.resource_count)

        custom_properties = dict(task.custom_properties)
        custom_properties[props.CONTEXT_ID] = custom_properties.get(props.CONTEXT_ID, task.id)
        custom_properties[props.COMPUTE_HOST] = "true"

        logger.info("allocation_started", resource_count=task.resource_count)
        units = list(zip(task.resource_names, task.selected_placements))[: task.resource_count]
        compute_ids = await join_all(
            self._allocate_unit(task, description, profile, custom_properties, name, placement)
            for name, placement in units
        )
        logger.info("allocation_joined", compute_ids=compute_ids)
        return StageUpdate(S.ALLOCATION_COMPLETED)

    async def collect_resources(self, task: AllocationTaskState) -> StageUpdate:
        context_id = task.custom_properties.get(props.CONTEXT_ID, task.id)
        computes = await self.store.query_all(
            Compute,
            Compute.description_id == task.resource_description_id,
            Compute.parent_id == task.endpoint_compute_id,
            Compute.correlation_id == context_id,
        )
        links = [compute.id for compute in computes]
        logger.info("resources_collected", count=len(links))
        return StageUpdate(S.COMPLETED, {"resource_links": links})

    # ------------------------------------------------------------------
    # Per-unit fan-out
    # ------------------------------------------------------------------

    async def _allocate_unit(
        self,
        task: AllocationTaskState,
        description: ComputeDescription,
        profile: Profile,
        custom_properties: dict[str, str],
        name: str,
        placement: str,
    ) -> str:
        disk_ids, nic_ids = await join_all(
            [
                self._create_disks(task, description),
                self._create_nics(task, description, profile),
            ]
        )
        return await self._create_compute(
            task, description, custom_properties, name, placement, disk_ids, nic_ids
        )

    async def _create_disks(
        self, task: AllocationTaskState, description: ComputeDescription
    ) -> list[str]:
        return await join_all(
            self._clone_disk(task, template_id) for template_id in description.disk_template_ids
        )

    async def _clone_disk(self, task: AllocationTaskState, template_id: str) -> str:
        template = await self.store.require(Disk, template_id, "disk template")
        disk = Disk(
            id=generate_uuid(),
            name=template.name,
            disk_type=template.disk_type,
            capacity_mbytes=template.capacity_mbytes,
            template_id=template.id,
            tenant_group=task.tenant_group,
            custom_properties=dict(template.custom_properties),
        )
        created = await self.store.create(disk)
        return created.id

    async def _create_nics(
        self,
        task: AllocationTaskState,
        description: ComputeDescription,
        profile: Profile,
    ) -> list[str]:
        return await join_all(
            self._create_nic(task, description, profile, template_id)
            for template_id in description.nic_template_ids
        )

    async def _create_nic(
        self,
        task: AllocationTaskState,
        description: ComputeDescription,
        profile: Profile,
        template_id: str,
    ) -> str:
        template = await self.store.require(NicTemplate, template_id, "nic template")
        subnet = await self.subnets.resolve(task, template, profile)
        created = await self.store.create(build_nic(task, description, template, subnet))
        return created.id

    async def _create_compute(
        self,
        task: AllocationTaskState,
        description: ComputeDescription,
        custom_properties: dict[str, str],
        name: str,
        placement: str,
        disk_ids: list[str],
        nic_ids: list[str],
    ) -> str:
        compute_properties = dict(custom_properties)
        if task.placement_group_id:
            compute_properties[props.GROUP_PLACEMENT_LINK] = task.placement_group_id
        compute_properties[props.PLACEMENT_LINK] = placement
        compute_properties[props.COMPUTE_TYPE] = "VirtualMachine"
        if props.is_container_host(compute_properties):
            compute_properties[props.SUPPORTED_CHILDREN] = ComputeType.DOCKER_CONTAINER.value

        compute = Compute(
            id=compute_id_for(name),
            name=name,
            type=ComputeType.VM_GUEST,
            description_id=description.id,
            parent_id=task.endpoint_compute_id,
            resource_pool_id=compute_properties.get(props.RESOURCE_POOL_LINK, task.resource_pool_id),
            endpoint_id=task.endpoint_id,
            correlation_id=compute_properties[props.CONTEXT_ID],
            placement_group_id=task.placement_group_id,
            tenant_group=task.tenant_group,
            power_state="ON",
            lifecycle_state="PROVISIONING",
            disk_ids=disk_ids,
            nic_ids=nic_ids,
            tag_ids=list(description.tag_ids),
            custom_properties=compute_properties,
        )
        try:
            created = await self.store.create(compute)
        except ConflictError as exc:
            raise RemoteCallError(f"Failed creating compute '{compute.id}'") from exc

        logger.info("compute_created", compute_id=created.id, placement=placement)
        return created.id


def _check_placements(placements: list[str], count: int) -> None:
    if len(placements) < count:
        raise DependencyNotFoundError(
            "placement",
            None,
            f"Not enough placements provided ({len(placements)}) "
            f"for the requested resource count ({count})",
        )
