"""Subnet resolution for NIC templates."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlmodel import or_

from qalloc.compute.properties import NO_NIC_VM
from qalloc.db.models import (
    AllocationTaskState,
    IsolationType,
    Network,
    NetworkType,
    NicTemplate,
    Profile,
    Subnet,
)
from qalloc.errors import DependencyNotFoundError
from qalloc.logging import get_logger
from qalloc.store import RecordStore

logger = get_logger(__name__)


def best_match_subnet(subnets: Iterable[Subnet]) -> Subnet | None:
    """Pick the subnet best suited for a NIC with no explicit binding.

    Infrastructure subnets are never picked. Public and zone-default subnets
    come first, then public ones, then the rest; ties keep input order.
    """
    preferred: list[Subnet] = []
    public: list[Subnet] = []
    others: list[Subnet] = []
    for subnet in subnets:
        if subnet.infrastructure_use:
            continue
        if subnet.supports_public_ip and subnet.default_for_zone:
            preferred.append(subnet)
        elif subnet.supports_public_ip:
            public.append(subnet)
        else:
            others.append(subnet)

    for bucket in (preferred, public, others):
        if bucket:
            return bucket[0]
    return None


@dataclass
class NetworkBinding:
    """A discovered subnet and the network it belongs to, if known."""

    subnet: Subnet
    network: Network | None = None


class SubnetDiscovery(Protocol):
    """Finds the subnet a NIC should use in a profile-managed network."""

    async def discover(
        self,
        task: AllocationTaskState,
        template: NicTemplate,
        profile: Profile,
    ) -> NetworkBinding: ...


class IsolatedNetworkDiscovery:
    """Default discovery.

    Uses the head of the profile's subnet list, else the best subnet of the
    profile's isolation network.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    async def discover(
        self,
        task: AllocationTaskState,
        template: NicTemplate,
        profile: Profile,
    ) -> NetworkBinding:
        if profile.subnet_ids:
            subnet = await self.store.require(Subnet, profile.subnet_ids[0], "subnet")
            network = await self.store.get(Network, subnet.network_id)
            return NetworkBinding(subnet=subnet, network=network)

        if not profile.isolation_network_id:
            raise DependencyNotFoundError(
                "network", None, f"Profile '{profile.id}' has no isolation network"
            )
        network = await self.store.require(Network, profile.isolation_network_id, "network")
        subnets = await self.store.query_all(Subnet, Subnet.network_id == network.id)
        subnet = best_match_subnet(subnets)
        if subnet is None:
            raise DependencyNotFoundError(
                "subnet", None, f"No usable subnet in isolation network '{network.id}'"
            )
        return NetworkBinding(subnet=subnet, network=network)


class SubnetResolver:
    """Resolves the subnet for one NIC template.

    Profiles that list subnets or isolate by subnet go through discovery.
    Otherwise a ``__noNicVM`` template with a network gets no subnet, a
    template with a subnet uses it, and anything else falls back to a
    best-match search over the endpoint's subnets.
    """

    def __init__(self, store: RecordStore, discovery: SubnetDiscovery):
        self.store = store
        self.discovery = discovery

    async def resolve(
        self,
        task: AllocationTaskState,
        template: NicTemplate,
        profile: Profile,
    ) -> Subnet | None:
        no_nic_vm = NO_NIC_VM in template.custom_properties
        isolated = profile.isolation_type == IsolationType.SUBNET

        if profile.subnet_ids or isolated:
            if no_nic_vm:
                head = profile.subnet_ids[0] if profile.subnet_ids else None
                return await self.store.get(Subnet, head)
            return await self._discover(task, template, profile)

        if no_nic_vm and template.network_id:
            return None
        if template.subnet_id:
            return await self.store.require(Subnet, template.subnet_id, "subnet")
        return await self._search(task)

    async def _discover(
        self,
        task: AllocationTaskState,
        template: NicTemplate,
        profile: Profile,
    ) -> Subnet:
        binding = await self.discovery.discover(task, template, profile)
        network = binding.network
        if network is not None:
            await self.store.patch(Network, network.id, provision_profile_id=profile.id)
            if network.network_type == NetworkType.PUBLIC and not template.assign_public_ip:
                await self.store.patch(NicTemplate, template.id, assign_public_ip=True)
                template.assign_public_ip = True

        logger.debug("subnet_discovered", subnet_id=binding.subnet.id, template_id=template.id)
        return binding.subnet

    async def _search(self, task: AllocationTaskState) -> Subnet | None:
        criteria = [
            or_(Subnet.endpoint_id == task.endpoint_id, Subnet.endpoint_id.is_(None)),
        ]
        if task.tenant_group:
            criteria.append(
                or_(Subnet.tenant_group == task.tenant_group, Subnet.tenant_group.is_(None))
            )
        else:
            criteria.append(Subnet.tenant_group.is_(None))

        subnet = best_match_subnet(await self.store.query_all(Subnet, *criteria))
        logger.debug("subnet_searched", subnet_id=subnet.id if subnet else None)
        return subnet
