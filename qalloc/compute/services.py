"""Naming and placement collaborators of the allocation task."""

from __future__ import annotations

from typing import Protocol
from uuid import uuid4

from qalloc.config import get_settings
from qalloc.db.models import (
    AllocationTaskState,
    Compute,
    ComputeDescription,
    ComputeType,
    ResourcePool,
)
from qalloc.logging import get_logger
from qalloc.store import RecordStore

logger = get_logger(__name__)


class NamingService(Protocol):
    async def reserve_names(
        self,
        base_name: str,
        count: int,
        task: AllocationTaskState,
    ) -> list[str]: ...


class PlacementSelector(Protocol):
    async def select(
        self,
        description: ComputeDescription,
        pool: ResourcePool,
        count: int,
        task: AllocationTaskState,
    ) -> list[str]: ...


class PrefixNamingService:
    """Reserves names of the form ``<base>-<prefix><random hex>``."""

    def __init__(self, prefix: str | None = None):
        self.prefix = get_settings().name_prefix if prefix is None else prefix

    async def reserve_names(
        self,
        base_name: str,
        count: int,
        task: AllocationTaskState,
    ) -> list[str]:
        names: list[str] = []
        while len(names) < count:
            name = f"{base_name}-{self.prefix}{uuid4().hex[:10]}"
            if name not in names:
                names.append(name)
        return names


class PoolHostSelector:
    """Round-robin over the VM hosts of the pool, ordered by id."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def select(
        self,
        description: ComputeDescription,
        pool: ResourcePool,
        count: int,
        task: AllocationTaskState,
    ) -> list[str]:
        hosts = await self.store.query_all(
            Compute,
            Compute.resource_pool_id == pool.id,
            Compute.type == ComputeType.VM_HOST,
        )
        if not hosts:
            logger.warning("no_hosts_in_pool", pool_id=pool.id)
            return []
        return [hosts[index % len(hosts)].id for index in range(count)]
