"""Per-compute capacity figures and their running aggregate."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from pydantic import BaseModel

from qalloc.db.models import Compute, ComputeDescription, ComputeType
from qalloc.logging import get_logger

logger = get_logger(__name__)

# Live figures reported by container hosts
HOST_TOTAL_MEMORY = "__MemTotal"
HOST_NUM_CORES = "__NCPU"
HOST_AVAILABLE_MEMORY = "__MemAvailable"
HOST_CPU_USAGE = "__CpuUsage"

# Written onto the pool
POOL_CPU_USAGE = "__cpuUsage"
POOL_AVAILABLE_MEMORY = "__availableMemory"


@dataclass
class ComputeStats:
    total_memory_bytes: int = 0
    cpu_core_count: int = 0
    cpu_mhz_per_core: int = 0
    cpu_usage: float = 0.0
    available_memory_bytes: int = 0


class AggregatedStats(BaseModel):
    """Running sums over the computes of one pool.

    Persisted on the capacity update record between pages.
    """

    compute_count: int = 0
    total_memory_bytes: int = 0
    cpu_core_count: int = 0
    total_cpu_mhz: int = 0
    available_memory_bytes: int = 0
    cpu_usage_sum_all_cores: float = 0.0

    def add(self, stats: ComputeStats) -> None:
        self.compute_count += 1
        self.total_memory_bytes += stats.total_memory_bytes
        self.cpu_core_count += stats.cpu_core_count
        self.total_cpu_mhz += stats.cpu_core_count * stats.cpu_mhz_per_core
        self.available_memory_bytes += stats.available_memory_bytes
        self.cpu_usage_sum_all_cores += stats.cpu_core_count * stats.cpu_usage

    @property
    def average_cpu_usage(self) -> float:
        """Core-weighted mean usage, 0 for a pool without cores."""
        if self.cpu_core_count <= 0:
            return 0.0
        return self.cpu_usage_sum_all_cores / self.cpu_core_count


def _number(properties: Mapping[str, str], key: str, cast: type[int] | type[float]):
    value = properties.get(key)
    if value is None or value == "":
        return None
    try:
        return cast(float(value))
    except (TypeError, ValueError):
        logger.warning("invalid_stat_property", key=key, value=value)
        return None


def container_host_stats(compute: Compute, description: ComputeDescription) -> ComputeStats:
    """Live figures from the host's custom properties, nominal ones otherwise."""
    live = compute.custom_properties
    total = _number(live, HOST_TOTAL_MEMORY, int)
    cores = _number(live, HOST_NUM_CORES, int)
    available = _number(live, HOST_AVAILABLE_MEMORY, int)
    usage = _number(live, HOST_CPU_USAGE, float)

    total = description.total_memory_bytes if total is None else total
    return ComputeStats(
        total_memory_bytes=total,
        cpu_core_count=description.cpu_count if cores is None else cores,
        cpu_mhz_per_core=description.cpu_mhz_per_core,
        cpu_usage=0.0 if usage is None else usage,
        available_memory_bytes=total if available is None else available,
    )


def vm_host_stats(compute: Compute, description: ComputeDescription) -> ComputeStats:
    # Usage of VM hosts is not measured
    return ComputeStats(
        total_memory_bytes=description.total_memory_bytes,
        cpu_core_count=description.cpu_count,
        cpu_mhz_per_core=description.cpu_mhz_per_core,
        cpu_usage=0.0,
        available_memory_bytes=description.total_memory_bytes,
    )


def compute_stats(compute: Compute, description: ComputeDescription) -> ComputeStats | None:
    """Stats for ``compute``, or ``None`` if it does not add pool capacity."""
    children = description.supported_children
    if ComputeType.DOCKER_CONTAINER.value in children:
        return container_host_stats(compute, description)
    if ComputeType.VM_GUEST.value in children:
        return vm_host_stats(compute, description)
    logger.info("compute_excluded_from_capacity", compute_id=compute.id)
    return None


def accumulate(
    aggregate: AggregatedStats,
    computes: Iterable[Compute],
    descriptions: Mapping[str, ComputeDescription],
) -> AggregatedStats:
    """Add the figures of ``computes`` to a copy of ``aggregate``."""
    result = aggregate.model_copy()
    for compute in computes:
        description = descriptions.get(compute.description_id) if compute.description_id else None
        if description is None:
            logger.warning("compute_without_description", compute_id=compute.id)
            continue
        stats = compute_stats(compute, description)
        if stats is not None:
            result.add(stats)
    return result
