"""Compute allocation: turning a description into provisioned compute records."""

from qalloc.compute.allocation import ComputeAllocationTask, build_nic, compute_id_for
from qalloc.compute.resolver import DependencyResolver, choose_profile
from qalloc.compute.services import (
    NamingService,
    PlacementSelector,
    PoolHostSelector,
    PrefixNamingService,
)
from qalloc.compute.subnets import (
    IsolatedNetworkDiscovery,
    NetworkBinding,
    SubnetDiscovery,
    SubnetResolver,
    best_match_subnet,
)

__all__ = [
    "ComputeAllocationTask",
    "DependencyResolver",
    "IsolatedNetworkDiscovery",
    "NamingService",
    "NetworkBinding",
    "PlacementSelector",
    "PoolHostSelector",
    "PrefixNamingService",
    "SubnetDiscovery",
    "SubnetResolver",
    "best_match_subnet",
    "build_nic",
    "choose_profile",
    "compute_id_for",
]
