"""Pool capacity aggregation and group placement rebalancing."""

from qalloc.capacity.rebalance import LimitChange, rank_placements, rebalance, shortfall
from qalloc.capacity.stats import AggregatedStats, ComputeStats, accumulate, compute_stats
from qalloc.capacity.update import CapacityUpdateTask

__all__ = [
    "AggregatedStats",
    "CapacityUpdateTask",
    "ComputeStats",
    "LimitChange",
    "accumulate",
    "compute_stats",
    "rank_placements",
    "rebalance",
    "shortfall",
]
