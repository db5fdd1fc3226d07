"""Shrinking group placement limits to fit a pool's measured capacity.

Priorities are relative within a group, so placements are ranked by their
priority divided by the sum of priorities in their group. With two groups
whose placements have priorities (1, 2) and (100, 200), both rank as
(0.33, 0.66).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass

from qalloc.db.models import GroupPlacement


@dataclass(frozen=True)
class LimitChange:
    placement_id: str
    old_limit: int
    new_limit: int

    @property
    def reduction(self) -> int:
        return self.old_limit - self.new_limit


def shortfall(placements: Sequence[GroupPlacement], total_memory_bytes: int) -> int:
    """How far the placement limits overcommit the pool."""
    return sum(placement.memory_limit for placement in placements) - total_memory_bytes


def rank_placements(placements: Sequence[GroupPlacement]) -> list[GroupPlacement]:
    """Placements by normalized priority, highest first. Ties keep input order."""
    group_sums: dict[str, int] = defaultdict(int)
    for placement in placements:
        group_sums[placement.group_key or ""] += placement.priority

    def normalized(placement: GroupPlacement) -> float:
        total = group_sums[placement.group_key or ""]
        return placement.priority / total if total else 0.0

    return sorted(placements, key=normalized, reverse=True)


def rebalance(
    placements: Sequence[GroupPlacement], total_memory_bytes: int
) -> list[LimitChange]:
    """Compute the limit reductions that remove the pool's overcommit.

    Each placement gives up at most its available memory, and never more
    than its own limit or what is still missing. Returns only the
    placements whose limit changes; the inputs are not modified.
    """
    remaining = shortfall(placements, total_memory_bytes)
    if remaining <= 0:
        return []

    changes: list[LimitChange] = []
    for placement in rank_placements(placements):
        if placement.memory_limit <= 0 or placement.available_memory <= 0:
            continue
        reduction = min(placement.available_memory, remaining, placement.memory_limit)
        changes.append(
            LimitChange(
                placement_id=placement.id,
                old_limit=placement.memory_limit,
                new_limit=placement.memory_limit - reduction,
            )
        )
        remaining -= reduction
        if remaining <= 0:
            break
    return changes
