"""Capacity update task for a resource pool.

Aggregates the capacity of the pool's computes page by page, writes the
totals onto the pool and then shrinks group placement limits that no longer
fit:

    CREATED                     -
    QUERY_COMPUTES              read the first page of pool computes
    ACCUMULATE_COMPUTE_FIGURES  read the following pages
    UPDATE_RESOURCE_POOL        patch the pool's memory and usage figures
    UPDATE_PLACEMENTS           rebalance the pool's group placements

The record id is the pool id, so at most one update runs per pool.
"""

from __future__ import annotations

import asyncio

from qalloc.capacity.rebalance import rebalance
from qalloc.capacity.stats import (
    POOL_AVAILABLE_MEMORY,
    POOL_CPU_USAGE,
    AggregatedStats,
    accumulate,
)
from qalloc.compute.properties import merge_custom_properties
from qalloc.config import get_settings
from qalloc.db.models import (
    CapacitySubStage,
    CapacityUpdateState,
    Compute,
    ComputeDescription,
    GroupPlacement,
    ResourcePool,
)
from qalloc.errors import ConflictError
from qalloc.logging import get_logger
from qalloc.metrics import record_placements_rebalanced, record_pool_capacity
from qalloc.store import Page, RecordStore
from qalloc.tasks.engine import StageUpdate, TaskEngine
from qalloc.tasks.join import join_all
from qalloc.tasks.notify import TaskNotifier

logger = get_logger(__name__)

S = CapacitySubStage


class CapacityUpdateTask(TaskEngine[CapacityUpdateState]):
    """Engine for pool capacity updates. Records always delete themselves."""

    kind = "capacity_update"
    model = CapacityUpdateState
    substages = CapacitySubStage

    def __init__(
        self,
        store: RecordStore,
        notifier: TaskNotifier | None = None,
        *,
        page_size: int | None = None,
    ) -> None:
        super().__init__(store, notifier, ephemeral=True)
        self.page_size = page_size or get_settings().capacity_page_size

    def stage_handlers(self):
        return {
            S.CREATED: self.begin,
            S.QUERY_COMPUTES: self.query_computes,
            S.ACCUMULATE_COMPUTE_FIGURES: self.accumulate_figures,
            S.UPDATE_RESOURCE_POOL: self.update_pool,
            S.UPDATE_PLACEMENTS: self.update_placements,
        }

    async def trigger_for_pool(self, pool_id: str) -> CapacityUpdateState | None:
        """Run a capacity update for ``pool_id``.

        Returns ``None`` when an update for the pool is already in progress.
        """
        try:
            record = await self.store.create(
                CapacityUpdateState(id=pool_id, resource_pool_id=pool_id)
            )
        except ConflictError:
            logger.info("capacity_update_already_running", pool_id=pool_id)
            return None

        logger.info("capacity_update_started", pool_id=pool_id)
        return await self.run(record.id)

    async def trigger_for_all_pools(self) -> dict[str, CapacityUpdateState | None]:
        """Run capacity updates for every pool concurrently.

        A pool whose update could not be started maps to ``None``; the
        failure is logged.
        """
        pools = await self.store.query_all(ResourcePool)
        outcomes = await asyncio.gather(
            *(self.trigger_for_pool(pool.id) for pool in pools),
            return_exceptions=True,
        )

        results: dict[str, CapacityUpdateState | None] = {}
        for pool, outcome in zip(pools, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("capacity_update_not_started", pool_id=pool.id, error=str(outcome))
                results[pool.id] = None
            else:
                results[pool.id] = outcome
        return results

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def begin(self, task: CapacityUpdateState) -> StageUpdate:
        return StageUpdate(S.QUERY_COMPUTES)

    async def query_computes(self, task: CapacityUpdateState) -> StageUpdate:
        pool = await self.store.require(ResourcePool, task.resource_pool_id, "resource pool")
        page = await self._compute_page(pool.id, cursor=None)
        if not page.records:
            logger.info("no_computes_in_pool", pool_id=pool.id)
        return await self._accumulate_page(AggregatedStats(), page)

    async def accumulate_figures(self, task: CapacityUpdateState) -> StageUpdate:
        stats = AggregatedStats.model_validate(task.aggregated_stats or {})
        page = await self._compute_page(task.resource_pool_id, cursor=task.page_cursor)
        return await self._accumulate_page(stats, page)

    async def update_pool(self, task: CapacityUpdateState) -> StageUpdate:
        stats = AggregatedStats.model_validate(task.aggregated_stats or {})
        pool = await self.store.require(ResourcePool, task.resource_pool_id, "resource pool")

        custom_properties = merge_custom_properties(
            pool.custom_properties,
            {
                POOL_CPU_USAGE: str(stats.average_cpu_usage),
                POOL_AVAILABLE_MEMORY: str(stats.available_memory_bytes),
            },
        )
        await self.store.patch(
            ResourcePool,
            pool.id,
            max_memory_bytes=stats.total_memory_bytes,
            min_memory_bytes=0,
            custom_properties=custom_properties,
        )
        record_pool_capacity(pool.id, stats.total_memory_bytes, stats.available_memory_bytes)
        logger.info(
            "pool_capacity_updated",
            pool_id=pool.id,
            compute_count=stats.compute_count,
            total_memory_bytes=stats.total_memory_bytes,
            average_cpu_usage=stats.average_cpu_usage,
        )
        return StageUpdate(S.UPDATE_PLACEMENTS)

    async def update_placements(self, task: CapacityUpdateState) -> StageUpdate:
        stats = AggregatedStats.model_validate(task.aggregated_stats or {})
        placements = await self.store.query_all(
            GroupPlacement, GroupPlacement.resource_pool_id == task.resource_pool_id
        )

        changes = rebalance(placements, stats.total_memory_bytes)
        if not changes:
            logger.info("no_placement_update_needed", pool_id=task.resource_pool_id)
            return StageUpdate(S.COMPLETED)

        await join_all(
            self.store.patch(GroupPlacement, change.placement_id, memory_limit=change.new_limit)
            for change in changes
        )
        record_placements_rebalanced(task.resource_pool_id, len(changes))
        logger.info(
            "placements_rebalanced",
            pool_id=task.resource_pool_id,
            placements=[change.placement_id for change in changes],
        )
        return StageUpdate(S.COMPLETED)

    # ------------------------------------------------------------------

    async def _compute_page(self, pool_id: str, cursor: str | None) -> Page[Compute]:
        return await self.store.query(
            Compute,
            Compute.resource_pool_id == pool_id,
            limit=self.page_size,
            cursor=cursor,
        )

    async def _accumulate_page(self, stats: AggregatedStats, page: Page[Compute]) -> StageUpdate:
        description_ids = {c.description_id for c in page.records if c.description_id}
        descriptions: dict[str, ComputeDescription] = {}
        if description_ids:
            found = await self.store.query_all(
                ComputeDescription, ComputeDescription.id.in_(sorted(description_ids))
            )
            descriptions = {description.id: description for description in found}

        stats = accumulate(stats, page.records, descriptions)
        next_substage = S.ACCUMULATE_COMPUTE_FIGURES if page.cursor else S.UPDATE_RESOURCE_POOL
        return StageUpdate(
            next_substage,
            {"aggregated_stats": stats.model_dump(), "page_cursor": page.cursor},
        )
