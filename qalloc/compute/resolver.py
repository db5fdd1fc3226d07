"""Resolution of the records an allocation depends on.

Descriptions are memoized per resolver; the allocation task calls
``remember`` after it rewrites a description so later steps see the stored
version without another read.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlmodel import and_, or_

from qalloc.db.models import (
    AllocationTaskState,
    ComputeDescription,
    Endpoint,
    GroupPlacement,
    Profile,
    ResourcePool,
)
from qalloc.errors import DependencyNotFoundError
from qalloc.logging import get_logger
from qalloc.store import RecordStore

logger = get_logger(__name__)


def choose_profile(
    candidates: Sequence[Profile],
    endpoint_id: str,
    allowed: Sequence[str] | None = None,
) -> Profile | None:
    """Pick one profile out of the query candidates.

    With an allow-list, candidates outside it are dropped and the rest follow
    its order. A profile bound to ``endpoint_id`` wins over type-wide ones;
    otherwise the first candidate is taken.
    """
    ordered = list(candidates)
    if allowed:
        position: dict[str, int] = {}
        for index, profile_id in enumerate(allowed):
            position.setdefault(profile_id, index)
        ordered = sorted(
            (profile for profile in ordered if profile.id in position),
            key=lambda profile: position[profile.id],
        )

    if not ordered:
        return None
    for profile in ordered:
        if profile.endpoint_id == endpoint_id:
            return profile
    return ordered[0]


class DependencyResolver:
    """Loads pools, descriptions, endpoints and profiles for a task."""

    def __init__(self, store: RecordStore):
        self.store = store
        self._descriptions: dict[str, ComputeDescription] = {}

    async def description(self, description_id: str) -> ComputeDescription:
        cached = self._descriptions.get(description_id)
        if cached is not None:
            return cached
        description = await self.store.require(
            ComputeDescription, description_id, "compute description"
        )
        self._descriptions[description_id] = description
        return description

    def remember(self, description: ComputeDescription) -> None:
        self._descriptions[description.id] = description

    async def pool(self, task: AllocationTaskState) -> ResourcePool:
        """The task's pool, given directly or through its group placement."""
        if task.resource_pool_id:
            return await self.store.require(ResourcePool, task.resource_pool_id, "resource pool")

        placement = await self.store.require(
            GroupPlacement, task.placement_group_id, "group placement"
        )
        if not placement.resource_pool_id:
            raise DependencyNotFoundError(
                "resource pool",
                None,
                f"Group placement '{placement.id}' has no resource pool",
            )
        return await self.store.require(ResourcePool, placement.resource_pool_id, "resource pool")

    async def endpoint(self, endpoint_id: str | None) -> Endpoint:
        if not endpoint_id:
            raise DependencyNotFoundError(
                "endpoint", None, "No endpoint set in custom properties"
            )
        return await self.store.require(Endpoint, endpoint_id, "endpoint")

    async def profile(
        self,
        endpoint: Endpoint,
        tenant_group: str | None = None,
        allowed: Sequence[str] | None = None,
    ) -> Profile:
        """Select the provisioning profile for ``endpoint``.

        Profiles of the tenant group are tried first, then global ones.
        """
        scopes: list[str | None] = [tenant_group, None] if tenant_group else [None]
        for scope in scopes:
            logger.info(
                "profile_query",
                scope=scope or "global",
                endpoint_id=endpoint.id,
                endpoint_type=endpoint.endpoint_type,
            )
            candidates = await self._profile_candidates(endpoint, scope, allowed)
            profile = choose_profile(candidates, endpoint.id, allowed)
            if profile is not None:
                return profile

        raise DependencyNotFoundError(
            "profile",
            None,
            f"No available profiles for endpoint {endpoint.id} of type {endpoint.endpoint_type}",
        )

    async def _profile_candidates(
        self,
        endpoint: Endpoint,
        scope: str | None,
        allowed: Sequence[str] | None,
    ) -> list[Profile]:
        unbound = or_(Profile.endpoint_id.is_(None), Profile.endpoint_id == "")
        criteria = [
            or_(
                Profile.endpoint_id == endpoint.id,
                and_(unbound, Profile.endpoint_type == endpoint.endpoint_type),
            ),
            Profile.tenant_group == scope if scope else Profile.tenant_group.is_(None),
        ]
        if allowed:
            criteria.append(Profile.id.in_(list(allowed)))
        return await self.store.query_all(Profile, *criteria)
