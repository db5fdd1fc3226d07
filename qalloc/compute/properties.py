"""Custom property keys understood by the allocation and capacity tasks."""

from __future__ import annotations

from collections.abc import Mapping

ENDPOINT_LINK = "__endpointLink"
CONTEXT_ID = "__contextId"
RESOURCE_POOL_LINK = "__resourcePoolLink"
PLACEMENT_LINK = "__placementLink"
GROUP_PLACEMENT_LINK = "__groupResourcePlacementLink"
COMPUTE_HOST = "__computeHost"
COMPUTE_TYPE = "__computeType"
SUPPORTED_CHILDREN = "__supportedChildren"
NO_NIC_VM = "__noNicVM"

CONTAINER_HOST = "compute.container.host"
DOCKER_ADAPTER_TYPE = "__adapterDockerType"
DEFAULT_DOCKER_ADAPTER_TYPE = "API"


def merge_custom_properties(*sources: Mapping[str, str] | None) -> dict[str, str]:
    """Merge property maps left to right. Later sources win; ``None`` is skipped."""
    merged: dict[str, str] = {}
    for source in sources:
        if source:
            merged.update(source)
    return merged


def is_container_host(properties: Mapping[str, str]) -> bool:
    """Whether the request asks for machines that will host containers."""
    return CONTAINER_HOST in properties
