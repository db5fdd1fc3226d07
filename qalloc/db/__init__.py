"""Database module for QAlloc persistence."""

from qalloc.db.engine import close_db, get_engine, get_session_factory, init_db
from qalloc.db.models import (
    AllocationSubStage,
    AllocationTaskState,
    CapacitySubStage,
    CapacityUpdateState,
    Compute,
    ComputeDescription,
    ComputeType,
    Disk,
    Endpoint,
    GroupPlacement,
    IsolationType,
    Network,
    NetworkInterface,
    NetworkType,
    NicTemplate,
    Profile,
    ResourcePool,
    Subnet,
    SubStage,
    TaskStage,
)

__all__ = [
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "AllocationSubStage",
    "AllocationTaskState",
    "CapacitySubStage",
    "CapacityUpdateState",
    "Compute",
    "ComputeDescription",
    "ComputeType",
    "Disk",
    "Endpoint",
    "GroupPlacement",
    "IsolationType",
    "Network",
    "NetworkInterface",
    "NetworkType",
    "NicTemplate",
    "Profile",
    "ResourcePool",
    "Subnet",
    "SubStage",
    "TaskStage",
]
