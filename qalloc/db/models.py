"""Database models for QAlloc persistence.

All models use SQLModel for Pydantic + SQLAlchemy integration. Two groups
live here:
- Task records driven by the task engines (allocation and capacity update)
- Inventory records owned by collaborators: pools, placements, endpoints,
  profiles, descriptions, computes, disks, NICs, networks, subnets

Records reference each other by id. Maps and lists are JSON columns.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlmodel import JSON, Column, Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


class TaskStage(str, Enum):
    """Coarse stage of a task record."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class SubStage(str, Enum):
    """Ordered substage enum.

    Declaration order is the progression order. ``COMPLETED`` and ``ERROR``
    are terminal in every subclass.
    """

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    @property
    def is_terminal(self) -> bool:
        return self.name in ("COMPLETED", "ERROR")


class AllocationSubStage(SubStage):
    CREATED = "created"
    CONTEXT_PREPARED = "context_prepared"
    RESOURCES_NAMED = "resources_named"
    PLACEMENT_SELECTED = "placement_selected"
    ALLOCATION_STARTED = "allocation_started"
    ALLOCATION_COMPLETED = "allocation_completed"
    COMPLETED = "completed"
    ERROR = "error"


class CapacitySubStage(SubStage):
    CREATED = "created"
    QUERY_COMPUTES = "query_computes"
    ACCUMULATE_COMPUTE_FIGURES = "accumulate_compute_figures"
    UPDATE_RESOURCE_POOL = "update_resource_pool"
    UPDATE_PLACEMENTS = "update_placements"
    COMPLETED = "completed"
    ERROR = "error"


class ComputeType(str, Enum):
    VM_HOST = "VM_HOST"
    VM_GUEST = "VM_GUEST"
    DOCKER_CONTAINER = "DOCKER_CONTAINER"
    ENDPOINT_HOST = "ENDPOINT_HOST"


class IsolationType(str, Enum):
    NONE = "none"
    SUBNET = "subnet"


class NetworkType(str, Enum):
    PUBLIC = "public"
    ISOLATED = "isolated"
    EXTERNAL = "external"


# =========================================================================
# Task records
# =========================================================================


class AllocationTaskState(SQLModel, table=True):
    """Persisted state of one compute allocation saga."""

    __tablename__ = "allocation_tasks"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    stage: TaskStage = Field(default=TaskStage.RUNNING, index=True)
    substage: AllocationSubStage = Field(default=AllocationSubStage.CREATED)

    resource_description_id: str
    resource_count: int = Field(default=1)
    resource_pool_id: str | None = Field(default=None)
    placement_group_id: str | None = Field(default=None)
    tenant_group: str | None = Field(default=None, index=True)
    profile_constraints: list[str] | None = Field(default=None, sa_column=Column(JSON))

    resource_links: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    selected_placements: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    resource_names: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))

    # Filled while preparing the context
    endpoint_id: str | None = Field(default=None)
    endpoint_compute_id: str | None = Field(default=None)
    endpoint_type: str | None = Field(default=None)
    profile_id: str | None = Field(default=None)

    callback_ref: str | None = Field(default=None)
    callback_notified: bool = Field(default=False)
    error_info: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class CapacityUpdateState(SQLModel, table=True):
    """Persisted state of one pool capacity update.

    The id is derived from the pool id so that a second trigger for the same
    pool collides on the primary key.
    """

    __tablename__ = "capacity_update_tasks"
    __table_args__ = {"extend_existing": True}

    id: str = Field(primary_key=True)
    stage: TaskStage = Field(default=TaskStage.RUNNING, index=True)
    substage: CapacitySubStage = Field(default=CapacitySubStage.CREATED)

    resource_pool_id: str
    page_cursor: str | None = Field(default=None)
    aggregated_stats: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    callback_ref: str | None = Field(default=None)
    callback_notified: bool = Field(default=False)
    error_info: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# =========================================================================
# Inventory records
# =========================================================================


class ResourcePool(SQLModel, table=True):
    __tablename__ = "resource_pools"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    tenant_group: str | None = Field(default=None)
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    max_memory_bytes: int | None = Field(default=None)
    min_memory_bytes: int | None = Field(default=None)


class GroupPlacement(SQLModel, table=True):
    """Quota unit bounding how much of a pool a tenant group may consume."""

    __tablename__ = "group_placements"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    group_key: str = Field(default="", index=True)
    resource_pool_id: str | None = Field(default=None, index=True)
    priority: int = Field(default=1)
    memory_limit: int = Field(default=0)
    available_memory: int = Field(default=0)


class Endpoint(SQLModel, table=True):
    __tablename__ = "endpoints"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    endpoint_type: str
    compute_id: str | None = Field(default=None)  # the endpoint's own compute record
    region_id: str | None = Field(default=None)
    zone_id: str | None = Field(default=None)
    environment_name: str | None = Field(default=None)


class Profile(SQLModel, table=True):
    """Provisioning profile; scoped to an endpoint or to an endpoint type."""

    __tablename__ = "profiles"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    endpoint_id: str | None = Field(default=None, index=True)
    endpoint_type: str | None = Field(default=None, index=True)
    tenant_group: str | None = Field(default=None, index=True)
    subnet_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    isolation_type: IsolationType = Field(default=IsolationType.NONE)
    isolation_network_id: str | None = Field(default=None)


class ComputeDescription(SQLModel, table=True):
    __tablename__ = "compute_descriptions"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str
    cpu_count: int = Field(default=1)
    cpu_mhz_per_core: int = Field(default=0)
    total_memory_bytes: int = Field(default=0)
    supported_children: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    disk_template_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    nic_template_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tag_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    region_id: str | None = Field(default=None)
    zone_id: str | None = Field(default=None)
    environment_name: str | None = Field(default=None)


class Compute(SQLModel, table=True):
    __tablename__ = "computes"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    type: ComputeType = Field(default=ComputeType.VM_GUEST)
    description_id: str | None = Field(default=None, index=True)
    parent_id: str | None = Field(default=None, index=True)
    resource_pool_id: str | None = Field(default=None, index=True)
    endpoint_id: str | None = Field(default=None)
    correlation_id: str | None = Field(default=None, index=True)
    placement_group_id: str | None = Field(default=None)
    tenant_group: str | None = Field(default=None)
    power_state: str = Field(default="ON")
    lifecycle_state: str = Field(default="READY")
    disk_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    nic_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tag_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)


class Disk(SQLModel, table=True):
    """A disk. Templates and their clones share this table."""

    __tablename__ = "disks"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    disk_type: str = Field(default="HDD")
    capacity_mbytes: int = Field(default=0)
    template_id: str | None = Field(default=None, index=True)
    tenant_group: str | None = Field(default=None)
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))


class NicTemplate(SQLModel, table=True):
    __tablename__ = "nic_templates"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    device_index: int = Field(default=0)
    address: str | None = Field(default=None)
    network_id: str | None = Field(default=None)
    subnet_id: str | None = Field(default=None)
    assign_public_ip: bool = Field(default=False)
    security_group_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    group_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tag_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))


class NetworkInterface(SQLModel, table=True):
    __tablename__ = "network_interfaces"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    device_index: int = Field(default=0)
    address: str | None = Field(default=None)
    network_id: str | None = Field(default=None)
    subnet_id: str | None = Field(default=None)
    template_id: str | None = Field(default=None)
    endpoint_id: str | None = Field(default=None)
    tenant_group: str | None = Field(default=None)
    security_group_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    group_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tag_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    custom_properties: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))


class Network(SQLModel, table=True):
    __tablename__ = "networks"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    network_type: NetworkType = Field(default=NetworkType.EXTERNAL)
    provision_profile_id: str | None = Field(default=None)


class Subnet(SQLModel, table=True):
    __tablename__ = "subnets"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(default="")
    network_id: str | None = Field(default=None, index=True)
    supports_public_ip: bool = Field(default=False)
    default_for_zone: bool = Field(default=False)
    infrastructure_use: bool = Field(default=False)
    tenant_group: str | None = Field(default=None)
    endpoint_id: str | None = Field(default=None)
