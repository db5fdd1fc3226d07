"""Request and result schemas exchanged with task callers."""

from typing import Any

from pydantic import BaseModel, Field, model_validator

from qalloc.db.models import TaskStage


class AllocationRequest(BaseModel):
    """Input for a compute allocation task."""

    id: str | None = Field(
        default=None,
        description="Optional task id; a repeated id is treated as the same request",
    )
    resource_description_id: str = Field(..., min_length=1)
    resource_count: int = Field(default=1, ge=1, description="Number of machines to provision")
    resource_pool_id: str | None = Field(default=None)
    placement_group_id: str | None = Field(
        default=None,
        description="Group placement whose pool is used when no pool is given",
    )
    tenant_group: str | None = Field(default=None)
    profile_constraints: list[str] | None = Field(
        default=None,
        description="Allow-list of profile ids, in order of preference",
    )
    custom_properties: dict[str, str] = Field(default_factory=dict)
    callback_ref: str | None = Field(default=None, description="URL notified on completion")

    @model_validator(mode="after")
    def _require_pool_or_placement(self) -> "AllocationRequest":
        if not self.resource_pool_id and not self.placement_group_id:
            raise ValueError("'placement_group_id' and 'resource_pool_id' cannot be both empty")
        return self


class TaskResult(BaseModel):
    """Payload delivered once when a task reaches a terminal stage."""

    task_id: str
    kind: str
    stage: TaskStage
    resource_links: list[str] | None = None
    error_info: dict[str, Any] | None = None
