from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ResourceModel(BaseModel):
    name: str = Field(..., description="cpus|mem|disk|ports")
    role: str = Field("*", description="Role the capacity is reserved for")
    type: Literal["scalar", "ranges"]
    value: float | list[list[int]] = Field(..., description="Scalar amount (mem/disk in MB) or [[begin, end], ...]")


class NodeState(BaseModel):
    hostname: str
    work_dir: str
    isolation: str = Field(..., description="Isolation backend kind in use")
    resources: list[ResourceModel]
