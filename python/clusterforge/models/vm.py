"""
clusterforge/models/vm.py

Defines Pydantic models for VM lifecycle data:
 - VMRequest: one VM to create, sizes already in provider units
 - VMStatus: a point-in-time health snapshot, never cached
 - RoleIPSets: node IPs split by role
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field, field_validator

from clusterforge.models.cluster import NodeRole

NodeIPMap = Dict[str, str]


class VMRequest(BaseModel):
    """
    A request to create a single VM, derived 1:1 from a NodeGroup replica.

    Attributes:
        name: Deterministic VM name, `{cluster}-{role}-{index}`.
        role: Role of the owning node group.
        cpu: vCPU count.
        memory_mib: Memory in MiB.
        disk_gib: Boot disk size in GiB.
        image: Boot image reference.
        extra_disks_gib: Additional data disk sizes in GiB.
    """

    name: str
    role: NodeRole
    cpu: int = Field(ge=1)
    memory_mib: int = Field(ge=1)
    disk_gib: int = Field(ge=1)
    image: str = ""
    extra_disks_gib: List[int] = Field(default_factory=list)


class VMStatus(BaseModel):
    healthy: bool = False
    ip: str = ""

    @property
    def ready(self) -> bool:
        return self.healthy and bool(self.ip)


class RoleIPSets(BaseModel):
    """Node IPs partitioned by role, control-plane list first in configuration order."""

    control_plane_ips: List[str]
    worker_ips: List[str] = Field(default_factory=list)

    @field_validator("control_plane_ips")
    @classmethod
    def validate_control_plane(cls, val: List[str]) -> List[str]:
        if not val:
            raise ValueError("at least one control-plane IP is required")
        return val
