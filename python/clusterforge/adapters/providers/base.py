"""
clusterforge/adapters/providers/base.py

The contract every infrastructure backend implements. One implementation per
hypervisor API; the orchestrator only ever sees this protocol.
"""

from __future__ import annotations

from typing import Protocol

from clusterforge.models.vm import VMRequest, VMStatus


class ProviderAdapter(Protocol):
    async def create_vm(self, request: VMRequest) -> str:
        """Create and start one VM, returning the provider-assigned id."""
        ...

    async def delete_vm(self, vm_id: str) -> None:
        ...

    async def get_vm_status(self, name: str) -> VMStatus:
        """Point-in-time health and primary IPv4 of the VM called `name`."""
        ...

    async def close(self) -> None:
        """Release any client session held by the adapter."""
        ...
