"""
clusterforge/bootstrap/provisioner.py

Turns a ClusterSpec into VM-create calls and splits the resulting IPs by role.

VM names are `{cluster}-{role}-{index}` for index 1..count, so re-running with the
same spec targets the same names. A failed run is never rolled back here; the
operator can use teardown_vms to remove what was created.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from clusterforge.adapters.providers.base import ProviderAdapter
from clusterforge.errors import InconsistentStateError
from clusterforge.models.cluster import ClusterSpec, NodeGroup, NodeRole, parse_size_gb
from clusterforge.models.vm import NodeIPMap, RoleIPSets, VMRequest


def build_vm_request(group: NodeGroup, name: str) -> VMRequest:
    """Translate one NodeGroup replica into provider units (MiB memory, GiB disks)."""
    return VMRequest(
        name=name,
        role=group.role,
        cpu=group.cpu,
        memory_mib=parse_size_gb(group.ram) * 1024,
        disk_gib=parse_size_gb(group.disk),
        image=group.image,
        extra_disks_gib=[parse_size_gb(size) for size in group.extra_disks],
    )


class Provisioner:
    def __init__(
        self, provider: ProviderAdapter, logger: Optional[logging.Logger] = None
    ) -> None:
        self._provider = provider
        self._logger = logger or logging.getLogger(__name__)

    async def provision_vms(self, spec: ClusterSpec) -> List[str]:
        """
        Create every VM the cluster spec derives, one at a time, stopping at the first failure.

        Returns:
            The provider-assigned ids, in configuration order.

        Raises:
            Whatever the provider raises for the failing VM, after logging it.
        """
        ids: List[str] = []
        for group, name in spec.iter_vms():
            self._logger.info("Creating VM %s (role=%s)", name, group.role.value)
            try:
                vm_id = await self._provider.create_vm(build_vm_request(group, name))
            except Exception:
                self._logger.error("Failed to create VM %s", name)
                raise
            ids.append(vm_id)
        return ids

    async def teardown_vms(self, spec: ClusterSpec) -> List[str]:
        """
        Delete every derived VM that still exists. VMs the provider cannot find
        are logged and skipped.

        Returns:
            Names of the VMs that were deleted.
        """
        deleted: List[str] = []
        for _, name in spec.iter_vms():
            try:
                await self._provider.get_vm_status(name)
            except Exception as exc:
                self._logger.warning("Skipping %s: %s", name, exc)
                continue
            self._logger.info("Deleting VM %s", name)
            await self._provider.delete_vm(name)
            deleted.append(name)
        return deleted


def separate_nodes_by_role(
    spec: ClusterSpec, node_ips: NodeIPMap
) -> Tuple[List[str], List[str]]:
    """
    Split NodeIPMap into (control_plane_ips, worker_ips), preserving configuration order.

    Raises:
        InconsistentStateError: If a derived VM name has no IP, or no control-plane
            IP results.
    """
    control_planes: List[str] = []
    workers: List[str] = []

    for group, name in spec.iter_vms():
        ip = node_ips.get(name)
        if not ip:
            raise InconsistentStateError(f"missing IP for VM {name}")
        if group.role == NodeRole.control_plane:
            control_planes.append(ip)
        else:
            workers.append(ip)

    if not control_planes:
        raise InconsistentStateError("no control plane nodes found")

    return control_planes, workers


def classify_nodes(spec: ClusterSpec, node_ips: NodeIPMap) -> RoleIPSets:
    control_planes, workers = separate_nodes_by_role(spec, node_ips)
    return RoleIPSets(control_plane_ips=control_planes, worker_ips=workers)
