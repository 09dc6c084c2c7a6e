"""Shared fixtures: a small management cluster spec and an in-memory provider."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from clusterforge.models.cluster import ClusterSpec, load_bootstrap_config
from clusterforge.models.vm import VMRequest, VMStatus


def make_raw_config(**overrides: Any) -> Dict[str, Any]:
    cluster: Dict[str, Any] = {
        "name": "mgmt",
        "provider": "proxmox",
        "talos": {
            "version": "v1.9.5",
            "controlPlaneEndpoint": "mgmt.example.com",
            "controlPlaneVIP": "10.0.0.100",
        },
        "proxmox": {
            "endpoint": "https://pve.example.com:8006",
            "username": "root@pam",
            "password": "secret",
            "storageLocation": "local-lvm",
            "availableVMIdStart": 200,
            "availableVMIdEnd": 210,
            "nodes": ["pve1", "pve2"],
        },
        "nodes": [
            {"role": "control-plane", "count": 1, "cpu": 4, "ram": "8GB", "disk": "50GB"},
            {"role": "worker", "count": 2, "cpu": 4, "ram": "16GB", "disk": "100GB"},
        ],
    }
    cluster.update(overrides)
    return {"managementCluster": cluster}


@pytest.fixture
def raw_config() -> Dict[str, Any]:
    return make_raw_config()


@pytest.fixture
def mgmt_spec(tmp_path: Any) -> ClusterSpec:
    raw = make_raw_config(outputDir=str(tmp_path / "talosconfig"))
    return load_bootstrap_config(raw).management_cluster


class FakeProvider:
    """In-memory ProviderAdapter.

    `statuses` maps VM name to a list of VMStatus snapshots returned in turn; the
    last one repeats. Names listed in `failing` raise on every status call.
    """

    def __init__(
        self,
        statuses: Optional[Dict[str, List[VMStatus]]] = None,
        failing: Optional[List[str]] = None,
        fail_create_at: Optional[str] = None,
    ) -> None:
        self.statuses = statuses or {}
        self.failing = set(failing or [])
        self.fail_create_at = fail_create_at
        self.created: List[VMRequest] = []
        self.deleted: List[str] = []
        self.status_calls: Dict[str, int] = {}
        self.closed = False

    async def create_vm(self, request: VMRequest) -> str:
        if request.name == self.fail_create_at:
            raise RuntimeError(f"quota exceeded creating {request.name}")
        self.created.append(request)
        return str(100 + len(self.created))

    async def delete_vm(self, vm_id: str) -> None:
        self.deleted.append(vm_id)

    async def get_vm_status(self, name: str) -> VMStatus:
        self.status_calls[name] = self.status_calls.get(name, 0) + 1
        if name in self.failing:
            raise RuntimeError(f"VM {name} not found")
        snapshots = self.statuses.get(name) or [VMStatus()]
        index = min(self.status_calls[name], len(snapshots)) - 1
        return snapshots[index]

    async def close(self) -> None:
        self.closed = True


MGMT_IPS = {
    "mgmt-control-plane-1": "10.0.0.11",
    "mgmt-worker-1": "10.0.0.21",
    "mgmt-worker-2": "10.0.0.22",
}


@pytest.fixture
def ready_provider() -> FakeProvider:
    return FakeProvider(
        statuses={name: [VMStatus(healthy=True, ip=ip)] for name, ip in MGMT_IPS.items()}
    )
