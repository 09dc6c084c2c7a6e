"""Unit tests for the Proxmox provider adapter (HTTP layer mocked out)."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from clusterforge.adapters.providers import ProxmoxProvider, get_provider
from clusterforge.adapters.providers.proxmox import ProxmoxInterface, first_ipv4
from clusterforge.errors import BootstrapConfigError
from clusterforge.models.cluster import NodeRole, load_bootstrap_config
from clusterforge.models.vm import VMRequest

from conftest import make_raw_config

RESOURCES = [
    {"vmid": 200, "name": "mgmt-control-plane-1", "node": "pve1", "status": "running", "type": "qemu"},
    {"vmid": 201, "name": "mgmt-worker-1", "node": "pve2", "status": "stopped", "type": "qemu"},
]

AGENT = {
    "result": [
        {"name": "lo", "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "127.0.0.1"}]},
        {
            "name": "ens3",
            "ip-addresses": [
                {"ip-address-type": "ipv6", "ip-address": "fe80::1"},
                {"ip-address-type": "ipv4", "ip-address": "10.0.0.11"},
            ],
        },
    ]
}


@pytest.fixture
def provider(mgmt_spec):
    prov = ProxmoxProvider(mgmt_spec.proxmox)

    async def request(method, path, payload=None):
        if path.startswith("/api2/json/cluster/resources"):
            return RESOURCES
        if path.endswith("/agent/network-get-interfaces"):
            return AGENT
        return None

    prov._request = AsyncMock(side_effect=request)  # type: ignore[method-assign]
    return prov


def test_first_ipv4_skips_loopback_and_ipv6():
    interfaces = [ProxmoxInterface.model_validate(i) for i in AGENT["result"]]
    assert first_ipv4(interfaces) == "10.0.0.11"
    assert first_ipv4([]) == ""


def test_factory_builds_proxmox(mgmt_spec):
    assert isinstance(get_provider(mgmt_spec), ProxmoxProvider)


def test_nutanix_provider_requires_its_section():
    raw = make_raw_config(provider="nutanix")
    del raw["managementCluster"]["proxmox"]
    with pytest.raises(BootstrapConfigError, match="nutanix"):
        load_bootstrap_config(raw)


@pytest.mark.asyncio
async def test_next_vmid_skips_used(provider):
    assert await provider.next_vmid() == 202


@pytest.mark.asyncio
async def test_create_vm_payload(provider):
    request = VMRequest(
        name="mgmt-worker-2",
        role=NodeRole.worker,
        cpu=4,
        memory_mib=16384,
        disk_gib=100,
        image="local:iso/talos.iso",
        extra_disks_gib=[200],
    )
    vm_id = await provider.create_vm(request)

    assert vm_id == "202"
    method, path, payload = provider._request.await_args_list[-1].args
    assert method == "POST"
    assert path in ("/api2/json/nodes/pve1/qemu", "/api2/json/nodes/pve2/qemu")
    assert payload["vmid"] == 202
    assert payload["memory"] == 16384
    assert payload["cores"] == 4
    assert payload["scsi0"] == "local-lvm:100,iothread=on"
    assert payload["scsi1"] == "local-lvm:200,iothread=on"
    assert payload["ide2"] == "local:iso/talos.iso,media=cdrom"
    assert payload["net0"].startswith("virtio,bridge=vmbr0")


@pytest.mark.asyncio
async def test_status_running_with_agent_ip(provider):
    status = await provider.get_vm_status("mgmt-control-plane-1")
    assert status.healthy is True
    assert status.ip == "10.0.0.11"
    assert status.ready


@pytest.mark.asyncio
async def test_status_stopped_has_no_ip(provider):
    status = await provider.get_vm_status("mgmt-worker-1")
    assert status.healthy is False
    assert status.ip == ""


@pytest.mark.asyncio
async def test_status_unknown_vm(provider):
    with pytest.raises(RuntimeError, match="not found"):
        await provider.get_vm_status("mgmt-worker-9")


@pytest.mark.asyncio
async def test_delete_stopped_vm_by_name(provider):
    await provider.delete_vm("mgmt-worker-1")
    method, path = provider._request.await_args_list[-1].args[:2]
    assert method == "DELETE"
    assert path == "/api2/json/nodes/pve2/qemu/201?purge=1&destroy-unreferenced-disks=1"
