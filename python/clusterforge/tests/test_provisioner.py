"""Unit tests for VM provisioning and role classification."""

from __future__ import annotations

import pytest

from clusterforge.bootstrap.provisioner import (
    Provisioner,
    build_vm_request,
    classify_nodes,
    separate_nodes_by_role,
)
from clusterforge.errors import InconsistentStateError
from clusterforge.models.cluster import NodeGroup, NodeRole

from conftest import MGMT_IPS, FakeProvider


class TestBuildVMRequest:
    def test_units_converted(self):
        group = NodeGroup(
            role=NodeRole.worker,
            count=1,
            cpu=8,
            ram="16GB",
            disk="100G",
            image="local:iso/talos.iso",
            extra_disks=("200GB",),
        )
        request = build_vm_request(group, "lab-worker-1")
        assert request.memory_mib == 16 * 1024
        assert request.disk_gib == 100
        assert request.extra_disks_gib == [200]
        assert request.cpu == 8
        assert request.image == "local:iso/talos.iso"


class TestProvisioner:
    @pytest.mark.asyncio
    async def test_creates_every_derived_vm_in_order(self, mgmt_spec):
        provider = FakeProvider()
        ids = await Provisioner(provider).provision_vms(mgmt_spec)

        assert [r.name for r in provider.created] == mgmt_spec.derived_vm_names()
        assert ids == ["101", "102", "103"]
        assert provider.created[0].role == NodeRole.control_plane

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, mgmt_spec):
        provider = FakeProvider(fail_create_at="mgmt-worker-1")
        with pytest.raises(RuntimeError, match="quota exceeded"):
            await Provisioner(provider).provision_vms(mgmt_spec)
        assert [r.name for r in provider.created] == ["mgmt-control-plane-1"]

    @pytest.mark.asyncio
    async def test_teardown_skips_missing(self, mgmt_spec):
        provider = FakeProvider(failing=["mgmt-worker-2"])
        deleted = await Provisioner(provider).teardown_vms(mgmt_spec)
        assert deleted == ["mgmt-control-plane-1", "mgmt-worker-1"]
        assert provider.deleted == deleted


class TestClassifier:
    def test_mgmt_scenario(self, mgmt_spec):
        control_planes, workers = separate_nodes_by_role(mgmt_spec, dict(MGMT_IPS))
        assert control_planes == ["10.0.0.11"]
        assert workers == ["10.0.0.21", "10.0.0.22"]

    def test_role_sets(self, mgmt_spec):
        roles = classify_nodes(mgmt_spec, dict(MGMT_IPS))
        assert roles.control_plane_ips == ["10.0.0.11"]
        assert roles.worker_ips == ["10.0.0.21", "10.0.0.22"]

    def test_missing_ip(self, mgmt_spec):
        ips = dict(MGMT_IPS)
        del ips["mgmt-worker-2"]
        with pytest.raises(InconsistentStateError, match="mgmt-worker-2"):
            separate_nodes_by_role(mgmt_spec, ips)

    def test_no_control_plane_nodes(self, mgmt_spec):
        workers_only = mgmt_spec.model_copy(
            update={"nodes": tuple(g for g in mgmt_spec.nodes if g.role == NodeRole.worker)}
        )
        with pytest.raises(InconsistentStateError, match="no control plane nodes found"):
            separate_nodes_by_role(workers_only, dict(MGMT_IPS))

    def test_empty_ip(self, mgmt_spec):
        ips = dict(MGMT_IPS, **{"mgmt-control-plane-1": ""})
        with pytest.raises(InconsistentStateError, match="mgmt-control-plane-1"):
            separate_nodes_by_role(mgmt_spec, ips)
