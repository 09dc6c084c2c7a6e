"""Unit tests for the kube-vip stage."""

from __future__ import annotations

import os
from unittest.mock import AsyncMock

import pytest

from clusterforge.adapters.tools import DockerManifestGenerator
from clusterforge.bootstrap.kubevip import KUBE_VIP_RBAC_URL, KubeVipInitializer
from clusterforge.utils.async_command_runner import CommandError

SERVER = "https://10.0.0.11:6443"
MANIFEST = "apiVersion: apps/v1\nkind: DaemonSet\n"


@pytest.mark.asyncio
async def test_configure_vip_writes_and_applies(mgmt_spec):
    generator = AsyncMock()
    generator.generate_vip_manifest.return_value = MANIFEST
    kubectl = AsyncMock()

    path = await KubeVipInitializer(generator, kubectl).configure_vip(
        mgmt_spec, SERVER, "kubeconfig"
    )

    generator.generate_vip_manifest.assert_awaited_once_with(
        version="v0.8.9", interface="ens3", address="10.0.0.100"
    )
    assert path == os.path.join(mgmt_spec.output_dir, "kube-vip-ds.yaml")
    with open(path) as f:
        assert f.read() == MANIFEST

    applied = [c.args for c in kubectl.execute_command.call_args_list]
    assert [a[a.index("-f") + 1] for a in applied] == [KUBE_VIP_RBAC_URL, path]
    assert all(a[:2] == ("--server", SERVER) for a in applied)


@pytest.mark.asyncio
async def test_rbac_failure_names_substep(mgmt_spec):
    generator = AsyncMock()
    generator.generate_vip_manifest.return_value = MANIFEST
    kubectl = AsyncMock()
    kubectl.execute_command.side_effect = CommandError("kubectl command failed: 403")

    with pytest.raises(CommandError, match="apply kube-vip RBAC"):
        await KubeVipInitializer(generator, kubectl).configure_vip(
            mgmt_spec, SERVER, "kubeconfig"
        )
    assert kubectl.execute_command.await_count == 1


@pytest.mark.asyncio
async def test_generation_failure_names_substep(mgmt_spec):
    generator = AsyncMock()
    generator.generate_vip_manifest.side_effect = CommandError("docker command failed")
    kubectl = AsyncMock()

    with pytest.raises(CommandError, match="generate kube-vip manifest"):
        await KubeVipInitializer(generator, kubectl).configure_vip(
            mgmt_spec, SERVER, "kubeconfig"
        )
    kubectl.execute_command.assert_not_awaited()


@pytest.mark.asyncio
async def test_docker_generator_arguments():
    docker = AsyncMock()
    docker.execute_command.return_value = MANIFEST
    out = await DockerManifestGenerator(docker).generate_vip_manifest(
        version="v0.8.9", interface="eth0", address="10.0.0.100"
    )
    args = docker.execute_command.call_args.args
    assert out == MANIFEST
    assert "ghcr.io/kube-vip/kube-vip:v0.8.9" in args
    assert args[args.index("--interface") + 1] == "eth0"
    assert args[args.index("--address") + 1] == "10.0.0.100"
    assert "--leaderElection" in args
