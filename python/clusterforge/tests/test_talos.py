"""Unit tests for the Talos OS bootstrap stage."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from clusterforge.bootstrap.talos import TalosInitializer, config_patches, endpoint_url
from clusterforge.errors import BootstrapTimeoutError
from clusterforge.models.talos import TalosConfig
from clusterforge.utils.async_command_runner import CommandError


@pytest.fixture
def talos_config(tmp_path):
    return TalosConfig(
        cluster_name="mgmt",
        control_plane_endpoint="mgmt.example.com",
        output_dir=str(tmp_path / "talosconfig"),
        control_plane_nodes=["10.0.0.11", "10.0.0.12"],
        worker_nodes=["10.0.0.21"],
    )


def subcommands(tool: AsyncMock):
    return [call.args[0] for call in tool.execute_command.call_args_list]


class TestHelpers:
    def test_endpoint_url_adds_port(self):
        assert endpoint_url("mgmt.example.com") == "https://mgmt.example.com:6443"

    def test_endpoint_url_keeps_port_and_scheme(self):
        assert endpoint_url("https://mgmt.example.com:7443") == "https://mgmt.example.com:7443"

    def test_patches_disable_cni_and_set_pod_subnet(self):
        patches = {p["path"]: p["value"] for p in config_patches("10.32.0.0/16")}
        assert patches["/cluster/network/cni"] == {"name": "none"}
        assert patches["/cluster/network/podSubnets"] == ["10.32.0.0/16"]
        assert patches["/machine/kernel"]["modules"] == [{"name": "openvswitch"}]
        mounts = [m["source"] for m in patches["/machine/kubelet/extraMounts"]]
        assert "/run/openvswitch" in mounts and "/var/log/ovn" in mounts


class TestTalosInitializer:
    @pytest.mark.asyncio
    async def test_configure_os_order(self, talos_config):
        talosctl = AsyncMock()
        talos = TalosInitializer(talosctl, registration_poll_interval=0.01)

        await talos.configure_os(talos_config)

        assert subcommands(talosctl) == [
            "gen",
            "apply-config",
            "apply-config",
            "apply-config",
            "version",
            "config",
            "bootstrap",
            "kubeconfig",
        ]
        calls = talosctl.execute_command.call_args_list
        applied = [(c.args[2], c.args[4].rsplit("/", 1)[-1]) for c in calls[1:4]]
        assert applied == [
            ("10.0.0.11", "controlplane.yaml"),
            ("10.0.0.12", "controlplane.yaml"),
            ("10.0.0.21", "worker.yaml"),
        ]
        assert all("--insecure" in c.args for c in calls[1:4])
        assert calls[6].args[:3] == ("bootstrap", "--nodes", "10.0.0.11")
        assert talos_config.kubeconfig_path in calls[7].args

    @pytest.mark.asyncio
    async def test_gen_config_carries_patches(self, talos_config):
        talosctl = AsyncMock()
        await TalosInitializer(talosctl).generate_config(talos_config)

        args = talosctl.execute_command.call_args.args
        assert args[:4] == ("gen", "config", "mgmt", "https://mgmt.example.com:6443")
        patches = json.loads(args[args.index("--config-patch") + 1])
        assert {"op": "add", "path": "/cluster/network/cni", "value": {"name": "none"}} in patches

    @pytest.mark.asyncio
    async def test_apply_failure_aborts(self, talos_config):
        talosctl = AsyncMock()
        talosctl.execute_command.side_effect = [
            "",
            CommandError("talosctl command failed: connection refused"),
        ]
        with pytest.raises(CommandError, match="control plane node 10.0.0.11"):
            await TalosInitializer(talosctl).configure_os(talos_config)
        assert talosctl.execute_command.call_count == 2

    @pytest.mark.asyncio
    async def test_bootstrap_runs_once(self, talos_config):
        talosctl = AsyncMock()

        async def execute(*args, env=None):
            if args[0] == "bootstrap":
                raise CommandError("talosctl command failed: etcd already bootstrapped")
            return ""

        talosctl.execute_command.side_effect = execute
        with pytest.raises(CommandError, match="bootstrap Talos on control plane"):
            await TalosInitializer(talosctl).configure_os(talos_config)
        assert subcommands(talosctl).count("bootstrap") == 1

    @pytest.mark.asyncio
    async def test_registration_polls_until_answer(self, talos_config):
        talosctl = AsyncMock()
        talosctl.execute_command.side_effect = [
            CommandError("not yet"),
            CommandError("not yet"),
            "Server: v1.9.5",
        ]
        talos = TalosInitializer(talosctl, registration_poll_interval=0.01)
        await talos.wait_for_nodes_to_register(talos_config)
        assert talosctl.execute_command.call_count == 3

    @pytest.mark.asyncio
    async def test_registration_timeout(self, talos_config):
        talosctl = AsyncMock()
        talosctl.execute_command.side_effect = CommandError("connection refused")
        talos = TalosInitializer(
            talosctl, registration_timeout=0.05, registration_poll_interval=0.01
        )
        with pytest.raises(BootstrapTimeoutError) as exc_info:
            await talos.wait_for_nodes_to_register(talos_config)
        assert exc_info.value.resource == "10.0.0.11"
