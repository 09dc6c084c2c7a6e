"""
clusterforge/bootstrap/talos.py

Installs and bootstraps Talos on the provisioned VMs:
  1) Generate cluster-wide machine configs (controlplane.yaml / worker.yaml) with
     patches: openvswitch kernel module, OVS/OVN kubelet bind mounts, no built-in
     CNI, our pod subnet, and the in-OS time sync disabled.
  2) Apply the control-plane config to every control-plane IP, then the worker
     config to every worker IP, one node at a time.
  3) Poll the first control-plane node until its Talos API answers.
  4) Point talosctl at that node and bootstrap etcd on it, exactly once.
  5) Retrieve the admin kubeconfig from the same node.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from clusterforge.adapters.tools import ToolAdapter
from clusterforge.errors import BootstrapTimeoutError
from clusterforge.models.talos import CONTROL_PLANE_CONFIG, WORKER_CONFIG, TalosConfig
from clusterforge.utils.async_command_runner import CommandError
from clusterforge.utils.polling import PollTimeout, poll_until

REGISTRATION_TIMEOUT = 180.0
REGISTRATION_POLL_INTERVAL = 10.0

_OVS_MOUNTS = ["/run/openvswitch", "/run/ovn", "/var/log/openvswitch", "/var/log/ovn"]


def config_patches(pod_subnet: str) -> List[Dict[str, Any]]:
    """JSON6902 patches applied to both generated machine configs."""
    return [
        {"op": "replace", "path": "/machine/time", "value": {"disabled": True}},
        {
            "op": "add",
            "path": "/machine/kernel",
            "value": {"modules": [{"name": "openvswitch"}]},
        },
        {"op": "add", "path": "/cluster/network/cni", "value": {"name": "none"}},
        {
            "op": "replace",
            "path": "/cluster/network/podSubnets",
            "value": [pod_subnet],
        },
        {
            "op": "add",
            "path": "/machine/kubelet/extraMounts",
            "value": [
                {
                    "source": mount,
                    "destination": mount,
                    "type": "bind",
                    "options": ["rbind", "rw"],
                }
                for mount in _OVS_MOUNTS
            ],
        },
    ]


def endpoint_url(endpoint: str) -> str:
    """`cp.example.com` -> `https://cp.example.com:6443`; explicit ports are kept."""
    host = endpoint.split("://", 1)[-1]
    return f"https://{host}" if ":" in host else f"https://{host}:6443"


class TalosInitializer:
    def __init__(
        self,
        talosctl: ToolAdapter,
        logger: Optional[logging.Logger] = None,
        registration_timeout: float = REGISTRATION_TIMEOUT,
        registration_poll_interval: float = REGISTRATION_POLL_INTERVAL,
    ) -> None:
        self._talosctl = talosctl
        self._logger = logger or logging.getLogger(__name__)
        self._registration_timeout = registration_timeout
        self._registration_poll_interval = registration_poll_interval

    async def configure_os(self, config: TalosConfig, insecure: bool = True) -> None:
        """Run the whole Talos sub-pipeline; any failing step aborts it.

        Raises:
            CommandError: If a talosctl step fails (wrapped with the step name).
            BootstrapTimeoutError: If the bootstrap node never answers.
        """
        self._logger.info("Starting Talos setup for cluster %s", config.cluster_name)

        await self._step("generate Talos config", self.generate_config(config))

        for node in config.control_plane_nodes:
            await self._step(
                f"apply Talos config to control plane node {node}",
                self.apply_config(config, node, CONTROL_PLANE_CONFIG, insecure),
            )
        for node in config.worker_nodes:
            await self._step(
                f"apply Talos config to worker node {node}",
                self.apply_config(config, node, WORKER_CONFIG, insecure),
            )

        await self.wait_for_nodes_to_register(config)

        node = config.bootstrap_node
        await self._step("configure Talos endpoint", self.set_endpoint(config, node))
        await self._step(
            "bootstrap Talos on control plane", self.bootstrap_control_plane(config, node)
        )
        await self._step("retrieve kubeconfig", self.retrieve_kubeconfig(config, node))

        self._logger.info("Talos setup complete")

    async def _step(self, label: str, coro: Any) -> None:
        try:
            await coro
        except CommandError as err:
            raise CommandError(
                f"failed to {label}: {err}", err.return_code, err.stderr
            ) from err

    async def generate_config(self, config: TalosConfig) -> None:
        self._logger.info(
            "Generating Talos configuration for %s (endpoint %s)",
            config.cluster_name,
            config.control_plane_endpoint,
        )
        os.makedirs(config.output_dir, exist_ok=True)
        await self._talosctl.execute_command(
            "gen",
            "config",
            config.cluster_name,
            endpoint_url(config.control_plane_endpoint),
            "--output",
            config.output_dir,
            "--config-patch",
            json.dumps(config_patches(config.pod_subnet)),
            "--force",
        )

    async def apply_config(
        self, config: TalosConfig, node: str, config_file: str, insecure: bool
    ) -> None:
        self._logger.info("Applying Talos config %s to node %s", config_file, node)
        args = [
            "apply-config",
            "--nodes",
            node,
            "--file",
            os.path.join(config.output_dir, config_file),
            "--talosconfig",
            config.talosconfig_path,
        ]
        if insecure:
            args.append("--insecure")
        await self._talosctl.execute_command(*args)

    async def wait_for_nodes_to_register(self, config: TalosConfig) -> None:
        """
        Poll `talosctl version` against the bootstrap node until its authenticated
        Talos API answers, bounded by the registration budget.

        Raises:
            BootstrapTimeoutError: If the node does not answer in time.
        """
        node = config.bootstrap_node
        self._logger.info(
            "Waiting up to %.0fs for Talos node %s to register",
            self._registration_timeout,
            node,
        )

        async def _probe() -> Optional[bool]:
            try:
                await self._talosctl.execute_command(
                    "version",
                    "--nodes",
                    node,
                    "--endpoints",
                    node,
                    "--talosconfig",
                    config.talosconfig_path,
                )
            except CommandError as err:
                self._logger.debug("Talos API on %s not ready: %s", node, err)
                return None
            return True

        try:
            await poll_until(
                _probe,
                timeout=self._registration_timeout,
                interval=self._registration_poll_interval,
            )
        except PollTimeout as exc:
            raise BootstrapTimeoutError(
                f"timed out waiting for Talos node {node} to register", resource=node
            ) from exc

    async def set_endpoint(self, config: TalosConfig, node: str) -> None:
        self._logger.info("Configuring Talos endpoint %s", node)
        await self._talosctl.execute_command(
            "config", "endpoint", node, "--talosconfig", config.talosconfig_path
        )

    async def bootstrap_control_plane(self, config: TalosConfig, node: str) -> None:
        # etcd bootstrap must happen exactly once; never wrap this in a retry
        self._logger.info("Bootstrapping Talos control plane on %s", node)
        await self._talosctl.execute_command(
            "bootstrap", "--nodes", node, "--talosconfig", config.talosconfig_path
        )

    async def retrieve_kubeconfig(self, config: TalosConfig, node: str) -> None:
        self._logger.info("Retrieving kubeconfig from %s", node)
        await self._talosctl.execute_command(
            "kubeconfig",
            config.kubeconfig_path,
            "--nodes",
            node,
            "--talosconfig",
            config.talosconfig_path,
            "--force",
            "--merge",
        )
