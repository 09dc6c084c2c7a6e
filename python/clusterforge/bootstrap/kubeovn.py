"""
clusterforge/bootstrap/kubeovn.py

Kube-OVN (CNI) setup:
  - wait for the first node to register with the API server
  - map node INTERNAL-IP -> NAME from `kubectl get nodes -o wide`
  - label control-plane nodes `kube-ovn/role=master`, workers as workers
  - render chart values with the peer list [VIP, other control planes] and
    helm install the chart from a temporary values file
"""

from __future__ import annotations

import ipaddress
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from clusterforge.adapters.tools import ToolAdapter
from clusterforge.errors import BootstrapTimeoutError, InconsistentStateError
from clusterforge.models.cluster import ClusterSpec
from clusterforge.utils.async_command_runner import CommandError
from clusterforge.utils.ephemeral_file import ephemeral_manager
from clusterforge.utils.polling import PollTimeout, poll_until

NODE_POLL_INTERVAL = 5.0

KUBE_OVN_REPO_NAME = "kube-ovn"
KUBE_OVN_REPO_URL = "https://kubeovn.github.io/kube-ovn/"
KUBE_OVN_CHART = "kube-ovn/kube-ovn"
KUBE_OVN_NAMESPACE = "kube-system"
VALUES_TEMPLATE = "kubeovn-values.yaml.j2"

CONTROL_PLANE_LABEL = "kube-ovn/role=master"
WORKER_LABEL = "node-role.kubernetes.io/worker="

ASSETS_DIR = Path(__file__).parent / "assets"


def parse_node_table(output: str) -> Dict[str, str]:
    """
    Parse `kubectl get nodes -o wide` into {INTERNAL-IP: NAME}.

    Column positions come from the header row; data rows shorter than either
    column are skipped.

    Raises:
        InconsistentStateError: If the header lacks NAME or INTERNAL-IP.
    """
    lines = output.splitlines()
    headers = lines[0].split() if lines else []
    if "NAME" not in headers or "INTERNAL-IP" not in headers:
        raise InconsistentStateError(
            "could not find NAME and INTERNAL-IP columns in kubectl output"
        )
    name_index = headers.index("NAME")
    ip_index = headers.index("INTERNAL-IP")

    ip_to_name: Dict[str, str] = {}
    for line in lines[1:]:
        fields = line.split()
        if len(fields) <= max(name_index, ip_index):
            continue
        ip_to_name[fields[ip_index]] = fields[name_index]
    return ip_to_name


def ready_node_names(output: str) -> List[str]:
    """
    Names of the nodes whose STATUS column reports Ready in `kubectl get nodes`.

    STATUS may carry extra conditions ("Ready,SchedulingDisabled"); "NotReady"
    never counts. Output without a NAME/STATUS header yields no nodes.
    """
    lines = output.splitlines()
    headers = lines[0].split() if lines else []
    if "NAME" not in headers or "STATUS" not in headers:
        return []
    name_index = headers.index("NAME")
    status_index = headers.index("STATUS")

    ready: List[str] = []
    for line in lines[1:]:
        fields = line.split()
        if len(fields) <= max(name_index, status_index):
            continue
        if "Ready" in fields[status_index].split(","):
            ready.append(fields[name_index])
    return ready


def resolve_node_names(
    logger: logging.Logger, ip_to_name: Dict[str, str], ips: List[str]
) -> List[str]:
    """Map IPs to node names, skipping unknown IPs and dropping duplicate names."""
    names: List[str] = []
    for ip in ips:
        name = ip_to_name.get(ip)
        if name is None:
            logger.warning("IP %s not found in cluster nodes", ip)
            continue
        if name not in names:
            names.append(name)
    return names


def render_peer_list(vip: str, control_plane_ips: List[str], bound_ip: str) -> List[str]:
    """
    `[vip] + control_plane_ips`, without `bound_ip` and without duplicates.
    The VIP is always first.
    """
    peers = [vip]
    for ip in control_plane_ips:
        if ip == bound_ip or ip in peers:
            continue
        peers.append(ip)
    return peers


def pod_gateway(pod_subnet: str) -> str:
    """First usable address of the pod subnet."""
    return str(next(ipaddress.ip_network(pod_subnet, strict=False).hosts()))


def render_values(
    peers: List[str], pod_subnet: str, template_dir: Optional[Path] = None
) -> str:
    environment = Environment(
        loader=FileSystemLoader(template_dir or ASSETS_DIR),
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )
    template = environment.get_template(VALUES_TEMPLATE)
    joined = ",".join(peers)
    return template.render(
        MASTER_NODES=joined,
        NODE_IPS=joined,
        POD_CIDR=pod_subnet,
        POD_GATEWAY=pod_gateway(pod_subnet),
    )


class KubeOvnInitializer:
    def __init__(
        self,
        kubectl: ToolAdapter,
        helm: ToolAdapter,
        logger: Optional[logging.Logger] = None,
        node_poll_interval: float = NODE_POLL_INTERVAL,
        template_dir: Optional[Path] = None,
    ) -> None:
        self._kubectl = kubectl
        self._helm = helm
        self._logger = logger or logging.getLogger(__name__)
        self._node_poll_interval = node_poll_interval
        self._template_dir = template_dir

    async def wait_for_nodes(self, server: str, kubeconfig: str, timeout: float) -> None:
        """
        Poll `get nodes` until at least one node reports STATUS Ready.

        Raises:
            BootstrapTimeoutError: If no node is Ready before the deadline.
        """
        self._logger.info("Waiting for nodes to register via %s", server)

        async def _probe() -> Optional[bool]:
            try:
                out = await self._kubectl.execute_command(
                    "--server",
                    server,
                    "--kubeconfig",
                    kubeconfig,
                    "get",
                    "nodes",
                    "--request-timeout=15s",
                    "--insecure-skip-tls-verify=true",
                )
            except CommandError as err:
                self._logger.warning("Listing nodes failed: %s", err)
                return None
            return True if ready_node_names(out) else None

        try:
            await poll_until(
                _probe, timeout=timeout, interval=self._node_poll_interval
            )
        except PollTimeout as exc:
            raise BootstrapTimeoutError(
                f"timed out waiting for nodes to register via {server}",
                resource=server,
            ) from exc
        self._logger.info("Nodes detected in cluster")

    async def get_internal_ip_to_node_name_map(
        self, server: str, kubeconfig: str
    ) -> Dict[str, str]:
        out = await self._kubectl.execute_command(
            "--server",
            server,
            "--kubeconfig",
            kubeconfig,
            "get",
            "nodes",
            "-o",
            "wide",
            "--insecure-skip-tls-verify=true",
        )
        ip_to_name = parse_node_table(out)
        self._logger.info("Resolved %d node names via %s", len(ip_to_name), server)
        return ip_to_name

    async def label_nodes(
        self,
        spec: ClusterSpec,
        control_plane_ips: List[str],
        worker_ips: List[str],
        ip_to_name: Dict[str, str],
        kubeconfig: str,
    ) -> List[str]:
        """
        Label control-plane and worker nodes through the VIP.

        Returns:
            The node names that were labeled, control planes first.

        Raises:
            CommandError: Naming the node whose label failed.
        """
        server = f"https://{spec.talos.control_plane_vip}:6443"
        plan = [
            (name, CONTROL_PLANE_LABEL, "control plane")
            for name in resolve_node_names(self._logger, ip_to_name, control_plane_ips)
        ] + [
            (name, WORKER_LABEL, "worker")
            for name in resolve_node_names(self._logger, ip_to_name, worker_ips)
        ]

        for name, label, kind in plan:
            self._logger.info("Labeling node %s with %s", name, label)
            try:
                await self._kubectl.execute_command(
                    "--server",
                    server,
                    "--kubeconfig",
                    kubeconfig,
                    "label",
                    "node",
                    name,
                    label,
                    "--overwrite",
                    "--insecure-skip-tls-verify=true",
                )
            except CommandError as err:
                raise CommandError(
                    f"failed to label {kind} node {name}: {err}",
                    err.return_code,
                    err.stderr,
                ) from err
        return [name for name, _, _ in plan]

    async def add_chart_repo(self) -> None:
        self._logger.info("Adding helm repo %s (%s)", KUBE_OVN_REPO_NAME, KUBE_OVN_REPO_URL)
        await self._helm.execute_command(
            "repo", "add", KUBE_OVN_REPO_NAME, KUBE_OVN_REPO_URL, "--force-update"
        )
        await self._helm.execute_command("repo", "update")

    async def configure_cni(
        self,
        control_plane_ips: List[str],
        spec: ClusterSpec,
        bound_ip: str,
        kubeconfig: str,
    ) -> List[str]:
        """
        Render the chart values and helm install Kube-OVN.

        Returns:
            The rendered peer list.
        """
        vip = spec.talos.control_plane_vip
        self._logger.info(
            "Rendering Kube-OVN values (vip=%s, bound node=%s)", vip, bound_ip
        )
        peers = render_peer_list(vip, control_plane_ips, bound_ip)
        self._logger.info("Kube-OVN control plane peers: %s", ",".join(peers))
        values = render_values(peers, spec.talos.pod_subnet, self._template_dir)

        await self.add_chart_repo()

        async with ephemeral_manager(
            "values.yaml", prefix="kube-ovn-values-"
        ) as values_path:
            async with aiofiles.open(values_path, "w") as f:
                await f.write(values)

            self._logger.info(
                "Installing Kube-OVN via helm with %s", os.path.basename(values_path)
            )
            await self._helm.execute_command(
                "install",
                "kube-ovn",
                KUBE_OVN_CHART,
                "-n",
                KUBE_OVN_NAMESPACE,
                "-f",
                values_path,
                "--kubeconfig",
                kubeconfig,
                "--insecure-skip-tls-verify",
            )

        self._logger.info("Kube-OVN installed successfully")
        return peers
