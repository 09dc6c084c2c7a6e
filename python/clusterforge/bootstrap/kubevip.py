"""
clusterforge/bootstrap/kubevip.py

Deploys kube-vip so the control plane answers on a floating VIP. All kubectl
calls here target the bound control-plane node directly, because the VIP does
not exist until this stage finishes.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import aiofiles

from clusterforge.adapters.tools import ManifestGenerator, ToolAdapter
from clusterforge.models.cluster import ClusterSpec
from clusterforge.utils.async_command_runner import CommandError

KUBE_VIP_RBAC_URL = "https://kube-vip.io/manifests/rbac.yaml"
KUBE_VIP_MANIFEST = "kube-vip-ds.yaml"


class KubeVipInitializer:
    def __init__(
        self,
        generator: ManifestGenerator,
        kubectl: ToolAdapter,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._generator = generator
        self._kubectl = kubectl
        self._logger = logger or logging.getLogger(__name__)

    async def configure_vip(
        self, spec: ClusterSpec, server: str, kubeconfig: str
    ) -> str:
        """
        Generate the daemonset manifest, apply the RBAC manifest, then apply the
        daemonset, all against `server`.

        Returns:
            Path of the written manifest.

        Raises:
            CommandError: Naming the sub-step that failed.
            OSError: If the manifest cannot be written.
        """
        self._logger.info("Starting kube-vip configuration")

        manifest_path = await self.generate_manifest(spec)
        await self._step("apply kube-vip RBAC", self.apply_rbac(server, kubeconfig))
        await self._step(
            "apply kube-vip DaemonSet",
            self.apply_daemonset(server, kubeconfig, manifest_path),
        )

        self._logger.info("kube-vip setup completed successfully")
        return manifest_path

    async def _step(self, label: str, coro: Any) -> None:
        try:
            await coro
        except CommandError as err:
            raise CommandError(
                f"failed to {label}: {err}", err.return_code, err.stderr
            ) from err

    async def generate_manifest(self, spec: ClusterSpec) -> str:
        vip = spec.talos.control_plane_vip
        self._logger.info(
            "Generating kube-vip %s manifest for VIP %s on interface %s",
            spec.kube_vip.version,
            vip,
            spec.kube_vip.interface,
        )
        try:
            manifest = await self._generator.generate_vip_manifest(
                version=spec.kube_vip.version,
                interface=spec.kube_vip.interface,
                address=vip,
            )
        except CommandError as err:
            raise CommandError(
                f"failed to generate kube-vip manifest: {err}",
                err.return_code,
                err.stderr,
            ) from err

        os.makedirs(spec.output_dir, exist_ok=True)
        manifest_path = os.path.join(spec.output_dir, KUBE_VIP_MANIFEST)
        async with aiofiles.open(manifest_path, "w") as f:
            await f.write(manifest)

        self._logger.info("kube-vip manifest saved to %s", manifest_path)
        return manifest_path

    async def apply_rbac(self, server: str, kubeconfig: str) -> None:
        self._logger.info("Applying kube-vip RBAC %s via %s", KUBE_VIP_RBAC_URL, server)
        await self._kubectl.execute_command(
            "--server",
            server,
            "--kubeconfig",
            kubeconfig,
            "apply",
            "-f",
            KUBE_VIP_RBAC_URL,
            "--insecure-skip-tls-verify=true",
        )

    async def apply_daemonset(
        self, server: str, kubeconfig: str, manifest_path: str
    ) -> None:
        self._logger.info("Applying kube-vip DaemonSet %s via %s", manifest_path, server)
        await self._kubectl.execute_command(
            "--server",
            server,
            "--kubeconfig",
            kubeconfig,
            "apply",
            "-f",
            manifest_path,
            "--insecure-skip-tls-verify=true",
        )
