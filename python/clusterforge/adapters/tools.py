"""
clusterforge/adapters/tools.py

Every external CLI the bootstrap drives (talosctl, kubectl, helm, flux, docker)
is reached through the same narrow interface: "run this tool with these
arguments and give me stdout, or raise CommandError". Components depend only on
ToolAdapter (or ManifestGenerator for the one extra capability the VIP stage
needs), never on a concrete binding, so tests can hand in an AsyncMock.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from clusterforge.utils.async_command_runner import CommandError, run_command

TOOL_TIMEOUTS: Dict[str, float] = {
    "talosctl": 180.0,
    "kubectl": 60.0,
    "helm": 600.0,
    "flux": 900.0,
    "docker": 300.0,
}


class ToolAdapter(Protocol):
    """Runs one named external tool."""

    async def execute_command(
        self, *args: str, env: Optional[Dict[str, str]] = None
    ) -> str:
        ...


class ManifestGenerator(Protocol):
    """Renders the kube-vip daemonset manifest."""

    async def generate_vip_manifest(
        self, *, version: str, interface: str, address: str
    ) -> str:
        ...


class CommandTool:
    """ToolAdapter backed by a local binary on PATH.

    Tool calls are never retried here; polling loops decide what to retry.
    """

    def __init__(
        self,
        binary: str,
        *,
        timeout: Optional[float] = None,
        sensitive: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self.sensitive = sensitive
        self._logger = logger or logging.getLogger(__name__)

    async def execute_command(
        self, *args: str, env: Optional[Dict[str, str]] = None
    ) -> str:
        self._logger.debug("Executing %s %s", self.binary, " ".join(args))
        try:
            return await run_command(
                [self.binary, *args],
                sensitive=self.sensitive,
                env=env,
                retries=1,
                timeout=self.timeout,
            )
        except CommandError as err:
            raise CommandError(
                f"{self.binary} command failed: {err}", err.return_code, err.stderr
            ) from err


class DockerManifestGenerator:
    """Generates the kube-vip manifest by running the kube-vip image once."""

    def __init__(self, docker: ToolAdapter) -> None:
        self._docker = docker

    async def generate_vip_manifest(
        self, *, version: str, interface: str, address: str
    ) -> str:
        return await self._docker.execute_command(
            "run",
            "--network",
            "host",
            "--rm",
            f"ghcr.io/kube-vip/kube-vip:{version}",
            "manifest",
            "daemonset",
            "--interface",
            interface,
            "--address",
            address,
            "--inCluster",
            "--taint",
            "--controlplane",
            "--services",
            "--arp",
            "--leaderElection",
        )


def get_tool_adapter(name: str, logger: Optional[logging.Logger] = None) -> CommandTool:
    """
    Return a CommandTool for a known tool name with its default timeout.

    flux is marked sensitive because its environment carries a Git token.

    Raises:
        ValueError: For an unknown tool name.
    """
    if name not in TOOL_TIMEOUTS:
        raise ValueError(f"Unsupported tool: {name}")
    return CommandTool(
        name,
        timeout=TOOL_TIMEOUTS[name],
        sensitive=(name == "flux"),
        logger=logger,
    )
