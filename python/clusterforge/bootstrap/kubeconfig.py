"""
clusterforge/bootstrap/kubeconfig.py

Kubeconfig validation, context selection and API server readiness checks.

wait_for_kubernetes_api runs twice per bootstrap, first against a control-plane
node's own address and then against the floating VIP; each call keeps its own
deadline and refresh state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiofiles.ospath

from clusterforge.adapters.tools import ToolAdapter
from clusterforge.errors import BootstrapTimeoutError, InconsistentStateError
from clusterforge.models.talos import KubeConfigHandle
from clusterforge.utils.async_command_runner import CommandError
from clusterforge.utils.polling import PollTimeout, poll_until

API_WARMUP = 60.0
API_POLL_INTERVAL = 10.0
# how close to the deadline we try refreshing the kubeconfig context
REFRESH_WINDOW = 30.0


def api_server_url(host: str) -> str:
    return f"https://{host}:6443"


def admin_context(cluster_name: str) -> str:
    return f"admin@{cluster_name}"


class KubeConfigManager:
    def __init__(
        self,
        kubectl: ToolAdapter,
        logger: Optional[logging.Logger] = None,
        warmup: float = API_WARMUP,
        poll_interval: float = API_POLL_INTERVAL,
    ) -> None:
        self._kubectl = kubectl
        self._logger = logger or logging.getLogger(__name__)
        self._warmup = warmup
        self._poll_interval = poll_interval

    async def validate_kubeconfig(self, path: str) -> None:
        """
        Ensure the kubeconfig exists and parses (`kubectl config view`).

        Raises:
            FileNotFoundError: If the file is missing.
            CommandError: If kubectl cannot read it.
        """
        self._logger.info("Validating kubeconfig %s", path)
        if not await aiofiles.ospath.exists(path):
            raise FileNotFoundError(f"kubeconfig file missing: {path}")

        try:
            await self._kubectl.execute_command("--kubeconfig", path, "config", "view")
        except CommandError as err:
            raise CommandError(
                f"kubectl config view failed, kubeconfig may be invalid: {err}",
                err.return_code,
                err.stderr,
            ) from err
        self._logger.info("Kubeconfig %s is valid", path)

    async def ensure_correct_context(
        self, handle: KubeConfigHandle, cluster_name: str
    ) -> None:
        """
        Force the active context to `admin@{cluster_name}` and read it back.
        Updates `handle.context` on success.

        Raises:
            CommandError: If switching or reading the context fails.
            InconsistentStateError: If kubectl reports a different active context.
        """
        context_name = admin_context(cluster_name)
        self._logger.info("Ensuring kubeconfig context %s", context_name)

        try:
            await self._kubectl.execute_command(
                "--kubeconfig", handle.path, "config", "unset", "current-context"
            )
        except CommandError as err:
            self._logger.warning("Failed to unset current-context: %s", err)

        await self._kubectl.execute_command(
            "--kubeconfig", handle.path, "config", "use-context", context_name
        )
        active = (
            await self._kubectl.execute_command(
                "--kubeconfig", handle.path, "config", "current-context"
            )
        ).strip()
        if active != context_name:
            raise InconsistentStateError(
                f"kubeconfig context is {active!r}, expected {context_name!r}"
            )

        handle.context = active
        self._logger.info("Kubeconfig context set to %s", active)

    async def _refresh_context(self, handle: KubeConfigHandle, server: str) -> None:
        self._logger.warning(
            "Kubernetes API still unavailable, attempting to refresh kubeconfig"
        )
        try:
            await self._kubectl.execute_command(
                "--server", server, "--kubeconfig", handle.path, "config", "view"
            )
            return
        except CommandError:
            self._logger.warning("Kubeconfig may be invalid, re-selecting context")

        # best effort, polling continues either way
        steps = [("config", "unset", "current-context")]
        if handle.context:
            steps.append(("config", "use-context", handle.context))
        for args in steps:
            try:
                await self._kubectl.execute_command(
                    "--server", server, "--kubeconfig", handle.path, *args
                )
            except CommandError as err:
                self._logger.warning("Context refresh step %s failed: %s", args[1], err)

    async def wait_for_kubernetes_api(
        self, handle: KubeConfigHandle, host: str, timeout: float
    ) -> None:
        """
        Wait for `get nodes` to succeed against https://{host}:6443.

        After a fixed warm-up, polls every poll_interval. Once inside the last
        REFRESH_WINDOW seconds of the deadline, a one-time context refresh is
        attempted. The first successful poll returns immediately.

        Raises:
            BootstrapTimeoutError: If no poll succeeds before the deadline.
        """
        if self._warmup > 0:
            self._logger.info(
                "Waiting %.0fs for Kubernetes API to initialize", self._warmup
            )
            await asyncio.sleep(self._warmup)

        server = api_server_url(host)
        self._logger.info("Waiting for Kubernetes API at %s", server)
        refreshed = False

        async def _probe() -> Optional[bool]:
            try:
                await self._kubectl.execute_command(
                    "--server",
                    server,
                    "--kubeconfig",
                    handle.path,
                    "get",
                    "nodes",
                    "--request-timeout=15s",
                )
            except CommandError as err:
                self._logger.warning(
                    "Kubernetes API at %s not yet ready: %s", server, err
                )
                return None
            return True

        async def _on_miss(remaining: float) -> None:
            nonlocal refreshed
            if not refreshed and remaining <= REFRESH_WINDOW:
                refreshed = True
                await self._refresh_context(handle, server)

        try:
            await poll_until(
                _probe,
                timeout=timeout,
                interval=self._poll_interval,
                on_miss=_on_miss,
            )
        except PollTimeout as exc:
            raise BootstrapTimeoutError(
                f"timed out waiting for Kubernetes API on node {host}", resource=host
            ) from exc

        self._logger.info("Kubernetes API at %s is ready", server)
