"""
clusterforge/bootstrap/flux.py

Hands the cluster to Flux: `flux bootstrap gitlab|github` against the configured
repository, retried with a linear backoff.
"""

from __future__ import annotations

import asyncio
import logging
import os
from getpass import getpass
from typing import Callable, Dict, List, Optional

from clusterforge.adapters.tools import ToolAdapter
from clusterforge.errors import BootstrapConfigError
from clusterforge.models.cluster import ClusterSpec, FluxSettings
from clusterforge.models.talos import KubeConfigHandle
from clusterforge.utils.async_command_runner import CommandError
from clusterforge.utils.async_retry import async_retry, linear_backoff

FLUX_ATTEMPTS = 3
FLUX_BACKOFF_STEP = 10.0
FLUX_EXTRA_COMPONENTS = "image-reflector-controller,image-automation-controller"


def bootstrap_args(settings: FluxSettings, kubeconfig: str) -> List[str]:
    args = [
        "bootstrap",
        settings.git_provider,
        "--owner",
        settings.git_owner,
        "--repository",
        settings.git_repository,
        "--branch",
        settings.git_branch,
        "--path",
        settings.git_path,
        "--token-auth=true",
    ]
    if settings.git_hostname:
        args += ["--hostname", settings.git_hostname]
    args += [
        "--read-write-key=true",
        "--components-extra",
        FLUX_EXTRA_COMPONENTS,
        "--insecure-skip-tls-verify=true",
        "--kubeconfig",
        kubeconfig,
    ]
    return args


class FluxInitializer:
    def __init__(
        self,
        flux: ToolAdapter,
        logger: Optional[logging.Logger] = None,
        attempts: int = FLUX_ATTEMPTS,
        backoff_step: float = FLUX_BACKOFF_STEP,
        prompt: Callable[[str], str] = getpass,
    ) -> None:
        self._flux = flux
        self._logger = logger or logging.getLogger(__name__)
        self._attempts = attempts
        self._backoff_step = backoff_step
        self._prompt = prompt

    def resolve_token(self, settings: FluxSettings) -> str:
        """
        Token from `git_pat`, else the token environment variable, else an
        interactive prompt (not suitable for unattended runs).

        Raises:
            BootstrapConfigError: If every source comes up empty.
        """
        if settings.git_pat:
            return settings.git_pat

        env_name = settings.resolved_token_env
        token = os.environ.get(env_name, "")
        if not token:
            self._logger.warning("%s is not set, prompting for a token", env_name)
            token = self._prompt(
                f"Enter your {settings.git_provider} token (will not be stored): "
            ).strip()
        if not token:
            raise BootstrapConfigError(f"no Git token provided (set {env_name})")
        return token

    async def bootstrap(self, spec: ClusterSpec, kubeconfig: KubeConfigHandle) -> None:
        """
        Run `flux bootstrap` up to `attempts` times, waiting attempt x backoff_step
        seconds between attempts. The token only reaches flux through its environment.

        Raises:
            CommandError: "failed to bootstrap Flux after N attempts: ..." once all
                attempts failed.
        """
        settings = spec.flux
        # the prompt blocks on stdin, keep it off the event loop
        token = await asyncio.to_thread(self.resolve_token, settings)
        env: Dict[str, str] = {settings.resolved_token_env: token}
        args = bootstrap_args(settings, kubeconfig.path)

        self._logger.info(
            "Starting Flux bootstrap for %s (%s/%s@%s)",
            spec.name,
            settings.git_owner,
            settings.git_repository,
            settings.git_branch,
        )

        @async_retry(
            retries=self._attempts,
            backoff=linear_backoff(self._backoff_step),
            noisy=True,
            retry_on=(CommandError,),
            log=self._logger,
        )
        async def _run() -> str:
            return await self._flux.execute_command(*args, env=env)

        try:
            await _run()
        except CommandError as err:
            raise CommandError(
                f"failed to bootstrap Flux after {self._attempts} attempts: {err}",
                err.return_code,
                err.stderr,
            ) from err

        self._logger.info("Flux bootstrap completed successfully")
