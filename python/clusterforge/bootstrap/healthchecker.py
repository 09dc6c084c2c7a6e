"""
clusterforge/bootstrap/healthchecker.py

Waits for every derived VM to report healthy with an assigned IP.

One poll task per VM runs concurrently under a single shared deadline, so total
wait time is bounded by the timeout rather than timeout x node count. Provider
errors while polling are treated as "not ready yet"; only the deadline is fatal.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from clusterforge.adapters.providers.base import ProviderAdapter
from clusterforge.errors import BootstrapTimeoutError
from clusterforge.models.cluster import ClusterSpec
from clusterforge.models.vm import NodeIPMap
from clusterforge.utils.polling import PollTimeout, monotonic, poll_until

DEFAULT_POLL_INTERVAL = 10.0


class HealthChecker:
    def __init__(
        self,
        provider: ProviderAdapter,
        logger: Optional[logging.Logger] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self._provider = provider
        self._logger = logger or logging.getLogger(__name__)
        self._poll_interval = poll_interval
        self._max_concurrency = max_concurrency

    async def _probe(self, name: str) -> Optional[str]:
        try:
            status = await self._provider.get_vm_status(name)
        except Exception as exc:
            self._logger.warning("Failed to get VM status for %s: %s", name, exc)
            return None
        if status.ready:
            return status.ip
        self._logger.info("Waiting for VM %s to be ready", name)
        return None

    async def wait_for_vms_to_be_ready(
        self, spec: ClusterSpec, timeout: float
    ) -> NodeIPMap:
        """
        Poll all derived VMs until each reports {healthy, ip} or the deadline passes.

        Returns:
            A fully populated NodeIPMap (every derived name, non-empty IPs).

        Raises:
            BootstrapTimeoutError: Naming the first unready VM in configuration order.
        """
        names = spec.derived_vm_names()
        self._logger.info(
            "Waiting for %d VMs to report healthy and have allocated IPs", len(names)
        )

        deadline = monotonic() + timeout
        node_ips: Dict[str, str] = {}
        limit = self._max_concurrency or len(names) or 1
        semaphore = asyncio.Semaphore(limit)

        async def _wait_one(name: str) -> None:
            async with semaphore:
                try:
                    ip = await poll_until(
                        lambda: self._probe(name),
                        timeout=timeout,
                        interval=self._poll_interval,
                        deadline=deadline,
                    )
                except PollTimeout:
                    return
            self._logger.info("VM %s is healthy with IP %s", name, ip)
            node_ips[name] = ip

        await asyncio.gather(*(_wait_one(name) for name in names))

        unready = [name for name in names if name not in node_ips]
        if unready:
            raise BootstrapTimeoutError(
                f"timeout: VM {unready[0]} did not become healthy with an allocated IP"
                + (f" ({len(unready) - 1} more unready)" if len(unready) > 1 else ""),
                resource=unready[0],
            )

        self._logger.info("All VMs are healthy and have allocated IPs")
        return node_ips
