"""
clusterforge.adapters.providers

Unified import point for infrastructure providers:
- ProviderAdapter (the protocol the orchestrator depends on)
- ProxmoxProvider, NutanixProvider
- get_provider: dictionary-based dispatch from ClusterSpec.provider
"""

import logging
from typing import Callable, Dict, Optional

from clusterforge.errors import BootstrapConfigError
from clusterforge.models.cluster import ClusterSpec, ProviderName
from clusterforge.adapters.providers.base import ProviderAdapter
from clusterforge.adapters.providers.nutanix import NutanixProvider
from clusterforge.adapters.providers.proxmox import ProxmoxProvider


def _proxmox(spec: ClusterSpec, logger: Optional[logging.Logger]) -> ProxmoxProvider:
    if spec.proxmox is None:
        raise BootstrapConfigError("provider 'proxmox' requires a 'proxmox' section")
    return ProxmoxProvider(spec.proxmox, logger=logger)


def _nutanix(spec: ClusterSpec, logger: Optional[logging.Logger]) -> NutanixProvider:
    if spec.nutanix is None:
        raise BootstrapConfigError("provider 'nutanix' requires a 'nutanix' section")
    return NutanixProvider(spec.nutanix, logger=logger)


PROVIDER_FACTORIES: Dict[
    ProviderName, Callable[[ClusterSpec, Optional[logging.Logger]], ProviderAdapter]
] = {
    ProviderName.proxmox: _proxmox,
    ProviderName.nutanix: _nutanix,
}


def get_provider(
    spec: ClusterSpec, logger: Optional[logging.Logger] = None
) -> ProviderAdapter:
    """
    Build the provider adapter named by `spec.provider`.

    Raises:
        BootstrapConfigError: If no adapter is bundled for that provider.
    """
    if spec.provider not in PROVIDER_FACTORIES:
        raise BootstrapConfigError(f"Unsupported provider: {spec.provider.value}")
    return PROVIDER_FACTORIES[spec.provider](spec, logger)


__all__ = [
    "NutanixProvider",
    "ProviderAdapter",
    "ProviderName",
    "ProxmoxProvider",
    "PROVIDER_FACTORIES",
    "get_provider",
]
