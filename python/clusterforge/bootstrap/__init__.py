"""
clusterforge.bootstrap

The bootstrap pipeline and its stage components:
- BootstrapService / BootstrapStage (the orchestrator)
- Provisioner, HealthChecker
- TalosInitializer, KubeConfigManager
- KubeVipInitializer, KubeOvnInitializer, FluxInitializer
"""

from clusterforge.bootstrap.flux import FluxInitializer
from clusterforge.bootstrap.healthchecker import HealthChecker
from clusterforge.bootstrap.kubeconfig import KubeConfigManager
from clusterforge.bootstrap.kubeovn import KubeOvnInitializer
from clusterforge.bootstrap.kubevip import KubeVipInitializer
from clusterforge.bootstrap.provisioner import (
    Provisioner,
    classify_nodes,
    separate_nodes_by_role,
)
from clusterforge.bootstrap.service import (
    BootstrapResult,
    BootstrapService,
    BootstrapStage,
    BootstrapTimeouts,
)
from clusterforge.bootstrap.talos import TalosInitializer

__all__ = [
    "BootstrapResult",
    "BootstrapService",
    "BootstrapStage",
    "BootstrapTimeouts",
    "FluxInitializer",
    "HealthChecker",
    "KubeConfigManager",
    "KubeOvnInitializer",
    "KubeVipInitializer",
    "Provisioner",
    "TalosInitializer",
    "classify_nodes",
    "separate_nodes_by_role",
]
