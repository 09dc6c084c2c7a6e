"""
clusterforge/models/talos.py

Per-run inputs and artifacts of the Talos (immutable node OS) bootstrap:
 - TalosConfig: what to generate and where to apply it
 - KubeConfigHandle: the retrieved admin kubeconfig plus its active context
"""

from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field

CONTROL_PLANE_CONFIG = "controlplane.yaml"
WORKER_CONFIG = "worker.yaml"


class TalosConfig(BaseModel):
    cluster_name: str
    control_plane_endpoint: str
    output_dir: str
    control_plane_nodes: List[str] = Field(min_length=1)
    worker_nodes: List[str] = Field(default_factory=list)
    pod_subnet: str = "10.16.0.0/16"

    @property
    def talosconfig_path(self) -> str:
        return os.path.join(self.output_dir, "talosconfig")

    @property
    def kubeconfig_path(self) -> str:
        return os.path.join(self.output_dir, "kubeconfig")

    @property
    def bootstrap_node(self) -> str:
        return self.control_plane_nodes[0]


class KubeConfigHandle(BaseModel):
    """
    Path to the admin kubeconfig and the context we expect to be active.

    `context` is updated in place by KubeConfigManager.ensure_correct_context.
    The file itself is left on disk for the operator after a run.
    """

    path: str
    context: Optional[str] = None
