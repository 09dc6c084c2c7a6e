"""
clusterforge/bootstrap/service.py

The bootstrap orchestrator. Drives one management cluster from "no VMs" to a
GitOps-managed control plane through a strictly sequential list of stages:

    provisioning -> awaiting-health -> classifying -> os-bootstrap
    -> validating-kubeconfig -> awaiting-api-pre-vip -> awaiting-node-registration
    -> resolving-node-names -> configuring-vip -> awaiting-api-post-vip
    -> labeling-nodes -> installing-cni -> bootstrapping-gitops -> done

Node names are resolved while the bound control-plane node is still reachable by
its own address, i.e. before kube-vip takes over. Any failure aborts the run as a
StageError naming the stage; nothing already created is rolled back.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clusterforge.adapters.providers.base import ProviderAdapter
from clusterforge.adapters.tools import DockerManifestGenerator, get_tool_adapter
from clusterforge.bootstrap.flux import FluxInitializer
from clusterforge.bootstrap.healthchecker import HealthChecker
from clusterforge.bootstrap.kubeconfig import KubeConfigManager, api_server_url
from clusterforge.bootstrap.kubeovn import KubeOvnInitializer
from clusterforge.bootstrap.kubevip import KubeVipInitializer
from clusterforge.bootstrap.provisioner import Provisioner, classify_nodes
from clusterforge.bootstrap.talos import TalosInitializer
from clusterforge.errors import StageError
from clusterforge.models.cluster import ClusterSpec
from clusterforge.models.talos import KubeConfigHandle, TalosConfig
from clusterforge.models.vm import NodeIPMap, RoleIPSets


class BootstrapStage(str, Enum):
    provisioning = "provisioning"
    awaiting_health = "awaiting-health"
    classifying = "classifying"
    os_bootstrap = "os-bootstrap"
    validating_kubeconfig = "validating-kubeconfig"
    awaiting_api_pre_vip = "awaiting-api-pre-vip"
    awaiting_node_registration = "awaiting-node-registration"
    resolving_node_names = "resolving-node-names"
    configuring_vip = "configuring-vip"
    awaiting_api_post_vip = "awaiting-api-post-vip"
    labeling_nodes = "labeling-nodes"
    installing_cni = "installing-cni"
    bootstrapping_gitops = "bootstrapping-gitops"
    done = "done"


class BootstrapTimeouts(BaseModel):
    """Per-stage deadlines, in seconds."""

    model_config = ConfigDict(frozen=True)

    vm_health: float = Field(default=600.0, gt=0)
    api_pre_vip: float = Field(default=300.0, gt=0)
    api_post_vip: float = Field(default=120.0, gt=0)
    node_registration: float = Field(default=120.0, gt=0)


class BootstrapResult(BaseModel):
    """What a successful run produced, for the caller to report."""

    vm_ids: List[str]
    node_ips: NodeIPMap
    roles: RoleIPSets
    bound_node_ip: str
    ip_to_node_name: Dict[str, str]
    kubeconfig: KubeConfigHandle
    stages: List[BootstrapStage]


StageCallback = Callable[[BootstrapStage], None]


class BootstrapService:
    def __init__(
        self,
        spec: ClusterSpec,
        *,
        provisioner: Provisioner,
        health_checker: HealthChecker,
        talos: TalosInitializer,
        kubeconfig: KubeConfigManager,
        kubevip: KubeVipInitializer,
        kubeovn: KubeOvnInitializer,
        flux: FluxInitializer,
        timeouts: Optional[BootstrapTimeouts] = None,
        logger: Optional[logging.Logger] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> None:
        self.spec = spec
        self.provisioner = provisioner
        self.health_checker = health_checker
        self.talos = talos
        self.kubeconfig = kubeconfig
        self.kubevip = kubevip
        self.kubeovn = kubeovn
        self.flux = flux
        self.timeouts = timeouts or BootstrapTimeouts()
        self._logger = logger or logging.getLogger(__name__)
        self._on_stage = on_stage
        self.stage: Optional[BootstrapStage] = None
        self.history: List[BootstrapStage] = []

    @classmethod
    def from_spec(
        cls,
        spec: ClusterSpec,
        provider: ProviderAdapter,
        logger: Optional[logging.Logger] = None,
        on_stage: Optional[StageCallback] = None,
        timeouts: Optional[BootstrapTimeouts] = None,
    ) -> BootstrapService:
        """Wire every stage component to the local CLI tools."""
        log = logger or logging.getLogger(__name__)
        kubectl = get_tool_adapter("kubectl", log)
        return cls(
            spec,
            provisioner=Provisioner(provider, log),
            health_checker=HealthChecker(provider, log),
            talos=TalosInitializer(get_tool_adapter("talosctl", log), log),
            kubeconfig=KubeConfigManager(kubectl, log),
            kubevip=KubeVipInitializer(
                DockerManifestGenerator(get_tool_adapter("docker", log)), kubectl, log
            ),
            kubeovn=KubeOvnInitializer(kubectl, get_tool_adapter("helm", log), log),
            flux=FluxInitializer(get_tool_adapter("flux", log), log),
            timeouts=timeouts,
            logger=log,
            on_stage=on_stage,
        )

    def _enter(self, stage: BootstrapStage) -> None:
        self.stage = stage
        self.history.append(stage)
        self._logger.info("Bootstrap stage: %s", stage.value)
        if self._on_stage is not None:
            self._on_stage(stage)

    def _fail(self, exc: Exception) -> StageError:
        # nothing entered yet means the run died before provisioning began
        stage = self.stage or BootstrapStage.provisioning
        self._logger.error("Bootstrap stage %s failed: %s", stage.value, exc)
        return StageError(stage, exc)

    async def provision_management_cluster(self) -> BootstrapResult:
        """
        Run the whole pipeline.

        Raises:
            StageError: Wrapping whatever the failing stage raised (chained).
        """
        try:
            return await self._run()
        except Exception as exc:
            raise self._fail(exc) from exc

    async def _run(self) -> BootstrapResult:
        spec = self.spec
        self._logger.info("Starting provisioning of management cluster %s", spec.name)

        self._enter(BootstrapStage.provisioning)
        vm_ids = await self.provisioner.provision_vms(spec)

        self._enter(BootstrapStage.awaiting_health)
        node_ips = await self.health_checker.wait_for_vms_to_be_ready(
            spec, self.timeouts.vm_health
        )

        self._enter(BootstrapStage.classifying)
        roles = classify_nodes(spec, node_ips)

        self._enter(BootstrapStage.os_bootstrap)
        talos_config = TalosConfig(
            cluster_name=spec.name,
            control_plane_endpoint=spec.talos.control_plane_endpoint,
            output_dir=spec.output_dir,
            control_plane_nodes=roles.control_plane_ips,
            worker_nodes=roles.worker_ips,
            pod_subnet=spec.talos.pod_subnet,
        )
        await self.talos.configure_os(talos_config, insecure=True)

        self._enter(BootstrapStage.validating_kubeconfig)
        handle = KubeConfigHandle(path=talos_config.kubeconfig_path)
        await self.kubeconfig.validate_kubeconfig(handle.path)
        await self.kubeconfig.ensure_correct_context(handle, spec.name)

        bound_node_ip = roles.control_plane_ips[0]
        server = api_server_url(bound_node_ip)

        self._enter(BootstrapStage.awaiting_api_pre_vip)
        await self.kubeconfig.wait_for_kubernetes_api(
            handle, bound_node_ip, self.timeouts.api_pre_vip
        )

        self._enter(BootstrapStage.awaiting_node_registration)
        await self.kubeovn.wait_for_nodes(
            server, handle.path, self.timeouts.node_registration
        )

        self._enter(BootstrapStage.resolving_node_names)
        ip_to_name = await self.kubeovn.get_internal_ip_to_node_name_map(
            server, handle.path
        )

        self._enter(BootstrapStage.configuring_vip)
        await self.kubevip.configure_vip(spec, server, handle.path)

        self._enter(BootstrapStage.awaiting_api_post_vip)
        await self.kubeconfig.wait_for_kubernetes_api(
            handle, spec.talos.control_plane_vip, self.timeouts.api_post_vip
        )

        self._enter(BootstrapStage.labeling_nodes)
        await self.kubeovn.label_nodes(
            spec, roles.control_plane_ips, roles.worker_ips, ip_to_name, handle.path
        )

        self._enter(BootstrapStage.installing_cni)
        await self.kubeovn.configure_cni(
            roles.control_plane_ips, spec, bound_node_ip, handle.path
        )

        if spec.flux.enabled:
            self._enter(BootstrapStage.bootstrapping_gitops)
            await self.flux.bootstrap(spec, handle)
        else:
            self._logger.info("Flux disabled, skipping GitOps bootstrap")

        self._enter(BootstrapStage.done)
        self._logger.info("Management cluster %s provisioned successfully", spec.name)
        return BootstrapResult(
            vm_ids=vm_ids,
            node_ips=node_ips,
            roles=roles,
            bound_node_ip=bound_node_ip,
            ip_to_node_name=ip_to_name,
            kubeconfig=handle,
            stages=list(self.history),
        )
