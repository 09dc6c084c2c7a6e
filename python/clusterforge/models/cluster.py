"""
clusterforge/models/cluster.py

Pydantic models describing one management cluster to bootstrap:
 - NodeRole / NodeGroup
 - TalosSettings, KubeVipSettings, FluxSettings, ProxmoxSettings, NutanixSettings
 - ClusterSpec (immutable for the duration of a run)
 - BootstrapConfig (top-level YAML document)

VM names are derived deterministically as `{cluster}-{role}-{index}` with a
1-based index, so the same spec always yields the same name set.
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Optional, Set, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from clusterforge.errors import BootstrapConfigError

_SIZE_RE = re.compile(r"^\s*(\d+)\s*(?:g|gb|gi|gib)?\s*$", re.IGNORECASE)
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def parse_size_gb(value: str) -> int:
    """
    Parse a gigabyte size string such as "8GB", "8G", "8Gi" or "8" into an int.

    Raises:
        ValueError: If the string is not a positive whole number of gigabytes.
    """
    match = _SIZE_RE.match(str(value))
    if not match or int(match.group(1)) <= 0:
        raise ValueError(f"invalid size {value!r}, expected e.g. '8GB'")
    return int(match.group(1))


def vm_name(cluster_name: str, role: NodeRole, index: int) -> str:
    """Derive the VM name for replica `index` (1-based) of a node group."""
    return f"{cluster_name}-{role.value}-{index}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class ProviderName(str, Enum):
    proxmox = "proxmox"
    nutanix = "nutanix"


class NodeRole(str, Enum):
    control_plane = "control-plane"
    worker = "worker"


class NodeGroup(_CamelModel):
    """A set of identically sized VMs sharing one role.

    Attributes:
        role: control-plane or worker.
        count: Number of replicas.
        cpu: vCPU count per VM.
        ram: Memory per VM as a gigabyte string, e.g. "8GB".
        disk: Boot disk size per VM as a gigabyte string.
        image: Boot image reference understood by the provider (ISO volume, image UUID).
        extra_disks: Additional data disks as gigabyte strings.
    """

    model_config = ConfigDict(frozen=True)

    role: NodeRole
    count: int = Field(ge=1)
    cpu: int = Field(default=2, ge=1)
    ram: str = "4GB"
    disk: str = "50GB"
    image: str = Field(
        default="", validation_alias=AliasChoices("image", "isoUUID", "iso_uuid")
    )
    extra_disks: Tuple[str, ...] = ()

    @field_validator("ram", "disk")
    @classmethod
    def validate_size(cls, val: str) -> str:
        parse_size_gb(val)
        return val

    @field_validator("extra_disks")
    @classmethod
    def validate_extra_disks(cls, val: Tuple[str, ...]) -> Tuple[str, ...]:
        for size in val:
            parse_size_gb(size)
        return val


class TalosSettings(_CamelModel):
    """Immutable-OS settings: version, DNS-style API endpoint and the floating VIP."""

    model_config = ConfigDict(frozen=True)

    version: str = "v1.9.5"
    control_plane_endpoint: str
    control_plane_vip: str = Field(
        validation_alias=AliasChoices(
            "control_plane_vip", "controlPlaneVip", "controlPlaneVIP"
        )
    )
    pod_subnet: str = "10.16.0.0/16"

    @field_validator("control_plane_vip")
    @classmethod
    def validate_vip(cls, val: str) -> str:
        ipaddress.ip_address(val)
        return val

    @field_validator("pod_subnet")
    @classmethod
    def validate_pod_subnet(cls, val: str) -> str:
        ipaddress.ip_network(val)
        return val


class KubeVipSettings(_CamelModel):
    model_config = ConfigDict(frozen=True)

    version: str = "v0.8.9"
    # not auto-detected; must match the NIC name inside the node OS
    interface: str = "ens3"


class FluxSettings(_CamelModel):
    """GitOps (Flux) bootstrap settings.

    The repository token is resolved from `git_pat`, then the `token_env`
    environment variable, then an interactive prompt.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    git_provider: Literal["gitlab", "github"] = "gitlab"
    git_owner: str = ""
    git_repository: str = ""
    git_branch: str = "main"
    git_path: str = ""
    git_hostname: str = ""
    git_pat: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("git_pat", "gitPAT", "gitPat")
    )
    token_env: Optional[str] = None

    @model_validator(mode="after")
    def check_repository(self) -> FluxSettings:
        if self.enabled:
            missing = [
                name
                for name in ("git_owner", "git_repository", "git_path")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"flux is enabled but {', '.join(missing)} not set")
        return self

    @property
    def resolved_token_env(self) -> str:
        return self.token_env or f"{self.git_provider.upper()}_TOKEN"


class ProxmoxSettings(_CamelModel):
    """Proxmox VE API connection and placement settings."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    username: str
    password: str
    storage_location: str = "local-lvm"
    available_vmid_start: int = Field(
        default=100,
        ge=100,
        validation_alias=AliasChoices(
            "available_vmid_start", "availableVmidStart", "availableVMIdStart"
        ),
    )
    available_vmid_end: int = Field(
        default=999,
        ge=100,
        validation_alias=AliasChoices(
            "available_vmid_end", "availableVmidEnd", "availableVMIdEnd"
        ),
    )
    nodes: Tuple[str, ...] = Field(min_length=1)
    verify_ssl: bool = False
    bridge: str = "vmbr0"

    @model_validator(mode="after")
    def check_vmid_range(self) -> ProxmoxSettings:
        if self.available_vmid_start > self.available_vmid_end:
            raise ValueError("available_vmid_start must not exceed available_vmid_end")
        return self


class NutanixSettings(_CamelModel):
    """Prism Central v3 API connection plus the AHV cluster and subnet VMs land on."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    username: str
    password: str
    cluster_uuid: str = Field(
        min_length=1,
        validation_alias=AliasChoices("cluster_uuid", "clusterUuid", "clusterUUID"),
    )
    subnet_uuid: str = Field(
        min_length=1,
        validation_alias=AliasChoices("subnet_uuid", "subnetUuid", "subnetUUID"),
    )
    verify_ssl: bool = False


class ClusterSpec(_CamelModel):
    """Everything needed to build one management cluster.

    Immutable for the duration of a run.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    provider: ProviderName
    talos: TalosSettings
    kube_vip: KubeVipSettings = Field(default_factory=KubeVipSettings)
    flux: FluxSettings = Field(default_factory=lambda: FluxSettings(enabled=False))
    proxmox: Optional[ProxmoxSettings] = None
    nutanix: Optional[NutanixSettings] = None
    nodes: Tuple[NodeGroup, ...] = Field(min_length=1)
    output_dir: str = "./talosconfig"

    @field_validator("name")
    @classmethod
    def validate_name(cls, val: str) -> str:
        if not _DNS_LABEL_RE.match(val):
            raise ValueError(
                "cluster name must be a lowercase DNS label (a-z, 0-9, '-')"
            )
        return val

    @model_validator(mode="after")
    def check_topology(self) -> ClusterSpec:
        if not any(g.role == NodeRole.control_plane for g in self.nodes):
            raise ValueError("at least one control-plane node group is required")
        if self.provider == ProviderName.proxmox and self.proxmox is None:
            raise ValueError("provider 'proxmox' requires a 'proxmox' section")
        if self.provider == ProviderName.nutanix and self.nutanix is None:
            raise ValueError("provider 'nutanix' requires a 'nutanix' section")

        # groups sharing a role would derive the same `{cluster}-{role}-{index}` names
        seen: Set[str] = set()
        for name in self.derived_vm_names():
            if name in seen:
                raise ValueError(
                    f"duplicate VM name {name!r}: merge node groups with the same role"
                )
            seen.add(name)
        return self

    def iter_vms(self) -> Iterator[Tuple[NodeGroup, str]]:
        """Yield (node_group, vm_name) for every replica, in configuration order."""
        for group in self.nodes:
            for index in range(1, group.count + 1):
                yield group, vm_name(self.name, group.role, index)

    def derived_vm_names(self) -> List[str]:
        return [name for _, name in self.iter_vms()]


class BootstrapConfig(_CamelModel):
    management_cluster: ClusterSpec


def load_bootstrap_config(raw: Any) -> BootstrapConfig:
    """
    Validate a parsed YAML/JSON document into a BootstrapConfig.

    Raises:
        BootstrapConfigError: If the document is empty or fails validation.
    """
    if not isinstance(raw, dict) or not raw:
        raise BootstrapConfigError("configuration document is empty or not a mapping")
    try:
        return BootstrapConfig.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{loc}: {msg}" for loc, msg in config_field_errors(e).items()
        )
        raise BootstrapConfigError(f"invalid cluster configuration: {problems}") from e


def config_field_errors(exc: ValidationError) -> Dict[str, str]:
    """Flatten a pydantic ValidationError into {dotted.location: message}."""
    return {
        ".".join(str(part) for part in err["loc"]): err["msg"] for err in exc.errors()
    }
