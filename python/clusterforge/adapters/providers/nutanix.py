"""
clusterforge/adapters/providers/nutanix.py

An asynchronous Nutanix AHV provider adapter over the Prism Central v3 REST API.
Handles:
  - HTTP basic auth on every call
  - VM create (boot disk, image CD-ROM, extra SCSI disks, one NIC on the subnet)
  - VM status by name via /vms/list, IP from the first NIC endpoint
  - Delete by VM uuid or VM name
  - Cluster and subnet listings, for picking the UUIDs the settings need

Prism reports an IP once the NIC has one; until then get_vm_status returns an
empty IP, which the health checker reads as "not ready".
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from clusterforge.models.cluster import NutanixSettings
from clusterforge.models.vm import VMRequest, VMStatus

API_BASE = "/api/nutanix/v3"


class NutanixIPEndpoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ip: str = ""


class NutanixNic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ip_endpoint_list: List[NutanixIPEndpoint] = Field(default_factory=list)


class NutanixVMResources(BaseModel):
    model_config = ConfigDict(extra="ignore")

    power_state: str = ""
    nic_list: List[NutanixNic] = Field(default_factory=list)


class NutanixVMStatusBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    state: str = ""
    resources: NutanixVMResources = Field(default_factory=NutanixVMResources)


class NutanixMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uuid: str = ""
    name: str = ""


class NutanixVM(BaseModel):
    """One entity of /vms/list."""

    model_config = ConfigDict(extra="ignore")

    metadata: NutanixMetadata = Field(default_factory=NutanixMetadata)
    status: NutanixVMStatusBlock = Field(default_factory=NutanixVMStatusBlock)

    @property
    def first_ip(self) -> str:
        for nic in self.status.resources.nic_list:
            if nic.ip_endpoint_list:
                return nic.ip_endpoint_list[0].ip
        return ""

    @property
    def healthy(self) -> bool:
        return (
            self.status.resources.power_state.upper() == "ON"
            and self.status.state == "COMPLETE"
        )


class NutanixEntity(BaseModel):
    """A cluster or subnet entry: uuid and display name."""

    model_config = ConfigDict(extra="ignore")

    uuid: str
    name: str


def build_disk_list(request: VMRequest) -> List[Dict[str, Any]]:
    """Boot disk on SCSI 0, the boot image as an IDE CD-ROM, extra disks on SCSI 1..n."""
    disks: List[Dict[str, Any]] = [
        {
            "device_properties": {
                "device_type": "DISK",
                "disk_address": {"adapter_type": "SCSI", "device_index": 0},
            },
            "disk_size_mib": request.disk_gib * 1024,
        },
        {
            "device_properties": {
                "device_type": "CDROM",
                "disk_address": {"adapter_type": "IDE", "device_index": 1},
            },
            "data_source_reference": {"kind": "image", "uuid": request.image},
        },
    ]
    for index, size in enumerate(request.extra_disks_gib, start=1):
        disks.append(
            {
                "device_properties": {
                    "device_type": "DISK",
                    "disk_address": {"adapter_type": "SCSI", "device_index": index},
                },
                "disk_size_mib": size * 1024,
            }
        )
    return disks


class NutanixProvider:
    """ProviderAdapter for Nutanix AHV, usable as an async context manager."""

    def __init__(
        self,
        settings: NutanixSettings,
        logger: Optional[logging.Logger] = None,
        request_timeout: float = 30.0,
    ) -> None:
        self._settings = settings
        self._endpoint = settings.endpoint.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._auth = aiohttp.BasicAuth(settings.username, settings.password)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> NutanixProvider:
        await self.ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, auth=self._auth
            )
        return self._session

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Perform an authenticated API call and return the decoded JSON body.

        Raises:
            RuntimeError: On a non-2xx response.
        """
        session = await self.ensure_session()
        url = f"{self._endpoint}{API_BASE}{path}"
        async with session.request(
            method, url, json=payload, ssl=self._settings.verify_ssl
        ) as resp:
            if resp.status >= 300:
                raise RuntimeError(
                    f"Nutanix {method} {path} failed: {resp.status}, {await resp.text()}"
                )
            if resp.content_length == 0:
                return None
            return await resp.json()

    def _build_payload(self, request: VMRequest) -> Dict[str, Any]:
        return {
            "metadata": {"kind": "vm"},
            "spec": {
                "name": request.name,
                "resources": {
                    "power_state": "ON",
                    "num_sockets": request.cpu,
                    "num_vcpus_per_socket": 1,
                    "memory_size_mib": request.memory_mib,
                    "boot_config": {"boot_device_order_list": ["CDROM", "DISK"]},
                    "disk_list": build_disk_list(request),
                    "nic_list": [
                        {
                            "subnet_reference": {
                                "kind": "subnet",
                                "uuid": self._settings.subnet_uuid,
                            }
                        }
                    ],
                },
                "cluster_reference": {
                    "kind": "cluster",
                    "uuid": self._settings.cluster_uuid,
                },
            },
        }

    async def create_vm(self, request: VMRequest) -> str:
        """Submit the VM spec; returns the uuid Prism assigns, or the name if none came back."""
        self._logger.info(
            "Creating Nutanix VM %s (cpu=%d, memory=%dMiB, disk=%dGiB)",
            request.name,
            request.cpu,
            request.memory_mib,
            request.disk_gib,
        )
        js = await self._request("POST", "/vms", self._build_payload(request))
        metadata = js.get("metadata", {}) if isinstance(js, dict) else {}
        return metadata.get("uuid") or request.name

    async def find_vm(self, name: str) -> Optional[NutanixVM]:
        js = await self._request(
            "POST", "/vms/list", {"kind": "vm", "filter": f"vm_name=={name}"}
        )
        entities = js.get("entities", []) if isinstance(js, dict) else []
        if not entities:
            return None
        return NutanixVM.model_validate(entities[0])

    async def get_vm_status(self, name: str) -> VMStatus:
        vm = await self.find_vm(name)
        if vm is None:
            raise RuntimeError(f"VM {name} not found in Nutanix")

        ip = vm.first_ip
        self._logger.debug(
            "Nutanix VM %s: power=%s state=%s ip=%s",
            name,
            vm.status.resources.power_state,
            vm.status.state,
            ip or "-",
        )
        return VMStatus(healthy=vm.healthy and bool(ip), ip=ip)

    async def delete_vm(self, vm_id: str) -> None:
        """Delete by uuid; a VM name is resolved to its uuid first."""
        uuid = vm_id
        vm = await self.find_vm(vm_id)
        if vm is not None and vm.metadata.uuid:
            uuid = vm.metadata.uuid

        self._logger.info("Deleting Nutanix VM %s (uuid=%s)", vm_id, uuid)
        await self._request("DELETE", f"/vms/{uuid}")

    async def _list_entities(self, kind: str) -> List[NutanixEntity]:
        js = await self._request("POST", f"/{kind}s/list", {"kind": kind})
        entities = js.get("entities", []) if isinstance(js, dict) else []
        result: List[NutanixEntity] = []
        for item in entities:
            metadata = item.get("metadata", {})
            name = item.get("spec", {}).get("name") or metadata.get("name", "")
            result.append(NutanixEntity(uuid=metadata.get("uuid", ""), name=name))
        return result

    async def list_clusters(self) -> List[NutanixEntity]:
        return await self._list_entities("cluster")

    async def list_subnets(self) -> List[NutanixEntity]:
        return await self._list_entities("subnet")
