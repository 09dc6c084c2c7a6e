"""
clusterforge/adapters/providers/proxmox.py

An asynchronous Proxmox VE provider adapter. Handles:
  - Ticket login (PVEAuthCookie + CSRFPreventionToken), performed lazily once
  - Picking the next free VMID in the configured range
  - Placing new VMs on a random hypervisor node
  - VM status from /cluster/resources, IPv4 discovery through the guest agent
  - Stop + purge delete, by VMID or VM name

The guest agent must be running inside the VM for an IP to be reported; until it
is, get_vm_status returns an empty IP, which the health checker reads as "not ready".
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Type

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from clusterforge.models.cluster import ProxmoxSettings
from clusterforge.models.vm import VMRequest, VMStatus
from clusterforge.utils.polling import PollTimeout, poll_until


class ProxmoxResource(BaseModel):
    """One entry of /cluster/resources?type=vm."""

    model_config = ConfigDict(extra="ignore")

    vmid: int
    name: str = ""
    node: str
    status: str = ""


class ProxmoxInterfaceAddress(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    ip_address_type: str = Field(default="", alias="ip-address-type")
    ip_address: str = Field(default="", alias="ip-address")


class ProxmoxInterface(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = ""
    ip_addresses: List[ProxmoxInterfaceAddress] = Field(
        default_factory=list, alias="ip-addresses"
    )


def first_ipv4(interfaces: List[ProxmoxInterface]) -> str:
    """Return the first non-loopback IPv4 address reported by the guest agent, or ""."""
    for iface in interfaces:
        if iface.name == "lo":
            continue
        for addr in iface.ip_addresses:
            if (
                addr.ip_address_type == "ipv4"
                and addr.ip_address
                and not addr.ip_address.startswith("127.")
            ):
                return addr.ip_address
    return ""


class ProxmoxProvider:
    """ProviderAdapter for Proxmox VE, usable as an async context manager."""

    def __init__(
        self,
        settings: ProxmoxSettings,
        logger: Optional[logging.Logger] = None,
        request_timeout: float = 30.0,
    ) -> None:
        self._settings = settings
        self._endpoint = settings.endpoint.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ticket: Optional[str] = None
        self._csrf: Optional[str] = None
        self._login_lock = asyncio.Lock()

    async def __aenter__(self) -> ProxmoxProvider:
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
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _login(self) -> None:
        session = await self.ensure_session()
        url = f"{self._endpoint}/api2/json/access/ticket"
        payload = {
            "username": self._settings.username,
            "password": self._settings.password,
        }
        async with session.post(
            url, data=payload, ssl=self._settings.verify_ssl
        ) as resp:
            if resp.status != 200:
                raise RuntimeError(
                    f"Proxmox login failed: {resp.status}, {await resp.text()}"
                )
            js = await resp.json()

        data = js.get("data") if isinstance(js, dict) else None
        if not isinstance(data, dict) or "ticket" not in data:
            raise RuntimeError("Proxmox did not return a session ticket.")
        self._ticket = data["ticket"]
        self._csrf = data.get("CSRFPreventionToken", "")

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Perform an authenticated API call and return the decoded 'data' field.

        Raises:
            RuntimeError: On a non-2xx response.
        """
        if self._ticket is None:
            async with self._login_lock:
                if self._ticket is None:
                    await self._login()

        session = await self.ensure_session()
        url = f"{self._endpoint}{path}"
        headers = {"CSRFPreventionToken": self._csrf or ""}
        cookies = {"PVEAuthCookie": self._ticket or ""}
        async with session.request(
            method,
            url,
            json=payload,
            headers=headers,
            cookies=cookies,
            ssl=self._settings.verify_ssl,
        ) as resp:
            if resp.status == 401:
                # ticket expired, force a fresh login on the next call
                self._ticket = None
            if resp.status >= 300:
                raise RuntimeError(
                    f"Proxmox {method} {path} failed: {resp.status}, {await resp.text()}"
                )
            js = await resp.json()
        return js.get("data") if isinstance(js, dict) else None

    async def list_vms(self) -> List[ProxmoxResource]:
        data = await self._request("GET", "/api2/json/cluster/resources?type=vm")
        return [ProxmoxResource.model_validate(item) for item in data or []]

    async def next_vmid(self) -> int:
        used = {vm.vmid for vm in await self.list_vms()}
        start = self._settings.available_vmid_start
        end = self._settings.available_vmid_end
        free = next((i for i in range(start, end + 1) if i not in used), None)
        if free is None:
            raise RuntimeError(f"No available VM IDs in the range {start}-{end}")
        return free

    def _build_payload(self, request: VMRequest, vmid: int) -> Dict[str, Any]:
        storage = self._settings.storage_location
        payload: Dict[str, Any] = {
            "vmid": vmid,
            "name": request.name,
            "ostype": "l26",
            "memory": request.memory_mib,
            "cores": request.cpu,
            "sockets": 1,
            "cpu": "host",
            "numa": 0,
            "start": 1,
            "onboot": 1,
            "agent": "1",
            "scsihw": "virtio-scsi-single",
            "ide2": f"{request.image},media=cdrom",
            "scsi0": f"{storage}:{request.disk_gib},iothread=on",
            "net0": f"virtio,bridge={self._settings.bridge},firewall=1",
        }
        for index, size in enumerate(request.extra_disks_gib, start=1):
            payload[f"scsi{index}"] = f"{storage}:{size},iothread=on"
        return payload

    async def create_vm(self, request: VMRequest) -> str:
        vmid = await self.next_vmid()
        node = random.choice(self._settings.nodes)
        self._logger.info(
            "Creating Proxmox VM %s (vmid=%d) on node %s", request.name, vmid, node
        )
        await self._request(
            "POST",
            f"/api2/json/nodes/{node}/qemu",
            self._build_payload(request, vmid),
        )
        return str(vmid)

    async def _find(self, vm_id_or_name: str) -> Optional[ProxmoxResource]:
        for vm in await self.list_vms():
            if str(vm.vmid) == vm_id_or_name or vm.name == vm_id_or_name:
                return vm
        return None

    async def get_vm_status(self, name: str) -> VMStatus:
        vm = await self._find(name)
        if vm is None:
            raise RuntimeError(f"VM {name} not found")

        healthy = vm.status == "running"
        ip = await self._guest_ipv4(vm) if healthy else ""
        return VMStatus(healthy=healthy, ip=ip)

    async def _guest_ipv4(self, vm: ProxmoxResource) -> str:
        path = f"/api2/json/nodes/{vm.node}/qemu/{vm.vmid}/agent/network-get-interfaces"
        try:
            data = await self._request("GET", path)
        except RuntimeError as exc:
            # agent not up yet
            self._logger.debug("Guest agent query failed for %s: %s", vm.name, exc)
            return ""
        result = data.get("result", []) if isinstance(data, dict) else []
        return first_ipv4([ProxmoxInterface.model_validate(i) for i in result])

    async def delete_vm(self, vm_id: str, stop_timeout: float = 120.0) -> None:
        vm = await self._find(vm_id)
        if vm is None:
            raise RuntimeError(f"VM with ID {vm_id} not found")

        base = f"/api2/json/nodes/{vm.node}/qemu/{vm.vmid}"
        if vm.status != "stopped":
            self._logger.info("Stopping VM %s (vmid=%d)", vm.name, vm.vmid)
            await self._request("POST", f"{base}/status/stop")

            async def _stopped() -> Optional[bool]:
                current = await self._find(str(vm.vmid))
                return True if current is None or current.status == "stopped" else None

            try:
                await poll_until(_stopped, timeout=stop_timeout, interval=2.0)
            except PollTimeout as exc:
                raise RuntimeError(f"VM {vm.name} did not stop in time") from exc

        self._logger.info("Deleting VM %s (vmid=%d)", vm.name, vm.vmid)
        await self._request(
            "DELETE", f"{base}?purge=1&destroy-unreferenced-disks=1"
        )
