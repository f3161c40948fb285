"""Proxmox VE virtual machine resource model."""

from __future__ import annotations

from ipaddress import IPv4Address  # noqa: TC003 — Pydantic needs this at runtime
from typing import Annotated, ClassVar, Literal

from pydantic import Field

from lab_provisioner.resources.base import Kind, Resource
from lab_provisioner.resources.markers import Immutable

VMRole = Literal["server", "agent"]


class ProxmoxVMResource(Resource):
    """A K3s node cloned from a cloud-init template on a Proxmox VE host.

    The clone source, VMID, host node and target datastore cannot be changed
    on an existing VM; changing any of them replaces the VM.
    """

    resource_type: ClassVar[str] = "proxmox_vm"
    kind: ClassVar[Kind] = Kind.VM
    plan_priority: ClassVar[int] = 10

    vmid: Annotated[int, Immutable()] = Field(ge=100, le=999_999_999)
    role: VMRole = "agent"
    cores: int = Field(default=2, ge=1, le=128)
    memory_mb: int = Field(default=4096, ge=512)
    disk_gb: int = Field(default=40, ge=1)
    ip: IPv4Address
    prefix_length: int = Field(default=24, ge=1, le=32)

    node_name: Annotated[str, Immutable()] = "pve"
    template_vmid: Annotated[int, Immutable()] = 9000
    datastore: Annotated[str, Immutable()] = "local-lvm"
    bridge: str = "vmbr0"

    gateway: IPv4Address | None = None
    dns_server: IPv4Address | None = None
    dns_domain: str = "home.lab"
    ci_user: str = "admin"
    ssh_public_key: str = Field(min_length=1)
