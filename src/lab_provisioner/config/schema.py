"""Configuration models for YAML-based provisioning."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProxmoxConfig(BaseSettings):
    """Proxmox VE connection settings.

    Fields can be set via YAML (constructor kwargs) or environment variables
    with the ``PROXMOX_`` prefix. Constructor kwargs take precedence.

    ``token_value`` and ``password`` are typically provided via environment
    variables rather than YAML to avoid committing secrets to version control.
    """

    model_config = SettingsConfigDict(env_prefix="PROXMOX_")

    host: str | None = None
    port: int = 8006
    user: str = "root@pam"
    token_name: str | None = None
    token_value: str | None = None
    password: str | None = None
    verify_ssl: bool = True
    node: str = "pve"
    task_timeout: float = 600.0


class LinodeConfig(BaseSettings):
    """Linode API settings (``LINODE_`` prefix)."""

    model_config = SettingsConfigDict(env_prefix="LINODE_")

    token: str | None = None
    root_password: str | None = None


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


def _none_to_dict(v: Any) -> Any:
    return v if v is not None else {}


class NetworkConfig(BaseModel):
    """Home network the Proxmox VMs live on."""

    model_config = ConfigDict(extra="forbid")

    cidr: str = "192.168.1.0/24"
    gateway: str = "192.168.1.1"
    dns_server: str = "192.168.1.1"
    dns_domain: str = "home.lab"


class TemplateConfig(BaseModel):
    """Cloud-init template VMs are cloned from."""

    model_config = ConfigDict(extra="forbid")

    vmid: int = 9000
    datastore: str = "local-lvm"
    bridge: str = "vmbr0"
    ci_user: str = "admin"


class VMConfig(BaseModel):
    """One K3s node. ``ip`` is checked against the network when the desired state is built."""

    model_config = ConfigDict(extra="forbid")

    name: str
    vmid: int
    role: Literal["server", "agent"] = "agent"
    cores: int = 2
    memory_mb: int = 4096
    disk_gb: int = 40
    ip: str
    description: str = ""
    depends_on: Annotated[list[str], BeforeValidator(_none_to_list)] = []


class EdgeConfig(BaseModel):
    """Linode edge node + NodeBalancer forwarding public traffic home over WireGuard."""

    model_config = ConfigDict(extra="forbid")

    label: str = "homelab-edge"
    region: str = "us-ord"
    home_endpoint: str | None = None
    home_wg_public_key: str | None = None
    ingress_ip: str = "192.168.1.200"


class Config(BaseModel):
    """Provisioning configuration; validates YAML structure directly."""

    model_config = ConfigDict(extra="forbid")

    stack: str = "homelab"
    state_path: Path = Path(".lab-state.json")
    ssh_public_key: str | None = None
    proxmox: ProxmoxConfig = Field(default_factory=ProxmoxConfig)
    linode: LinodeConfig = Field(default_factory=LinodeConfig)
    network: Annotated[NetworkConfig, BeforeValidator(_none_to_dict)] = NetworkConfig()
    template: Annotated[TemplateConfig, BeforeValidator(_none_to_dict)] = TemplateConfig()
    vms: Annotated[list[VMConfig], BeforeValidator(_none_to_list)] = []
    edge: EdgeConfig | None = None
    protect: Annotated[list[str], BeforeValidator(_none_to_list)] = []
    config_dir: Path = Path()
