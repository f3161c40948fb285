"""Provider adapters: Proxmox VE compute and Linode compute + network handlers."""

from lab_provisioner.handlers.linode import (
    LinodeInstanceHandler,
    NodeBalancerConfigHandler,
    NodeBalancerHandler,
    NodeBalancerNodeHandler,
)
from lab_provisioner.handlers.proxmox import ProxmoxVMHandler

__all__ = [
    "LinodeInstanceHandler",
    "NodeBalancerConfigHandler",
    "NodeBalancerHandler",
    "NodeBalancerNodeHandler",
    "ProxmoxVMHandler",
]
