"""Default resource type registry factory."""

from __future__ import annotations

from lab_provisioner.engine.registry import ResourceTypeRegistry
from lab_provisioner.handlers.linode import (
    LinodeInstanceHandler,
    NodeBalancerConfigHandler,
    NodeBalancerHandler,
    NodeBalancerNodeHandler,
)
from lab_provisioner.handlers.proxmox import ProxmoxVMHandler
from lab_provisioner.resources.linode import (
    LinodeInstanceResource,
    NodeBalancerConfigResource,
    NodeBalancerNodeResource,
    NodeBalancerResource,
)
from lab_provisioner.resources.vm import ProxmoxVMResource


def default_registry() -> ResourceTypeRegistry:
    """Create a fresh registry with all built-in resource types and handlers."""
    registry = ResourceTypeRegistry()

    registry.register(ProxmoxVMResource, ProxmoxVMHandler())

    registry.register(LinodeInstanceResource, LinodeInstanceHandler())
    registry.register(NodeBalancerResource, NodeBalancerHandler())
    registry.register(NodeBalancerConfigResource, NodeBalancerConfigHandler())
    registry.register(NodeBalancerNodeResource, NodeBalancerNodeHandler())

    return registry
