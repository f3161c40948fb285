"""Fleet resource definitions."""

from lab_provisioner.resources.base import Kind, Resource
from lab_provisioner.resources.linode import (
    LinodeInstanceResource,
    NodeBalancerConfigResource,
    NodeBalancerNodeResource,
    NodeBalancerResource,
)
from lab_provisioner.resources.vm import ProxmoxVMResource

__all__ = [
    "Kind",
    "LinodeInstanceResource",
    "NodeBalancerConfigResource",
    "NodeBalancerNodeResource",
    "NodeBalancerResource",
    "ProxmoxVMResource",
    "Resource",
]
