"""Linode edge resource models: instance, NodeBalancer, configs and backend nodes."""

from __future__ import annotations

from typing import Annotated, ClassVar, Literal

from pydantic import Field

from lab_provisioner.resources.base import Kind, Resource
from lab_provisioner.resources.markers import Compare, Immutable, Ref


class LinodeInstanceResource(Resource):
    """A Linode compute instance.

    The root password is not part of the resource; it is taken from the
    Linode provider settings at create time so it never lands in plans or state.
    """

    resource_type: ClassVar[str] = "linode_instance"
    kind: ClassVar[Kind] = Kind.VM
    plan_priority: ClassVar[int] = 10

    label: str = Field(min_length=3, max_length=64)
    region: Annotated[str, Immutable()] = "us-ord"
    instance_type: Annotated[str, Immutable()] = "g6-nanode-1"
    image: Annotated[str, Immutable()] = "linode/rocky9"
    authorized_keys: Annotated[list[str], Compare("set"), Immutable()] = Field(
        default_factory=list
    )
    private_ip: Annotated[bool, Immutable()] = True
    booted: bool = True


class NodeBalancerResource(Resource):
    """A Linode NodeBalancer providing the stable public entry point."""

    resource_type: ClassVar[str] = "linode_nodebalancer"
    kind: ClassVar[Kind] = Kind.LOAD_BALANCER
    plan_priority: ClassVar[int] = 20

    label: str = Field(min_length=3, max_length=32)
    region: Annotated[str, Immutable()] = "us-ord"
    client_conn_throttle: int = Field(default=20, ge=0, le=20)


class NodeBalancerConfigResource(Resource):
    """A port listener on a NodeBalancer."""

    resource_type: ClassVar[str] = "linode_nodebalancer_config"
    kind: ClassVar[Kind] = Kind.LB_CONFIG
    plan_priority: ClassVar[int] = 30

    nodebalancer: Annotated[str, Ref(Kind.LOAD_BALANCER.value), Immutable()]
    port: Annotated[int, Immutable()] = Field(ge=1, le=65535)
    protocol: Literal["tcp", "http", "https"] = "tcp"
    algorithm: Literal["roundrobin", "leastconn", "source"] = "roundrobin"
    check: Literal["none", "connection", "http", "http_body"] = "connection"
    check_interval: int = Field(default=30, ge=2, le=3600)
    check_timeout: int = Field(default=10, ge=1, le=30)
    check_attempts: int = Field(default=3, ge=1, le=30)
    stickiness: Literal["none", "table", "http_cookie"] = "table"


class NodeBalancerNodeResource(Resource):
    """A backend registration pointing a config at an instance's private IP."""

    resource_type: ClassVar[str] = "linode_nodebalancer_node"
    kind: ClassVar[Kind] = Kind.LB_NODE
    plan_priority: ClassVar[int] = 40

    nodebalancer: Annotated[str, Ref(Kind.LOAD_BALANCER.value), Immutable()]
    config: Annotated[str, Ref(Kind.LB_CONFIG.value), Immutable()]
    instance: Annotated[str, Ref(Kind.VM.value)]
    port: int = Field(ge=1, le=65535)
    label: str = Field(min_length=3, max_length=32)
    weight: int = Field(default=100, ge=1, le=255)
