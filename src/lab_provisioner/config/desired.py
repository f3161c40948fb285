"""Desired state: the validated, immutable fleet built once per run from ``Config``."""

from __future__ import annotations

import ipaddress
import logging
from functools import partial
from ipaddress import IPv4Address, IPv4Network  # noqa: TC003 — Pydantic needs this at runtime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from lab_provisioner.engine.errors import ValidationError
from lab_provisioner.engine.planner import resolve_deps
from lab_provisioner.resources.base import Kind, Resource  # noqa: TC001 — Pydantic needs this at runtime
from lab_provisioner.resources.linode import (
    LinodeInstanceResource,
    NodeBalancerConfigResource,
    NodeBalancerNodeResource,
    NodeBalancerResource,
)
from lab_provisioner.resources.vm import ProxmoxVMResource

if TYPE_CHECKING:
    from collections.abc import Callable

    from lab_provisioner.config.schema import Config, EdgeConfig, VMConfig

logger = logging.getLogger(__name__)

EDGE_INSTANCE = "edge"
EDGE_BALANCER = "edge-lb"
EDGE_INSTANCE_TAGS = ("homelab", "edge", "wireguard")
EDGE_BALANCER_TAGS = ("homelab", "edge")
VM_BASE_TAGS = ("k3s", "rocky9")

# (scheme, port): TLS passthrough on 443, plain HTTP on 80 for ACME and redirects.
EDGE_PORTS = (("https", 443), ("http", 80))


class EdgeSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    region: str
    ingress_ip: IPv4Address
    home_endpoint: str | None = None
    home_wg_public_key: str | None = None


class Settings(BaseModel):
    """Global settings shared by the fleet's resources."""

    model_config = ConfigDict(frozen=True)

    network: IPv4Network
    gateway: IPv4Address
    dns_server: IPv4Address
    dns_domain: str
    ssh_public_key: str
    node_name: str
    template_vmid: int
    datastore: str
    bridge: str
    ci_user: str
    edge: EdgeSettings | None = None


class DesiredState(BaseModel):
    """Validated target fleet. Never mutated after ``build_desired_state``."""

    model_config = ConfigDict(frozen=True)

    settings: Settings
    resources: tuple[Resource, ...]
    protected: frozenset[str] = frozenset()

    @property
    def addresses(self) -> list[str]:
        return [r.address for r in self.resources]

    def get(self, address: str) -> Resource | None:
        return next((r for r in self.resources if r.address == address), None)

    def of_kind(self, kind: Kind) -> list[Resource]:
        return [r for r in self.resources if r.kind == kind]

    @property
    def outputs(self) -> dict[str, int]:
        """Stack-level exports: the number of VMs in the fleet."""
        return {"vmCount": len(self.of_kind(Kind.VM))}


def _format_pydantic(prefix: str, exc: PydanticValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        out.append(f"{prefix}: {loc}: {err['msg']}" if loc else f"{prefix}: {err['msg']}")
    return out


def _build(errors: list[str], prefix: str, factory: Callable[[], Resource]) -> Resource | None:
    try:
        return factory()
    except PydanticValidationError as exc:
        errors.extend(_format_pydantic(prefix, exc))
        return None


def _parse_ip(errors: list[str], label: str, value: str) -> IPv4Address | None:
    try:
        return IPv4Address(value)
    except ValueError:
        errors.append(f"{label}: malformed IPv4 address {value!r}")
        return None


def _check_in_network(
    errors: list[str], label: str, ip: IPv4Address | None, network: IPv4Network | None
) -> None:
    if ip is not None and network is not None and ip not in network:
        errors.append(f"{label}: {ip} is outside network {network}")


def _vm_resources(config: Config, settings: Settings, errors: list[str]) -> list[Resource]:
    resources: list[Resource] = []
    seen_vmids: dict[int, str] = {settings.template_vmid: "the template"}
    seen_ips: dict[IPv4Address, str] = {settings.gateway: "the gateway"}
    control_plane_exported = False

    for i, vm in enumerate(config.vms):
        label = f"vms[{i}] ({vm.name})"
        ip = _parse_ip(errors, label, vm.ip)
        _check_in_network(errors, label, ip, settings.network)

        if vm.vmid in seen_vmids:
            errors.append(f"{label}: vmid {vm.vmid} collides with {seen_vmids[vm.vmid]}")
        else:
            seen_vmids[vm.vmid] = vm.name
        if ip is not None:
            if ip in seen_ips:
                errors.append(f"{label}: ip {ip} collides with {seen_ips[ip]}")
            else:
                seen_ips[ip] = vm.name
        if ip is None:
            continue

        exports = {f"vmIPs.{vm.name}": "ip"}
        if vm.role == "server" and not control_plane_exported:
            exports |= {"controlPlaneIP": "ip", "nodeName": "node_name"}
            control_plane_exported = True

        if not settings.ssh_public_key:
            continue
        resource = _build(errors, label, partial(_vm, vm, ip, settings, exports))
        if resource is not None:
            resources.append(resource)
    return resources


def _vm(
    vm: VMConfig, ip: IPv4Address, settings: Settings, exports: dict[str, str]
) -> ProxmoxVMResource:
    return ProxmoxVMResource(
        name=vm.name,
        vmid=vm.vmid,
        role=vm.role,
        cores=vm.cores,
        memory_mb=vm.memory_mb,
        disk_gb=vm.disk_gb,
        ip=ip,
        prefix_length=settings.network.prefixlen,
        description=vm.description,
        tags=[*VM_BASE_TAGS, vm.role],
        node_name=settings.node_name,
        template_vmid=settings.template_vmid,
        datastore=settings.datastore,
        bridge=settings.bridge,
        gateway=settings.gateway,
        dns_server=settings.dns_server,
        dns_domain=settings.dns_domain,
        ci_user=settings.ci_user,
        ssh_public_key=settings.ssh_public_key,
        depends_on=vm.depends_on,
        exports=exports,
    )


def _edge_resources(edge: EdgeSettings, ssh_public_key: str) -> list[Resource]:
    """Edge node + NodeBalancer with an HTTPS and an HTTP passthrough config."""
    resources: list[Resource] = [
        LinodeInstanceResource(
            name=EDGE_INSTANCE,
            description="WireGuard edge node forwarding public traffic to the home lab",
            label=edge.label,
            region=edge.region,
            authorized_keys=[ssh_public_key],
            tags=list(EDGE_INSTANCE_TAGS),
            exports={
                "edgeNodeIP": "ipv4",
                "edgeNodePrivateIP": "private_ipv4",
                "edgeNodeRegion": "region",
            },
        ),
        NodeBalancerResource(
            name=EDGE_BALANCER,
            label=f"{edge.label}-lb",
            region=edge.region,
            client_conn_throttle=20,
            tags=list(EDGE_BALANCER_TAGS),
            exports={"nodeBalancerHostname": "hostname", "nodeBalancerIPv4": "ipv4"},
        ),
    ]
    for scheme, port in EDGE_PORTS:
        resources.append(
            NodeBalancerConfigResource(
                name=f"{EDGE_BALANCER}-{scheme}",
                nodebalancer=EDGE_BALANCER,
                port=port,
            )
        )
    for scheme, port in EDGE_PORTS:
        resources.append(
            NodeBalancerNodeResource(
                name=f"edge-backend-{scheme}",
                nodebalancer=EDGE_BALANCER,
                config=f"{EDGE_BALANCER}-{scheme}",
                instance=EDGE_INSTANCE,
                port=port,
                label=f"edge-{scheme}",
                weight=100,
            )
        )
    return resources


def _edge_settings(
    edge: EdgeConfig, network: IPv4Network | None, errors: list[str]
) -> EdgeSettings | None:
    ingress_ip = _parse_ip(errors, "edge.ingress_ip", edge.ingress_ip)
    _check_in_network(errors, "edge.ingress_ip", ingress_ip, network)
    if ingress_ip is None:
        return None
    return EdgeSettings(
        label=edge.label,
        region=edge.region,
        ingress_ip=ingress_ip,
        home_endpoint=edge.home_endpoint,
        home_wg_public_key=edge.home_wg_public_key,
    )


def _check_unique_names(resources: list[Resource], errors: list[str]) -> None:
    seen: set[str] = set()
    for r in resources:
        if r.address in seen:
            errors.append(f"Duplicate {r.kind.value} name '{r.name}'")
        seen.add(r.address)


def build_desired_state(config: Config) -> DesiredState:
    """Validate *config* and expand it into the fleet's resources.

    Pure: no provider calls and no file I/O.

    Raises:
        ValidationError: With every problem found (missing SSH key or root
            password, malformed or out-of-network IPs, colliding VMIDs or
            IPs, duplicate names, unknown or ambiguous ``depends_on``).
    """
    errors: list[str] = []

    ssh_key = (config.ssh_public_key or "").strip()
    if not ssh_key:
        errors.append("ssh_public_key is required (set in YAML or LAB_SSH_PUBLIC_KEY env var)")
    if config.edge is not None and not config.linode.root_password:
        errors.append(
            "linode.root_password is required for the edge node "
            "(set LINODE_ROOT_PASSWORD env var)"
        )

    network: IPv4Network | None
    try:
        network = ipaddress.IPv4Network(config.network.cidr, strict=False)
    except ValueError:
        errors.append(f"network.cidr: malformed IPv4 network {config.network.cidr!r}")
        network = None
    gateway = _parse_ip(errors, "network.gateway", config.network.gateway)
    _check_in_network(errors, "network.gateway", gateway, network)
    dns_server = _parse_ip(errors, "network.dns_server", config.network.dns_server)

    edge = _edge_settings(config.edge, network, errors) if config.edge is not None else None

    if network is None or gateway is None or dns_server is None:
        raise ValidationError(errors)

    settings = Settings(
        network=network,
        gateway=gateway,
        dns_server=dns_server,
        dns_domain=config.network.dns_domain,
        ssh_public_key=ssh_key,
        node_name=config.proxmox.node,
        template_vmid=config.template.vmid,
        datastore=config.template.datastore,
        bridge=config.template.bridge,
        ci_user=config.template.ci_user,
        edge=edge,
    )

    resources = _vm_resources(config, settings, errors)
    if edge is not None and ssh_key:
        try:
            resources.extend(_edge_resources(edge, ssh_key))
        except PydanticValidationError as exc:
            errors.extend(_format_pydantic("edge", exc))

    _check_unique_names(resources, errors)
    try:
        resolve_deps({r.address: r for r in resources})
    except ValidationError as exc:
        errors.extend(exc.errors)

    if errors:
        raise ValidationError(errors)

    logger.debug("Desired state: %d resources", len(resources))
    return DesiredState(
        settings=settings,
        resources=tuple(resources),
        protected=frozenset(config.protect),
    )
