"""Proxmox VE VM handler implementing CRUD via proxmoxer."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

from lab_provisioner.engine.handlers import ResourceHandler, planned_attributes

if TYPE_CHECKING:
    from proxmoxer import ProxmoxResource

    from lab_provisioner.core.provider import ProxmoxProvider
    from lab_provisioner.core.state import ResourceInstance
    from lab_provisioner.engine.handlers import EngineContext
    from lab_provisioner.resources.vm import ProxmoxVMResource

logger = logging.getLogger(__name__)

_DISK = "scsi0"
_TASK_POLL_INTERVAL = 2.0

# VM config keys written by ``_config_params`` for each resource field.
_FIELD_PARAMS: dict[str, tuple[str, ...]] = {
    "cores": ("cores",),
    "memory_mb": ("memory",),
    "description": ("description",),
    "tags": ("tags",),
    "bridge": ("net0",),
    "ip": ("ipconfig0",),
    "prefix_length": ("ipconfig0",),
    "gateway": ("ipconfig0",),
    "dns_server": ("nameserver",),
    "dns_domain": ("searchdomain",),
    "ci_user": ("ciuser",),
    "ssh_public_key": ("sshkeys",),
}


def _ipconfig(desired: ProxmoxVMResource) -> str:
    value = f"ip={desired.ip}/{desired.prefix_length}"
    if desired.gateway is not None:
        value += f",gw={desired.gateway}"
    return value


def _parse_ipconfig(raw: str) -> dict[str, Any]:
    """Parse ``ip=192.168.1.10/24,gw=192.168.1.1`` into resource fields."""
    parts = dict(p.split("=", 1) for p in raw.split(",") if "=" in p)
    out: dict[str, Any] = {}
    if "/" in parts.get("ip", ""):
        ip, prefix = parts["ip"].split("/", 1)
        out["ip"] = ip
        out["prefix_length"] = int(prefix)
    if "gw" in parts:
        out["gateway"] = parts["gw"]
    return out


def _parse_size_gb(raw: str) -> int | None:
    """Disk size from a drive string like ``local-lvm:vm-101-disk-0,size=40G``."""
    for part in raw.split(","):
        if part.startswith("size="):
            size = part[len("size=") :]
            unit = size[-1].upper()
            number = float(size[:-1]) if unit.isalpha() else float(size) / 1024**3
            if unit == "T":
                number *= 1024
            elif unit == "M":
                number /= 1024
            return int(number)
    return None


def _parse_tags(raw: str) -> list[str]:
    return sorted(t for t in raw.replace(",", ";").split(";") if t)


def _config_params(desired: ProxmoxVMResource, fields: set[str] | None = None) -> dict[str, Any]:
    """Proxmox config parameters for *fields* (all when None)."""
    params: dict[str, Any] = {
        "cores": desired.cores,
        "memory": desired.memory_mb,
        "description": desired.description,
        "tags": ";".join(sorted(desired.tags)),
        "net0": f"virtio,bridge={desired.bridge}",
        "ipconfig0": _ipconfig(desired),
        "searchdomain": desired.dns_domain,
        "ciuser": desired.ci_user,
        # Proxmox expects the key URL-encoded.
        "sshkeys": quote(desired.ssh_public_key, safe=""),
    }
    if desired.dns_server is not None:
        params["nameserver"] = str(desired.dns_server)

    if fields is None:
        params["onboot"] = 1
        params["agent"] = "enabled=1"
        return params

    wanted = {p for f in fields for p in _FIELD_PARAMS.get(f, ())}
    return {k: v for k, v in params.items() if k in wanted}


class ProxmoxVMHandler(ResourceHandler["ProxmoxVMResource"]):
    """CRUD handler for K3s VMs cloned from a Proxmox cloud-init template."""

    def _provider(self, ctx: EngineContext) -> ProxmoxProvider:
        return ctx.providers.require_proxmox()

    def _node(self, ctx: EngineContext, node_name: str) -> ProxmoxResource:
        return self._provider(ctx).client.nodes(node_name)

    def _exists(self, node: ProxmoxResource, vmid: int) -> bool:
        return any(int(vm["vmid"]) == vmid for vm in node.qemu.get())

    def _wait(self, ctx: EngineContext, node: ProxmoxResource, upid: str) -> None:
        """Block until the Proxmox task *upid* finishes; raise if it failed."""
        timeout = self._provider(ctx).task_timeout
        deadline = time.monotonic() + timeout
        while True:
            status = node.tasks(upid).status.get()
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status != "OK":
                    raise RuntimeError(f"Proxmox task {upid} failed: {exit_status}")
                return
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Proxmox task {upid} did not finish within {timeout}s")
            time.sleep(_TASK_POLL_INTERVAL)

    def _observed(self, node: ProxmoxResource, vmid: int) -> dict[str, Any]:
        """Attributes observable from the VM config, named like resource fields."""
        config = node.qemu(vmid).config.get()
        out: dict[str, Any] = {"vmid": vmid, "protected": bool(int(config.get("protection", 0)))}
        if "name" in config:
            out["name"] = config["name"]
        if "cores" in config:
            out["cores"] = int(config["cores"])
        if "memory" in config:
            out["memory_mb"] = int(config["memory"])
        if "description" in config:
            out["description"] = config["description"].rstrip("\n")
        out["tags"] = _parse_tags(config.get("tags", ""))
        if "ipconfig0" in config:
            out.update(_parse_ipconfig(config["ipconfig0"]))
        if "nameserver" in config:
            out["dns_server"] = config["nameserver"]
        if "searchdomain" in config:
            out["dns_domain"] = config["searchdomain"]
        if "ciuser" in config:
            out["ci_user"] = config["ciuser"]
        if "sshkeys" in config:
            out["ssh_public_key"] = unquote(config["sshkeys"]).strip()
        if _DISK in config and (size := _parse_size_gb(config[_DISK])) is not None:
            out["disk_gb"] = size
        if "net0" in config:
            bridge = dict(
                p.split("=", 1) for p in config["net0"].split(",") if "=" in p
            ).get("bridge")
            if bridge:
                out["bridge"] = bridge
        return out

    def validate(self, ctx: EngineContext, desired: ProxmoxVMResource) -> list[str]:
        _ = ctx
        errors: list[str] = []
        if desired.vmid == desired.template_vmid:
            errors.append(f"{desired.address}: vmid {desired.vmid} is the template's VMID")
        if desired.gateway is not None and desired.gateway == desired.ip:
            errors.append(f"{desired.address}: ip {desired.ip} equals the gateway")
        return errors

    def create(self, ctx: EngineContext, desired: ProxmoxVMResource) -> dict[str, Any]:
        node = self._node(ctx, desired.node_name)
        vm = node.qemu(desired.vmid)

        if self._exists(node, desired.vmid):
            logger.info("VM %d already exists on %s; adopting", desired.vmid, desired.node_name)
            return {**planned_attributes(desired), **self._observed(node, desired.vmid)}

        logger.info(
            "Cloning template %d -> VM %d (%s)", desired.template_vmid, desired.vmid, desired.name
        )
        upid = node.qemu(desired.template_vmid).clone.post(
            newid=desired.vmid,
            name=desired.name,
            full=1,
            storage=desired.datastore,
        )
        self._wait(ctx, node, upid)

        vm.config.put(**_config_params(desired))
        vm.resize.put(disk=_DISK, size=f"{desired.disk_gb}G")
        self._wait(ctx, node, vm.status.start.post())

        return {**planned_attributes(desired), **self._observed(node, desired.vmid)}

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        node_name = prior.attributes.get("node_name", "pve")
        vmid = int(prior.attributes["vmid"])
        node = self._node(ctx, node_name)
        if not self._exists(node, vmid):
            return None
        return {**prior.attributes, **self._observed(node, vmid)}

    def update(
        self,
        ctx: EngineContext,
        desired: ProxmoxVMResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        node = self._node(ctx, desired.node_name)
        vm = node.qemu(desired.vmid)

        params = _config_params(desired, set(diff))
        if params:
            vm.config.put(**params)

        if "disk_gb" in diff:
            current = prior.attributes.get("disk_gb")
            if current is not None and desired.disk_gb < int(current):
                raise RuntimeError(
                    f"Cannot shrink disk of VM {desired.vmid} from {current}G to {desired.disk_gb}G"
                )
            vm.resize.put(disk=_DISK, size=f"{desired.disk_gb}G")

        # Role only changes inventory grouping; nothing to send to Proxmox.
        return {**planned_attributes(desired), **self._observed(node, desired.vmid)}

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        node = self._node(ctx, prior.attributes.get("node_name", "pve"))
        vmid = int(prior.attributes["vmid"])
        if not self._exists(node, vmid):
            logger.info("VM %d already gone", vmid)
            return

        vm = node.qemu(vmid)
        if vm.status.current.get().get("status") == "running":
            self._wait(ctx, node, vm.status.stop.post())
        self._wait(ctx, node, vm.delete(purge=1))
