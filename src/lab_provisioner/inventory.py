"""Ansible inventory generation from applied state."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ruamel.yaml import YAML

if TYPE_CHECKING:
    from collections.abc import Mapping

    from lab_provisioner.core.state import State

logger = logging.getLogger(__name__)

_GROUP_BY_ROLE = {"server": "control_plane", "agent": "workers"}


class DuplicateHostError(ValueError):
    """Raised when two applied resources would produce the same inventory host."""


def _add_host(groups: dict[str, dict[str, Any]], group: str, host: str, hostvars: dict) -> None:
    for other_group, other in groups.items():
        if host in other["hosts"]:
            raise DuplicateHostError(f"Host '{host}' appears in both {other_group} and {group}")
    groups.setdefault(group, {"hosts": {}})["hosts"][host] = hostvars


def generate_inventory(
    state: State, *, edge_vars: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Build an Ansible inventory from the VMs recorded in *state*.

    Proxmox VMs go to ``control_plane`` (role ``server``) or ``workers``
    (role ``agent``); the Linode edge node goes to ``edge`` with *edge_vars*
    merged into its host vars. Groups are always present, hosts sorted by name.

    Raises:
        DuplicateHostError: Two resources map to the same host name.
    """
    groups: dict[str, dict[str, Any]] = {"control_plane": {"hosts": {}}, "workers": {"hosts": {}}}

    for inst in state.of_type("proxmox_vm"):
        attrs = inst.attributes
        group = _GROUP_BY_ROLE.get(attrs.get("role", "agent"), "workers")
        _add_host(
            groups,
            group,
            attrs.get("name", inst.name),
            {"ansible_host": attrs["ip"], "ansible_user": attrs.get("ci_user", "admin")},
        )

    for inst in state.of_type("linode_instance"):
        attrs = inst.attributes
        hostvars: dict[str, Any] = {"ansible_host": attrs.get("ipv4"), "ansible_user": "root"}
        if attrs.get("private_ipv4"):
            hostvars["private_ip"] = attrs["private_ipv4"]
        hostvars.update({k: v for k, v in (edge_vars or {}).items() if v is not None})
        _add_host(groups, "edge", attrs.get("label", inst.name), hostvars)

    for group in groups.values():
        group["hosts"] = dict(sorted(group["hosts"].items()))

    logger.debug(
        "Inventory: %s",
        {name: len(group["hosts"]) for name, group in groups.items()},
    )
    return {"all": {"children": groups}}


def render_inventory(inventory: Mapping[str, Any]) -> str:
    yaml = YAML()
    yaml.default_flow_style = False
    buf = io.StringIO()
    yaml.dump(inventory, buf)
    return buf.getvalue()


def write_inventory(inventory: Mapping[str, Any], path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_inventory(inventory), encoding="utf-8")
    logger.info("Wrote inventory to %s", path)
